"""
actor.py — Who is acting, as handed to the core by the caller.

The core never evaluates identity. The API layer decides whether the caller
may act on one race and passes the answer in as `authorized`, together with
the race it was decided for. An actor without a race (SYSTEM) may act on any.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from racetiming.core.errors import AuthorizationError


@dataclass(frozen=True)
class Actor:
    user_id: Optional[str] = None
    authorized: bool = False
    race_id: Optional[int] = None


SYSTEM = Actor(user_id=None, authorized=True)


def require_authorized(actor: Actor, race_id: int) -> None:
    if not actor.authorized or (actor.race_id is not None
                                and actor.race_id != race_id):
        raise AuthorizationError(
            f"Not authorized to modify race {race_id}", "Race", "organization_id"
        )
