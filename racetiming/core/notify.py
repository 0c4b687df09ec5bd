"""
notify.py — Hooks the core calls after a mutation has committed.

Live push (websocket, SSE, ...) lives outside the core; it subclasses
ResultsListener and is passed in per call. The core keeps no subscribers.
"""

from __future__ import annotations

import logging


class ResultsListener:
    """No-op base. Override the hooks you care about."""

    def timing_events_recorded(self, race_id: int, events: list[dict]) -> None:
        pass

    def results_recomputed(self, race_id: int, count: int) -> None:
        pass


class LoggingListener(ResultsListener):
    """Writes each notification to the `racetiming.notify` logger."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger("racetiming.notify")

    def timing_events_recorded(self, race_id: int, events: list[dict]) -> None:
        if not events:
            return
        self.logger.info("Race %d: %d timing event(s) recorded (seq %d-%d)",
                         race_id, len(events),
                         events[0]["sequence"], events[-1]["sequence"])

    def results_recomputed(self, race_id: int, count: int) -> None:
        self.logger.info("Race %d: results recomputed (%d entries)", race_id, count)


NULL_LISTENER = ResultsListener()
