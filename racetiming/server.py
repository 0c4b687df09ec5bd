"""
racetiming — Server entry point.

Starts the FastAPI server with the REST API under /api.
Usage:
    python -m racetiming.server
    # or: uvicorn racetiming.server:app --host 0.0.0.0 --port 8080 --reload
"""

import hmac
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from racetiming.core.database import DB_DIR, get_connection, init_db, migrate_db
from racetiming.core.errors import (
    AuthorizationError, ConflictError, InvalidStateError, NotFoundError,
    RaceTimingError, ValidationError,
)
from racetiming.api.routes import router as api_router

logger = logging.getLogger("racetiming")

PORT = int(os.environ.get("RACETIMING_PORT", "8080"))
LOG_LEVEL = os.environ.get("RACETIMING_LOG_LEVEL", "INFO").upper()

STATUS_CODES = {
    ValidationError: 400,
    AuthorizationError: 403,
    NotFoundError: 404,
    InvalidStateError: 409,
    ConflictError: 409,
}


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


# ─── Admin token (pure ASGI) ─────────────────────────────────────────

ADMIN_TOKEN_FILE = "admin_token.txt"
READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def _load_admin_token() -> str:
    """RACETIMING_ADMIN_TOKEN, else <data dir>/admin_token.txt, else no token."""
    token = os.environ.get("RACETIMING_ADMIN_TOKEN", "").strip()
    if token:
        return token
    token_path = DB_DIR / ADMIN_TOKEN_FILE
    return token_path.read_text().strip() if token_path.exists() else ""


class AdminTokenMiddleware:
    """Writes under /api need X-Admin-Token once an admin token is configured.

    Reads (results, exports, audit) stay open, and so does /api/status.
    """
    open_paths = frozenset({"/api/status"})

    def __init__(self, app):
        self.app = app

    def _guarded(self, scope) -> bool:
        return (scope["type"] == "http"
                and scope.get("method", "GET") not in READ_METHODS
                and scope.get("path", "").startswith("/api/")
                and scope["path"] not in self.open_paths)

    async def __call__(self, scope, receive, send):
        token = _load_admin_token() if self._guarded(scope) else ""
        if token:
            sent = dict(scope.get("headers", [])).get(b"x-admin-token", b"")
            if not hmac.compare_digest(sent, token.encode()):
                logger.warning("Admin token missing or wrong: %s %s",
                               scope["method"], scope["path"])
                response = JSONResponse(status_code=403, content={
                    "detail": "Admin token required",
                    "error": "authorization",
                    "entity": None,
                    "field": "X-Admin-Token",
                })
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: init + migrate the database."""
    conn = get_connection()
    try:
        init_db(conn)
        migrate_db(conn)
    finally:
        conn.close()
    logger.info("Database ready in %s", DB_DIR)
    yield


app = FastAPI(title="racetiming", lifespan=lifespan)

app.add_middleware(AdminTokenMiddleware)

app.include_router(api_router, prefix="/api")


@app.exception_handler(RaceTimingError)
async def race_timing_error_handler(request: Request, exc: RaceTimingError):
    status = STATUS_CODES.get(type(exc), 400)
    if status >= 409:
        logger.info("%s %s -> %d: %s", request.method, request.url.path,
                    status, exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())


# ─── Main ────────────────────────────────────────────────────────────

def _run_server(host: str = "0.0.0.0", port: int = PORT):
    import uvicorn
    config = uvicorn.Config(
        "racetiming.server:app", host=host, port=port,
        log_level=LOG_LEVEL.lower(),
    )
    uvicorn.Server(config).run()


def main():
    configure_logging()
    logger.info("racetiming server on http://localhost:%d/api", PORT)
    _run_server()


if __name__ == "__main__":
    main()
