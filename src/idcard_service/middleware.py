import logging
from typing import Callable, Iterable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .database import IdCardStore

logger = logging.getLogger(__name__)

NOT_READY_MESSAGE = "Database connecting. Please retry."


class ConnectionGateMiddleware(BaseHTTPMiddleware):
    """
    Refuse requests with 503 until the database connection is usable.

    Clients get an immediate answer during cold start instead of waiting on
    the driver's server-selection timeout. Paths in ``exempt_paths`` (the
    health probe) are always passed through.
    """

    def __init__(self, app: ASGIApp, get_store: Callable[[], IdCardStore], exempt_paths: Iterable[str] = ("/healthz",)):
        super().__init__(app)
        self.get_store = get_store
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        if not self.get_store().is_connected:
            logger.debug(f"Rejecting {request.method} {request.url.path}: database not connected")
            return JSONResponse(status_code=503, content={"error": NOT_READY_MESSAGE})

        return await call_next(request)
