import logging
import uuid
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("vault.api")

CORRELATION_HEADER = "X-Correlation-ID"
MAX_CORRELATION_ID_LENGTH = 128


def resolve_correlation_id(raw: Optional[str]) -> str:
    """Echo a caller-supplied ID, or mint one when absent or oversized."""
    if raw and len(raw) <= MAX_CORRELATION_ID_LENGTH:
        return raw
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Attach a correlation ID to every request and response.

    The ID is resolved once and kept on `request.state`, so the value
    a route logs is the one returned in the response header.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = resolve_correlation_id(
            request.headers.get(CORRELATION_HEADER)
        )
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers.setdefault(CORRELATION_HEADER, correlation_id)

        if response.status_code == 422:
            logger.info(
                "request_validation_failed",
                extra={"trace_id": correlation_id, "path": request.url.path},
            )
        return response
