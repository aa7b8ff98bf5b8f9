from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from funnelcrm.context import correlation_scope

CORRELATION_HEADER = "x-correlation-id"
_FALLBACK_HEADERS = ("x-request-id",)
_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_correlation_id(request: Request) -> str:
    """Use the caller's id when it is a safe token, otherwise mint a new one."""
    for header in (CORRELATION_HEADER, *_FALLBACK_HEADERS):
        candidate = (request.headers.get(header) or "").strip()
        if candidate and _VALID_CORRELATION_ID.match(candidate):
            return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request)
        request.state.correlation_id = correlation_id
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        with correlation_scope(correlation_id):
            response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
