from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from funnelcrm.core.config import get_settings
from funnelcrm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("funnelcrm.request")

# Probes are counted in metrics but kept out of the request log.
_QUIET_PATHS = frozenset({"/health", "/metrics"})


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._record(request, 500, _elapsed_ms(started), failed=True)
            raise

        self._record(request, response.status_code, _elapsed_ms(started))
        return response

    def _record(self, request: Request, status_code: int, duration_ms: float, *, failed: bool = False) -> None:
        # Resolved after routing so the label is the route template.
        path = resolve_http_path_label(request)
        observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)
        fields = {"method": request.method, "path": path, "status_code": status_code, "duration_ms": duration_ms}

        if failed:
            logger.error("http.error", exc_info=True, extra=fields)
            return
        if path in _QUIET_PATHS and status_code < 500:
            return

        if status_code >= 500:
            level = logging.ERROR
        elif duration_ms >= get_settings().slow_request_ms:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(level, "http.request", extra=fields)
