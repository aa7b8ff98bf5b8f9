from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    correlation_id: str
    user_id: str | None = None
    company_id: int | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None and self.user_id != "anonymous"


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a ``RequestContext`` that auth fills in with the caller's identity."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = RequestContext(correlation_id=getattr(request.state, "correlation_id", None) or "")
        response = await call_next(request)
        context = request.state.context
        if context.company_id is not None:
            response.headers["x-company-id"] = str(context.company_id)
        return response
