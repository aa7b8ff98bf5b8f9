from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from funnelcrm.core.config import get_settings
from funnelcrm.core.context import get_request_context

ANONYMOUS = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    company_id: int | None = None
    permissions: list[str] = field(default_factory=list)

    @property
    def user_id(self) -> int | None:
        return int(self.sub) if self.sub.isdigit() else None

    @property
    def grants(self) -> set[str]:
        """Roles and explicit permission claims; both gate CRM endpoints."""
        return set(self.roles) | set(self.permissions)


def _anonymous() -> AuthUser:
    return AuthUser(sub=ANONYMOUS, roles=["guest"])


def _string_list(value: Any, default: list[str]) -> list[str]:
    if not isinstance(value, list):
        return default
    return [str(item) for item in value]


def _coerce_company_id(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def decode_token(token: str) -> dict[str, Any] | None:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    token = bearer_token(request)
    payload = decode_token(token) if token else None
    if payload is None:
        return _anonymous()

    user = AuthUser(
        sub=str(payload.get("sub", ANONYMOUS)),
        roles=_string_list(payload.get("roles"), ["user"]),
        company_id=_coerce_company_id(payload.get("company_id")),
        permissions=_string_list(payload.get("permissions"), []),
    )
    context = get_request_context(request)
    if context is not None:
        context.user_id = user.sub
        context.company_id = user.company_id
    return user
