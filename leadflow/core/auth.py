from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from leadflow.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    organization_id: str | None = None


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""


def decode_token(token: str) -> dict[str, Any] | None:
    """Claims of a token signed with the configured secret, or None when it does not verify."""
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    payload = decode_token(bearer_token(request))
    if payload is None:
        return AuthUser(sub="anonymous", roles=[])

    roles = payload.get("roles", [])
    if not isinstance(roles, list):
        roles = []
    organization_id = payload.get("org_id")
    request.state.user_id = str(payload.get("sub", "anonymous"))
    return AuthUser(
        sub=request.state.user_id,
        roles=[str(role) for role in roles],
        organization_id=str(organization_id) if organization_id else None,
    )
