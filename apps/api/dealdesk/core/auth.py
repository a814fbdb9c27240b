from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from dealdesk.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def decode_claims(token: str) -> dict[str, Any] | None:
    """Return the verified JWT claims, or None when the signature or format is bad."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def request_subject(request: Request) -> str:
    token = bearer_token(request)
    claims = decode_claims(token) if token else None
    if not claims or claims.get("sub") is None:
        return ANONYMOUS_SUBJECT
    return str(claims["sub"])


async def get_current_user(request: Request) -> AuthUser:
    token = bearer_token(request)
    claims = decode_claims(token) if token else None
    if not claims or claims.get("sub") is None:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    roles = claims.get("roles", [])
    if not isinstance(roles, list):
        roles = []
    return AuthUser(sub=str(claims["sub"]), roles=[str(role) for role in roles])
