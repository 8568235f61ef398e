"""Bearer token verification.

Tokens are issued by the portal's identity service; this module only
verifies them with python-jose and extracts the caller's identity.

Safety: token contents are never logged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from jose import JWTError, jwt

from commaudit.core.roles import is_staff
from commaudit.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """The bearer token is missing, malformed, expired or badly signed."""


@dataclass(frozen=True)
class Principal:
    """The authenticated caller."""

    user_id: str
    role: str | None
    organization_id: UUID | None

    @property
    def is_staff(self) -> bool:
        return is_staff(self.role)


def _parse_uuid(value) -> UUID | None:
    if value is None or value == "":
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def decode_token(token: str, settings: Settings | None = None) -> Principal:
    settings = settings or get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.info("Rejected bearer token: %s", type(exc).__name__)
        raise AuthenticationError("Could not validate credentials") from exc

    subject = claims.get("sub")
    if not subject:
        raise AuthenticationError("Token has no subject")

    return Principal(
        user_id=str(subject),
        role=claims.get("role"),
        organization_id=_parse_uuid(claims.get("organization_id")),
    )


def create_access_token(
    user_id: str,
    role: str,
    organization_id: UUID | str | None = None,
    *,
    expires_minutes: int = 60,
    settings: Settings | None = None,
) -> str:
    """Mint a token with the claims ``decode_token`` expects (used by tooling and tests)."""
    settings = settings or get_settings()
    claims: dict = {
        "sub": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    if organization_id is not None:
        claims["organization_id"] = str(organization_id)
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
