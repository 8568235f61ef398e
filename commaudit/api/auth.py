"""Bearer-token authentication for the audit, export and report routes."""
from __future__ import annotations

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from commaudit.core.roles import valid_roles
from commaudit.core.security import AuthenticationError, Principal, decode_token

_bearer = HTTPBearer(auto_error=False)

_CHALLENGE = {"WWW-Authenticate": "Bearer"}


def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> Principal:
    """Resolve the caller from ``Authorization: Bearer``; 401 when absent or invalid."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated", headers=_CHALLENGE)
    try:
        principal = decode_token(credentials.credentials)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc), headers=_CHALLENGE) from exc

    if principal.role not in valid_roles():
        raise HTTPException(status_code=403, detail="Role is not permitted to access communication audit data")
    return principal
