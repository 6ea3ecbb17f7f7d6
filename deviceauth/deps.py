from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from deviceauth.db import get_db
from deviceauth.errors import ApiError, Unauthorized
from deviceauth.security import decode_access_token
from deviceauth.services.cli_tokens import validate_cli_token
from deviceauth.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

AUTH_VIA_SESSION = "session"
AUTH_VIA_CLI = "cli"


@dataclass(frozen=True, slots=True)
class AuthenticatedUser:
    user_id: int
    via: str


def _bearer_token(credentials: HTTPAuthorizationCredentials | None) -> str | None:
    if credentials is None or credentials.scheme.lower() != "bearer":
        return None
    token = (credentials.credentials or "").strip()
    return token or None


def _mark_actor(request: Request, principal: AuthenticatedUser) -> None:
    request.state.actor = "cli" if principal.via == AUTH_VIA_CLI else "user"
    request.state.actor_id = str(principal.user_id)


def _session_principal(request: Request, credentials: HTTPAuthorizationCredentials | None) -> AuthenticatedUser:
    token = request.cookies.get(get_settings().access_cookie_name) or _bearer_token(credentials)
    if not token:
        raise Unauthorized("Missing session token.")
    claims = decode_access_token(token)
    return AuthenticatedUser(user_id=int(claims["sub"]), via=AUTH_VIA_SESSION)


def require_session_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthenticatedUser:
    principal = _session_principal(request, credentials)
    _mark_actor(request, principal)
    return principal


def require_cli_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> AuthenticatedUser:
    token = _bearer_token(credentials)
    if not token:
        raise Unauthorized("Missing bearer token.")
    principal = AuthenticatedUser(user_id=validate_cli_token(db, token), via=AUTH_VIA_CLI)
    _mark_actor(request, principal)
    return principal


def require_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> AuthenticatedUser:
    """Accept either a browser session or a CLI token, session first."""
    try:
        principal = _session_principal(request, credentials)
    except ApiError:
        token = _bearer_token(credentials)
        if not token:
            raise Unauthorized("Missing or invalid credentials.") from None
        try:
            principal = AuthenticatedUser(user_id=validate_cli_token(db, token), via=AUTH_VIA_CLI)
        except ApiError:
            raise Unauthorized("Missing or invalid credentials.") from None
    _mark_actor(request, principal)
    return principal
