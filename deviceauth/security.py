from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from jose import JWTError, jwt

from deviceauth.errors import Unauthorized
from deviceauth.settings import get_settings

SECRET_BYTES = 48
USER_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
USER_CODE_LENGTH = 8
ACCESS_TOKEN_TYPE = "access"
JWT_ALGORITHM = "HS256"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_secret() -> str:
    return secrets.token_urlsafe(SECRET_BYTES)


def hash_secret(raw: str) -> str:
    """SHA-256 hex digest of a high-entropy secret.

    Device codes, CLI tokens and refresh tokens carry 384 bits of randomness,
    so a fast unsalted digest is enough and keeps lookups index-friendly.
    """
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_user_code() -> str:
    return "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_LENGTH))


def normalize_user_code(value: str | None) -> str:
    return (value or "").strip().upper()


def create_access_token(*, sub: str, now_utc: datetime | None = None) -> tuple[str, int, dict[str, Any]]:
    settings = get_settings()
    now = now_utc or _utcnow()
    expires_in = settings.access_token_minutes * 60
    claims = {
        "sub": sub,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        "jti": str(uuid4()),
        "typ": ACCESS_TOKEN_TYPE,
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=JWT_ALGORITHM)
    return token, expires_in, claims


def decode_access_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[JWT_ALGORITHM],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise Unauthorized("Token is invalid.") from exc

    if payload.get("typ") != ACCESS_TOKEN_TYPE:
        raise Unauthorized("Token type is invalid.")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise Unauthorized("Token subject is invalid.")

    return payload
