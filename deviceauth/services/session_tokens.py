from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from deviceauth.db import as_utc
from deviceauth.errors import Unauthorized
from deviceauth.models import User
from deviceauth.security import create_access_token, generate_secret, hash_secret
from deviceauth.settings import get_settings

logger = logging.getLogger("deviceauth.session_tokens")


@dataclass(frozen=True, slots=True)
class SessionTokens:
    user_id: int
    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_in: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def refresh_token_ttl_seconds() -> int:
    return max(1, int(get_settings().refresh_token_days)) * 24 * 60 * 60


def issue_access_token(user: User, *, now_utc: datetime | None = None) -> tuple[str, int]:
    token, expires_in, _claims = create_access_token(sub=str(user.id), now_utc=now_utc)
    return token, expires_in


def issue_and_store_refresh_token(db: Session, user: User, *, now_utc: datetime | None = None) -> str:
    """Store a fresh refresh token in the user's single slot.

    Whatever refresh token the user held before stops working, so two
    browsers cannot keep independent long-lived sessions at the same time.
    """
    now_utc = now_utc or _utc_now()
    refresh_token = generate_secret()
    user.refresh_token_hash = hash_secret(refresh_token)
    user.refresh_token_expires_at = now_utc + timedelta(seconds=refresh_token_ttl_seconds())
    db.commit()
    return refresh_token


def start_session(db: Session, user: User, *, now_utc: datetime | None = None) -> SessionTokens:
    now_utc = now_utc or _utc_now()
    access_token, access_expires_in = issue_access_token(user, now_utc=now_utc)
    refresh_token = issue_and_store_refresh_token(db, user, now_utc=now_utc)
    logger.info("session_started", extra={"user_id": user.id})
    return SessionTokens(
        user_id=user.id,
        access_token=access_token,
        access_expires_in=access_expires_in,
        refresh_token=refresh_token,
        refresh_expires_in=refresh_token_ttl_seconds(),
    )


def rotate_refresh_token(db: Session, raw_token: str, *, now_utc: datetime | None = None) -> SessionTokens:
    """Trade a refresh token for a new access/refresh pair.

    The presented token dies on use. The slot is swapped with a compare-and-set
    on the old hash, so of two concurrent rotations only one succeeds.
    """
    if not raw_token:
        raise Unauthorized("Missing refresh token.")

    now_utc = now_utc or _utc_now()
    presented_hash = hash_secret(raw_token)
    user = db.scalar(select(User).where(User.refresh_token_hash == presented_hash))
    if user is None or user.refresh_token_expires_at is None:
        raise Unauthorized("Refresh token is invalid.")
    if as_utc(user.refresh_token_expires_at) < now_utc:
        raise Unauthorized("Refresh token expired.")

    next_refresh_token = generate_secret()
    next_expires_at = now_utc + timedelta(seconds=refresh_token_ttl_seconds())
    swapped = db.execute(
        update(User)
        .where(User.id == user.id, User.refresh_token_hash == presented_hash)
        .values(
            refresh_token_hash=hash_secret(next_refresh_token),
            refresh_token_expires_at=next_expires_at,
        )
        .execution_options(synchronize_session=False)
    )
    if swapped.rowcount != 1:
        db.rollback()
        raise Unauthorized("Refresh token is invalid.")
    db.commit()
    db.refresh(user)

    access_token, access_expires_in = issue_access_token(user, now_utc=now_utc)
    return SessionTokens(
        user_id=user.id,
        access_token=access_token,
        access_expires_in=access_expires_in,
        refresh_token=next_refresh_token,
        refresh_expires_in=refresh_token_ttl_seconds(),
    )


def clear_refresh_token(db: Session, *, user_id: int) -> None:
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(refresh_token_hash=None, refresh_token_expires_at=None)
    )
    db.commit()
    logger.info("session_cleared", extra={"user_id": user_id})
