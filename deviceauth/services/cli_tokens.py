from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from deviceauth.db import as_utc
from deviceauth.errors import ApiError, NotFound, Unauthorized
from deviceauth.models import CliToken
from deviceauth.security import generate_secret, hash_secret
from deviceauth.settings import get_settings

logger = logging.getLogger("deviceauth.cli_tokens")

DEFAULT_TOKEN_LABEL = "cli"
LABEL_MAX_LENGTH = 255


@dataclass(frozen=True, slots=True)
class MintedCliToken:
    token: CliToken
    raw_token: str
    expires_in: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _clip(value: str | None, max_length: int) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    return cleaned[:max_length]


def cli_token_ttl_seconds() -> int:
    return max(1, int(get_settings().cli_token_days)) * 24 * 60 * 60


def mint_cli_token(
    db: Session,
    *,
    user_id: int,
    device_name: str | None = None,
    device_fingerprint: str | None = None,
    origin_address: str | None = None,
    user_agent: str | None = None,
    now_utc: datetime | None = None,
) -> MintedCliToken:
    """Create a CLI token row and hand back its raw secret.

    Only the SHA-256 digest is stored; the raw value exists in the return
    value and nowhere else. The row is flushed but not committed so the
    caller can commit it in the same transaction as the device-code claim.
    """
    now_utc = now_utc or _utc_now()
    expires_in = cli_token_ttl_seconds()
    raw_token = generate_secret()
    name = _clip(device_name, LABEL_MAX_LENGTH)
    token = CliToken(
        token_hash=hash_secret(raw_token),
        user_id=user_id,
        label=name or DEFAULT_TOKEN_LABEL,
        device_name=name,
        device_fingerprint=_clip(device_fingerprint, 64),
        origin_address=_clip(origin_address, 128),
        user_agent=_clip(user_agent, 4096),
        created_at=now_utc,
        expires_at=now_utc + timedelta(seconds=expires_in),
        revoked_at=None,
    )
    db.add(token)
    db.flush()
    return MintedCliToken(token=token, raw_token=raw_token, expires_in=expires_in)


def list_cli_tokens(db: Session, *, user_id: int) -> list[CliToken]:
    return list(
        db.scalars(
            select(CliToken)
            .where(CliToken.user_id == user_id)
            .order_by(CliToken.created_at.desc(), CliToken.id.desc())
        ).all()
    )


def _get_owned_token(db: Session, *, user_id: int, token_id: int) -> CliToken:
    token = db.scalar(select(CliToken).where(CliToken.id == token_id, CliToken.user_id == user_id))
    if token is None:
        raise NotFound("CLI token not found.")
    return token


def revoke_cli_token(
    db: Session,
    *,
    user_id: int,
    token_id: int,
    now_utc: datetime | None = None,
) -> CliToken:
    token = _get_owned_token(db, user_id=user_id, token_id=token_id)
    if token.revoked_at is not None:
        return token

    token.revoked_at = now_utc or _utc_now()
    db.commit()
    logger.info("cli_token_revoked", extra={"user_id": user_id, "cli_token_id": token.id})
    return token


def rename_cli_token(db: Session, *, user_id: int, token_id: int, name: str) -> CliToken:
    label = _clip(name, LABEL_MAX_LENGTH)
    if label is None:
        raise ApiError(status_code=422, code="VALIDATION_ERROR", message="Token name is required.")

    token = _get_owned_token(db, user_id=user_id, token_id=token_id)
    token.label = label
    db.commit()
    return token


def validate_cli_token(db: Session, raw_token: str, *, now_utc: datetime | None = None) -> int:
    """Return the owning user id of a live CLI token or raise Unauthorized."""
    if not raw_token:
        raise Unauthorized("Missing CLI token.")

    now_utc = now_utc or _utc_now()
    token = db.scalar(select(CliToken).where(CliToken.token_hash == hash_secret(raw_token)))
    if token is None or token.revoked_at is not None:
        raise Unauthorized("CLI token is invalid.")
    if as_utc(token.expires_at) < now_utc:
        raise Unauthorized("CLI token expired.")

    touch_after = timedelta(seconds=max(0, int(get_settings().cli_token_touch_seconds)))
    last_used_at = as_utc(token.last_used_at)
    if last_used_at is None or now_utc - last_used_at >= touch_after:
        token.last_used_at = now_utc
        db.commit()

    return token.user_id
