from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import quote

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deviceauth.db import as_utc
from deviceauth.errors import InvalidOrExpiredCode
from deviceauth.models import DeviceAuthorization
from deviceauth.security import generate_secret, generate_user_code, hash_secret, normalize_user_code
from deviceauth.services.cli_tokens import mint_cli_token
from deviceauth.services.rate_limit import ensure_device_code_issuance_allowed, record_issuance
from deviceauth.settings import get_frontend_base_url, get_settings

logger = logging.getLogger("deviceauth.device_auth")

USER_CODE_GENERATION_ATTEMPTS = 5
ORIGIN_ADDRESS_MAX_LENGTH = 128


class PollStatus(str, enum.Enum):
    PENDING = "pending"
    SLOW_DOWN = "slow_down"
    EXPIRED = "expired"
    OK = "ok"


@dataclass(frozen=True, slots=True)
class DeviceAuthStart:
    device_code: str
    user_code: str
    verification_url: str
    expires_in: int
    interval: int


@dataclass(frozen=True, slots=True)
class DevicePollResult:
    status: PollStatus
    interval: int | None = None
    access_token: str | None = None
    expires_in: int | None = None
    user_id: int | None = None
    cli_token_id: int | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _expires_in_seconds() -> int:
    return max(1, int(get_settings().cli_device_expires_minutes)) * 60


def _poll_interval_seconds() -> int:
    return max(1, int(get_settings().cli_device_poll_interval_seconds))


def build_verification_url(user_code: str) -> str:
    return f"{get_frontend_base_url()}/cli/verify?userCode={quote(user_code, safe='')}"


def _clip_origin(origin_address: str | None) -> str | None:
    cleaned = (origin_address or "").strip()
    return cleaned[:ORIGIN_ADDRESS_MAX_LENGTH] or None


def _reserve_user_code(db: Session, *, now_utc: datetime) -> str:
    for _ in range(USER_CODE_GENERATION_ATTEMPTS):
        candidate = generate_user_code()
        existing = db.scalar(select(DeviceAuthorization).where(DeviceAuthorization.user_code == candidate))
        if existing is None:
            return candidate
        if as_utc(existing.expires_at) < now_utc:
            # A dead record still holds the unique code; reclaim it.
            db.execute(
                delete(DeviceAuthorization)
                .where(DeviceAuthorization.id == existing.id)
                .execution_options(synchronize_session=False)
            )
            db.expunge(existing)
            return candidate
    raise RuntimeError("Could not allocate a unique user code.")


def start_device_authorization(
    db: Session,
    *,
    origin_address: str | None = None,
    now_utc: datetime | None = None,
) -> DeviceAuthStart:
    now_utc = now_utc or _utc_now()
    origin_address = _clip_origin(origin_address)
    ensure_device_code_issuance_allowed(db, origin_address=origin_address, now_utc=now_utc)

    expires_in = _expires_in_seconds()
    interval = _poll_interval_seconds()
    for _ in range(USER_CODE_GENERATION_ATTEMPTS):
        device_code = generate_secret()
        user_code = _reserve_user_code(db, now_utc=now_utc)
        record = DeviceAuthorization(
            device_code_hash=hash_secret(device_code),
            user_code=user_code,
            user_id=None,
            approved_at=None,
            expires_at=now_utc + timedelta(seconds=expires_in),
            attempts=0,
            last_poll_at=None,
            poll_interval=interval,
            origin_address=origin_address,
            created_at=now_utc,
        )
        db.add(record)
        record_issuance(db, origin_address=origin_address, now_utc=now_utc)
        try:
            db.commit()
        except IntegrityError:
            # Another instance took the same user code between check and insert.
            db.rollback()
            continue
        break
    else:
        raise RuntimeError("Could not persist device authorization.")

    logger.info(
        "device_auth_started",
        extra={
            "device_authorization_id": record.id,
            "origin_address": origin_address,
            "expires_in": expires_in,
        },
    )
    return DeviceAuthStart(
        device_code=device_code,
        user_code=user_code,
        verification_url=build_verification_url(user_code),
        expires_in=expires_in,
        interval=interval,
    )


def approve_device_authorization(
    db: Session,
    *,
    user_id: int,
    user_code: str,
    now_utc: datetime | None = None,
) -> DeviceAuthorization:
    """Bind an authenticated user to a pending device authorization.

    Anyone signed in who knows a live user code can approve it for their own
    account. The 32^8 code space, the short TTL and per-address issuance
    limits are what keep guessing impractical; there is no proof-of-possession
    link between the browser and the polling CLI.
    """
    now_utc = now_utc or _utc_now()
    code = normalize_user_code(user_code)
    if not code:
        raise InvalidOrExpiredCode()

    record = db.scalar(select(DeviceAuthorization).where(DeviceAuthorization.user_code == code))
    if record is None or as_utc(record.expires_at) < now_utc:
        raise InvalidOrExpiredCode()

    if record.approved_at is not None:
        return record

    record.user_id = user_id
    record.approved_at = now_utc
    db.commit()
    logger.info(
        "device_auth_approved",
        extra={"device_authorization_id": record.id, "user_id": user_id},
    )
    return record


def poll_device_authorization(
    db: Session,
    *,
    device_code: str,
    device_name: str | None = None,
    device_fingerprint: str | None = None,
    origin_address: str | None = None,
    user_agent: str | None = None,
    now_utc: datetime | None = None,
) -> DevicePollResult:
    """Advance the device flow for one poll.

    Unknown and expired codes look the same to the caller. Polls that come
    faster than the interval last advertised, or after the attempt budget is
    spent, get ``slow_down`` and the advertised interval grows by the base
    interval each time; the flow itself stays alive until it expires.
    """
    now_utc = now_utc or _utc_now()
    base_interval = _poll_interval_seconds()
    expired = DevicePollResult(status=PollStatus.EXPIRED)

    if not device_code:
        return expired

    record = db.scalar(
        select(DeviceAuthorization).where(DeviceAuthorization.device_code_hash == hash_secret(device_code))
    )
    if record is None:
        return expired

    record_id = record.id
    if as_utc(record.expires_at) < now_utc:
        db.execute(delete(DeviceAuthorization).where(DeviceAuthorization.id == record_id))
        db.commit()
        logger.info("device_auth_expired", extra={"device_authorization_id": record_id})
        return expired

    interval = max(base_interval, int(record.poll_interval or base_interval))
    slow_down = False
    last_poll_at = as_utc(record.last_poll_at)
    if last_poll_at is not None and now_utc - last_poll_at < timedelta(seconds=interval):
        slow_down = True

    attempts = (record.attempts or 0) + 1
    if attempts > max(1, int(get_settings().cli_device_max_poll_attempts)):
        slow_down = True

    if slow_down:
        interval += base_interval

    approved_user_id = record.user_id if record.approved_at is not None else None
    # A concurrent poller may have claimed the row since it was read.
    touched = db.execute(
        update(DeviceAuthorization)
        .where(DeviceAuthorization.id == record_id)
        .values(
            attempts=DeviceAuthorization.attempts + 1,
            last_poll_at=now_utc,
            poll_interval=interval,
        )
        .execution_options(synchronize_session=False)
    )
    if touched.rowcount != 1:
        db.rollback()
        logger.info("device_auth_gone_during_poll", extra={"device_authorization_id": record_id})
        return expired
    db.commit()
    db.expunge(record)

    if slow_down:
        return DevicePollResult(status=PollStatus.SLOW_DOWN, interval=interval)

    if approved_user_id is None:
        return DevicePollResult(status=PollStatus.PENDING, interval=interval)

    return _claim_and_mint(
        db,
        record_id=record_id,
        user_id=approved_user_id,
        device_name=device_name,
        device_fingerprint=device_fingerprint,
        origin_address=origin_address,
        user_agent=user_agent,
        now_utc=now_utc,
    )


def _claim_and_mint(
    db: Session,
    *,
    record_id: int,
    user_id: int,
    device_name: str | None,
    device_fingerprint: str | None,
    origin_address: str | None,
    user_agent: str | None,
    now_utc: datetime,
) -> DevicePollResult:
    # The conditional delete is the claim: concurrent pollers serialize on the
    # row and only one of them sees a deleted row.
    claimed = db.execute(
        delete(DeviceAuthorization).where(
            DeviceAuthorization.id == record_id,
            DeviceAuthorization.approved_at.is_not(None),
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        logger.info("device_auth_claim_lost", extra={"device_authorization_id": record_id})
        return DevicePollResult(status=PollStatus.EXPIRED)

    minted = mint_cli_token(
        db,
        user_id=user_id,
        device_name=device_name,
        device_fingerprint=device_fingerprint,
        origin_address=origin_address,
        user_agent=user_agent,
        now_utc=now_utc,
    )
    db.commit()
    logger.info(
        "cli_token_minted",
        extra={
            "device_authorization_id": record_id,
            "cli_token_id": minted.token.id,
            "user_id": user_id,
        },
    )
    return DevicePollResult(
        status=PollStatus.OK,
        access_token=minted.raw_token,
        expires_in=minted.expires_in,
        user_id=user_id,
        cli_token_id=minted.token.id,
    )
