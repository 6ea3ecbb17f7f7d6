from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from deviceauth.db import as_utc
from deviceauth.errors import RateLimitExceeded
from deviceauth.models import DeviceCodeIssuance
from deviceauth.settings import get_settings

logger = logging.getLogger("deviceauth.rate_limit")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def rate_window() -> timedelta:
    return timedelta(minutes=max(1, int(get_settings().cli_device_rate_limit_window_minutes)))


def count_recent_issuances(db: Session, *, origin_address: str, now_utc: datetime) -> int:
    since = now_utc - rate_window()
    return int(
        db.scalar(
            select(func.count(DeviceCodeIssuance.id)).where(
                DeviceCodeIssuance.origin_address == origin_address,
                DeviceCodeIssuance.created_at >= since,
            )
        )
        or 0
    )


def ensure_device_code_issuance_allowed(
    db: Session,
    *,
    origin_address: str | None,
    now_utc: datetime | None = None,
) -> None:
    """Reject a new device authorization when the origin exhausted its window.

    The count runs against the issuance log rather than the live device
    authorizations, so consuming, expiring or purging a flow does not hand
    its slot back before the window has passed. Requests without an origin
    address cannot be attributed and are not limited.
    """
    if not origin_address:
        return

    now_utc = now_utc or _utc_now()
    limit = max(1, int(get_settings().cli_device_rate_limit_max))
    issued = count_recent_issuances(db, origin_address=origin_address, now_utc=now_utc)
    if issued < limit:
        return

    oldest = db.scalar(
        select(func.min(DeviceCodeIssuance.created_at)).where(
            DeviceCodeIssuance.origin_address == origin_address,
            DeviceCodeIssuance.created_at >= now_utc - rate_window(),
        )
    )
    retry_after_seconds = None
    oldest_utc = as_utc(oldest)
    if oldest_utc is not None:
        retry_after_seconds = max(1, int((oldest_utc + rate_window() - now_utc).total_seconds()))

    logger.warning(
        "device_auth_rate_limited",
        extra={
            "origin_address": origin_address,
            "issued_in_window": issued,
            "limit": limit,
            "retry_after_seconds": retry_after_seconds,
        },
    )
    raise RateLimitExceeded(retry_after_seconds=retry_after_seconds)


def record_issuance(db: Session, *, origin_address: str | None, now_utc: datetime) -> None:
    """Stage an issuance row; the caller commits it with the authorization."""
    if not origin_address:
        return
    db.add(DeviceCodeIssuance(origin_address=origin_address, created_at=now_utc))


def purge_stale_issuances(db: Session, *, now_utc: datetime | None = None) -> int:
    now_utc = now_utc or _utc_now()
    result = db.execute(
        delete(DeviceCodeIssuance)
        .where(DeviceCodeIssuance.created_at < now_utc - rate_window())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(result.rowcount or 0)
