from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete
from sqlalchemy.orm import Session

from deviceauth.models import DeviceAuthorization
from deviceauth.services.rate_limit import purge_stale_issuances

logger = logging.getLogger("deviceauth.housekeeping")


def purge_expired_device_authorizations(db: Session, *, now_utc: datetime | None = None) -> int:
    now_utc = now_utc or datetime.now(timezone.utc)
    result = db.execute(
        delete(DeviceAuthorization)
        .where(DeviceAuthorization.expires_at < now_utc)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    purged = int(result.rowcount or 0)
    if purged:
        logger.info("device_auth_purged", extra={"purged_count": purged})
    return purged


def run_housekeeping(db: Session, *, now_utc: datetime | None = None) -> int:
    """One sweep: dead device authorizations, then issuance rows past the rate window."""
    now_utc = now_utc or datetime.now(timezone.utc)
    purged = purge_expired_device_authorizations(db, now_utc=now_utc)
    stale_issuances = purge_stale_issuances(db, now_utc=now_utc)
    if stale_issuances:
        logger.info("device_issuances_purged", extra={"purged_count": stale_issuances})
    return purged + stale_issuances
