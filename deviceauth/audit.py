from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from deviceauth.models import AuditActorType, AuditLog
from deviceauth.settings import get_settings

logger = logging.getLogger("deviceauth.audit")

IP_MAX_LENGTH = 128
USER_AGENT_MAX_LENGTH = 1024


@dataclass(frozen=True, slots=True)
class ClientInfo:
    ip: str | None
    user_agent: str | None
    request_id: str | None


def _clip(value: str | None, max_length: int) -> str | None:
    cleaned = (value or "").strip()
    return cleaned[:max_length] or None


def client_info(request: Request) -> ClientInfo:
    """Who sent the request, as far as this service can tell.

    ``X-Forwarded-For`` is client-controlled unless a proxy rewrites it, so
    it is only read when ``trust_forwarded_headers`` is on.
    """
    ip = None
    if get_settings().trust_forwarded_headers:
        forwarded_for = request.headers.get("x-forwarded-for") or ""
        ip = forwarded_for.split(",")[0]
    if not (ip or "").strip() and request.client:
        ip = request.client.host
    return ClientInfo(
        ip=_clip(ip, IP_MAX_LENGTH),
        user_agent=_clip(request.headers.get("user-agent"), USER_AGENT_MAX_LENGTH),
        request_id=getattr(request.state, "request_id", None),
    )


def log_audit(
    db: Session,
    client: ClientInfo,
    *,
    actor_type: AuditActorType,
    actor_id: str | int | None,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | int | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Persist one audit row and mirror it as an ``audit_event`` log line.

    An audit write that fails is logged and dropped; it never fails the
    request that triggered it.
    """
    event = {
        "action": action,
        "actor_type": actor_type.value,
        "actor_id": str(actor_id) if actor_id is not None else (client.ip or "unknown"),
        "entity_type": entity_type,
        "entity_id": str(entity_id) if entity_id is not None else None,
        "success": success,
    }
    cleaned_details = {key: value for key, value in (details or {}).items() if value is not None}
    db.add(
        AuditLog(
            ts_utc=datetime.now(timezone.utc),
            actor_type=actor_type,
            actor_id=event["actor_id"],
            action=action,
            entity_type=entity_type,
            entity_id=event["entity_id"],
            ip=client.ip,
            user_agent=client.user_agent,
            success=success,
            details=cleaned_details,
        )
    )
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("audit_log_write_failed", extra={"request_id": client.request_id, **event})
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": client.request_id,
            "ip": client.ip,
            "user_agent": client.user_agent,
            "details": cleaned_details,
            **event,
        },
    )
