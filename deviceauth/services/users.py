from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from deviceauth.errors import ApiError, Unauthorized
from deviceauth.models import User

logger = logging.getLogger("deviceauth.users")


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise Unauthorized("User not found.")
    return user


def resolve_user_from_profile(
    db: Session,
    *,
    external_id: str,
    email: str | None = None,
    name: str | None = None,
    picture: str | None = None,
) -> User:
    """Find or create the user behind a verified identity-provider profile."""
    normalized_external_id = (external_id or "").strip()
    if not normalized_external_id:
        raise ApiError(status_code=422, code="VALIDATION_ERROR", message="External id is required.")
    normalized_email = (email or "").strip().lower() or None

    user = db.scalar(select(User).where(User.external_id == normalized_external_id))
    if user is None and normalized_email:
        user = db.scalar(select(User).where(User.email == normalized_email))

    if user is not None:
        user.external_id = normalized_external_id
        if normalized_email:
            user.email = normalized_email
        if name:
            user.name = name
        if picture:
            user.picture = picture
        db.commit()
        return user

    user = User(
        external_id=normalized_external_id,
        email=normalized_email,
        name=name,
        picture=picture,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("user_created", extra={"user_id": user.id})
    return user
