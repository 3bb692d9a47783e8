"""
Per-user rate limit overrides.

An active override (no expiry, or expiry in the future) replaces the tier's hourly
and/or daily limit for one user and feature. Everyone else gets the tier policy.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apptrack.core.errors import StoreUnavailable, ValidationError
from apptrack.core.features import AIFeature, parse_feature
from apptrack.core.quota_policies import DAY, HOUR, QuotaPolicy
from apptrack.models.quota_override import QuotaOverride

logger = logging.getLogger(__name__)


def get_active_override(db: Session, user_id: str, feature: AIFeature, now: datetime) -> Optional[QuotaOverride]:
    return (
        db.query(QuotaOverride)
        .filter(
            QuotaOverride.user_id == user_id,
            QuotaOverride.feature_type == feature.value,
            or_(QuotaOverride.expires_at.is_(None), QuotaOverride.expires_at > now),
        )
        .first()
    )


def apply_override(policy: QuotaPolicy, override: Optional[QuotaOverride]) -> QuotaPolicy:
    if override is None:
        return policy
    return policy.with_limits({HOUR: override.hourly_limit, DAY: override.daily_limit})


def resolve_user_policy(db: Session, user_id: str, policy: QuotaPolicy, now: datetime) -> QuotaPolicy:
    """
    Override first, then the tier default. An unreadable override table falls back
    to the tier policy.
    """
    try:
        override = get_active_override(db, user_id, policy.feature, now)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            "[RATE LIMIT] Could not read limit override for user %s feature=%s; using tier limits: %s",
            user_id,
            policy.feature.value,
            e,
        )
        return policy
    if override is not None:
        logger.info(
            "[RATE LIMIT] Using limit override for user %s feature=%s (hourly=%s daily=%s)",
            user_id,
            policy.feature.value,
            override.hourly_limit,
            override.daily_limit,
        )
    return apply_override(policy, override)


def _check_limit(name: str, value: Optional[int]) -> None:
    if value is not None and value <= 0:
        raise ValidationError(f"{name} must be positive")


def set_override(
    db: Session,
    user_id: str,
    feature,
    hourly_limit: Optional[int] = None,
    daily_limit: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    reason: Optional[str] = None,
) -> QuotaOverride:
    """Create or replace the user's override for a feature."""
    feature = parse_feature(feature)
    if hourly_limit is None and daily_limit is None:
        raise ValidationError("An override needs an hourly or a daily limit")
    _check_limit("hourly_limit", hourly_limit)
    _check_limit("daily_limit", daily_limit)

    try:
        override = (
            db.query(QuotaOverride)
            .filter(QuotaOverride.user_id == user_id, QuotaOverride.feature_type == feature.value)
            .first()
        )
        if override is None:
            override = QuotaOverride(user_id=user_id, feature_type=feature.value)
            db.add(override)
        override.hourly_limit = hourly_limit
        override.daily_limit = daily_limit
        override.expires_at = expires_at
        override.reason = reason
        db.commit()
        db.refresh(override)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreUnavailable("database", "set_override", e) from e

    logger.info(
        "[RATE LIMIT] Set limit override for user %s feature=%s (hourly=%s daily=%s expires_at=%s)",
        user_id,
        feature.value,
        hourly_limit,
        daily_limit,
        expires_at,
    )
    return override


def clear_override(db: Session, user_id: str, feature) -> bool:
    feature = parse_feature(feature)
    try:
        deleted = (
            db.query(QuotaOverride)
            .filter(QuotaOverride.user_id == user_id, QuotaOverride.feature_type == feature.value)
            .delete(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreUnavailable("database", "clear_override", e) from e
    return deleted > 0
