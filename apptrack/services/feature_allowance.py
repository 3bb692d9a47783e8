"""
One-shot "free try" allowances for AI features.

Free users get a fixed number of tries per feature that never replenish with time;
paid tiers are UNLIMITED. Each consumed try is one row keyed by the action that
consumed it, so retrying the same action never charges twice.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from apptrack.core.errors import ValidationError
from apptrack.core.features import ONE_SHOT_FEATURES, AIFeature, parse_feature
from apptrack.core.tiers import Tier
from apptrack.models.feature_usage import FeatureUsage

logger = logging.getLogger(__name__)


class Unlimited:
    """Sentinel for an allowance with no cap. Never compared as a number."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNLIMITED"


UNLIMITED = Unlimited()

GrantedCount = Union[int, Unlimited]

FREE_TRIES_PER_FEATURE: Dict[Tier, GrantedCount] = {
    Tier.FREE: 1,
    Tier.PRO: UNLIMITED,
    Tier.AI_COACH: UNLIMITED,
}


def granted_count(tier: Tier) -> GrantedCount:
    # Unknown tiers get the free grant, never unlimited
    return FREE_TRIES_PER_FEATURE.get(tier, FREE_TRIES_PER_FEATURE[Tier.FREE])


@dataclass(frozen=True)
class FeatureAllowance:
    feature: AIFeature
    can_use: bool
    used_count: int
    granted_count: GrantedCount
    requires_upgrade: bool
    degraded: bool = False

    @property
    def is_unlimited(self) -> bool:
        return self.granted_count is UNLIMITED

    def to_dict(self) -> dict:
        return {
            "canUse": self.can_use,
            "usedCount": self.used_count,
            "grantedCount": "unlimited" if self.is_unlimited else self.granted_count,
            "requiresUpgrade": self.requires_upgrade,
        }


def one_shot_feature(feature) -> AIFeature:
    feature = parse_feature(feature)
    if feature not in ONE_SHOT_FEATURES:
        raise ValidationError(f"{feature.value} has no free-try allowance")
    return feature


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise ValidationError("user_id is required")
    return user_id


def build_allowance(feature: AIFeature, used_count: int, tier: Tier, degraded: bool = False) -> FeatureAllowance:
    granted = granted_count(tier)
    if granted is UNLIMITED:
        can_use = True
    else:
        can_use = used_count < granted
    return FeatureAllowance(
        feature=feature,
        can_use=can_use or degraded,
        used_count=used_count,
        granted_count=granted,
        requires_upgrade=not can_use and not degraded and tier == Tier.FREE,
        degraded=degraded,
    )


def _active_usage(db: Session, user_id: str):
    return db.query(FeatureUsage).filter(
        FeatureUsage.user_id == user_id,
        FeatureUsage.reset_at.is_(None),
    )


def check_allowance(db: Session, user_id: str, feature, tier: Tier) -> FeatureAllowance:
    """Read the user's consumed tries for a feature. Store errors fail open."""
    user_id = _require_user(user_id)
    feature = one_shot_feature(feature)
    try:
        used_count = (
            _active_usage(db, user_id)
            .filter(FeatureUsage.feature_type == feature.value)
            .with_entities(func.count(FeatureUsage.id))
            .scalar()
        ) or 0
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            "[ALLOWANCE] Relational store unavailable during check_allowance for user %s feature=%s; failing open: %s",
            user_id,
            feature.value,
            e,
        )
        return build_allowance(feature, 0, tier, degraded=True)
    return build_allowance(feature, used_count, tier)


def consume_allowance(db: Session, user_id: str, feature, action_id: str) -> bool:
    """
    Record one consumed try for the action. Returns True if this call consumed it,
    False if the action was already recorded or the write failed (logged).
    """
    user_id = _require_user(user_id)
    feature = one_shot_feature(feature)
    if not action_id:
        raise ValidationError("action_id is required to consume an allowance")

    usage = FeatureUsage(
        user_id=user_id,
        feature_type=feature.value,
        action_id=action_id,
        used_at=datetime.utcnow(),
    )
    try:
        db.add(usage)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(
            "[ALLOWANCE] Action %s already consumed %s for user %s; not charging again",
            action_id,
            feature.value,
            user_id,
        )
        return False
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            "[ALLOWANCE] Failed to record %s use for user %s (action %s); usage left unrecorded: %s",
            feature.value,
            user_id,
            action_id,
            e,
        )
        return False

    logger.info("[ALLOWANCE] User %s consumed a %s try (action %s)", user_id, feature.value, action_id)
    return True


def get_all_allowances(db: Session, user_id: str, tier: Tier) -> Dict[AIFeature, FeatureAllowance]:
    """Allowance state for every one-shot feature in a single grouped query."""
    user_id = _require_user(user_id)
    try:
        rows = (
            _active_usage(db, user_id)
            .with_entities(FeatureUsage.feature_type, func.count(FeatureUsage.id))
            .group_by(FeatureUsage.feature_type)
            .all()
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("[ALLOWANCE] Relational store unavailable during get_all_allowances for user %s; failing open: %s", user_id, e)
        return {feature: build_allowance(feature, 0, tier, degraded=True) for feature in ONE_SHOT_FEATURES}

    counts = {feature_type: count for feature_type, count in rows}
    return {
        feature: build_allowance(feature, counts.get(feature.value, 0), tier)
        for feature in ONE_SHOT_FEATURES
    }


def has_any_free_tries(db: Session, user_id: str, tier: Tier) -> bool:
    return any(allowance.can_use for allowance in get_all_allowances(db, user_id, tier).values())


def reset_allowances(db: Session, user_id: str, feature=None) -> int:
    """
    Explicitly give a user their free tries back (support/admin action).
    Rows are stamped with reset_at rather than deleted, so history is kept.
    """
    user_id = _require_user(user_id)
    query = _active_usage(db, user_id)
    if feature is not None:
        query = query.filter(FeatureUsage.feature_type == one_shot_feature(feature).value)
    reset_count = query.update({FeatureUsage.reset_at: datetime.utcnow()}, synchronize_session=False)
    db.commit()
    logger.info("[ALLOWANCE] Reset %s usage row(s) for user %s", reset_count, user_id)
    return reset_count
