"""
Anonymous usage ledger: one free use per preview feature per rolling 24 hours,
keyed by browser fingerprint.

Fingerprints are advisory. Collisions between devices and one person with many
fingerprints are accepted approximations, not correctness failures.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apptrack.core.errors import ValidationError
from apptrack.core.features import PREVIEW_FEATURES, AIFeature, parse_feature
from apptrack.models.anonymous_usage import AnonymousUsageRecord
from apptrack.utils.request_identity import UNKNOWN_IP, normalize_fingerprint

logger = logging.getLogger(__name__)

ANONYMOUS_WINDOW = timedelta(hours=24)
ANONYMOUS_USES_PER_WINDOW = 1


@dataclass(frozen=True)
class AnonymousAllowance:
    can_use: bool
    used_count: int
    reset_at: Optional[datetime]
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "canUse": self.can_use,
            "usedCount": self.used_count,
            "resetAt": self.reset_at.isoformat() + "Z" if self.reset_at else None,
        }


def preview_feature(feature) -> AIFeature:
    feature = parse_feature(feature)
    if feature not in PREVIEW_FEATURES:
        raise ValidationError(f"{feature.value} is not available before signup")
    return feature


def can_use(
    db: Session,
    fingerprint: str,
    ip_address: Optional[str],
    feature,
    now: Optional[datetime] = None,
) -> AnonymousAllowance:
    """
    Count this fingerprint's uses of the feature in the trailing 24 hours.
    resetAt is the oldest qualifying use + 24h. Store errors fail open.
    """
    fingerprint = normalize_fingerprint(fingerprint)
    feature = preview_feature(feature)
    now = now or datetime.utcnow()
    window_start = now - ANONYMOUS_WINDOW

    try:
        rows = (
            db.query(AnonymousUsageRecord.used_at)
            .filter(
                AnonymousUsageRecord.fingerprint == fingerprint,
                AnonymousUsageRecord.feature_type == feature.value,
                AnonymousUsageRecord.used_at >= window_start,
            )
            .order_by(AnonymousUsageRecord.used_at.asc())
            .all()
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            "[ANON USAGE] Relational store unavailable during can_use for fingerprint=%s ip=%s feature=%s; failing open: %s",
            fingerprint,
            ip_address or UNKNOWN_IP,
            feature.value,
            e,
        )
        return AnonymousAllowance(can_use=True, used_count=0, reset_at=None, degraded=True)

    used_count = len(rows)
    reset_at = rows[0].used_at + ANONYMOUS_WINDOW if rows else None
    return AnonymousAllowance(
        can_use=used_count < ANONYMOUS_USES_PER_WINDOW,
        used_count=used_count,
        reset_at=reset_at,
    )


def record_use(
    db: Session,
    fingerprint: str,
    ip_address: Optional[str],
    feature,
    used_at: Optional[datetime] = None,
) -> bool:
    """
    Append one usage row. Call only after the gated generation succeeded.
    Write failures are logged and swallowed; the user already has their result.
    """
    feature = parse_feature(feature)
    record = AnonymousUsageRecord(
        fingerprint=fingerprint,
        ip_address=ip_address or UNKNOWN_IP,
        feature_type=feature.value,
        used_at=used_at or datetime.utcnow(),
    )
    try:
        db.add(record)
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            "[ANON USAGE] Failed to record anonymous use for fingerprint=%s feature=%s; usage left unrecorded: %s",
            fingerprint,
            feature.value,
            e,
        )
        return False
