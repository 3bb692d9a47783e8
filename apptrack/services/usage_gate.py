"""
Request-level orchestration of the usage gate.

Anonymous visitors go through the ledger and get an encrypted preview session;
signed-in users go through the rate limit engine and, for one-shot features, the
allowance engine. In both flows the AI call happens only after the gate admits the
request, and allowance/ledger usage is written only after the AI call succeeded.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apptrack.core.errors import (
    AllowanceExhausted,
    RateLimitExceeded,
    StoreUnavailable,
    ValidationError,
)
from apptrack.core.features import ONE_SHOT_FEATURES, AIFeature, parse_feature
from apptrack.core.quota_policies import DAY, HOUR
from apptrack.core.tiers import Tier
from apptrack.services import anonymous_usage, feature_allowance
from apptrack.services.ai_generation import FEATURE_PROMPTS, AIGenerator, generate_feature_content
from apptrack.services.anonymous_usage import ANONYMOUS_USES_PER_WINDOW
from apptrack.services.feature_allowance import FeatureAllowance
from apptrack.services.preview_sessions import create_preview_session
from apptrack.services.rate_limiter import RateLimitEngine, RateLimitResult
from apptrack.utils.encryption import ContentEncryptor
from apptrack.utils.request_identity import AuthenticatedIdentity, normalize_fingerprint

logger = logging.getLogger(__name__)

MIN_JOB_DESCRIPTION_LENGTH = 100
MAX_JOB_DESCRIPTION_LENGTH = 20000
MIN_BACKGROUND_LENGTH = 50
MAX_BACKGROUND_LENGTH = 50000
MIN_QUESTION_LENGTH = 10
MAX_QUESTION_LENGTH = 2000

PREVIEW_MESSAGE = "Sign up free to see the full result"
WINDOW_NAMES = {HOUR: "hourly", DAY: "daily"}


def _text(payload: Dict[str, Any], field: str) -> str:
    value = payload.get(field)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    return value.strip()


def _check_length(value: str, label: str, minimum: int, maximum: int) -> None:
    if len(value) < minimum:
        raise ValidationError(f"{label} must be at least {minimum} characters")
    if len(value) > maximum:
        raise ValidationError(f"{label} must be at most {maximum} characters")


def validate_generation_input(feature: AIFeature, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Reject malformed input before any store is touched."""
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be an object")

    if feature == AIFeature.CAREER_ADVICE:
        _check_length(_text(payload, "question"), "Question", MIN_QUESTION_LENGTH, MAX_QUESTION_LENGTH)
        return payload

    _check_length(
        _text(payload, "jobDescription"),
        "Job description",
        MIN_JOB_DESCRIPTION_LENGTH,
        MAX_JOB_DESCRIPTION_LENGTH,
    )
    _check_length(_text(payload, "userBackground"), "Background", MIN_BACKGROUND_LENGTH, MAX_BACKGROUND_LENGTH)
    return payload


def limit_reached_message(feature: AIFeature, result: RateLimitResult) -> str:
    window = WINDOW_NAMES.get(result.window_seconds, "rate")
    return f"You have reached your {window} limit of {result.limit} {feature.value} requests"


@dataclass(frozen=True)
class PreviewGenerationResult:
    session_id: str
    preview: Dict[str, Any]
    message: str = PREVIEW_MESSAGE

    def to_dict(self) -> dict:
        return {"sessionId": self.session_id, "preview": self.preview, "message": self.message}


@dataclass(frozen=True)
class GatedGenerationResult:
    feature: AIFeature
    content: Dict[str, Any]
    rate_limit: RateLimitResult
    allowance: Optional[FeatureAllowance] = None

    def to_dict(self) -> dict:
        data = {
            "feature": self.feature.value,
            "result": self.content,
            "usage": self.rate_limit.to_dict(),
        }
        if self.allowance is not None:
            data["allowance"] = self.allowance.to_dict()
        return data


def run_preview_generation(
    db: Session,
    generator: AIGenerator,
    encryptor: ContentEncryptor,
    feature,
    payload: Dict[str, Any],
    fingerprint: str,
    ip_address: str,
    user_agent: Optional[str] = None,
) -> PreviewGenerationResult:
    """
    Anonymous try: ledger check, generation, encrypted preview session, then the ledger row.
    A failed generation leaves the visitor's daily use untouched.
    """
    feature = anonymous_usage.preview_feature(feature)
    fingerprint = normalize_fingerprint(fingerprint)
    validate_generation_input(feature, payload)

    allowance = anonymous_usage.can_use(db, fingerprint, ip_address, feature)
    if not allowance.can_use:
        logger.info(
            "[TRY] Denied %s for fingerprint=%s ip=%s (%s use(s) in the last 24h)",
            feature.value,
            fingerprint,
            ip_address,
            allowance.used_count,
        )
        result = RateLimitResult(
            allowed=False,
            limit=ANONYMOUS_USES_PER_WINDOW,
            remaining=0,
            reset_at=allowance.reset_at,
        )
        raise RateLimitExceeded(
            result,
            message="You've used your free preview for today. Sign up to keep going.",
            used_count=allowance.used_count,
        )

    full_content = generate_feature_content(generator, feature, payload)

    try:
        session = create_preview_session(
            db,
            encryptor,
            feature,
            input_data=payload,
            full_content=full_content,
            fingerprint=fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[TRY] Failed to store %s preview session for fingerprint=%s: %s", feature.value, fingerprint, e)
        raise StoreUnavailable("database", "create_preview_session", e) from e

    anonymous_usage.record_use(db, fingerprint, ip_address, feature)
    return PreviewGenerationResult(session_id=session.id, preview=session.preview_content)


def run_gated_generation(
    db: Session,
    engine: RateLimitEngine,
    generator: AIGenerator,
    identity: AuthenticatedIdentity,
    tier: Tier,
    feature,
    payload: Dict[str, Any],
    action_id: Optional[str] = None,
) -> GatedGenerationResult:
    feature = parse_feature(feature)
    if feature not in FEATURE_PROMPTS:
        raise ValidationError(f"{feature.value} does not generate AI content")
    validate_generation_input(feature, payload)

    rate_limit = engine.check_and_consume(identity, feature, tier, db=db)
    if not rate_limit.allowed:
        raise RateLimitExceeded(rate_limit, message=limit_reached_message(feature, rate_limit))

    one_shot = feature in ONE_SHOT_FEATURES
    allowance = None
    if one_shot:
        allowance = feature_allowance.check_allowance(db, identity.user_id, feature, tier)
        if not allowance.can_use:
            logger.info("[AI] User %s has no %s tries left on tier %s", identity.user_id, feature.value, tier.value)
            raise AllowanceExhausted(allowance)

    content = generate_feature_content(generator, feature, payload)

    if one_shot and not allowance.is_unlimited:
        # One row per action; a retried request with the same action id is not charged twice
        feature_allowance.consume_allowance(db, identity.user_id, feature, action_id or uuid.uuid4().hex)
        allowance = feature_allowance.check_allowance(db, identity.user_id, feature, tier)

    return GatedGenerationResult(feature=feature, content=content, rate_limit=rate_limit, allowance=allowance)
