"""
Preview sessions: AI output generated for an anonymous visitor, stored encrypted and
unlocked exactly once when the visitor signs up.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from cryptography.fernet import InvalidToken
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apptrack.core.errors import AlreadyConverted, DecryptionFailure, SessionNotFound, StoreUnavailable, ValidationError
from apptrack.core.features import AIFeature, parse_feature
from apptrack.models.preview_session import PreviewSession
from apptrack.utils.encryption import ContentEncryptor

logger = logging.getLogger(__name__)

COVER_LETTER_PREVIEW_LENGTH = 300
INTERVIEW_PREVIEW_QUESTIONS = 3
JOB_FIT_PREVIEW_STRENGTHS = 2


@dataclass(frozen=True)
class ConversionResult:
    analysis: Any
    feature_type: str
    input_data: Dict[str, Any]

    def to_dict(self) -> dict:
        return {
            "success": True,
            "analysis": self.analysis,
            "featureType": self.feature_type,
            "inputData": self.input_data,
        }


def build_preview(feature: AIFeature, full_content: Dict[str, Any]) -> Dict[str, Any]:
    """Teaser shown before signup; withholds most of the generated content."""
    if feature == AIFeature.JOB_FIT:
        recommendation = full_content.get("recommendation") or ""
        return {
            "fitScore": full_content.get("fitScore"),
            "strengths": list(full_content.get("strengths") or [])[:JOB_FIT_PREVIEW_STRENGTHS],
            "gaps": [],
            "redFlags": [],
            "recommendation": recommendation.split(".")[0] + "..." if recommendation else "",
            "nextSteps": [],
        }
    if feature == AIFeature.COVER_LETTER:
        text = full_content.get("coverLetter") or ""
        is_preview = len(text) > COVER_LETTER_PREVIEW_LENGTH
        return {
            "text": text[:COVER_LETTER_PREVIEW_LENGTH] + "..." if is_preview else text,
            "isPreview": is_preview,
        }
    if feature == AIFeature.INTERVIEW_PREP:
        return {
            "questions": list(full_content.get("questions") or [])[:INTERVIEW_PREVIEW_QUESTIONS],
            "generalTips": [],
            "practiceAreas": [],
        }
    raise ValidationError(f"{feature.value} has no preview format")


def create_preview_session(
    db: Session,
    encryptor: ContentEncryptor,
    feature,
    input_data: Dict[str, Any],
    full_content: Dict[str, Any],
    fingerprint: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> PreviewSession:
    feature = parse_feature(feature)
    session = PreviewSession(
        feature_type=feature.value,
        input_data=input_data,
        preview_content=build_preview(feature, full_content),
        full_content_encrypted=encryptor.encrypt_json(full_content),
        session_fingerprint=fingerprint,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    logger.info("[PREVIEW] Created %s preview session %s", feature.value, session.id)
    return session


def convert(db: Session, encryptor: ContentEncryptor, session_id: str, user_id: str) -> ConversionResult:
    """
    Bind an anonymous preview session to a signed-in user and return the full content.

    One-time unlock: a second conversion of the same session raises AlreadyConverted,
    whoever asks. The conditional UPDATE (converted_at IS NULL) is the concurrency guard;
    the converted_at check before decrypting only short-circuits the common case.
    """
    if not session_id:
        raise ValidationError("Session ID is required")
    if not user_id:
        raise ValidationError("user_id is required")

    try:
        session = db.query(PreviewSession).filter(PreviewSession.id == session_id).first()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[PREVIEW] Failed to load session %s: %s", session_id, e)
        raise StoreUnavailable("database", "convert", e) from e
    if session is None:
        raise SessionNotFound(session_id, "Session not found")
    if session.converted_at is not None:
        logger.info("[PREVIEW] Rejected repeat conversion of session %s by user %s", session_id, user_id)
        raise AlreadyConverted(session_id, "Session already converted")

    try:
        analysis = encryptor.decrypt_json(session.full_content_encrypted)
    except (InvalidToken, ValueError) as e:
        logger.error(
            "[PREVIEW] Failed to decrypt session %s (corrupted ciphertext or rotated key): %s",
            session_id,
            type(e).__name__,
        )
        raise DecryptionFailure(session_id, "Failed to decrypt session content") from e

    feature_type = session.feature_type
    input_data = session.input_data

    try:
        updated = (
            db.query(PreviewSession)
            .filter(PreviewSession.id == session_id, PreviewSession.converted_at.is_(None))
            .update(
                {PreviewSession.user_id: user_id, PreviewSession.converted_at: datetime.utcnow()},
                synchronize_session=False,
            )
        )
        if updated == 1:
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[PREVIEW] Failed to mark session %s converted for user %s: %s", session_id, user_id, e)
        raise StoreUnavailable("database", "convert", e) from e

    if updated != 1:
        db.rollback()
        logger.info("[PREVIEW] Lost conversion race for session %s (user %s)", session_id, user_id)
        raise AlreadyConverted(session_id, "Session already converted")

    logger.info("[PREVIEW] Converted %s session %s to user %s", feature_type, session_id, user_id)
    return ConversionResult(analysis=analysis, feature_type=feature_type, input_data=input_data)
