"""
"Try before signup" routes: one free AI preview per feature per day for anonymous
visitors, and the conversion that unlocks the full result after signup.
"""
from fastapi import APIRouter, Depends, Query, Request

from sqlalchemy.orm import Session

from apptrack.api.responses import http_error, rate_limited_response
from apptrack.core.errors import RateLimitExceeded, UsageGateError
from apptrack.db.session import get_db
from apptrack.dependencies.auth import get_current_user
from apptrack.dependencies.services import get_ai_generator, get_encryptor
from apptrack.models.user import User
from apptrack.schemas.ai import ConversionResponse, ConvertSessionRequest, PreviewResponse, TryRequest, TryUsageResponse
from apptrack.services import anonymous_usage, preview_sessions
from apptrack.services.ai_generation import AIGenerator
from apptrack.services.usage_gate import run_preview_generation
from apptrack.utils.encryption import ContentEncryptor
from apptrack.utils.request_identity import get_client_ip

router = APIRouter()


@router.get("/try/usage", response_model=TryUsageResponse)
def get_try_usage(
    request: Request,
    fingerprint: str = Query(...),
    feature: str = Query(...),
    db: Session = Depends(get_db),
):
    """Whether this browser can still use its free preview of a feature today."""
    try:
        allowance = anonymous_usage.can_use(db, fingerprint, get_client_ip(request.headers), feature)
    except UsageGateError as e:
        raise http_error(e)
    return allowance.to_dict()


# Registered before /try/{feature} so the literal path wins
@router.post("/try/convert-session", response_model=ConversionResponse)
def convert_session(
    body: ConvertSessionRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    encryptor: ContentEncryptor = Depends(get_encryptor),
):
    try:
        result = preview_sessions.convert(db, encryptor, body.sessionId, user.id)
    except UsageGateError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/try/{feature}", response_model=PreviewResponse)
def try_feature(
    feature: str,
    body: TryRequest,
    request: Request,
    db: Session = Depends(get_db),
    generator: AIGenerator = Depends(get_ai_generator),
    encryptor: ContentEncryptor = Depends(get_encryptor),
):
    try:
        result = run_preview_generation(
            db,
            generator,
            encryptor,
            feature,
            body.to_payload(),
            fingerprint=body.fingerprint,
            ip_address=get_client_ip(request.headers),
            user_agent=request.headers.get("user-agent"),
        )
    except RateLimitExceeded as e:
        return rate_limited_response(e)
    except UsageGateError as e:
        raise http_error(e)
    return result.to_dict()
