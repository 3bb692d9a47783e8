from fastapi import APIRouter, Depends, Response

from sqlalchemy.orm import Session

from apptrack.api.responses import http_error, rate_limit_headers, rate_limited_response
from apptrack.core.errors import RateLimitExceeded, UsageGateError
from apptrack.core.tiers import Tier
from apptrack.db.session import get_db
from apptrack.dependencies.auth import get_current_identity, get_current_tier
from apptrack.dependencies.services import get_ai_generator, get_rate_limit_engine
from apptrack.schemas.ai import AIRequest
from apptrack.services.ai_generation import AIGenerator
from apptrack.services.rate_limiter import RateLimitEngine
from apptrack.services.usage_gate import run_gated_generation
from apptrack.utils.request_identity import AuthenticatedIdentity

router = APIRouter()


@router.post("/ai/{feature}")
def generate_for_feature(
    feature: str,
    body: AIRequest,
    response: Response,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
    tier: Tier = Depends(get_current_tier),
    db: Session = Depends(get_db),
    engine: RateLimitEngine = Depends(get_rate_limit_engine),
    generator: AIGenerator = Depends(get_ai_generator),
):
    """
    Signed-in AI generation. The tier's rate limit is consumed first; free users
    additionally spend their one-shot try, charged once per actionId and only
    after the generation succeeded.
    """
    try:
        result = run_gated_generation(
            db,
            engine,
            generator,
            identity,
            tier,
            feature,
            body.to_payload(),
            action_id=body.actionId,
        )
    except RateLimitExceeded as e:
        return rate_limited_response(e)
    except UsageGateError as e:
        raise http_error(e)

    response.headers.update(rate_limit_headers(result.rate_limit))
    return result.to_dict()
