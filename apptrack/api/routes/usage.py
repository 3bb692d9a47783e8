from fastapi import APIRouter, Depends

from sqlalchemy.orm import Session

from apptrack.core.tiers import Tier
from apptrack.db.session import get_db
from apptrack.dependencies.auth import get_current_identity, get_current_tier
from apptrack.dependencies.services import get_rate_limit_engine
from apptrack.schemas.ai import UsageSummaryResponse
from apptrack.services.feature_allowance import get_all_allowances
from apptrack.services.rate_limiter import RateLimitEngine
from apptrack.utils.request_identity import AuthenticatedIdentity

router = APIRouter()


@router.get("/usage", response_model=UsageSummaryResponse)
def get_usage(
    identity: AuthenticatedIdentity = Depends(get_current_identity),
    tier: Tier = Depends(get_current_tier),
    db: Session = Depends(get_db),
    engine: RateLimitEngine = Depends(get_rate_limit_engine),
):
    """Rate-limit and free-try status for every AI feature. Display only, nothing is consumed."""
    allowances = get_all_allowances(db, identity.user_id, tier)
    return {
        "tier": tier.value,
        "rateLimits": [stats.to_dict() for stats in engine.get_all_usage_stats(identity, tier, db=db)],
        "allowances": {feature.value: allowance.to_dict() for feature, allowance in allowances.items()},
        "hasFreeTries": any(allowance.can_use for allowance in allowances.values()),
    }
