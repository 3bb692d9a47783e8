from enum import Enum
from typing import Optional


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"
    AI_COACH = "ai_coach"


PAID_TIERS = (Tier.PRO, Tier.AI_COACH)


def resolve_tier(plan_name: Optional[str]) -> Tier:
    """
    Map the raw plan label from billing ("AI Coach Monthly", "Pro", None, ...) to a Tier.
    This is the only place plan labels are interpreted; everything downstream uses Tier.
    """
    label = (plan_name or "").strip().lower()
    if not label:
        return Tier.FREE
    if label in {tier.value for tier in Tier}:
        return Tier(label)
    if "ai" in label.split() or "coach" in label:
        return Tier.AI_COACH
    if "pro" in label:
        return Tier.PRO
    return Tier.FREE
