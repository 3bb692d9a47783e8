from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class GenerationInput(BaseModel):
    jobDescription: Optional[str] = None
    userBackground: Optional[str] = None
    targetRole: Optional[str] = None
    companyName: Optional[str] = None
    interviewType: Optional[str] = None
    question: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(
            include={"jobDescription", "userBackground", "targetRole", "companyName", "interviewType", "question"},
            exclude_none=True,
        )


class TryRequest(GenerationInput):
    fingerprint: str = Field(..., min_length=1, max_length=255)


class AIRequest(GenerationInput):
    # Client-generated id for one user action; retries with the same id are charged once
    actionId: Optional[str] = Field(None, max_length=64)


class ConvertSessionRequest(BaseModel):
    sessionId: str = Field(..., min_length=1, max_length=64)


class RateLimitResponse(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    resetAt: Optional[str] = None


class TryUsageResponse(BaseModel):
    canUse: bool
    usedCount: int
    resetAt: Optional[str] = None


class PreviewResponse(BaseModel):
    sessionId: str
    preview: Dict[str, Any]
    message: str


class ConversionResponse(BaseModel):
    success: bool
    analysis: Any
    featureType: str
    inputData: Dict[str, Any]


class WindowUsageResponse(BaseModel):
    used: int
    limit: int
    remaining: int
    resetAt: str
    windowSeconds: int
    windowType: str


class FeatureUsageResponse(WindowUsageResponse):
    feature: str
    # Every window of the policy, shortest first (hourly, then daily)
    windows: List[WindowUsageResponse]


class AllowanceResponse(BaseModel):
    canUse: bool
    usedCount: int
    grantedCount: Any
    requiresUpgrade: bool


class UsageSummaryResponse(BaseModel):
    tier: str
    rateLimits: List[FeatureUsageResponse]
    allowances: Dict[str, AllowanceResponse]
    hasFreeTries: bool
