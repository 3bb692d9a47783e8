from apptrack.models.user import User
from apptrack.models.anonymous_usage import AnonymousUsageRecord
from apptrack.models.feature_usage import FeatureUsage
from apptrack.models.preview_session import PreviewSession
from apptrack.models.quota_override import QuotaOverride

__all__ = [
    "User",
    "AnonymousUsageRecord",
    "FeatureUsage",
    "PreviewSession",
    "QuotaOverride",
]
