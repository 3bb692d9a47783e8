from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from apptrack.core.errors import ConfigurationError
from apptrack.core.features import AIFeature
from apptrack.core.tiers import Tier

HOUR = 60 * 60
DAY = 24 * HOUR


class WindowType(str, Enum):
    SLIDING = "sliding"
    FIXED = "fixed"


@dataclass(frozen=True)
class QuotaWindow:
    limit: int
    window_seconds: int
    window_type: WindowType = WindowType.SLIDING

    def __post_init__(self):
        if self.limit <= 0:
            raise ConfigurationError(f"Quota limit must be positive, got {self.limit}")
        if self.window_seconds <= 0:
            raise ConfigurationError(f"Quota window must be positive, got {self.window_seconds}")


@dataclass(frozen=True)
class QuotaPolicy:
    """
    Every window of a policy applies at once: a request is admitted only if each
    window still has room. Windows are ordered shortest first; the first one is
    the headline limit shown to users.
    """

    feature: AIFeature
    tier: Tier
    windows: Tuple[QuotaWindow, ...]

    def __post_init__(self):
        name = f"{self.feature.value}/{self.tier.value}"
        if not self.windows:
            raise ConfigurationError(f"Quota policy {name} has no windows")
        lengths = [window.window_seconds for window in self.windows]
        if lengths != sorted(set(lengths)):
            raise ConfigurationError(f"Quota policy {name} windows must have distinct lengths, shortest first")

    @property
    def primary(self) -> QuotaWindow:
        return self.windows[0]

    @property
    def limit(self) -> int:
        return self.primary.limit

    @property
    def window_seconds(self) -> int:
        return self.primary.window_seconds

    @property
    def window_type(self) -> WindowType:
        return self.primary.window_type

    def with_limits(self, limits: Mapping[int, Optional[int]]) -> "QuotaPolicy":
        """Copy with the limit of each window replaced by limits[window_seconds], where given."""
        windows = tuple(
            replace(window, limit=limits[window.window_seconds])
            if limits.get(window.window_seconds) is not None
            else window
            for window in self.windows
        )
        return replace(self, windows=windows)


def hourly_and_daily(per_hour: int, per_day: int):
    return ((per_hour, HOUR, WindowType.SLIDING), (per_day, DAY, WindowType.SLIDING))


def fixed_daily(per_day: int):
    return ((per_day, DAY, WindowType.FIXED),)


# (limit, window seconds, window type) for every window of every (tier, feature) pair.
# AI generation features have a sliding hour and a sliding day; uploads use fixed one-day buckets.
QUOTA_LIMITS = {
    Tier.FREE: {
        AIFeature.RESUME_ANALYSIS: hourly_and_daily(3, 10),
        AIFeature.JOB_FIT: hourly_and_daily(3, 10),
        AIFeature.COVER_LETTER: hourly_and_daily(3, 10),
        AIFeature.INTERVIEW_PREP: hourly_and_daily(3, 10),
        AIFeature.CAREER_ADVICE: hourly_and_daily(5, 15),
        AIFeature.RESUME_UPLOAD: fixed_daily(5),
    },
    Tier.PRO: {
        AIFeature.RESUME_ANALYSIS: hourly_and_daily(10, 50),
        AIFeature.JOB_FIT: hourly_and_daily(10, 50),
        AIFeature.COVER_LETTER: hourly_and_daily(10, 50),
        AIFeature.INTERVIEW_PREP: hourly_and_daily(10, 50),
        AIFeature.CAREER_ADVICE: hourly_and_daily(20, 100),
        AIFeature.RESUME_UPLOAD: fixed_daily(25),
    },
    Tier.AI_COACH: {
        AIFeature.RESUME_ANALYSIS: hourly_and_daily(30, 200),
        AIFeature.JOB_FIT: hourly_and_daily(30, 200),
        AIFeature.COVER_LETTER: hourly_and_daily(30, 200),
        AIFeature.INTERVIEW_PREP: hourly_and_daily(30, 200),
        AIFeature.CAREER_ADVICE: hourly_and_daily(60, 400),
        AIFeature.RESUME_UPLOAD: fixed_daily(50),
    },
}

PolicyTable = Mapping[Tuple[AIFeature, Tier], QuotaPolicy]


def build_policy_table(limits=QUOTA_LIMITS) -> Dict[Tuple[AIFeature, Tier], QuotaPolicy]:
    table = {}
    for tier, features in limits.items():
        for feature, windows in features.items():
            table[(feature, tier)] = QuotaPolicy(
                feature=feature,
                tier=tier,
                windows=tuple(
                    QuotaWindow(limit=limit, window_seconds=window_seconds, window_type=window_type)
                    for limit, window_seconds, window_type in windows
                ),
            )
    return table


def validate_policy_table(table: PolicyTable) -> None:
    """Fail fast if any reachable (feature, tier) pair has no policy."""
    missing = [
        f"{feature.value}/{tier.value}"
        for tier in Tier
        for feature in AIFeature
        if (feature, tier) not in table
    ]
    if missing:
        raise ConfigurationError(f"Missing quota policy for: {', '.join(missing)}")


QUOTA_POLICIES = build_policy_table()


def lookup(feature: AIFeature, tier: Tier, table: PolicyTable = QUOTA_POLICIES) -> QuotaPolicy:
    """Get the quota policy for a feature and tier. Unconfigured pairs are a configuration error, never unlimited."""
    try:
        return table[(feature, tier)]
    except KeyError:
        raise ConfigurationError(f"No quota policy configured for {feature.value}/{tier.value}") from None
