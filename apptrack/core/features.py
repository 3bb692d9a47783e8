from enum import Enum

from apptrack.core.errors import ValidationError


class AIFeature(str, Enum):
    RESUME_ANALYSIS = "resume_analysis"
    JOB_FIT = "job_fit"
    COVER_LETTER = "cover_letter"
    INTERVIEW_PREP = "interview_prep"
    CAREER_ADVICE = "career_advice"
    RESUME_UPLOAD = "resume_upload"


# Features that carry a one-shot "free try" allowance for signed-in free users
ONE_SHOT_FEATURES = (
    AIFeature.RESUME_ANALYSIS,
    AIFeature.JOB_FIT,
    AIFeature.COVER_LETTER,
    AIFeature.INTERVIEW_PREP,
)

# Features anonymous visitors can try before signing up
PREVIEW_FEATURES = (
    AIFeature.JOB_FIT,
    AIFeature.COVER_LETTER,
    AIFeature.INTERVIEW_PREP,
)


def parse_feature(value) -> AIFeature:
    """Accept enum members, snake_case values or kebab-case route slugs."""
    if isinstance(value, AIFeature):
        return value
    if not value or not isinstance(value, str):
        raise ValidationError("Feature type is required")
    normalized = value.strip().lower().replace("-", "_")
    try:
        return AIFeature(normalized)
    except ValueError:
        raise ValidationError(f"Unknown feature type: {value}") from None
