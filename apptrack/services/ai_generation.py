"""
AI generation collaborator. Text in, text out, may fail.

The usage gate treats generation as opaque: nothing is charged until generate_feature_content
returns successfully.
"""
import json
import logging
import time
from typing import Any, Dict, Optional

from openai import OpenAI

from apptrack.core import config
from apptrack.core.errors import AIGenerationError, ValidationError
from apptrack.core.features import AIFeature

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an expert career coach and recruiter helping a job seeker. Be specific, honest and constructive."

TRANSIENT_ERRORS = {"APIConnectionError", "APITimeoutError", "InternalServerError", "RateLimitError"}


class AIGenerator:
    def generate(self, system_prompt: str, user_prompt: str) -> str:
        raise NotImplementedError


class OpenAIGenerator(AIGenerator):
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client: Optional[OpenAI] = None, max_attempts: int = 3):
        api_key = api_key or config.OPENAI_API_KEY
        self.model = model or config.OPENAI_MODEL
        self.max_attempts = max_attempts
        self.client = client or (OpenAI(api_key=api_key, timeout=config.AI_REQUEST_TIMEOUT) if api_key else None)
        if self.client is None:
            logger.warning("OPENAI_API_KEY is missing. AI generation requests will fail.")

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        if self.client is None:
            raise AIGenerationError("AI generation is not configured")

        last_error = None
        for attempt in range(self.max_attempts):
            try:
                response = self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=0.7,
                )
            except Exception as exc:
                last_error = exc
                logger.exception("OpenAI request failed for model '%s' (attempt %s).", self.model, attempt + 1)
                if attempt < self.max_attempts - 1 and type(exc).__name__ in TRANSIENT_ERRORS:
                    time.sleep(0.35 * (attempt + 1))
                    continue
                break

            content = response.choices[0].message.content if response.choices else None
            if content and content.strip():
                return content.strip()
            last_error = "empty response"
            logger.error("OpenAI returned empty content for model '%s'.", self.model)
            break

        raise AIGenerationError(f"AI generation failed: {last_error}")


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def job_fit_prompt(payload: Dict[str, Any]) -> str:
    target_role = payload.get("targetRole")
    return f"""Analyze how well this candidate fits the job posting.

JOB DESCRIPTION:
{payload["jobDescription"]}

CANDIDATE BACKGROUND:
{payload["userBackground"]}
{f"TARGET ROLE: {target_role}" if target_role else ""}

Respond ONLY with valid JSON of the form:
{{"fitScore": 0-100, "strengths": [..3-5 items], "gaps": [..2-4 items], "redFlags": [..0-2 items],
 "recommendation": "yes/no/maybe with 2-3 sentence reasoning", "nextSteps": [..3-4 items]}}"""


def cover_letter_prompt(payload: Dict[str, Any]) -> str:
    company = payload.get("companyName") or "the company"
    return f"""Write a tailored, professional cover letter (250-400 words) for {company}.

JOB DESCRIPTION:
{payload["jobDescription"]}

CANDIDATE BACKGROUND:
{payload["userBackground"]}

Return only the letter text."""


def interview_prep_prompt(payload: Dict[str, Any]) -> str:
    interview_type = payload.get("interviewType") or "general"
    return f"""Prepare the candidate for a {interview_type} interview.

JOB DESCRIPTION:
{payload["jobDescription"]}

CANDIDATE BACKGROUND:
{payload.get("userBackground") or "Not provided"}

Respond ONLY with valid JSON of the form:
{{"questions": [{{"question": "...", "suggestedAnswer": "...", "category": "..."}}],
 "generalTips": [...], "companyInsights": [...], "roleSpecificAdvice": [...], "practiceAreas": [...]}}"""


def resume_analysis_prompt(payload: Dict[str, Any]) -> str:
    return f"""Review this resume for the job below. Give an overall assessment, strengths,
weaknesses and concrete rewrite suggestions.

RESUME:
{payload["userBackground"]}

JOB DESCRIPTION:
{payload["jobDescription"]}"""


def career_advice_prompt(payload: Dict[str, Any]) -> str:
    return f"""Answer the job seeker's career question with practical, specific advice.

QUESTION:
{payload["question"]}

BACKGROUND:
{payload.get("userBackground") or "Not provided"}"""


def parse_job_fit(text: str) -> Dict[str, Any]:
    try:
        analysis = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise AIGenerationError("Failed to parse AI response. Please try again.") from e

    if not (
        isinstance(analysis, dict)
        and isinstance(analysis.get("fitScore"), (int, float))
        and isinstance(analysis.get("strengths"), list)
        and isinstance(analysis.get("gaps"), list)
        and isinstance(analysis.get("redFlags"), list)
        and isinstance(analysis.get("recommendation"), str)
        and isinstance(analysis.get("nextSteps"), list)
    ):
        raise AIGenerationError("Invalid response structure from AI")

    analysis["fitScore"] = max(0, min(100, analysis["fitScore"]))
    return analysis


def parse_interview_prep(text: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(strip_code_fences(text))
    except json.JSONDecodeError:
        parsed = {}
    if not isinstance(parsed, dict):
        parsed = {}
    return {
        "questions": parsed.get("questions") or [],
        "generalTips": parsed.get("generalTips") or [],
        "companyInsights": parsed.get("companyInsights") or [],
        "roleSpecificAdvice": parsed.get("roleSpecificAdvice") or [],
        "practiceAreas": parsed.get("practiceAreas") or [],
    }


FEATURE_PROMPTS = {
    AIFeature.JOB_FIT: job_fit_prompt,
    AIFeature.COVER_LETTER: cover_letter_prompt,
    AIFeature.INTERVIEW_PREP: interview_prep_prompt,
    AIFeature.RESUME_ANALYSIS: resume_analysis_prompt,
    AIFeature.CAREER_ADVICE: career_advice_prompt,
}


def generate_feature_content(generator: AIGenerator, feature: AIFeature, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Run the generation for a feature and shape the result. Raises AIGenerationError on any failure."""
    prompt_builder = FEATURE_PROMPTS.get(feature)
    if prompt_builder is None:
        raise ValidationError(f"{feature.value} does not generate AI content")

    try:
        text = generator.generate(SYSTEM_PROMPT, prompt_builder(payload))
    except AIGenerationError:
        raise
    except Exception as e:
        raise AIGenerationError(f"AI generation failed: {e}") from e

    if feature == AIFeature.JOB_FIT:
        return parse_job_fit(text)
    if feature == AIFeature.INTERVIEW_PREP:
        return parse_interview_prep(text)
    if feature == AIFeature.COVER_LETTER:
        return {"coverLetter": text}
    if feature == AIFeature.RESUME_ANALYSIS:
        return {"analysis": text}
    return {"advice": text}
