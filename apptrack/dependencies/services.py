"""
Process-wide collaborators built once at startup (see apptrack.main) and kept on app.state.
Tests replace them through app.dependency_overrides.
"""
from fastapi import Request

from apptrack.services.ai_generation import AIGenerator
from apptrack.services.rate_limiter import RateLimitEngine
from apptrack.utils.encryption import ContentEncryptor


def get_rate_limit_engine(request: Request) -> RateLimitEngine:
    return request.app.state.rate_limit_engine


def get_encryptor(request: Request) -> ContentEncryptor:
    return request.app.state.encryptor


def get_ai_generator(request: Request) -> AIGenerator:
    return request.app.state.ai_generator
