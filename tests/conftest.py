"""
Shared pytest fixtures: in-memory SQLite, a controllable clock, a fake AI
generator and the FastAPI app with its collaborators overridden.
"""
import json
import os
from datetime import datetime, timedelta

from cryptography.fernet import Fernet

# Must be set before apptrack.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from apptrack.core import config
from apptrack.core.errors import AIGenerationError
from apptrack.db.base import Base
import apptrack.models  # noqa: F401 (registers every model with Base)
from apptrack.services.ai_generation import AIGenerator
from apptrack.services.counter_store import InMemoryCounterStore
from apptrack.services.rate_limiter import RateLimitEngine, UsageStatsCache
from apptrack.utils.encryption import ContentEncryptor

JWT_SECRET = "test-supabase-jwt-secret-with-enough-bytes"

JOB_FIT_ANALYSIS = {
    "fitScore": 78,
    "strengths": ["Python depth", "API design", "Mentoring"],
    "gaps": ["No Kubernetes"],
    "redFlags": [],
    "recommendation": "Yes, apply. Your backend work maps directly to the role.",
    "nextSteps": ["Tailor the resume", "Prepare system design stories", "Reach out to the team"],
}

VALID_PAYLOAD = {
    "jobDescription": (
        "Senior Backend Engineer. You will design and operate Python services, own our public API, "
        "and mentor engineers across the platform team."
    ),
    "userBackground": "Eight years building Python APIs with FastAPI and PostgreSQL, led a team of four.",
}


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGenerator(AIGenerator):
    """Returns a canned response; set `error` to make every call fail."""

    def __init__(self, response=None, error=None):
        self.response = response if response is not None else json.dumps(JOB_FIT_ANALYSIS)
        self.error = error
        self.calls = []

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append(user_prompt)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(db_engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSession()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, 0))


@pytest.fixture
def memory_store():
    return InMemoryCounterStore()


@pytest.fixture
def rate_limiter(memory_store, clock):
    stats_cache = UsageStatsCache(ttl_seconds=30, timer=lambda: clock().timestamp())
    return RateLimitEngine(memory_store, clock=clock, stats_cache=stats_cache)


@pytest.fixture
def encryptor():
    return ContentEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def payload():
    return dict(VALID_PAYLOAD)


@pytest.fixture
def jwt_secret(monkeypatch):
    monkeypatch.setattr(config, "SUPABASE_JWT_SECRET", JWT_SECRET)
    return JWT_SECRET


@pytest.fixture
def make_token(jwt_secret):
    def _make_token(sub: str, email: str = None) -> str:
        claims = {
            "sub": sub,
            "email": email or f"{sub}@example.com",
            "aud": "authenticated",
            "exp": datetime.utcnow() + timedelta(hours=1),
        }
        return jwt.encode(claims, jwt_secret, algorithm="HS256")

    return _make_token


@pytest.fixture
def auth_headers(make_token):
    def _auth_headers(sub: str, email: str = None) -> dict:
        return {"Authorization": f"Bearer {make_token(sub, email)}"}

    return _auth_headers


@pytest.fixture
def client(db, rate_limiter, encryptor, generator):
    from apptrack.db.session import get_db
    from apptrack.dependencies.services import get_ai_generator, get_encryptor, get_rate_limit_engine
    from apptrack.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_rate_limit_engine] = lambda: rate_limiter
    app.dependency_overrides[get_encryptor] = lambda: encryptor
    app.dependency_overrides[get_ai_generator] = lambda: generator
    # Not entered as a context manager: startup would build the real Redis/OpenAI collaborators
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def failing_generator():
    return FakeGenerator(error=AIGenerationError("AI generation failed: upstream timeout"))
