"""
AppTrack AI usage gate API

Rate limits, free-try allowances and anonymous previews for the AI features
of the job-application tracker.
"""
from dotenv import load_dotenv
load_dotenv()

import logging
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

# Configure logging once for the whole process; the platform captures stdout
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True  # Override any existing configuration
)

logger = logging.getLogger(__name__)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from apptrack.api.routes import ai, try_flow, usage
from apptrack.core import config
from apptrack.core.quota_policies import QUOTA_POLICIES, validate_policy_table
from apptrack.db.base import Base
from apptrack.db.session import engine
# Import all models to ensure they're registered with Base
from apptrack.models import AnonymousUsageRecord, FeatureUsage, PreviewSession, QuotaOverride, User
from apptrack.services.ai_generation import OpenAIGenerator
from apptrack.services.counter_store import RedisCounterStore
from apptrack.services.rate_limiter import RateLimitEngine
from apptrack.utils.encryption import ContentEncryptor


def run_migrations() -> None:
    """Run Alembic migrations on startup. Fails startup if migrations fail,
    so the DB is never left out of sync."""
    project_root = Path(__file__).resolve().parent.parent
    alembic_ini = project_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found, skipping Alembic migrations")
        return
    try:
        alembic_cfg = Config(str(alembic_ini))
        alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
        alembic_cfg.set_main_option("sqlalchemy.url", config.DATABASE_URL)
        command.upgrade(alembic_cfg, "head")
        logger.info("Alembic migrations completed successfully")
    except Exception as e:
        logger.exception("Alembic migration failed: %s", e)
        raise


def build_collaborators(app: FastAPI) -> None:
    """Process-wide collaborators shared by every request; see apptrack.dependencies.services."""
    # Missing or malformed ENCRYPTION_KEY is fatal: preview sessions could never be unlocked
    app.state.encryptor = ContentEncryptor()
    store = RedisCounterStore.from_url(config.REDIS_URL, socket_timeout=config.REDIS_SOCKET_TIMEOUT)
    app.state.rate_limit_engine = RateLimitEngine.from_config(store)
    app.state.ai_generator = OpenAIGenerator()


app = FastAPI(title="AppTrack AI Usage Gate")


@app.on_event("startup")
def startup_event():
    """Validate the quota table, build collaborators, then create tables and run migrations."""
    validate_policy_table(QUOTA_POLICIES)
    logger.info("Quota policy table validated: %s policies", len(QUOTA_POLICIES))

    build_collaborators(app)

    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    if config.RUN_MIGRATIONS_ON_STARTUP:
        run_migrations()


app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
)

# Register routers
app.include_router(try_flow.router, prefix="/api", tags=["Try"])
app.include_router(ai.router, prefix="/api", tags=["AI"])
app.include_router(usage.router, prefix="/api", tags=["Usage"])


@app.get("/health")
def health_check():
    """Liveness plus whether the counter store is configured (rate limiting fails open without it)."""
    rate_limit_engine = getattr(app.state, "rate_limit_engine", None)
    return {
        "status": "ok",
        "rate_limit_store": rate_limit_engine.store.name if rate_limit_engine else None,
        "rate_limit_store_available": bool(rate_limit_engine and rate_limit_engine.store.is_available()),
    }
