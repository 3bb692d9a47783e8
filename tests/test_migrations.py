"""
Tests for the Alembic migrations: a fresh database upgrades to head and back.
"""
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

PROJECT_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture
def alembic_config(tmp_path):
    database_url = f"sqlite:///{tmp_path / 'migrations.db'}"
    # No ini file, so test logging is left alone
    cfg = Config()
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg, database_url


def table_names(database_url):
    engine = create_engine(database_url)
    try:
        return set(inspect(engine).get_table_names())
    finally:
        engine.dispose()


class TestMigrations:
    def test_upgrade_creates_every_table(self, alembic_config):
        cfg, database_url = alembic_config

        command.upgrade(cfg, "head")

        assert {
            "users",
            "ai_preview_usage",
            "ai_feature_usage",
            "ai_preview_sessions",
            "ai_user_limit_overrides",
        } <= table_names(database_url)

    def test_override_table_can_be_rolled_back(self, alembic_config):
        cfg, database_url = alembic_config
        command.upgrade(cfg, "head")

        command.downgrade(cfg, "001_ai_usage_gate_tables")

        tables = table_names(database_url)
        assert "ai_user_limit_overrides" not in tables
        assert "ai_preview_sessions" in tables

    def test_upgrade_over_existing_schema_is_safe(self, alembic_config):
        import apptrack.models  # noqa: F401
        from apptrack.db.base import Base

        cfg, database_url = alembic_config
        engine = create_engine(database_url)
        Base.metadata.create_all(bind=engine)
        engine.dispose()

        command.upgrade(cfg, "head")

        assert "ai_user_limit_overrides" in table_names(database_url)
