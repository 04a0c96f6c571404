"""Unit tests for the Alembic migration chain."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from models import Base

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def _alembic_config(url: str) -> Config:
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("sqlalchemy.url", url)
    return config


def test_upgrade_creates_model_tables_and_downgrade_drops_them(tmp_path) -> None:
    """Migrating to head yields every mapped table; downgrading removes them."""
    url = f"sqlite:///{tmp_path / 'migrations.db'}"
    config = _alembic_config(url)
    engine = create_engine(url)

    command.upgrade(config, "head")
    tables = set(inspect(engine).get_table_names())
    assert set(Base.metadata.tables) <= tables
    unique_names = {
        constraint["name"]
        for constraint in inspect(engine).get_unique_constraints("github_analysis_cache")
    }
    assert "uq_velocity_cache_revision" in unique_names
    action_indexes = {
        index["name"]: index for index in inspect(engine).get_indexes("autonomous_action_config")
    }
    assert action_indexes["uq_action_config_agnostic_key"]["unique"]

    command.downgrade(config, "base")
    assert set(inspect(engine).get_table_names()) <= {"alembic_version"}
    engine.dispose()
