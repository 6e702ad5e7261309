"""Tests that the Alembic revisions build the same schema as the ORM tables."""

from __future__ import annotations

from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

import tabula_engine.state as state_pkg
from tabula_engine.state.tables import Base

_MIGRATIONS = Path(state_pkg.__file__).parent / "migrations"


@pytest.fixture()
def alembic_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[Config, str]:
    monkeypatch.delenv("ALEMBIC_DATABASE_URL", raising=False)
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    cfg = Config()
    cfg.set_main_option("script_location", str(_MIGRATIONS))
    cfg.set_main_option("sqlalchemy.url", url)
    return cfg, url


class TestMigrations:
    def test_upgrade_creates_every_table(self, alembic_config: tuple[Config, str]) -> None:
        cfg, url = alembic_config

        command.upgrade(cfg, "head")

        engine = create_engine(url)
        try:
            tables = set(inspect(engine).get_table_names())
        finally:
            engine.dispose()
        assert set(Base.metadata.tables) <= tables
        assert "alembic_version" in tables

    def test_columns_match_models(self, alembic_config: tuple[Config, str]) -> None:
        cfg, url = alembic_config
        command.upgrade(cfg, "head")

        engine = create_engine(url)
        try:
            inspector = inspect(engine)
            for name, table in Base.metadata.tables.items():
                migrated = {c["name"] for c in inspector.get_columns(name)}
                assert {c.name for c in table.columns} == migrated, name
        finally:
            engine.dispose()

    def test_downgrade_to_base(self, alembic_config: tuple[Config, str]) -> None:
        cfg, url = alembic_config
        command.upgrade(cfg, "head")
        command.downgrade(cfg, "base")

        engine = create_engine(url)
        try:
            tables = set(inspect(engine).get_table_names())
        finally:
            engine.dispose()
        assert not set(Base.metadata.tables) & tables
