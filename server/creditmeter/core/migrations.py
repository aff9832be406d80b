from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import ensure_db_parent_dir, get_engine

ROOT_DIR = Path(__file__).resolve().parents[3]


class SchemaOutOfDate(RuntimeError):
    pass


@dataclass(frozen=True)
class RevisionState:
    current_heads: tuple[str, ...]
    expected_heads: tuple[str, ...]

    @property
    def at_head(self) -> bool:
        return bool(self.expected_heads) and set(self.current_heads) == set(self.expected_heads)

    def describe(self) -> str:
        current = ",".join(self.current_heads) or "none"
        expected = ",".join(self.expected_heads) or "none"
        return f"current={current} expected={expected}"


def _alembic_config(settings: Settings) -> Config:
    cfg = Config(str(ROOT_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT_DIR / "migrations"))
    cfg.set_main_option("sqlalchemy.url", settings.db_url.replace("%", "%%"))
    # Tells migrations/env.py to keep the caller's URL and logging setup.
    cfg.attributes["configured_by_app"] = True
    return cfg


def revision_state(settings: Settings) -> RevisionState:
    expected = tuple(ScriptDirectory.from_config(_alembic_config(settings)).get_heads())
    with get_engine(settings).connect() as connection:
        current = tuple(MigrationContext.configure(connection).get_current_heads())
    return RevisionState(current_heads=current, expected_heads=expected)


def upgrade_to_head(settings: Settings) -> None:
    ensure_db_parent_dir(settings.db_url)
    command.upgrade(_alembic_config(settings), "head")


def stamp_head(settings: Settings) -> None:
    ensure_db_parent_dir(settings.db_url)
    command.stamp(_alembic_config(settings), "head")


def create_revision(settings: Settings, *, message: str, autogenerate: bool = True) -> None:
    command.revision(_alembic_config(settings), message=message, autogenerate=autogenerate)


def assert_db_current(settings: Settings) -> None:
    state = revision_state(settings)
    if not state.at_head:
        raise SchemaOutOfDate(
            f"Ledger schema is not at head ({state.describe()}). "
            "Run `python -m server.migrate upgrade` before starting the API or worker."
        )
