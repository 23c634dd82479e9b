"""
Engine and session setup for the support database.

The schema is owned by Alembic. Startup refuses to serve against an
out-of-date schema unless AUTO_MIGRATE_ON_STARTUP is set.
"""

from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker

import core.config as config

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class DB:
    """Process-wide engine and session factory."""

    engine = None
    SessionLocal = None


def bind_engine(engine) -> None:
    """Point the shared session factory at an engine (startup and tests)."""
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _sqlite_pragmas)
    DB.engine = engine
    DB.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def alembic_config():
    from alembic.config import Config

    cfg = Config(os.path.join(PROJECT_ROOT, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(PROJECT_ROOT, "alembic"))
    cfg.set_main_option("sqlalchemy.url", config.DATABASE_URL)
    cfg.attributes["configure_logger"] = False
    return cfg


def schema_revisions(engine) -> tuple[Optional[str], Optional[str]]:
    """Return (revision stamped in the database, newest revision on disk)."""
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    head = ScriptDirectory.from_config(alembic_config()).get_current_head()
    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()
    return current, head


def _require_current_schema(engine) -> None:
    current, head = schema_revisions(engine)
    if current == head:
        return
    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"Database schema is at {current}, code expects {head}. "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true."
        )

    from alembic import command

    config.logger.info("migrating_schema", extra={"from_revision": current, "to_revision": head})
    command.upgrade(alembic_config(), "head")
    current, _ = schema_revisions(engine)
    if current != head:
        raise RuntimeError(f"Migration stopped at {current}, expected {head}")


def _ensure_pgvector(engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()


def init_db() -> None:
    """Create the engine and check the schema. Called once from the app lifespan."""
    config.validate_and_prepare_config()

    engine_kwargs = {"pool_pre_ping": True}
    if config.DB_BACKEND == "sqlite":
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    bind_engine(create_engine(config.DATABASE_URL, **engine_kwargs))
    config.logger.info("database_connected", extra={"backend": config.DB_BACKEND})

    if (
        config.AUTO_CREATE_EXTENSIONS
        and config.DB_BACKEND == "postgres"
        and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"
    ):
        _ensure_pgvector(DB.engine)

    import core.models  # noqa: F401

    _require_current_schema(DB.engine)
    config.logger.info("database_ready")
