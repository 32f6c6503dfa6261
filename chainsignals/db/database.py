from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from chainsignals.config.settings import get_settings

settings = get_settings()
engine = create_engine(settings.sqlite_url, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:  # noqa: ARG001
    # Strategy deletes rely on ON DELETE CASCADE; SQLite ignores it unless asked.
    module = type(dbapi_connection).__module__
    if not module.startswith("sqlite3"):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(bind: Engine | None = None) -> None:
    from chainsignals.db import models  # noqa: F401

    target = bind or engine
    _ensure_sqlite_directory(target)
    Base.metadata.create_all(bind=target)
    _ensure_message_columns(target)


def _ensure_sqlite_directory(target: Engine) -> None:
    database = target.url.database
    if target.url.get_backend_name() != "sqlite" or not database or database == ":memory:":
        return
    Path(database).parent.mkdir(parents=True, exist_ok=True)


def _ensure_message_columns(target: Engine) -> None:
    # Databases created before signal messages were stored lack these columns.
    table_columns = {
        "signals": {"message": "TEXT"},
        "strategy_position_snapshots": {"message": "TEXT"},
    }
    with target.begin() as conn:
        for table_name, columns_to_add in table_columns.items():
            rows = conn.execute(text(f"PRAGMA table_info({table_name})")).fetchall()
            if not rows:
                continue
            existing = {str(r[1]) for r in rows}
            for col, ddl in columns_to_add.items():
                if col in existing:
                    continue
                conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {col} {ddl}"))
