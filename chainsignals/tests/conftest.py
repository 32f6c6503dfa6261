from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Ensure `import chainsignals...` works even when pytest is launched from inside the package.
REPO_ROOT = Path(__file__).resolve().parents[2]
repo_root_str = str(REPO_ROOT)
if repo_root_str not in sys.path:
    sys.path.insert(0, repo_root_str)

os.environ.setdefault("CHAINSIGNALS_SCHEDULER_ENABLED", "0")
os.environ.setdefault("CHAINSIGNALS_SQLITE_URL", "sqlite://")


@pytest.fixture
def db_engine():
    from sqlalchemy import create_engine
    from sqlalchemy.pool import StaticPool

    from chainsignals.db.database import init_db

    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from sqlalchemy.orm import sessionmaker

    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_strategy(db_session):
    from chainsignals.db.models import Strategy

    def _make(trader: str = "0xabc", name: str = "alpha", first_signal_ts: int = 0, **fields) -> Strategy:
        strategy = Strategy(
            trader_address=trader,
            strategy_name=name,
            first_signal_ts=first_signal_ts,
            last_signal_ts=fields.pop("last_signal_ts", first_signal_ts),
            num_signals=fields.pop("num_signals", 1),
            last_value_index=fields.pop("last_value_index", 1.0),
            last_segment_end_ts=fields.pop("last_segment_end_ts", None),
            is_liquidated=False,
            **fields,
        )
        db_session.add(strategy)
        db_session.commit()
        return strategy

    return _make
