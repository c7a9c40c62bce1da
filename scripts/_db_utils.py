from __future__ import annotations

import os
import sys
from contextlib import contextmanager
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.ordersync.db import build_engine, build_sessionmaker, unit_of_work  # noqa: E402


def resolve_database_url(database_url: str | None = None) -> str:
    return (database_url or os.environ.get("DATABASE_URL") or "sqlite:///ordersync.db").strip()


@contextmanager
def script_engine(db_url: str):
    engine = build_engine(db_url)
    try:
        yield engine
    finally:
        engine.dispose()


@contextmanager
def script_session(db_url: str):
    """Committed session on a throwaway engine, for scripts that run outside the app."""
    with script_engine(db_url) as engine:
        with unit_of_work(build_sessionmaker(engine)) as s:
            yield s
