from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Callable, Generator

from flask import Flask, current_app, g
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

# Anything that returns a new Session; sync workers call it once per unit of work.
SessionFactory = Callable[[], Session]


def build_engine(db_url: str) -> Engine:
    engine_kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        engine_kwargs.update(pool_recycle=1800, pool_size=5, max_overflow=10, pool_timeout=30)
    elif db_url.startswith("sqlite"):
        # Thread-pool workers each check out their own connection.
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return create_engine(db_url, **engine_kwargs)


def build_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"])
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = build_sessionmaker(engine)
    logger.info("DB engine ready (dialect=%s)", engine.dialect.name)


def db_session() -> Session:
    """Request-scoped session, closed on app-context teardown."""
    s: Session | None = g.get("db_session")
    if s is None:
        s = current_app.extensions["sqlalchemy_sessionmaker"]()
        g.db_session = s
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is not None:
        s.close()


@contextmanager
def unit_of_work(session_factory: SessionFactory) -> Generator[Session, None, None]:
    """Fresh session that commits on success and rolls back on any error."""
    s = session_factory()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """unit_of_work on the app's sessionmaker, for scripts and tests."""
    with unit_of_work(app.extensions["sqlalchemy_sessionmaker"]) as s:
        yield s
