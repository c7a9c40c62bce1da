import logging
import os

from flask import Flask, jsonify
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from app.ordersync.config import load_config
from app.ordersync.db import init_db, teardown_db_session
# Registers every table on Base.metadata before module code imports single models.
from app.ordersync.models import Base  # noqa: F401
from app.ordersync.routes import bp as routes_bp
from app.ordersync.modules.salesdrive_sync.admin import bp as salesdrive_sync_bp

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("orders", "orders_cache", "orders_history", "products", "sync_history")


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    root.setLevel(level)


def _check_production(config) -> None:
    """Fail fast on settings that only make sense in development."""
    if (config.get("ENV") or "").strip().lower() not in ("prod", "production"):
        return
    db_url = str(config.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def _dispose_engine_after_fork(app: Flask) -> None:
    # gunicorn --preload forks after create_app; children must not share pooled connections.
    if not hasattr(os, "register_at_fork"):
        return

    def _child() -> None:
        engine = app.extensions.get("sqlalchemy_engine")
        if engine is not None:
            engine.dispose()

    os.register_at_fork(after_in_child=_child)


def _missing_tables(app: Flask) -> list[str]:
    try:
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        return [t for t in REQUIRED_TABLES if not insp.has_table(t)]
    except SQLAlchemyError:
        logger.exception("Schema health check failed")
        return []


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    _configure_logging(app.config["LOG_LEVEL"])
    _check_production(app.config)

    init_db(app)
    _dispose_engine_after_fork(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(salesdrive_sync_bp, url_prefix="/api")
    app.teardown_appcontext(teardown_db_session)

    missing = _missing_tables(app)
    app.config["_schema_health_missing"] = missing
    if missing:
        logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"ok": False, "error": e.description}), e.code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        logger.exception("Unhandled 500")
        return jsonify({"ok": False, "error": "Internal server error"}), 500

    logger.info("create_app() complete; env=%s", app.config["ENV"])
    return app
