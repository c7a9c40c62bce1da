from flask import Blueprint, current_app

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Liveness plus the schema check done at startup."""
    missing = current_app.config.get("_schema_health_missing") or []
    return {"ok": True, "schema_ok": not missing, "missing_tables": missing}


@bp.get("/healthz")
def healthz():
    # probe endpoint; no DB access
    return "ok", 200
