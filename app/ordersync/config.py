import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    salesdrive_api_url: str
    salesdrive_api_key: str
    salesdrive_form_key: str
    salesdrive_since_date: str

    sync_batch_size: int
    sync_concurrency: int
    sync_max_workers: int
    sync_wave_pause_seconds: float
    cache_wave_pause_seconds: float

    virtual_warehouse_id: str
    business_timezone: str
    history_retention_days: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _getfloat(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///ordersync.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        salesdrive_api_url=_getenv("SALESDRIVE_API_URL", ""),
        salesdrive_api_key=_getenv("SALESDRIVE_API_KEY", ""),
        salesdrive_form_key=_getenv("SALESDRIVE_FORM_KEY", ""),
        salesdrive_since_date=_getenv("SALESDRIVE_SINCE_DATE", ""),
        sync_batch_size=max(1, _getint("SYNC_BATCH_SIZE", 50)),
        sync_concurrency=max(1, _getint("SYNC_CONCURRENCY", 3)),
        sync_max_workers=max(1, _getint("SYNC_MAX_WORKERS", 4)),
        sync_wave_pause_seconds=max(0.0, _getfloat("SYNC_WAVE_PAUSE_SECONDS", 0.1)),
        cache_wave_pause_seconds=max(0.0, _getfloat("CACHE_WAVE_PAUSE_SECONDS", 0.5)),
        # Warehouse "2" is a virtual stock location; excluded from per-order stock snapshots.
        virtual_warehouse_id=_getenv("VIRTUAL_WAREHOUSE_ID", "2"),
        business_timezone=_getenv("BUSINESS_TIMEZONE", "Europe/Kyiv"),
        history_retention_days=max(1, _getint("HISTORY_RETENTION_DAYS", 30)),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "SALESDRIVE_API_URL": s.salesdrive_api_url,
        "SALESDRIVE_API_KEY": s.salesdrive_api_key,
        "SALESDRIVE_FORM_KEY": s.salesdrive_form_key,
        "SALESDRIVE_SINCE_DATE": s.salesdrive_since_date,
        "SYNC_BATCH_SIZE": s.sync_batch_size,
        "SYNC_CONCURRENCY": s.sync_concurrency,
        "SYNC_MAX_WORKERS": s.sync_max_workers,
        "SYNC_WAVE_PAUSE_SECONDS": s.sync_wave_pause_seconds,
        "CACHE_WAVE_PAUSE_SECONDS": s.cache_wave_pause_seconds,
        "VIRTUAL_WAREHOUSE_ID": s.virtual_warehouse_id,
        "BUSINESS_TIMEZONE": s.business_timezone,
        "HISTORY_RETENTION_DAYS": s.history_retention_days,
        # JSON API only; keep response key order as built
        "JSON_SORT_KEYS": False,
    }
