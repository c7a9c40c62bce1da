"""
Central constants for the order sync backend.
"""
from __future__ import annotations

# History source tag for rows written by the upstream reconciliation.
SOURCE_SALESDRIVE = "salesdrive"

# Internal status codes (mirror the upstream statusId values).
STATUS_TEXT = {
    "1": "Новий",
    "2": "Підтверджено",
    "3": "На відправку",
    "4": "Відправлено",
    "5": "Продаж",
    "6": "Відмова",
    "7": "Повернення",
    "8": "Видалений",
    "9": "На утриманні",
}
UNKNOWN_STATUS_TEXT = "Невідомий"

COMPLETED_STATUSES = frozenset({"5", "6", "7", "8"})
ACTIVE_STATUSES = frozenset({"1", "2", "3", "4", "9"})
DELETED_STATUS = "8"

# Rejected, returned and deleted orders are left out of listings unless asked for.
LIST_HIDDEN_STATUSES = frozenset({"6", "7", "8"})

STATUS_COUNT_KEYS = {
    "1": "new",
    "2": "confirmed",
    "3": "ready_to_ship",
    "4": "shipped",
    "5": "sold",
    "6": "rejected",
    "7": "returned",
    "8": "deleted",
    "9": "on_hold",
}

SYNC_STATUS_SUCCESS = "success"
SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_ERROR = "error"

# Changes to these fields append an OrdersHistory row.
HISTORY_TRACKED_FIELDS = frozenset({"status", "tracking_number", "quantity"})

# Days of order history kept by the scheduled prune.
DEFAULT_HISTORY_RETENTION_DAYS = 30

# "All time" cache validation looks back this many days.
FULL_VALIDATION_LOOKBACK_DAYS = 365

CACHE_VERSION = 1
