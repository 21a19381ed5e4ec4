"""Ledger services: the generic ledger, its exporter and the five stores."""

from insulin_ledger.services.carb_store import CarbStore
from insulin_ledger.services.critical_event_log import (
    CriticalEventLogCancelledError,
    CriticalEventLogError,
    CriticalEventLogExporter,
    ExportProgress,
)
from insulin_ledger.services.device_log_store import DeviceLogStore
from insulin_ledger.services.dose_store import DoseStore
from insulin_ledger.services.glucose_store import GlucoseStore
from insulin_ledger.services.ledger import (
    Ledger,
    LedgerError,
    PersistenceError,
    QueryFailure,
    QueryResult,
    QuerySuccess,
    StaleRecordError,
)
from insulin_ledger.services.status_store import StatusStore

__all__ = [
    "CarbStore",
    "CriticalEventLogCancelledError",
    "CriticalEventLogError",
    "CriticalEventLogExporter",
    "DeviceLogStore",
    "DoseStore",
    "ExportProgress",
    "GlucoseStore",
    "Ledger",
    "LedgerError",
    "PersistenceError",
    "QueryFailure",
    "QueryResult",
    "QuerySuccess",
    "StaleRecordError",
    "StatusStore",
]
