# Database Models
from insulin_ledger.models.base import (
    Base,
    CachedRecordMixin,
    TimestampMixin,
    UploadState,
    UTCDateTime,
)
from insulin_ledger.models.carb import CarbEntryRecord
from insulin_ledger.models.device_log import DeviceLogEntryRecord, DeviceLogEntryType
from insulin_ledger.models.glucose import GlucoseSampleRecord
from insulin_ledger.models.insulin_delivery import InsulinDeliveryRecord
from insulin_ledger.models.pump_event import PumpEventRecord
from insulin_ledger.models.reservoir import ReservoirValueRecord
from insulin_ledger.models.status import StatusRecord

__all__ = [
    "Base",
    "CachedRecordMixin",
    "CarbEntryRecord",
    "DeviceLogEntryRecord",
    "DeviceLogEntryType",
    "GlucoseSampleRecord",
    "InsulinDeliveryRecord",
    "PumpEventRecord",
    "ReservoirValueRecord",
    "StatusRecord",
    "TimestampMixin",
    "UTCDateTime",
    "UploadState",
]
