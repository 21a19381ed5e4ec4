# Store input and cursor schemas
from insulin_ledger.schemas.carb import NewCarbEntry
from insulin_ledger.schemas.glucose import NewGlucoseSample
from insulin_ledger.schemas.pump_event import NewPumpEvent
from insulin_ledger.schemas.query_anchor import QueryAnchor
from insulin_ledger.schemas.reservoir import NewReservoirValue

__all__ = [
    "NewCarbEntry",
    "NewGlucoseSample",
    "NewPumpEvent",
    "NewReservoirValue",
    "QueryAnchor",
]
