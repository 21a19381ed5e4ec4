"""Dosing pipeline constants.

Pump- and vendor-specific values (delivery increments, preset curve
parameters) are supplied by callers; the values here are defaults.
"""

from datetime import timedelta
from typing import Final

# IOB sample spacing. Matches the 5-minute CGM reading interval so IOB
# and glucose timelines line up sample for sample.
DEFAULT_IOB_DELTA: Final[timedelta] = timedelta(minutes=5)

# A dose no longer than this multiple of the sample spacing is treated as
# an instantaneous bolus instead of being integrated as continuous delivery.
BOLUS_DURATION_TOLERANCE: Final[float] = 1.05

# Trailing scheduled-basal fill is only assumed while the pump has been
# reconciled within this window. 15 min = 3 missed 5-minute pump polls.
DEFAULT_RECONCILIATION_FRESHNESS: Final[timedelta] = timedelta(minutes=15)

# Prefix of sync identifiers for entries synthesized from the basal schedule.
BASAL_SCHEDULE_SYNC_PREFIX: Final[str] = "BasalRateSchedule"

# Float tolerance when rounding delivery down to pump increments.
DELIVERY_INCREMENT_EPSILON: Final[float] = 1e-9

SECONDS_PER_HOUR: Final[float] = 3600.0

# Largest plausible reservoir drop between readings, per minute. A 10 U
# bolus delivers in about 2 minutes; 30 U/hr basal adds 0.5 U/min.
MAXIMUM_RESERVOIR_DROP_PER_MINUTE: Final[float] = 6.5

# Reservoir readings further apart than this (or reading 0 U) are unreliable.
RESERVOIR_CONTINUITY_INTERVAL: Final[timedelta] = timedelta(minutes=30)

# A reading this much above its predecessor marks a rewind and prime.
RESERVOIR_RISE_TOLERANCE: Final[float] = 1.0
