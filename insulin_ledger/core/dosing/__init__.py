"""Dose normalization pipeline and insulin activity.

Raw pump reports flow through three pure stages before they are stored
or integrated:

1. ``reconciled`` merges overlapping reports into one basal timeline
2. ``overlay_basal`` fills unreported gaps from the basal schedule
3. ``annotated`` splits entries at schedule changes and tags each piece
   with its scheduled rate

``insulin_on_board`` then turns the annotated timeline into IOB samples.
None of these functions perform I/O.
"""

from insulin_ledger.core.dosing.annotation import annotate_dose, annotated
from insulin_ledger.core.dosing.enums import (
    BasalRelativeDoseKind,
    DoseType,
    DoseUnit,
    InsulinType,
    PumpEventType,
)
from insulin_ledger.core.dosing.insulin_activity import (
    InsulinOnBoardTimeline,
    InsulinValue,
    dose_insulin_on_board,
    insulin_on_board,
    insulin_on_board_at,
    to_basal_relative_doses,
    total_delivery,
)
from insulin_ledger.core.dosing.insulin_models import (
    ExponentialInsulinModel,
    ExponentialInsulinModelPreset,
    InsulinModel,
    InsulinModelProvider,
    WalshInsulinModel,
)
from insulin_ledger.core.dosing.models import (
    BasalRelativeDose,
    DoseEntry,
    appended_union,
)
from insulin_ledger.core.dosing.overlay import (
    overlay_basal,
    scheduled_basal_sync_identifier,
)
from insulin_ledger.core.dosing.reconciliation import extended_open_suspend, reconciled
from insulin_ledger.core.dosing.reservoir import is_continuous, reservoir_dose_entries

__all__ = [
    "BasalRelativeDose",
    "BasalRelativeDoseKind",
    "DoseEntry",
    "DoseType",
    "DoseUnit",
    "ExponentialInsulinModel",
    "ExponentialInsulinModelPreset",
    "InsulinModel",
    "InsulinModelProvider",
    "InsulinOnBoardTimeline",
    "InsulinType",
    "InsulinValue",
    "PumpEventType",
    "WalshInsulinModel",
    "annotate_dose",
    "annotated",
    "appended_union",
    "dose_insulin_on_board",
    "extended_open_suspend",
    "insulin_on_board",
    "insulin_on_board_at",
    "is_continuous",
    "overlay_basal",
    "reconciled",
    "reservoir_dose_entries",
    "scheduled_basal_sync_identifier",
    "to_basal_relative_doses",
    "total_delivery",
]
