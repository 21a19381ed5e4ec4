"""Dosing enums.

``DoseType`` is a closed set: every consumer matches it exhaustively.
"""

from enum import StrEnum, auto


class DoseType(StrEnum):
    """Kinds of insulin delivery interval."""

    basal = auto()
    temp_basal = auto()
    bolus = auto()
    suspend = auto()
    resume = auto()

    @property
    def is_basal_like(self) -> bool:
        """Whether the dose occupies the basal timeline."""
        return self in (DoseType.basal, DoseType.temp_basal, DoseType.suspend)


class DoseUnit(StrEnum):
    """How a dose's ``value`` is expressed."""

    units = auto()
    units_per_hour = auto()


class InsulinType(StrEnum):
    """Insulin formulations with a known activity curve."""

    novolog = auto()
    humalog = auto()
    apidra = auto()
    fiasp = auto()
    lyumjev = auto()
    afrezza = auto()


class PumpEventType(StrEnum):
    """Event categories reported by pump integrations."""

    alarm = auto()
    alarm_clear = auto()
    basal = auto()
    bolus = auto()
    prime = auto()
    resume = auto()
    rewind = auto()
    suspend = auto()
    temp_basal = auto()
    replace_component = auto()


class BasalRelativeDoseKind(StrEnum):
    """Shape of a dose as seen by the activity integrator."""

    bolus = auto()
    basal = auto()
