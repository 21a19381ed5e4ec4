"""Unit-tagged physical quantities."""

from enum import StrEnum, auto
from typing import Final, Self

from pydantic import BaseModel, ConfigDict

# mg/dL per mmol/L for glucose (molar mass of glucose / 10)
MILLIGRAMS_PER_DECILITER_PER_MILLIMOLE: Final[float] = 18.01559


class QuantityUnit(StrEnum):
    """Units understood by the ledger."""

    units = auto()
    units_per_hour = auto()
    milligrams_per_deciliter = auto()
    millimoles_per_liter = auto()
    grams = auto()


_GLUCOSE_UNITS = frozenset(
    {QuantityUnit.milligrams_per_deciliter, QuantityUnit.millimoles_per_liter}
)


class Quantity(BaseModel):
    """A value tagged with its unit."""

    model_config = ConfigDict(frozen=True)

    value: float
    unit: QuantityUnit

    def to(self, unit: QuantityUnit) -> Self:
        """Convert to ``unit``.

        Raises:
            ValueError: If the units measure different things.
        """
        if unit == self.unit:
            return self
        if self.unit in _GLUCOSE_UNITS and unit in _GLUCOSE_UNITS:
            if unit == QuantityUnit.millimoles_per_liter:
                value = self.value / MILLIGRAMS_PER_DECILITER_PER_MILLIMOLE
            else:
                value = self.value * MILLIGRAMS_PER_DECILITER_PER_MILLIMOLE
            return type(self)(value=value, unit=unit)
        msg = f"Cannot convert {self.unit} to {unit}"
        raise ValueError(msg)

    def value_in(self, unit: QuantityUnit) -> float:
        """Shorthand for ``self.to(unit).value``."""
        return self.to(unit).value

    def __str__(self) -> str:
        return f"{self.value:g} {self.unit}"
