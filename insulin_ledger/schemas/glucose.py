"""Glucose sample input schema."""

from typing import Self

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator

from insulin_ledger.core.quantity import Quantity, QuantityUnit

_GLUCOSE_UNITS = (QuantityUnit.milligrams_per_deciliter, QuantityUnit.millimoles_per_liter)


class NewGlucoseSample(BaseModel):
    """A glucose reading from a CGM, meter or manual entry."""

    model_config = ConfigDict(frozen=True)

    date: AwareDatetime
    quantity: Quantity
    is_display_only: bool = False
    was_user_entered: bool = False
    sync_identifier: str | None = None
    sync_version: int = Field(default=1, ge=1)
    device: str | None = None

    @model_validator(mode="after")
    def check_unit(self) -> Self:
        """Only glucose concentrations are accepted."""
        if self.quantity.unit not in _GLUCOSE_UNITS:
            msg = f"glucose must be in mg/dL or mmol/L, got {self.quantity.unit}"
            raise ValueError(msg)
        return self

    @property
    def value_mgdl(self) -> float:
        return self.quantity.value_in(QuantityUnit.milligrams_per_deciliter)
