"""Reservoir reading input schema."""

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field


class NewReservoirValue(BaseModel):
    """A reservoir level read from the pump."""

    model_config = ConfigDict(frozen=True)

    date: AwareDatetime
    unit_volume: float = Field(ge=0, description="Insulin remaining, in units.")
