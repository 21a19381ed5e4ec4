"""Pump event input schema."""

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from insulin_ledger.core.dosing.enums import PumpEventType
from insulin_ledger.core.dosing.models import DoseEntry


class NewPumpEvent(BaseModel):
    """An event read from pump history, as delivered by an integration."""

    model_config = ConfigDict(frozen=True)

    date: AwareDatetime
    dose: DoseEntry | None = None
    is_mutable: bool = Field(
        default=False,
        description="Still in progress; replaced by the next history read.",
    )
    raw: bytes = Field(
        min_length=1,
        description="Opaque pump payload. Together with date, identifies the event.",
    )
    title: str
    type: PumpEventType | None = None

    @property
    def dedupe_key(self) -> tuple[float, bytes]:
        return (self.date.timestamp(), self.raw)
