"""Carbohydrate entry input schema."""

from datetime import timedelta

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

# Upper bound accepted for a single entry
MAX_CARB_ENTRY_GRAMS = 250


class NewCarbEntry(BaseModel):
    """A carbohydrate entry to add or to replace an existing one with."""

    model_config = ConfigDict(frozen=True)

    date: AwareDatetime
    grams: float = Field(
        ge=0,
        le=MAX_CARB_ENTRY_GRAMS,
        description=f"Carbohydrates in grams. Range: 0-{MAX_CARB_ENTRY_GRAMS}.",
    )
    food_type: str | None = Field(default=None, max_length=255)
    absorption_time: timedelta | None = None
    sync_identifier: str | None = None
    sync_version: int = Field(default=1, ge=1)
