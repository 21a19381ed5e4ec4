"""Query anchor: the resumable cursor of incremental ledger reads."""

from collections.abc import Mapping
from typing import Any, Final, Self

from pydantic import BaseModel, ConfigDict, Field

MODIFICATION_COUNTER_KEY: Final[str] = "modificationCounter"


class QueryAnchor(BaseModel):
    """Position in a ledger's modification history.

    The default anchor (counter 0) reads the ledger from the beginning.
    """

    model_config = ConfigDict(frozen=True)

    modification_counter: int = Field(default=0, ge=0)

    @classmethod
    def from_raw_value(cls, raw_value: Mapping[str, Any]) -> Self | None:
        """Decode a persisted anchor.

        A missing counter decodes to the default anchor (full resync). A
        counter of the wrong type, or a negative one, is rejected and
        returns ``None`` instead of guessing.
        """
        if MODIFICATION_COUNTER_KEY not in raw_value:
            return cls()
        value = raw_value[MODIFICATION_COUNTER_KEY]
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return None
        return cls(modification_counter=value)

    @property
    def raw_value(self) -> dict[str, int]:
        return {MODIFICATION_COUNTER_KEY: self.modification_counter}
