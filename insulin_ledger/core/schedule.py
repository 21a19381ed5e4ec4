"""Time-of-day repeating schedules.

A ``DailyValueSchedule`` is defined by wall-clock offsets from local
midnight in a named time zone and can be expanded over any absolute
date range into contiguous ``AbsoluteScheduleValue`` segments.
"""

from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime, time, timedelta
from typing import Protocol, Self, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator

_ONE_DAY = timedelta(days=1)


class RepeatingScheduleValue(BaseModel):
    """A value that takes effect ``start_time`` after local midnight."""

    model_config = ConfigDict(frozen=True)

    start_time: timedelta
    value: float


class AbsoluteScheduleValue(BaseModel):
    """A schedule value pinned to an absolute interval."""

    model_config = ConfigDict(frozen=True)

    start_date: AwareDatetime
    end_date: AwareDatetime
    value: float

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date


class DailyValueSchedule(BaseModel):
    """A schedule that repeats every local day."""

    model_config = ConfigDict(frozen=True)

    items: tuple[RepeatingScheduleValue, ...] = Field(min_length=1)
    time_zone: str = "UTC"

    @model_validator(mode="after")
    def check_items(self) -> Self:
        """Items must start at midnight and strictly increase within one day."""
        if self.items[0].start_time != timedelta(0):
            msg = "the first schedule item must start at midnight"
            raise ValueError(msg)
        for previous, item in zip(self.items, self.items[1:]):
            if item.start_time <= previous.start_time:
                msg = "schedule item start times must be strictly increasing"
                raise ValueError(msg)
        if self.items[-1].start_time >= _ONE_DAY:
            msg = "schedule item start times must fall within one day"
            raise ValueError(msg)
        try:
            ZoneInfo(self.time_zone)
        except ZoneInfoNotFoundError as e:
            msg = f"unknown time zone: {self.time_zone}"
            raise ValueError(msg) from e
        return self

    @classmethod
    def from_pairs(
        cls, pairs: Iterable[tuple[timedelta, float]], time_zone: str = "UTC"
    ) -> Self:
        """Build a schedule from ``(offset, value)`` pairs."""
        items = tuple(
            RepeatingScheduleValue(start_time=offset, value=value)
            for offset, value in pairs
        )
        return cls(items=items, time_zone=time_zone)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    def _local_start(self, day: date, offset: timedelta) -> datetime:
        wall_clock = datetime.combine(day, time()) + offset
        return wall_clock.replace(tzinfo=self.tz).astimezone(UTC)

    def _segments_for_day(self, day: date) -> Iterable[AbsoluteScheduleValue]:
        starts = [self._local_start(day, item.start_time) for item in self.items]
        starts.append(self._local_start(day + _ONE_DAY, timedelta(0)))
        # Wall-clock offsets skipped by a DST jump must not run backwards
        for index in range(1, len(starts)):
            starts[index] = max(starts[index], starts[index - 1])
        for index, item in enumerate(self.items):
            if starts[index + 1] > starts[index]:
                yield AbsoluteScheduleValue(
                    start_date=starts[index],
                    end_date=starts[index + 1],
                    value=item.value,
                )

    def value_at(self, when: datetime) -> float:
        """Value in effect at ``when``."""
        return self.between(when, when)[0].value

    def between(self, start: datetime, end: datetime) -> list[AbsoluteScheduleValue]:
        """Contiguous segments covering ``[start, end]``, clipped to the range.

        A zero-length range yields a single zero-length segment carrying
        the value in effect at ``start``.
        """
        if end < start:
            msg = "end must not precede start"
            raise ValueError(msg)

        tz = self.tz
        first_day = start.astimezone(tz).date() - _ONE_DAY
        last_day = end.astimezone(tz).date() + _ONE_DAY

        segments: list[AbsoluteScheduleValue] = []
        day = first_day
        while day <= last_day:
            for segment in self._segments_for_day(day):
                if start == end:
                    if segment.start_date <= start < segment.end_date:
                        segments.append(
                            AbsoluteScheduleValue(
                                start_date=start, end_date=start, value=segment.value
                            )
                        )
                    continue
                if segment.end_date <= start or segment.start_date >= end:
                    continue
                segments.append(
                    AbsoluteScheduleValue(
                        start_date=max(segment.start_date, start),
                        end_date=min(segment.end_date, end),
                        value=segment.value,
                    )
                )
            day += _ONE_DAY
        return segments


class BasalRateSchedule(DailyValueSchedule):
    """Scheduled basal rates in U/hr."""

    @model_validator(mode="after")
    def check_rates(self) -> Self:
        if any(item.value < 0 for item in self.items):
            msg = "basal rates must not be negative"
            raise ValueError(msg)
        return self

    def total(self) -> float:
        """Total units delivered over one day at the scheduled rates."""
        total = 0.0
        for index, item in enumerate(self.items):
            if index + 1 < len(self.items):
                end = self.items[index + 1].start_time
            else:
                end = _ONE_DAY
            total += item.value * (end - item.start_time).total_seconds() / 3600
        return total


class _Interval(Protocol):
    start_date: datetime
    end_date: datetime


IntervalT = TypeVar("IntervalT", bound=_Interval)


def filter_date_range(
    items: Sequence[IntervalT],
    start: datetime | None,
    end: datetime | None,
) -> list[IntervalT]:
    """Items overlapping ``[start, end]``; ``None`` leaves a side open."""
    return [
        item
        for item in items
        if (start is None or item.end_date >= start)
        and (end is None or item.start_date <= end)
    ]
