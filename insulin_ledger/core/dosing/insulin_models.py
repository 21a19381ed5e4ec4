"""Insulin activity models.

Each model answers one question: what fraction of a dose's glucose
lowering effect is still to come ``elapsed`` after it was delivered.
Every model returns 1 at delivery, 0 once its effect duration has
passed, and never increases in between.
"""

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum, auto
from functools import lru_cache
from typing import Final, Protocol

from insulin_ledger.core.dosing.enums import InsulinType

# Historical 4th-order fits of remaining insulin (fraction) against
# minutes since delivery, one per modeled action duration in hours.
# Coefficients are ordered m^4, m^3, m^2, m, constant.
WALSH_COEFFICIENTS: Final[Mapping[int, tuple[float, float, float, float, float]]] = {
    3: (-3.2030e-9, 1.354e-6, -1.759e-4, 9.255e-4, 0.99951),
    4: (-3.310e-10, 2.530e-7, -5.510e-5, -9.086e-4, 0.99950),
    5: (-2.950e-10, 2.320e-7, -5.550e-5, 4.490e-4, 0.99300),
    6: (-1.493e-10, 1.413e-7, -4.095e-5, 6.365e-4, 0.99700),
}
WALSH_MIN_HOURS: Final[int] = 3
WALSH_MAX_HOURS: Final[int] = 6

# Bisection steps used to locate the polynomials' stationary points
_ROOT_SCAN_STEP_MINUTES: Final[float] = 1.0
_ROOT_BISECTION_ITERATIONS: Final[int] = 60


class InsulinModel(Protocol):
    """Anything that can describe remaining insulin effect over time."""

    @property
    def effect_duration(self) -> timedelta: ...

    @property
    def delay(self) -> timedelta: ...

    def percent_effect_remaining(self, elapsed: timedelta) -> float: ...


def _clamp_fraction(value: float) -> float:
    return min(1.0, max(0.0, value))


def _polynomial(coefficients: tuple[float, ...], x: float) -> float:
    result = 0.0
    for coefficient in coefficients:
        result = result * x + coefficient
    return result


def _derivative(coefficients: tuple[float, ...]) -> tuple[float, ...]:
    degree = len(coefficients) - 1
    return tuple(c * (degree - i) for i, c in enumerate(coefficients[:-1]))


def _bisect(fn: Callable[[float], float], low: float, high: float) -> float:
    f_low = fn(low)
    for _ in range(_ROOT_BISECTION_ITERATIONS):
        mid = (low + high) / 2
        f_mid = fn(mid)
        if (f_mid > 0) == (f_low > 0):
            low, f_low = mid, f_mid
        else:
            high = mid
    return (low + high) / 2


@lru_cache(maxsize=None)
def _walsh_stationary_points(hours: int) -> tuple[float, float | None]:
    """Minutes of the first local maximum (0 if none) and the next local minimum.

    The fitted curves rise slightly before falling and can turn back up
    before their duration ends; flattening outside this window keeps the
    model non-increasing.
    """
    coefficients = WALSH_COEFFICIENTS[hours]
    slope = _derivative(coefficients)

    def fn(m: float) -> float:
        return _polynomial(slope, m)

    limit = hours * 60.0
    peak = 0.0
    trough: float | None = None
    m = 0.0
    searching_peak = fn(0.0) > 0
    while m < limit:
        nxt = min(m + _ROOT_SCAN_STEP_MINUTES, limit)
        if searching_peak and fn(m) > 0 >= fn(nxt):
            peak = _bisect(fn, m, nxt)
            searching_peak = False
        elif not searching_peak and fn(m) < 0 <= fn(nxt):
            trough = _bisect(fn, m, nxt)
            break
        m = nxt
    return peak, trough


def nearest_walsh_hours(action_duration: timedelta) -> int:
    """Modeled duration closest to ``action_duration``, in whole hours."""
    hours = action_duration.total_seconds() / 3600
    if hours < WALSH_MIN_HOURS:
        return WALSH_MIN_HOURS
    if hours > WALSH_MAX_HOURS:
        return WALSH_MAX_HOURS
    return int(math.floor(hours + 0.5))


@dataclass(frozen=True)
class WalshInsulinModel:
    """Single-parameter model built from the historical Walsh polynomials."""

    action_duration: timedelta

    def __post_init__(self) -> None:
        if self.action_duration <= timedelta(0):
            msg = "action_duration must be positive"
            raise ValueError(msg)

    @property
    def effect_duration(self) -> timedelta:
        return self.action_duration

    @property
    def delay(self) -> timedelta:
        return timedelta(0)

    def percent_effect_remaining(self, elapsed: timedelta) -> float:
        if elapsed <= timedelta(0):
            return 1.0
        if elapsed >= self.action_duration:
            return 0.0

        hours = nearest_walsh_hours(self.action_duration)
        minutes = (
            elapsed.total_seconds()
            / 60
            * (hours * 3600)
            / self.action_duration.total_seconds()
        )
        peak, trough = _walsh_stationary_points(hours)
        minutes = max(minutes, peak)
        if trough is not None:
            minutes = min(minutes, trough)
        return _clamp_fraction(_polynomial(WALSH_COEFFICIENTS[hours], minutes))


@dataclass(frozen=True)
class ExponentialInsulinModel:
    """Exponential activity curve with a configurable peak.

    Args:
        action_duration: Total time the dose has any effect, after ``delay``.
        peak_activity_time: Time of maximum activity after ``delay``.
            Must be under half of ``action_duration``.
        delay: Time before absorption begins.
    """

    action_duration: timedelta
    peak_activity_time: timedelta
    delay: timedelta = timedelta(0)
    _tau: float = field(init=False, repr=False, compare=False)
    _a: float = field(init=False, repr=False, compare=False)
    _s: float = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        duration = self.action_duration.total_seconds()
        peak = self.peak_activity_time.total_seconds()
        if not 0 < peak < duration / 2:
            msg = "peak_activity_time must be positive and under half of action_duration"
            raise ValueError(msg)
        if self.delay < timedelta(0):
            msg = "delay must not be negative"
            raise ValueError(msg)

        tau = peak * (1 - peak / duration) / (1 - 2 * peak / duration)
        a = 2 * tau / duration
        s = 1 / (1 - a + (1 + a) * math.exp(-duration / tau))
        object.__setattr__(self, "_tau", tau)
        object.__setattr__(self, "_a", a)
        object.__setattr__(self, "_s", s)

    @property
    def effect_duration(self) -> timedelta:
        return self.action_duration + self.delay

    def percent_effect_remaining(self, elapsed: timedelta) -> float:
        t = (elapsed - self.delay).total_seconds()
        duration = self.action_duration.total_seconds()
        if t <= 0:
            return 1.0
        if t >= duration:
            return 0.0

        tau, a, s = self._tau, self._a, self._s
        remaining = 1 - s * (1 - a) * (
            (t * t / (tau * duration * (1 - a)) - t / tau - 1) * math.exp(-t / tau) + 1
        )
        return _clamp_fraction(remaining)


class ExponentialInsulinModelPreset(StrEnum):
    """Published curve parameters for common formulations."""

    rapid_acting_adult = auto()
    rapid_acting_child = auto()
    fiasp = auto()
    lyumjev = auto()
    afrezza = auto()

    @property
    def model(self) -> ExponentialInsulinModel:
        action_minutes, peak_minutes = _PRESET_PARAMETERS[self]
        return ExponentialInsulinModel(
            action_duration=timedelta(minutes=action_minutes),
            peak_activity_time=timedelta(minutes=peak_minutes),
            delay=PRESET_DELAY,
        )


# (action duration, peak activity) in minutes
_PRESET_PARAMETERS: Final[Mapping[ExponentialInsulinModelPreset, tuple[int, int]]] = {
    ExponentialInsulinModelPreset.rapid_acting_adult: (360, 75),
    ExponentialInsulinModelPreset.rapid_acting_child: (360, 65),
    ExponentialInsulinModelPreset.fiasp: (360, 55),
    ExponentialInsulinModelPreset.lyumjev: (360, 55),
    ExponentialInsulinModelPreset.afrezza: (300, 29),
}

# Subcutaneous absorption lag applied by the presets
PRESET_DELAY: Final[timedelta] = timedelta(minutes=10)

_PRESET_FOR_INSULIN: Final[Mapping[InsulinType, ExponentialInsulinModelPreset]] = {
    InsulinType.novolog: ExponentialInsulinModelPreset.rapid_acting_adult,
    InsulinType.humalog: ExponentialInsulinModelPreset.rapid_acting_adult,
    InsulinType.apidra: ExponentialInsulinModelPreset.rapid_acting_adult,
    InsulinType.fiasp: ExponentialInsulinModelPreset.fiasp,
    InsulinType.lyumjev: ExponentialInsulinModelPreset.lyumjev,
    InsulinType.afrezza: ExponentialInsulinModelPreset.afrezza,
}


class InsulinModelProvider:
    """Chooses an activity model for a dose's insulin type."""

    def __init__(
        self,
        default_model: InsulinModel | None = None,
        overrides: Mapping[InsulinType, InsulinModel] | None = None,
    ):
        self.default_model: InsulinModel = (
            default_model or ExponentialInsulinModelPreset.rapid_acting_adult.model
        )
        self._overrides = dict(overrides or {})

    def model(self, insulin_type: InsulinType | None) -> InsulinModel:
        if insulin_type is None:
            return self.default_model
        if insulin_type in self._overrides:
            return self._overrides[insulin_type]
        return _PRESET_FOR_INSULIN[insulin_type].model

    @property
    def longest_effect_duration(self) -> timedelta:
        """Longest effect of any model this provider can return."""
        models = [self.default_model, *self._overrides.values()]
        models.extend(preset.model for preset in set(_PRESET_FOR_INSULIN.values()))
        return max(model.effect_duration for model in models)
