"""Tests for the basal overlay and schedule-boundary annotation stages."""

from datetime import UTC, datetime, timedelta

import pytest

from insulin_ledger.core.dosing import (
    DoseEntry,
    DoseType,
    DoseUnit,
    annotate_dose,
    annotated,
    overlay_basal,
    reconciled,
    scheduled_basal_sync_identifier,
)
from insulin_ledger.core.schedule import BasalRateSchedule

T0 = datetime(2025, 1, 15, 10, 0, tzinfo=UTC)


def _at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


def _schedule() -> BasalRateSchedule:
    # 1.0 U/hr until 11:00 UTC, then 1.5 U/hr
    return BasalRateSchedule.from_pairs(
        [(timedelta(0), 1.0), (timedelta(hours=11), 1.5)]
    )


def _timeline(end_minutes: float = 120):
    return _schedule().between(T0, _at(end_minutes))


def _make_dose(**overrides) -> DoseEntry:
    defaults = {
        "type": DoseType.temp_basal,
        "start_date": _at(30),
        "end_date": _at(90),
        "value": 2.0,
        "unit": DoseUnit.units_per_hour,
        "delivered_units": 2.0,
        "sync_identifier": "temp-1",
    }
    defaults.update(overrides)
    return DoseEntry(**defaults)


# ── Overlay ──


class TestOverlayBasal:
    """Synthesized scheduled basal fills the unreported parts of the timeline."""

    def test_fills_leading_and_trailing_gaps(self):
        entries = overlay_basal([_make_dose()], _timeline(), _at(120), _at(120))

        assert [(e.start_date, e.end_date, e.type) for e in entries] == [
            (_at(0), _at(30), DoseType.basal),
            (_at(30), _at(90), DoseType.temp_basal),
            (_at(90), _at(120), DoseType.basal),
        ]
        leading, _, trailing = entries
        assert leading.value == 1.0
        assert leading.scheduled_basal_rate == 1.0
        assert leading.automatic is True
        assert leading.is_mutable is False
        assert trailing.value == 1.5
        assert trailing.is_mutable is True

    def test_finalized_fills_have_delivered_units(self):
        raw = [
            _make_dose(start_date=_at(0), end_date=_at(30), delivered_units=None),
            _make_dose(
                start_date=_at(60),
                end_date=_at(90),
                delivered_units=None,
                sync_identifier="temp-2",
            ),
        ]
        flat = BasalRateSchedule.from_pairs([(timedelta(0), 1.0)]).between(T0, _at(120))

        entries = overlay_basal(reconciled(raw), flat, _at(120), _at(120))

        finalized = [e for e in entries if not e.is_mutable]
        assert all(e.delivered_units is not None for e in finalized)
        gap = next(e for e in entries if e.start_date == _at(30))
        assert gap.is_mutable is False
        assert gap.delivered_units == pytest.approx(0.5)
        trailing = entries[-1]
        assert (trailing.start_date, trailing.end_date) == (_at(90), _at(120))
        assert trailing.is_mutable is True
        assert trailing.delivered_units is None

    def test_synthetic_sync_identifier(self):
        entries = overlay_basal([_make_dose()], _timeline(), _at(120), _at(120))

        assert entries[0].sync_identifier == scheduled_basal_sync_identifier(_at(0), _at(30))
        assert entries[0].sync_identifier == (
            "BasalRateSchedule 2025-01-15T10:00:00Z 2025-01-15T10:30:00Z"
        )

    def test_trailing_fill_splits_at_schedule_change(self):
        dose = _make_dose(start_date=_at(0), end_date=_at(30))
        entries = overlay_basal([dose], _timeline(), _at(120), _at(30), freshness_window=None)

        assert [(e.start_date, e.end_date, e.value) for e in entries[1:]] == [
            (_at(30), _at(60), 1.0),
            (_at(60), _at(120), 1.5),
        ]

    def test_trailing_fill_bounded_by_freshness(self):
        dose = _make_dose(start_date=_at(0), end_date=_at(30))
        entries = overlay_basal([dose], _timeline(), _at(120), _at(30))

        assert len(entries) == 2
        assert entries[1].start_date == _at(30)
        assert entries[1].end_date == _at(45)
        assert entries[1].is_mutable is True

    def test_stale_reconciliation_leaves_no_trailing_fill(self):
        dose = _make_dose(start_date=_at(0), end_date=_at(30))
        entries = overlay_basal([dose], _timeline(), _at(120), _at(0))

        assert entries == [dose]

    def test_small_gap_is_patched(self):
        first = _make_dose(start_date=_at(0), end_date=_at(30))
        second = _make_dose(start_date=_at(32), end_date=_at(60), sync_identifier="temp-2")

        entries = overlay_basal(
            [first, second],
            _timeline(),
            None,
            _at(60),
            gap_patch_interval=timedelta(minutes=5),
        )

        assert len(entries) == 2
        assert entries[1].start_date == _at(30)

    def test_active_suspend_suppresses_trailing_fill(self):
        suspend = DoseEntry(
            type=DoseType.suspend,
            start_date=_at(0),
            end_date=_at(0),
            value=0,
            unit=DoseUnit.units_per_hour,
        )
        entries = overlay_basal(reconciled([suspend]), _timeline(), _at(60), _at(60))

        assert len(entries) == 1
        assert entries[0].type == DoseType.suspend

    def test_boluses_pass_through(self):
        bolus = DoseEntry(
            type=DoseType.bolus,
            start_date=_at(40),
            end_date=_at(40),
            value=1.0,
            unit=DoseUnit.units,
        )
        entries = overlay_basal([_make_dose(), bolus], _timeline(), None, _at(120))

        assert bolus in entries

    def test_resume_rejected(self):
        resume = DoseEntry(
            type=DoseType.resume,
            start_date=_at(10),
            end_date=_at(10),
            value=0,
            unit=DoseUnit.units,
        )
        with pytest.raises(ValueError):
            overlay_basal([resume], _timeline(), None, _at(120))

    def test_empty_timeline_returns_doses(self):
        dose = _make_dose()
        assert overlay_basal([dose], [], _at(120), _at(120)) == [dose]


# ── Annotation ──


class TestAnnotateDose:
    """Entries straddling schedule changes are split and tagged."""

    def test_split_at_boundary(self):
        pieces = annotate_dose(_make_dose(), _timeline())

        assert [(p.start_date, p.end_date) for p in pieces] == [
            (_at(30), _at(60)),
            (_at(60), _at(90)),
        ]
        assert [p.scheduled_basal_rate for p in pieces] == [1.0, 1.5]
        assert [p.delivered_units for p in pieces] == pytest.approx([1.0, 1.0])
        assert [p.sync_identifier for p in pieces] == ["temp-1 1/2", "temp-1 2/2"]

    def test_rate_values_are_kept(self):
        pieces = annotate_dose(_make_dose(), _timeline())
        assert all(p.value == 2.0 for p in pieces)

    def test_absolute_values_are_apportioned(self):
        dose = _make_dose(value=1.0, unit=DoseUnit.units, start_date=_at(50), end_date=_at(80))
        pieces = annotate_dose(dose, _timeline())

        assert [p.value for p in pieces] == pytest.approx([1 / 3, 2 / 3])

    def test_apportioning_is_exact(self):
        schedule = BasalRateSchedule.from_pairs(
            [
                (timedelta(0), 1.0),
                (timedelta(hours=10, minutes=17), 1.1),
                (timedelta(hours=10, minutes=41), 0.9),
                (timedelta(hours=11, minutes=3), 1.3),
            ]
        )
        dose = _make_dose(start_date=_at(7), end_date=_at(113), delivered_units=0.7)

        pieces = annotate_dose(dose, schedule.between(T0, _at(120)))

        assert len(pieces) == 4
        assert sum(p.delivered_units for p in pieces) == pytest.approx(0.7, abs=1e-12)

    def test_entry_within_one_segment_is_unchanged(self):
        dose = _make_dose(start_date=_at(5), end_date=_at(25), scheduled_basal_rate=None)
        pieces = annotate_dose(dose, _timeline())

        assert len(pieces) == 1
        assert pieces[0].sync_identifier == "temp-1"
        assert pieces[0].scheduled_basal_rate == 1.0

    def test_bolus_is_not_split(self):
        bolus = _make_dose(
            type=DoseType.bolus,
            start_date=_at(50),
            end_date=_at(70),
            value=2.0,
            unit=DoseUnit.units,
        )
        assert annotate_dose(bolus, _timeline()) == [bolus]

    def test_annotated_pipeline(self):
        overlaid = overlay_basal([_make_dose()], _timeline(), _at(120), _at(120))
        result = annotated(overlaid, _timeline())

        assert len(result) == 4
        assert all(e.scheduled_basal_rate is not None for e in result)
        for previous, entry in zip(result, result[1:]):
            assert previous.end_date == entry.start_date
