"""Tests for the dose store: pump event ingestion, normalization and IOB."""

from datetime import UTC, datetime, timedelta

import pytest

from insulin_ledger.core.dosing import (
    DoseEntry,
    DoseType,
    DoseUnit,
    InsulinModelProvider,
    PumpEventType,
    WalshInsulinModel,
    scheduled_basal_sync_identifier,
)
from insulin_ledger.core.schedule import BasalRateSchedule
from insulin_ledger.models.insulin_delivery import InsulinDeliveryRecord
from insulin_ledger.schemas.pump_event import NewPumpEvent
from insulin_ledger.schemas.reservoir import NewReservoirValue
from insulin_ledger.services.dose_store import DoseStore
from insulin_ledger.services.ledger import QuerySuccess

T0 = datetime(2025, 1, 15, 10, 0, tzinfo=UTC)
WALSH_4H = WalshInsulinModel(action_duration=timedelta(hours=4))


def _at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


def _dose(
    dose_type: DoseType, start: float, end: float | None = None, value: float = 0.0, **extra
) -> DoseEntry:
    if dose_type in (DoseType.bolus, DoseType.resume):
        unit = DoseUnit.units
    else:
        unit = DoseUnit.units_per_hour
    return DoseEntry(
        type=dose_type,
        start_date=_at(start),
        end_date=_at(start if end is None else end),
        value=value,
        unit=unit,
        **extra,
    )


def _event(raw: bytes, dose: DoseEntry, *, is_mutable: bool = False) -> NewPumpEvent:
    return NewPumpEvent(
        date=dose.start_date,
        dose=dose,
        is_mutable=is_mutable,
        raw=raw,
        title=f"{dose.type} event",
        type=PumpEventType(dose.type),
    )


def _first_read() -> list[NewPumpEvent]:
    return [
        _event(b"\x01", _dose(DoseType.temp_basal, 0, 30, 2.0)),
        _event(b"\x02", _dose(DoseType.bolus, 5, value=2.0)),
        _event(b"\x03", _dose(DoseType.suspend, 40)),
        _event(b"\x04", _dose(DoseType.resume, 50)),
    ]


@pytest.fixture
async def store(session_maker) -> DoseStore:
    store = DoseStore(
        session_maker,
        basal_schedule=BasalRateSchedule.from_pairs([(timedelta(0), 1.0)]),
        insulin_model_provider=InsulinModelProvider(default_model=WALSH_4H),
        clock=lambda: _at(60),
    )
    await store.open()
    return store


# ── Pump event ingestion ──


class TestAddPumpEvents:
    """A pump history read is stored and normalized into doses."""

    async def test_events_are_stored(self, store):
        inserted = await store.add_pump_events(_first_read(), _at(60))

        assert len(inserted) == 4
        assert store.last_pump_events_reconciliation == _at(60)
        records = await store.pump_event_ledger.fetch()
        assert [r.raw for r in records] == [b"\x01", b"\x02", b"\x03", b"\x04"]
        assert records[0].sync_identifier == "01"

    async def test_finalized_doses_are_stored(self, store):
        await store.add_pump_events(_first_read(), _at(60))

        records = await store.dose_ledger.fetch()

        assert [(r.dose_type, r.start_date, r.end_date) for r in records] == [
            (DoseType.temp_basal, _at(0), _at(30)),
            (DoseType.bolus, _at(5), _at(5)),
            (DoseType.basal, _at(30), _at(40)),
            (DoseType.suspend, _at(40), _at(50)),
        ]
        temp, bolus, scheduled, suspend = records
        assert temp.delivered_units == pytest.approx(1.0)
        assert temp.scheduled_basal_rate == 1.0
        assert bolus.delivered_units == 2.0
        assert scheduled.sync_identifier == scheduled_basal_sync_identifier(_at(30), _at(40))
        assert scheduled.automatic is True
        assert suspend.delivered_units == 0.0
        assert all(r.from_pump_events for r in records)

    async def test_normalized_entries_include_live_edge(self, store):
        await store.add_pump_events(_first_read(), _at(60))

        entries = await store.get_normalized_dose_entries(T0)

        assert len(entries) == 5
        live = entries[-1]
        assert live.type == DoseType.basal
        assert live.is_mutable is True
        assert (live.start_date, live.end_date) == (_at(50), _at(60))

    async def test_same_read_twice_is_a_noop(self, store):
        await store.add_pump_events(_first_read(), _at(60))
        pump_counter = store.pump_event_ledger.modification_counter
        dose_counter = store.dose_ledger.modification_counter

        inserted = await store.add_pump_events(_first_read(), _at(60))

        assert inserted == []
        assert store.pump_event_ledger.modification_counter == pump_counter
        assert store.dose_ledger.modification_counter == dose_counter

    async def test_duplicates_within_a_read_collapse(self, store):
        events = _first_read()
        inserted = await store.add_pump_events([*events, events[1]], _at(60))

        assert len(inserted) == 4

    async def test_follow_up_read_extends_timeline(self, store):
        await store.add_pump_events(_first_read(), _at(60))

        await store.add_pump_events(
            [_event(b"\x05", _dose(DoseType.temp_basal, 60, 90, 1.5))], _at(90)
        )

        records = await store.dose_ledger.fetch()
        assert len(records) == 6
        assert records[4].sync_identifier == scheduled_basal_sync_identifier(_at(50), _at(60))
        assert records[5].delivered_units == pytest.approx(0.75)

        history = await store.execute_dose_query(None, 100)
        assert isinstance(history, QuerySuccess)
        assert all(r.is_active for r in history.records)

    async def test_mutable_event_is_replaced(self, store):
        running = _event(
            b"\x10",
            _dose(DoseType.temp_basal, 0, 30, 2.0, is_mutable=True),
            is_mutable=True,
        )
        await store.add_pump_events([running], _at(10))

        assert await store.dose_ledger.fetch() == []
        live = await store.get_normalized_dose_entries(T0)
        assert len(live) == 1
        assert live[0].is_mutable is True

        finished = _event(b"\x11", _dose(DoseType.temp_basal, 0, 20, 2.0))
        await store.add_pump_events([finished], _at(20))

        events = await store.pump_event_ledger.fetch()
        assert [e.raw for e in events] == [b"\x11"]
        doses = await store.dose_ledger.fetch()
        assert len(doses) == 1
        assert doses[0].end_date == _at(20)
        assert doses[0].delivered_units == pytest.approx(2 / 3)

    async def test_pump_event_doses(self, store):
        await store.add_pump_events(_first_read(), _at(60))

        doses = await store.get_pump_event_doses(_at(35))

        assert [d.type for d in doses] == [DoseType.suspend, DoseType.resume]
        assert doses[0].description == "suspend event"

    async def test_purge_pump_events(self, store):
        await store.add_pump_events(_first_read(), _at(60))

        removed = await store.purge_pump_events(before=_at(45))

        assert removed == 3
        query = await store.execute_pump_query(None, 100)
        assert [r.raw for r in query.records] == [b"\x04"]


# ── Normalization without a schedule ──


class TestNormalizeWithoutSchedule:
    async def test_reconcile_only(self, session_maker):
        store = DoseStore(session_maker, clock=lambda: _at(60))
        doses = [_dose(DoseType.temp_basal, 0, 30, 1.9)]

        result = store.normalize(doses)

        assert len(result) == 1
        assert result[0].delivered_units == pytest.approx(0.95)
        assert result[0].scheduled_basal_rate is None


# ── Manual doses ──


class TestManualDoses:
    async def test_add_and_delete(self, store):
        manual = _dose(DoseType.bolus, 30, value=3.0, sync_identifier="manual-1")

        first = await store.add_doses([manual])
        second = await store.add_doses([manual])

        assert len(first) == 1
        assert first[0].from_pump_events is False
        assert first[0].delivered_units == 3.0
        assert second == []

        await store.delete_dose(first[0])
        assert await store.dose_ledger.fetch() == []

    async def test_manual_doses_survive_pump_sync(self, store):
        await store.add_doses([_dose(DoseType.bolus, 30, value=3.0, sync_identifier="manual-1")])

        await store.add_pump_events(_first_read(), _at(60))

        records = await store.dose_ledger.fetch(
            InsulinDeliveryRecord.sync_identifier == "manual-1"
        )
        assert len(records) == 1
        entries = await store.get_normalized_dose_entries(T0)
        assert "manual-1" in {e.sync_identifier for e in entries}


# ── Insulin on board ──


class TestInsulinOnBoard:
    async def test_iob_after_bolus(self, store):
        await store.add_pump_events(_first_read(), _at(60))

        iob = await store.insulin_on_board(_at(5))

        # the full bolus plus part of the above-schedule temp basal
        assert 2.0 < iob < 2.5

    async def test_iob_decays_to_zero(self, store):
        await store.add_pump_events(_first_read(), _at(60))

        assert await store.insulin_on_board(_at(300)) == pytest.approx(0.0)

    async def test_iob_values(self, store):
        await store.add_pump_events(_first_read(), _at(60))

        values = await store.get_insulin_on_board_values(T0, _at(60))

        assert len(values) == 13
        assert values[0].start_date == T0
        assert max(v.value for v in values) > 2.0

    async def test_total_units_delivered(self, store):
        await store.add_pump_events(_first_read(), _at(60))

        total = await store.get_total_units_delivered(T0)

        # temp basal 1.0 + bolus 2.0 + two 10 minute scheduled fills
        assert total == pytest.approx(1.0 + 2.0 + 1 / 6 + 1 / 6)


# ── Long suspends ──


class TestOpenSuspend:
    """A suspend with no resume keeps covering the timeline."""

    @pytest.fixture
    async def suspended_store(self, session_maker) -> DoseStore:
        store = DoseStore(
            session_maker,
            basal_schedule=BasalRateSchedule.from_pairs([(timedelta(0), 1.0)]),
            insulin_model_provider=InsulinModelProvider(default_model=WALSH_4H),
            clock=lambda: _at(420),
        )
        await store.open()
        # suspended at T0, still suspended 7 hours later
        await store.add_pump_events(
            [
                _event(b"\x30", _dose(DoseType.suspend, 0)),
                _event(b"\x31", _dose(DoseType.bolus, 390, value=1.0)),
            ],
            _at(420),
        )
        return store

    async def test_suspend_older_than_window_is_kept(self, suspended_store):
        entries = await suspended_store.get_normalized_dose_entries(_at(300))

        suspends = [e for e in entries if e.type == DoseType.suspend]
        assert len(suspends) == 1
        assert (suspends[0].start_date, suspends[0].end_date) == (T0, _at(420))
        assert suspends[0].is_mutable is True
        assert not any(e.type == DoseType.basal for e in entries)

    async def test_suspend_lowers_insulin_on_board(self, suspended_store):
        entries = await suspended_store.get_normalized_dose_entries(_at(300))
        suspend = next(e for e in entries if e.type == DoseType.suspend)
        assert suspend.scheduled_basal_rate == 1.0

        # before the bolus only the missed scheduled basal counts
        assert await suspended_store.insulin_on_board(_at(385)) < 0

    async def test_resume_finalizes_suspend(self, suspended_store):
        await suspended_store.add_pump_events(
            [_event(b"\x32", _dose(DoseType.resume, 400))], _at(420)
        )

        records = await suspended_store.dose_ledger.fetch(
            InsulinDeliveryRecord.dose_type == DoseType.suspend
        )
        assert len(records) == 1
        assert (records[0].start_date, records[0].end_date) == (T0, _at(400))
        assert records[0].delivered_units == 0.0


# ── Deletion ──


class TestDeletion:
    async def test_delete_pump_event_removes_its_doses(self, store):
        await store.add_pump_events(_first_read(), _at(60))
        bolus_event = next(
            e for e in await store.pump_event_ledger.fetch() if e.raw == b"\x02"
        )

        await store.delete_pump_event(bolus_event)

        events = await store.pump_event_ledger.fetch()
        assert [e.raw for e in events] == [b"\x01", b"\x03", b"\x04"]
        doses = await store.dose_ledger.fetch()
        assert DoseType.bolus not in {d.dose_type for d in doses}
        assert len(doses) == 3

    async def test_delete_all_pump_events_keeps_doses(self, store):
        await store.add_pump_events(_first_read(), _at(60))

        count = await store.delete_all_pump_events()

        assert count == 4
        assert await store.pump_event_ledger.fetch() == []
        assert store.last_pump_events_reconciliation is None
        assert len(await store.dose_ledger.fetch()) == 4
        history = await store.execute_pump_query(None, 100)
        assert all(not r.is_active for r in history.records)

    async def test_reset_pump_data(self, store):
        await store.add_pump_events(_first_read(), _at(60))
        await store.add_reservoir_value(NewReservoirValue(date=_at(0), unit_volume=100.0))

        await store.reset_pump_data()

        assert await store.pump_event_ledger.fetch() == []
        assert await store.get_reservoir_values(T0) == []

    async def test_get_manually_entered_doses(self, store):
        await store.add_doses(
            [
                _dose(DoseType.bolus, 30, value=3.0, sync_identifier="manual-1"),
                _dose(DoseType.bolus, 45, value=1.0, sync_identifier="manual-2"),
            ]
        )
        await store.add_pump_events(_first_read(), _at(60))

        doses = await store.get_manually_entered_doses(T0)
        recent = await store.get_manually_entered_doses(_at(40))

        assert [d.sync_identifier for d in doses] == ["manual-2", "manual-1"]
        assert [d.sync_identifier for d in recent] == ["manual-2"]

    async def test_delete_all_manually_entered_doses(self, store):
        await store.add_doses([_dose(DoseType.bolus, 30, value=3.0, sync_identifier="manual-1")])
        await store.add_pump_events(_first_read(), _at(60))

        assert await store.delete_all_manually_entered_doses() == 1

        assert await store.get_manually_entered_doses(T0) == []
        remaining = await store.dose_ledger.fetch()
        assert len(remaining) == 4
        assert all(r.from_pump_events for r in remaining)


# ── Reservoir ──


def _reading(minutes: float, volume: float) -> NewReservoirValue:
    return NewReservoirValue(date=_at(minutes), unit_volume=volume)


class TestReservoir:
    async def test_add_and_get(self, store):
        first = await store.add_reservoir_value(_reading(0, 100.0))
        second = await store.add_reservoir_value(_reading(5, 99.5))

        assert first.previous_value is None
        assert second.previous_value.uuid == first.value.uuid
        values = await store.get_reservoir_values(T0)
        assert [v.unit_volume for v in values] == [99.5, 100.0]
        assert len(await store.get_reservoir_values(T0, limit=1)) == 1

    async def test_duplicate_is_ignored(self, store):
        await store.add_reservoir_value(_reading(0, 100.0))

        result = await store.add_reservoir_value(_reading(0, 100.0))

        assert result.value is None
        assert result.previous_value.unit_volume == 100.0
        assert len(await store.get_reservoir_values(T0)) == 1

    async def test_out_of_order_reading_resets(self, store):
        await store.add_reservoir_value(_reading(0, 100.0))
        await store.add_reservoir_value(_reading(10, 99.0))

        result = await store.add_reservoir_value(_reading(5, 99.5))

        assert result.previous_value is None
        values = await store.get_reservoir_values(T0)
        assert [v.unit_volume for v in values] == [99.5]

    async def test_conflicting_reading_resets(self, store):
        await store.add_reservoir_value(_reading(0, 100.0))

        await store.add_reservoir_value(_reading(0, 98.0))

        values = await store.get_reservoir_values(T0)
        assert [v.unit_volume for v in values] == [98.0]

    async def test_delete(self, store):
        first = await store.add_reservoir_value(_reading(0, 100.0))
        await store.add_reservoir_value(_reading(5, 99.5))
        await store.add_reservoir_value(_reading(10, 99.0))

        await store.delete_reservoir_value(first.value)
        assert [v.unit_volume for v in await store.get_reservoir_values(T0)] == [99.0, 99.5]

        assert await store.delete_all_reservoir_values() == 2
        assert await store.get_reservoir_values(T0) == []

    async def test_continuous_readings(self, store):
        # every 30 minutes for the last 9 hours
        for index, minutes in enumerate(range(-480, 61, 30)):
            result = await store.add_reservoir_value(_reading(minutes, 150.0 - index * 0.5))

        assert result.are_values_continuous is True

    async def test_short_history_is_not_continuous(self, store):
        await store.add_reservoir_value(_reading(0, 100.0))
        result = await store.add_reservoir_value(_reading(60, 99.0))

        assert result.are_values_continuous is False

    async def test_prime_breaks_continuity(self, store):
        for index, minutes in enumerate(range(-480, 61, 30)):
            await store.add_reservoir_value(_reading(minutes, 150.0 - index * 0.5))
        prime = NewPumpEvent(
            date=_at(20), raw=b"\x40", title="prime event", type=PumpEventType.prime
        )

        await store.add_pump_events([prime], _at(60))

        assert await store.are_reservoir_values_continuous() is False

    async def test_normalized_reservoir_doses(self, store):
        await store.add_reservoir_value(_reading(0, 100.0))
        await store.add_reservoir_value(_reading(30, 99.0))
        await store.add_reservoir_value(_reading(60, 180.0))

        doses = await store.get_normalized_reservoir_dose_entries(T0)

        assert len(doses) == 1
        dose = doses[0]
        assert dose.type == DoseType.temp_basal
        assert (dose.start_date, dose.end_date) == (_at(0), _at(30))
        assert dose.delivered_units == pytest.approx(1.0)
        assert dose.scheduled_basal_rate == 1.0
