"""Tests for the carbohydrate store."""

import io
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from insulin_ledger.schemas.carb import NewCarbEntry
from insulin_ledger.schemas.query_anchor import QueryAnchor
from insulin_ledger.services.carb_store import CarbStore
from insulin_ledger.services.critical_event_log import ExportProgress

T0 = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


def _make_entry(**overrides) -> NewCarbEntry:
    defaults = {
        "date": T0,
        "grams": 45.0,
        "food_type": "pasta",
        "absorption_time": timedelta(hours=3),
        "sync_identifier": "carb-1",
    }
    defaults.update(overrides)
    return NewCarbEntry(**defaults)


@pytest.fixture
async def store(session_maker) -> CarbStore:
    store = CarbStore(session_maker, clock=lambda: T0 + timedelta(hours=1))
    await store.open()
    return store


class TestNewCarbEntry:
    def test_grams_upper_bound(self):
        with pytest.raises(ValidationError):
            _make_entry(grams=251)

    def test_negative_grams_rejected(self):
        with pytest.raises(ValidationError):
            _make_entry(grams=-1)

    def test_naive_date_rejected(self):
        with pytest.raises(ValidationError):
            _make_entry(date=datetime(2025, 1, 15, 12, 0))


class TestCarbStore:
    async def test_add(self, store):
        record = await store.add_carb_entry(_make_entry())

        assert record.grams == 45.0
        assert record.absorption_time_seconds == 3 * 3600
        assert record.modification_counter == 1

    async def test_replace_supersedes(self, store):
        original = await store.add_carb_entry(_make_entry())

        replacement = await store.replace_carb_entry(original, _make_entry(grams=60.0))

        assert replacement.sync_version == 2
        assert replacement.sync_identifier == "carb-1"
        entries = await store.get_carb_entries()
        assert [e.grams for e in entries] == [60.0]

        result = await store.execute_carb_query(QueryAnchor(), 10)
        assert [(r.grams, r.is_active) for r in result.records] == [
            (45.0, False),
            (60.0, True),
        ]

    async def test_delete_tombstones(self, store):
        record = await store.add_carb_entry(_make_entry())

        await store.delete_carb_entry(record)

        assert await store.get_carb_entries() == []
        result = await store.execute_carb_query(QueryAnchor(modification_counter=1), 10)
        assert len(result.records) == 1
        assert result.records[0].is_active is False

    async def test_date_range(self, store):
        for hours in (0, 2, 4):
            await store.add_carb_entry(
                _make_entry(date=T0 + timedelta(hours=hours), sync_identifier=None)
            )

        entries = await store.get_carb_entries(T0 + timedelta(hours=1), T0 + timedelta(hours=4))

        assert [e.start_date for e in entries] == [
            T0 + timedelta(hours=2),
            T0 + timedelta(hours=4),
        ]

    async def test_purge_uses_cache_length(self, store):
        await store.add_carb_entry(_make_entry(date=T0 - timedelta(days=2)))
        await store.add_carb_entry(_make_entry(date=T0, sync_identifier="carb-2"))

        assert await store.purge_cached() == 1
        assert len(await store.get_carb_entries()) == 1

    async def test_export(self, store):
        await store.add_carb_entry(_make_entry())
        sink = io.BytesIO()

        written = await store.exporter.export(T0, None, sink, ExportProgress())

        assert written == 1
        assert b'"food_type":"pasta"' in sink.getvalue()
