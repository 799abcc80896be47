"""
Tests for the collection path: validator, accumulator, batch writer.

Tests verify:
- NaN values and future timestamps are excluded and counted by rule.
- Readings map to fields through the meter's device and register.
- A missing mapping drops only that field.
- Re-supplying the same (meter, element, field, timestamp) replaces the value.
- N readings become ceil(N/100) INSERT statements.
- A failing batch is tried 3 times, waiting 1s then 2s, then abandoned.
- Abandoned readings stay queued; committed ones are purged.
- Malformed ids, out-of-range values and non-string units are rejected
  and discarded without blocking the rest of the queue.
- A value replaced while its batch is being inserted stays queued.
- The queue keeps at most max_pending entries, dropping the oldest.
"""

from __future__ import annotations

import math
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import event, func, select

from edgesync.common.models import DeviceRegister, Meter, PendingReading, RawReading
from edgesync.common.timestamp import utc_now
from edgesync.services.collection import (
    BatchWriter,
    ReadingAccumulator,
    ReadingCollector,
    ReadingValidator,
)
from edgesync.services.collection import collector as collector_module
from edgesync.services.collection.validator import (
    RULE_ELEMENT_ID,
    RULE_FIELD_NAME,
    RULE_METER_ID,
    RULE_TIMESTAMP_FUTURE,
    RULE_TIMESTAMP_INVALID,
    RULE_TIMESTAMP_TOO_OLD,
    RULE_UNIT_INVALID,
    RULE_VALUE_NOT_FINITE,
)
from edgesync.services.config.cache import CacheSnapshot
from edgesync.storage.schema import meter_reading

from factories import make_pending


def _reading(**overrides) -> PendingReading:
    values = {
        "entry_id": 1,
        "meter_id": 10,
        "element_id": 0,
        "timestamp": utc_now() - timedelta(minutes=5),
        "field_name": "energy",
        "value": 12.5,
        "unit": "kWh",
    }
    values.update(overrides)
    return PendingReading(**values)


def _snapshot() -> CacheSnapshot:
    return CacheSnapshot(
        version=1,
        meters={10: Meter(id=10, tenant_id=1, name="M10", device_id=100)},
        device_registers={
            (100, 1): DeviceRegister(100, 1, "active_energy", unit="kWh"),
            (100, 2): DeviceRegister(100, 2, "voltage", unit="V"),
        },
    )


class _FakeCache:
    def __init__(self, snapshot: CacheSnapshot):
        self.snapshot = snapshot


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class TestReadingValidator:

    def test_valid_reading_passes(self) -> None:
        assert ReadingValidator().check(_reading()) is None

    @pytest.mark.parametrize(
        ("overrides", "rule"),
        [
            ({"meter_id": None}, RULE_METER_ID),
            ({"timestamp": "not-a-date"}, RULE_TIMESTAMP_INVALID),
            ({"timestamp": None}, RULE_TIMESTAMP_INVALID),
            ({"value": math.nan}, RULE_VALUE_NOT_FINITE),
            ({"value": math.inf}, RULE_VALUE_NOT_FINITE),
            ({"value": "12.5"}, RULE_VALUE_NOT_FINITE),
            ({"value": True}, RULE_VALUE_NOT_FINITE),
            ({"field_name": ""}, RULE_FIELD_NAME),
            ({"field_name": 5}, RULE_FIELD_NAME),
            ({"meter_id": 2**70}, RULE_METER_ID),
            ({"element_id": None}, RULE_ELEMENT_ID),
            ({"element_id": "x"}, RULE_ELEMENT_ID),
            ({"value": 10**400}, RULE_VALUE_NOT_FINITE),
            ({"unit": ["kWh"]}, RULE_UNIT_INVALID),
        ],
    )
    def test_rules(self, overrides: dict, rule: str) -> None:
        failure = ReadingValidator().check(_reading(**overrides))
        assert failure is not None
        assert failure.rule == rule

    def test_future_timestamp_rejected(self) -> None:
        future = utc_now() + timedelta(hours=1)
        failure = ReadingValidator().check(_reading(timestamp=future))
        assert failure.rule == RULE_TIMESTAMP_FUTURE

    def test_older_than_a_year_rejected(self) -> None:
        old = utc_now() - timedelta(days=400)
        assert ReadingValidator().check(_reading(timestamp=old)).rule == RULE_TIMESTAMP_TOO_OLD
        assert ReadingValidator(max_age=None).check(_reading(timestamp=old)) is None

    def test_report_counts_by_rule(self) -> None:
        readings = [
            _reading(entry_id=1),
            _reading(entry_id=2, value=math.nan),
            _reading(entry_id=3, timestamp=utc_now() + timedelta(hours=1)),
            _reading(entry_id=4, value=math.nan),
        ]

        report = ReadingValidator().validate(readings)

        assert [r.entry_id for r in report.valid] == [1]
        assert report.counts_by_rule == {RULE_VALUE_NOT_FINITE: 2, RULE_TIMESTAMP_FUTURE: 1}


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------


class TestReadingAccumulator:

    def test_maps_register_to_field(self) -> None:
        acc = ReadingAccumulator()
        ts = utc_now() - timedelta(minutes=1)

        result = acc.add([RawReading(10, 0, 5.0, ts, register_id=2)], _snapshot())

        assert result.accepted == 1
        entry = acc.pending()[0]
        assert entry.field_name == "voltage"
        assert entry.unit == "V"

    def test_missing_mapping_drops_only_that_field(self) -> None:
        acc = ReadingAccumulator()
        ts = utc_now() - timedelta(minutes=1)

        result = acc.add(
            [
                RawReading(10, 0, 1.0, ts, register_id=1),
                RawReading(10, 0, 2.0, ts, register_id=99),
                RawReading(10, 0, 3.0, ts, register_id=2),
            ],
            _snapshot(),
        )

        assert result.accepted == 2
        assert result.dropped_unmapped == 1
        assert sorted(e.field_name for e in acc.pending()) == ["active_energy", "voltage"]

    def test_unknown_meter_is_unmapped(self) -> None:
        acc = ReadingAccumulator()
        result = acc.add([RawReading(77, 0, 1.0, utc_now(), register_id=1)], _snapshot())
        assert result.dropped_unmapped == 1
        assert len(acc) == 0

    def test_premapped_field_name_is_accepted(self) -> None:
        acc = ReadingAccumulator()
        acc.add([RawReading(10, 3, 1.0, utc_now(), field_name="power", unit="kW")], _snapshot())
        assert acc.pending()[0].field_name == "power"

    def test_same_key_replaces_value(self) -> None:
        acc = ReadingAccumulator()
        ts = "2026-01-01T00:00:00Z"

        acc.add([RawReading(10, 0, 1.0, ts, register_id=1)], _snapshot())
        result = acc.add([RawReading(10, 0, 9.0, ts, register_id=1)], _snapshot())

        assert result.replaced == 1
        assert len(acc) == 1
        assert acc.pending()[0].value == 9.0

    def test_acknowledge_removes_entries(self) -> None:
        acc = ReadingAccumulator()
        base = utc_now()
        acc.add(
            [RawReading(10, 0, float(i), base - timedelta(seconds=i), register_id=1) for i in range(3)],
            _snapshot(),
        )
        first = acc.pending()[0]

        assert acc.acknowledge([first]) == 1
        assert len(acc) == 2
        assert first.entry_id not in [e.entry_id for e in acc.pending()]

    def test_acknowledge_keeps_entry_replaced_after_copy(self) -> None:
        acc = ReadingAccumulator()
        ts = "2026-01-01T00:00:00Z"
        acc.add([RawReading(10, 0, 1.0, ts, register_id=1)], _snapshot())
        copy = acc.pending()[0]

        acc.add([RawReading(10, 0, 2.0, ts, register_id=1)], _snapshot())

        assert acc.acknowledge([copy]) == 0
        assert [e.value for e in acc.pending()] == [2.0]

    def test_pending_returns_copies(self) -> None:
        acc = ReadingAccumulator()
        acc.add([RawReading(10, 0, 1.0, utc_now(), register_id=1)], _snapshot())

        acc.pending()[0].value = 99.0

        assert acc.pending()[0].value == 1.0

    def test_max_pending_drops_oldest(self) -> None:
        acc = ReadingAccumulator(max_pending=3)
        base = utc_now() - timedelta(minutes=10)

        result = acc.add(
            [RawReading(10, 0, float(i), base + timedelta(seconds=i), register_id=1) for i in range(5)],
            _snapshot(),
        )

        assert result.accepted == 5
        assert result.dropped_overflow == 2
        assert acc.dropped_overflow_total == 2
        assert [e.value for e in acc.pending()] == [2.0, 3.0, 4.0]

    def test_unhashable_input_is_queued_for_rejection(self) -> None:
        acc = ReadingAccumulator()
        result = acc.add([RawReading(10, [0], 1.0, utc_now(), field_name="power")], _snapshot())
        assert result.accepted == 1
        assert acc.pending()[0].element_id == [0]

    def test_groups_by_meter_and_element(self) -> None:
        acc = ReadingAccumulator()
        ts = utc_now()
        acc.add(
            [
                RawReading(10, 0, 1.0, ts, register_id=1),
                RawReading(10, 0, 2.0, ts, register_id=2),
                RawReading(10, 1, 3.0, ts, register_id=1),
            ],
            _snapshot(),
        )
        groups = acc.by_meter_element()
        assert len(groups[(10, 0)]) == 2
        assert len(groups[(10, 1)]) == 1


# ---------------------------------------------------------------------------
# Batch writer
# ---------------------------------------------------------------------------


class TestBatchWriter:

    @pytest.mark.asyncio
    async def test_batch_bound_insert_statement_count(self, local_db) -> None:
        statements: list[str] = []

        def _count(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("INSERT INTO METER_READING"):
                statements.append(statement)

        event.listen(local_db.engine.sync_engine, "before_cursor_execute", _count)
        try:
            result = await BatchWriter(local_db).write(make_pending(250))
        finally:
            event.remove(local_db.engine.sync_engine, "before_cursor_execute", _count)

        assert len(statements) == math.ceil(250 / 100)
        assert result.inserted == 250
        assert result.batches == 3
        async with local_db.engine.connect() as conn:
            count = (await conn.execute(select(func.count()).select_from(meter_reading))).scalar_one()
        assert count == 250

    @pytest.mark.asyncio
    async def test_retry_bound_and_backoff(self) -> None:
        db = AsyncMock()
        db.insert_reading_batch.side_effect = RuntimeError("database is locked")
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        result = await BatchWriter(db, sleep=fake_sleep).write(make_pending(10))

        assert db.insert_reading_batch.await_count == 3
        assert sleeps == [1.0, 2.0]
        assert result.inserted == 0
        assert result.failed == 10
        assert result.abandoned_batches == 1
        assert result.committed_ids == []

    @pytest.mark.asyncio
    async def test_recovers_on_second_attempt(self) -> None:
        db = AsyncMock()
        db.insert_reading_batch.side_effect = [RuntimeError("locked"), 5]
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        result = await BatchWriter(db, sleep=fake_sleep).write(make_pending(5))

        assert sleeps == [1.0]
        assert result.inserted == 5
        assert result.retries_used == 1

    @pytest.mark.asyncio
    async def test_only_failed_batch_is_abandoned(self) -> None:
        db = AsyncMock()
        db.insert_reading_batch.side_effect = [100] + [RuntimeError("full")] * 3

        async def no_sleep(seconds: float) -> None:
            return None

        result = await BatchWriter(db, sleep=no_sleep).write(make_pending(150))

        assert result.inserted == 100
        assert result.failed == 50
        assert len(result.committed_ids) == 100


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------


class TestReadingCollector:

    @pytest.mark.asyncio
    async def test_invalid_excluded_valid_persisted(self, local_db) -> None:
        ts = utc_now() - timedelta(minutes=1)
        raw = [
            RawReading(10, 0, 1.0, ts, register_id=1),
            RawReading(10, 0, math.nan, ts, register_id=2),
            RawReading(10, 1, 3.0, utc_now() + timedelta(hours=1), register_id=1),
        ]
        collector = ReadingCollector(
            source=AsyncMock(return_value=raw),
            cache=_FakeCache(_snapshot()),
            writer=BatchWriter(local_db),
        )

        metrics = await collector.run_cycle()

        assert metrics.inserted == 1
        assert metrics.skipped == 2
        assert metrics.skipped_by_rule == {RULE_VALUE_NOT_FINITE: 1, RULE_TIMESTAMP_FUTURE: 1}
        assert len(collector.accumulator) == 0
        async with local_db.engine.connect() as conn:
            rows = (await conn.execute(select(meter_reading))).mappings().all()
        assert len(rows) == 1
        assert rows[0]["data_point"] == "active_energy"
        assert rows[0]["is_synchronized"] is False
        assert rows[0]["retry_count"] == 0

    @pytest.mark.asyncio
    async def test_abandoned_batch_stays_queued(self) -> None:
        db = AsyncMock()
        db.insert_reading_batch.side_effect = RuntimeError("read-only file system")

        async def no_sleep(seconds: float) -> None:
            return None

        collector = ReadingCollector(
            source=None,
            cache=_FakeCache(_snapshot()),
            writer=BatchWriter(db, sleep=no_sleep),
        )
        collector.submit([RawReading(10, 0, 1.0, utc_now() - timedelta(seconds=30), register_id=1)])

        metrics = await collector.run_cycle()

        assert metrics.failed == 1
        assert metrics.still_pending == 1
        assert len(collector.accumulator) == 1

    @pytest.mark.asyncio
    async def test_source_failure_still_flushes_queue(self, local_db) -> None:
        collector = ReadingCollector(
            source=AsyncMock(side_effect=TimeoutError("bacnet timeout")),
            cache=_FakeCache(_snapshot()),
            writer=BatchWriter(local_db),
        )
        collector.submit([RawReading(10, 0, 1.0, utc_now() - timedelta(seconds=30), register_id=1)])

        metrics = await collector.run_cycle()

        assert metrics.source_error == "bacnet timeout"
        assert metrics.inserted == 1

    @pytest.mark.asyncio
    async def test_null_element_id_does_not_block_queue(self, local_db) -> None:
        base = utc_now() - timedelta(minutes=5)
        collector = ReadingCollector(
            source=None,
            cache=_FakeCache(_snapshot()),
            writer=BatchWriter(local_db),
        )
        collector.submit(
            [RawReading(10, 0, float(i), base + timedelta(seconds=i), register_id=1) for i in range(5)]
            + [RawReading(10, None, 7.0, base, register_id=2)]
        )

        metrics = await collector.run_cycle()

        assert metrics.attempted == 6
        assert metrics.inserted == 5
        assert metrics.skipped_by_rule == {RULE_ELEMENT_ID: 1}
        assert len(collector.accumulator) == 0
        async with local_db.engine.connect() as conn:
            count = (await conn.execute(select(func.count()).select_from(meter_reading))).scalar_one()
        assert count == 5

    @pytest.mark.asyncio
    async def test_huge_integer_value_skipped_sibling_inserted(self, local_db) -> None:
        ts = utc_now() - timedelta(minutes=1)
        collector = ReadingCollector(
            source=AsyncMock(side_effect=[
                [
                    RawReading(10, 0, 10**400, ts, register_id=1),
                    RawReading(10, 0, 230.0, ts, register_id=2),
                ],
                [],
            ]),
            cache=_FakeCache(_snapshot()),
            writer=BatchWriter(local_db),
        )

        first = await collector.run_cycle()
        second = await collector.run_cycle()

        assert first.inserted == 1
        assert first.skipped_by_rule == {RULE_VALUE_NOT_FINITE: 1}
        assert second.attempted == 0
        assert second.skipped == 0
        assert len(collector.accumulator) == 0

    @pytest.mark.asyncio
    async def test_value_replaced_during_insert_is_kept(self) -> None:
        ts = utc_now() - timedelta(minutes=1)
        stored: list[list[dict]] = []

        async def insert(rows: list[dict]) -> int:
            stored.append(rows)
            if len(stored) == 1:
                # Newer value for the same key arrives mid-transaction
                collector.submit([RawReading(10, 0, 9.0, ts, register_id=1)])
            return len(rows)

        db = AsyncMock()
        db.insert_reading_batch.side_effect = insert
        collector = ReadingCollector(
            source=None,
            cache=_FakeCache(_snapshot()),
            writer=BatchWriter(db),
        )
        collector.submit([RawReading(10, 0, 1.0, ts, register_id=1)])

        await collector.run_cycle()

        assert [e.value for e in collector.accumulator.pending()] == [9.0]

        await collector.run_cycle()

        assert [batch[0]["value"] for batch in stored] == [1.0, 9.0]
        assert len(collector.accumulator) == 0

    @pytest.mark.asyncio
    async def test_cycle_log_reports_attempted(self, local_db, monkeypatch: pytest.MonkeyPatch) -> None:
        log = Mock()
        monkeypatch.setattr(collector_module, "logger", log)
        ts = utc_now() - timedelta(minutes=1)
        collector = ReadingCollector(
            source=AsyncMock(return_value=[
                RawReading(10, 0, 1.0, ts, register_id=1),
                RawReading(10, 0, 2.0, ts, register_id=2),
            ]),
            cache=_FakeCache(_snapshot()),
            writer=BatchWriter(local_db),
        )

        await collector.run_cycle()

        extra = log.info.call_args.kwargs["extra"]
        assert extra["attempted"] == 2
        assert extra["inserted"] == 2
