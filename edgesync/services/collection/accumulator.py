"""
Reading Accumulator

At-least-once work queue between the protocol layer and the batch
writer. Raw readings are mapped to their target field through the
current cache snapshot and held until their batch is confirmed
inserted. Entries are grouped by (meter, element) and deduplicated on
(meter, element, field, timestamp): supplying the same key again
replaces the value.

The writer works on copies taken by pending(). An entry is only
removed when the copy being acknowledged still matches its revision,
so a value replaced while its batch was in flight stays queued and is
written by the next flush.

The queue holds at most `max_pending` entries; beyond that the oldest
are dropped and counted.
"""

import dataclasses
import itertools
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable

from edgesync.common.config import DEFAULT_MAX_PENDING_READINGS
from edgesync.common.logging_setup import get_service_logger
from edgesync.common.models import PendingReading, RawReading
from edgesync.common.timestamp import parse_timestamp

from edgesync.services.config.cache import CacheSnapshot

logger = get_service_logger("collection.accumulator")


@dataclass
class AddResult:
    accepted: int = 0
    replaced: int = 0
    dropped_unmapped: int = 0
    dropped_overflow: int = 0


class ReadingAccumulator:
    """Pending readings waiting to be persisted."""

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING_READINGS):
        self.max_pending = max(1, max_pending)
        self._entries: OrderedDict[int, PendingReading] = OrderedDict()
        self._index: dict[tuple, int] = {}
        self._keys: dict[int, tuple] = {}
        self._ids = itertools.count(1)
        self._dropped_overflow_total = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def dropped_overflow_total(self) -> int:
        return self._dropped_overflow_total

    def add(self, raw_readings: list[RawReading], snapshot: CacheSnapshot) -> AddResult:
        """
        Map and enqueue raw readings.

        A reading whose (device, register) pair has no mapping is dropped
        on its own; the other fields of the same meter are still kept.
        """
        result = AddResult()

        for raw in raw_readings:
            mapped = self._map(raw, snapshot)
            if mapped is None:
                result.dropped_unmapped += 1
                continue

            field_name, unit = mapped
            ts = parse_timestamp(raw.timestamp)
            timestamp = ts if ts is not None else raw.timestamp
            key = self._key(raw.meter_id, raw.element_id, field_name, timestamp)

            entry_id = self._index.get(key)
            if entry_id is not None and entry_id in self._entries:
                entry = self._entries[entry_id]
                entry.value = raw.value
                entry.unit = unit
                entry.revision += 1
                result.replaced += 1
                continue

            entry_id = next(self._ids)
            self._entries[entry_id] = PendingReading(
                entry_id=entry_id,
                meter_id=raw.meter_id,
                element_id=raw.element_id,
                timestamp=timestamp,
                field_name=field_name,
                value=raw.value,
                unit=unit,
            )
            self._index[key] = entry_id
            self._keys[entry_id] = key
            result.accepted += 1

        result.dropped_overflow = self._trim()

        if result.dropped_unmapped:
            logger.warning(
                f"Dropped {result.dropped_unmapped} readings with no register mapping",
                extra={"dropped_unmapped": result.dropped_unmapped},
            )
        return result

    @staticmethod
    def _key(*parts) -> tuple:
        key = tuple(parts)
        try:
            hash(key)
        except TypeError:
            # Unhashable values from untyped input; validation rejects the entry
            key = tuple(repr(p) for p in parts)
        return key

    def _trim(self) -> int:
        """Drop the oldest entries beyond max_pending."""
        excess = len(self._entries) - self.max_pending
        if excess <= 0:
            return 0

        for _ in range(excess):
            entry_id, _entry = self._entries.popitem(last=False)
            self._forget(entry_id)

        self._dropped_overflow_total += excess
        logger.warning(
            f"Pending queue exceeded {self.max_pending} readings, dropped {excess} oldest",
            extra={"dropped_overflow": excess, "max_pending": self.max_pending},
        )
        return excess

    def _forget(self, entry_id: int) -> None:
        key = self._keys.pop(entry_id, None)
        if key is not None and self._index.get(key) == entry_id:
            del self._index[key]

    @staticmethod
    def _map(raw: RawReading, snapshot: CacheSnapshot) -> tuple[str, str | None] | None:
        if raw.register_id is None:
            if raw.field_name:
                return raw.field_name, raw.unit
            return None

        if not isinstance(raw.meter_id, int) or not isinstance(raw.register_id, int):
            return None

        meter = snapshot.get_meter(raw.meter_id)
        if meter is None or meter.device_id is None:
            logger.debug(f"No meter/device for meter_id={raw.meter_id}")
            return None

        register = snapshot.resolve_register(meter.device_id, raw.register_id)
        if register is None:
            logger.debug(
                f"No mapping for device {meter.device_id} register {raw.register_id}",
                extra={"meter_id": raw.meter_id, "register_id": raw.register_id},
            )
            return None

        return register.field_name, raw.unit or register.unit

    def pending(self) -> list[PendingReading]:
        """Copies of all queued readings, in arrival order."""
        return [dataclasses.replace(entry) for entry in self._entries.values()]

    def by_meter_element(self) -> dict[tuple, list[PendingReading]]:
        groups: dict[tuple, list[PendingReading]] = {}
        for entry in self._entries.values():
            groups.setdefault((entry.meter_id, entry.element_id), []).append(entry)
        return groups

    def acknowledge(self, readings: Iterable[PendingReading]) -> int:
        """
        Remove entries whose batch has been committed (or that were rejected).

        `readings` are copies returned by pending(). An entry replaced
        since its copy was taken is kept for the next flush.
        """
        removed = 0
        for reading in readings:
            entry = self._entries.get(reading.entry_id)
            if entry is None or entry.revision != reading.revision:
                continue
            del self._entries[reading.entry_id]
            self._forget(reading.entry_id)
            removed += 1
        return removed

    discard = acknowledge
