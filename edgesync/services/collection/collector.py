"""
Reading Collector

One collection tick: pull raw readings from the protocol layer, map
them into the accumulator, validate everything pending, persist the
valid readings through the batch writer and acknowledge what was
committed.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from edgesync.common.logging_setup import get_service_logger
from edgesync.common.models import RawReading

from edgesync.services.config.cache import LocalCacheManager

from .accumulator import ReadingAccumulator
from .batch_writer import BatchWriter
from .validator import ReadingValidator

logger = get_service_logger("collection")

ReadingSource = Callable[[], Awaitable[list[RawReading]]]


@dataclass
class CollectionMetrics:
    """Per-cycle counters"""
    attempted: int = 0
    inserted: int = 0
    failed: int = 0
    skipped: int = 0
    retries_used: int = 0
    dropped_unmapped: int = 0
    dropped_overflow: int = 0
    replaced: int = 0
    still_pending: int = 0
    skipped_by_rule: dict[str, int] = field(default_factory=dict)
    source_error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "inserted": self.inserted,
            "failed": self.failed,
            "skipped": self.skipped,
            "retries_used": self.retries_used,
            "dropped_unmapped": self.dropped_unmapped,
            "dropped_overflow": self.dropped_overflow,
            "replaced": self.replaced,
            "still_pending": self.still_pending,
            "skipped_by_rule": self.skipped_by_rule,
            "source_error": self.source_error,
            "timestamp": self.timestamp.isoformat(),
        }


class ReadingCollector:
    """Drives the collection path for one node."""

    def __init__(
        self,
        source: ReadingSource | None,
        cache: LocalCacheManager,
        writer: BatchWriter,
        validator: ReadingValidator | None = None,
        accumulator: ReadingAccumulator | None = None,
    ):
        self.source = source
        self.cache = cache
        self.writer = writer
        self.validator = validator or ReadingValidator()
        self.accumulator = accumulator or ReadingAccumulator()
        self._last_metrics: CollectionMetrics | None = None

    @property
    def last_metrics(self) -> CollectionMetrics | None:
        return self._last_metrics

    def submit(self, raw_readings: list[RawReading]):
        """Enqueue readings pushed by the protocol layer outside a tick."""
        return self.accumulator.add(raw_readings, self.cache.snapshot)

    async def run_cycle(self) -> CollectionMetrics:
        metrics = CollectionMetrics()

        if self.source is not None:
            try:
                raw = await self.source()
            except Exception as e:
                # Still flush what is already queued
                metrics.source_error = str(e)
                logger.error(f"Reading source failed: {e}")
                raw = []

            added = self.accumulator.add(raw or [], self.cache.snapshot)
            metrics.dropped_unmapped = added.dropped_unmapped
            metrics.dropped_overflow = added.dropped_overflow
            metrics.replaced = added.replaced

        await self.flush(metrics)
        self._last_metrics = metrics
        return metrics

    async def flush(self, metrics: CollectionMetrics | None = None) -> int:
        """Validate and persist everything pending. Returns rows attempted."""
        metrics = metrics or CollectionMetrics()
        pending = self.accumulator.pending()
        metrics.attempted = len(pending)
        if not pending:
            return 0

        report = self.validator.validate(pending)
        self.accumulator.discard(f.reading for f in report.invalid)
        metrics.skipped = len(report.invalid)
        metrics.skipped_by_rule = report.counts_by_rule

        written = await self.writer.write(report.valid)
        by_id = {r.entry_id: r for r in report.valid}
        self.accumulator.acknowledge(by_id[i] for i in written.committed_ids)

        metrics.inserted = written.inserted
        metrics.failed = written.failed
        metrics.retries_used = written.retries_used
        metrics.still_pending = len(self.accumulator)

        logger.info(
            f"Collection cycle: inserted={written.inserted}, failed={written.failed}, "
            f"skipped={metrics.skipped}, pending={metrics.still_pending}",
            extra=metrics.to_dict(),
        )
        return len(pending)
