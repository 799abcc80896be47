"""
Batch Writer

Persists validated readings in consecutive batches of at most
`batch_size` rows. Each batch is one transaction holding one multi-row
INSERT. A failed batch is rolled back and retried with fixed backoff
(1s, then 2s); after the last attempt it is abandoned for this cycle
and its readings stay queued for the next one.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from edgesync.common.config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_INSERT_ATTEMPTS,
    DEFAULT_INSERT_BACKOFF_S,
)
from edgesync.common.exceptions import BatchInsertError
from edgesync.common.logging_setup import get_service_logger
from edgesync.common.models import PendingReading

logger = get_service_logger("collection.batch_writer")


@dataclass
class WriteResult:
    """Outcome of writing one set of readings"""
    attempted: int = 0
    inserted: int = 0
    failed: int = 0
    retries_used: int = 0
    batches: int = 0
    abandoned_batches: int = 0
    committed_ids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class BatchWriter:
    """Writes readings through LocalDatabase.insert_reading_batch with bounded retry."""

    def __init__(
        self,
        local_db,
        batch_size: int = DEFAULT_BATCH_SIZE,
        attempts: int = DEFAULT_INSERT_ATTEMPTS,
        backoff_s: tuple[float, ...] = DEFAULT_INSERT_BACKOFF_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.local_db = local_db
        self.batch_size = max(1, batch_size)
        self.attempts = max(1, attempts)
        self.backoff_s = tuple(backoff_s) or (0.0,)
        self._sleep = sleep

    def _delays(self) -> list[float]:
        """Wait before each attempt: none before the first, then the backoff schedule."""
        delays = [0.0]
        for i in range(1, self.attempts):
            delays.append(self.backoff_s[min(i - 1, len(self.backoff_s) - 1)])
        return delays

    async def write(self, readings: list[PendingReading]) -> WriteResult:
        result = WriteResult(attempted=len(readings))

        for start in range(0, len(readings), self.batch_size):
            batch = readings[start:start + self.batch_size]
            result.batches += 1
            try:
                retries = await self._write_batch(batch)
            except BatchInsertError as e:
                result.failed += len(batch)
                result.abandoned_batches += 1
                result.retries_used += e.attempts - 1
                result.errors.append(e.message)
                continue

            result.inserted += len(batch)
            result.retries_used += retries
            result.committed_ids.extend(r.entry_id for r in batch)

        return result

    async def _write_batch(self, batch: list[PendingReading]) -> int:
        """
        Insert one batch, retrying on failure.

        Returns:
            Number of retries that were needed

        Raises:
            BatchInsertError: If every attempt failed
        """
        rows = [r.to_row() for r in batch]
        last_error: Exception | None = None

        for attempt, delay in enumerate(self._delays()):
            if attempt > 0:
                logger.warning(
                    f"Batch insert retry {attempt}/{self.attempts - 1} after {delay}s delay",
                    extra={"batch_size": len(batch), "attempt": attempt + 1},
                )
                await self._sleep(delay)

            try:
                await self.local_db.insert_reading_batch(rows)
                return attempt
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Batch insert attempt {attempt + 1}/{self.attempts} failed: {e}",
                    extra={"batch_size": len(batch)},
                )

        logger.error(
            f"Batch of {len(batch)} readings abandoned after {self.attempts} attempts: {last_error}",
            extra={"batch_size": len(batch), "attempts": self.attempts},
        )
        raise BatchInsertError(str(last_error), batch_size=len(batch), attempts=self.attempts)
