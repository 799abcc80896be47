"""
Upload Scheduler

Each tick pushes persisted-but-unsynchronized readings to the remote API:

1. Select unsynchronized rows oldest-first (bounded per tick)
2. Split into upload batches and post each batch once
3. Success: mark the whole batch synchronized in one UPDATE
4. Failure: add one to retry_count for the whole batch in one UPDATE
5. Remote unreachable: stop the tick, change nothing, try again next tick

Rows are never dropped, however large their retry_count grows; the
retry statistics are exposed through get_stats() instead.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from edgesync.common.config import DEFAULT_UPLOAD_BATCH_SIZE, DEFAULT_UPLOAD_MAX_ROWS
from edgesync.common.exceptions import RemoteUnavailableError, UploadError
from edgesync.common.logging_setup import get_service_logger
from edgesync.common.models import Tenant

from edgesync.services.config.cache import LocalCacheManager

from .client import RemoteApiClient

logger = get_service_logger("upload")


@dataclass
class UploadOutcome:
    """Result of one upload tick"""
    status: str = "idle"  # idle, success, partial, failed, unreachable, skipped, error
    selected: int = 0
    uploaded: int = 0
    failed: int = 0
    batches: int = 0
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "selected": self.selected,
            "uploaded": self.uploaded,
            "failed": self.failed,
            "batches": self.batches,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class UploadScheduler:
    """Upload path for one tenant's readings."""

    def __init__(
        self,
        local_db,
        cache: LocalCacheManager,
        client: RemoteApiClient | None,
        tenant_id: int | None = None,
        batch_size: int = DEFAULT_UPLOAD_BATCH_SIZE,
        max_rows_per_tick: int = DEFAULT_UPLOAD_MAX_ROWS,
    ):
        self.local_db = local_db
        self.cache = cache
        self.client = client
        self.tenant_id = tenant_id
        self.batch_size = max(1, batch_size)
        self.max_rows_per_tick = max(self.batch_size, max_rows_per_tick)

        self._last_outcome: UploadOutcome | None = None
        self._total_uploaded = 0
        self._total_failed = 0
        self._unreachable_count = 0

    @property
    def last_outcome(self) -> UploadOutcome | None:
        return self._last_outcome

    def _resolve_tenant(self) -> Tenant | None:
        """Configured tenant, or the only tenant in the cache."""
        tenants = self.cache.snapshot.tenants
        if self.tenant_id is not None:
            return tenants.get(self.tenant_id)
        if len(tenants) == 1:
            return next(iter(tenants.values()))
        return None

    async def tick(self) -> UploadOutcome:
        outcome = UploadOutcome()
        try:
            await self._run(outcome)
        except Exception as e:
            outcome.status = "error"
            outcome.error = str(e)
            raise
        finally:
            outcome.timestamp = datetime.now(timezone.utc)
            self._last_outcome = outcome
        return outcome

    async def _run(self, outcome: UploadOutcome) -> None:
        if self.client is None:
            outcome.status = "skipped"
            outcome.error = "upload API URL not configured"
            logger.warning("Upload skipped: no API URL configured")
            return

        tenant = self._resolve_tenant()
        if tenant is None or not tenant.api_key:
            outcome.status = "skipped"
            outcome.error = "tenant or API key not available in cache"
            logger.warning(
                "Upload skipped: tenant/API key not available yet",
                extra={"tenant_id": self.tenant_id},
            )
            return

        rows = await self.local_db.get_unsynced_readings(self.max_rows_per_tick)
        outcome.selected = len(rows)
        if not rows:
            outcome.status = "success"
            logger.debug("No readings to upload")
            return

        logger.info(f"Uploading {len(rows)} readings", extra={"tenant_id": tenant.id})

        for start in range(0, len(rows), self.batch_size):
            batch = rows[start:start + self.batch_size]
            ids = [row["id"] for row in batch]
            outcome.batches += 1

            try:
                await self.client.upload_batch(tenant.api_key, tenant.id, batch)
            except RemoteUnavailableError as e:
                # Nothing was delivered; leave rows untouched for the next tick
                self._unreachable_count += 1
                outcome.error = e.message
                logger.warning(f"Upload tick stopped, remote unreachable: {e.message}")
                await self.local_db.log_sync_operation("upload", len(batch), False, e.message)
                break
            except UploadError as e:
                await self.local_db.increment_retry_count(ids)
                outcome.failed += len(batch)
                outcome.error = e.message
                self._total_failed += len(batch)
                logger.error(
                    f"Upload batch of {len(batch)} rejected: {e.message}",
                    extra={"status_code": e.status_code, "batch_size": len(batch)},
                )
                await self.local_db.log_sync_operation("upload", len(batch), False, e.message)
                continue

            await self.local_db.mark_synchronized(ids)
            outcome.uploaded += len(batch)
            self._total_uploaded += len(batch)
            await self.local_db.log_sync_operation("upload", len(batch), True)

        outcome.status = self._status_for(outcome)
        logger.info(
            f"Upload tick finished: {outcome.status} "
            f"(uploaded={outcome.uploaded}, failed={outcome.failed})",
            extra=outcome.to_dict(),
        )

    @staticmethod
    def _status_for(outcome: UploadOutcome) -> str:
        if outcome.uploaded == outcome.selected:
            return "success"
        if outcome.uploaded == 0 and outcome.failed == 0:
            return "unreachable"
        if outcome.uploaded == 0 and outcome.failed == outcome.selected:
            return "failed"
        return "partial"

    async def get_stats(self) -> dict:
        retry_stats = await self.local_db.get_retry_stats()
        return {
            "last_outcome": self._last_outcome.to_dict() if self._last_outcome else None,
            "pending_rows": await self.local_db.count_pending(),
            "total_uploaded": self._total_uploaded,
            "total_failed": self._total_failed,
            "unreachable_count": self._unreachable_count,
            **retry_stats,
        }
