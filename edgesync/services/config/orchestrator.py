"""
Config Sync Orchestrator

Runs one configuration sync cycle:

    IDLE -> SYNCING_TENANT -> SYNCING_METER -> SYNCING_DEVICE_REGISTER
         -> CACHE_RELOAD (only if some phase changed data) -> IDLE

Phases run serially in that order, and every phase runs even if an
earlier one failed. The cache is reloaded at most once per cycle.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from edgesync.common.logging_setup import get_service_logger
from edgesync.common.models import SyncResult

from .cache import LocalCacheManager
from .differ import ENTITY_SPECS, EntitySpec, EntitySync

logger = get_service_logger("config.orchestrator")


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING_TENANT = "syncing_tenant"
    SYNCING_METER = "syncing_meter"
    SYNCING_DEVICE_REGISTER = "syncing_device_register"
    CACHE_RELOAD = "cache_reload"


_PHASE_STATES = {
    "tenant": SyncState.SYNCING_TENANT,
    "meter": SyncState.SYNCING_METER,
    "device_register": SyncState.SYNCING_DEVICE_REGISTER,
}


@dataclass
class CycleResult:
    """Aggregated outcome of one config sync cycle"""
    started_at: datetime
    finished_at: datetime | None = None
    phases: dict[str, SyncResult] = field(default_factory=dict)
    cache_reloaded: bool = False
    skipped: bool = False

    @property
    def success(self) -> bool:
        return not self.skipped and all(r.success for r in self.phases.values())

    @property
    def data_modified(self) -> bool:
        return any(r.data_modified for r in self.phases.values())

    @property
    def error(self) -> str | None:
        for result in self.phases.values():
            if not result.success:
                return f"{result.entity}: {result.error}"
        return None

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "success": self.success,
            "skipped": self.skipped,
            "data_modified": self.data_modified,
            "cache_reloaded": self.cache_reloaded,
            "error": self.error,
            "phases": {name: r.to_dict() for name, r in self.phases.items()},
        }


class ConfigSyncOrchestrator:
    """Sequences the entity phases and gates the cache reload."""

    def __init__(
        self,
        remote_db,
        local_db,
        cache: LocalCacheManager,
        tenant_id: int | None = None,
        specs: tuple[EntitySpec, ...] = ENTITY_SPECS,
    ):
        self.remote_db = remote_db
        self.local_db = local_db
        self.cache = cache
        self.tenant_id = tenant_id
        self.specs = specs

        self.state = SyncState.IDLE
        self._lock = asyncio.Lock()
        self._last_result: CycleResult | None = None
        self._cycle_count = 0
        self._skipped_count = 0

    @property
    def last_result(self) -> CycleResult | None:
        return self._last_result

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run_cycle(self) -> CycleResult:
        """
        Run all phases, then reload the cache if anything changed.

        A request arriving while a cycle is in progress returns a
        skipped result instead of starting a second cycle.
        """
        if self._lock.locked():
            self._skipped_count += 1
            logger.warning("Config sync already in progress, skipping request")
            return CycleResult(
                started_at=datetime.now(timezone.utc),
                finished_at=datetime.now(timezone.utc),
                skipped=True,
            )

        async with self._lock:
            cycle = CycleResult(started_at=datetime.now(timezone.utc))
            logger.info("Config sync cycle started", extra={"tenant_id": self.tenant_id})

            try:
                for spec in self.specs:
                    self.state = _PHASE_STATES.get(spec.name, SyncState.IDLE)
                    sync = EntitySync(spec, self.remote_db, self.local_db, self.tenant_id)
                    cycle.phases[spec.name] = await sync.sync()

                if cycle.data_modified:
                    self.state = SyncState.CACHE_RELOAD
                    cycle.cache_reloaded = await self.cache.reload()
                else:
                    logger.debug("No configuration changes, cache reload not needed")
            finally:
                self.state = SyncState.IDLE

            cycle.finished_at = datetime.now(timezone.utc)
            self._last_result = cycle
            self._cycle_count += 1

        await self.local_db.log_sync_operation(
            "config_sync",
            sum(r.inserted + r.updated + r.deleted for r in cycle.phases.values()),
            cycle.success,
            cycle.error,
        )

        totals = {
            name: f"+{r.inserted}/~{r.updated}/-{r.deleted}"
            for name, r in cycle.phases.items()
        }
        log = logger.info if cycle.success else logger.warning
        log(
            f"Config sync cycle finished (success={cycle.success}, "
            f"cache_reloaded={cycle.cache_reloaded}): {totals}",
            extra={"success": cycle.success, "cache_reloaded": cycle.cache_reloaded},
        )
        return cycle

    def get_stats(self) -> dict:
        return {
            "state": self.state.value,
            "cycle_count": self._cycle_count,
            "skipped_count": self._skipped_count,
            "last_cycle": self._last_result.to_dict() if self._last_result else None,
        }
