"""
Local Cache Manager

In-memory lookup tables for tenants, meters and device-register
mappings, built from a full scan of the local mirror.

Readers always see one complete snapshot: a reload builds a new
immutable snapshot and swaps the reference under a single-writer lock.
If a reload fails, the previous snapshot stays active.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping

from edgesync.common.exceptions import CacheReloadError
from edgesync.common.logging_setup import get_service_logger
from edgesync.common.models import DeviceRegister, Meter, Tenant

logger = get_service_logger("config.cache")


def _empty_mapping() -> Mapping:
    return MappingProxyType({})


@dataclass(frozen=True)
class CacheSnapshot:
    """Immutable, versioned view of the configuration mirror"""
    version: int = 0
    loaded_at: datetime | None = None
    tenants: Mapping[int, Tenant] = field(default_factory=_empty_mapping)
    meters: Mapping[int, Meter] = field(default_factory=_empty_mapping)
    device_registers: Mapping[tuple[int, int], DeviceRegister] = field(default_factory=_empty_mapping)

    def get_meter(self, meter_id: int | None) -> Meter | None:
        if meter_id is None:
            return None
        return self.meters.get(meter_id)

    def tenant_for_meter(self, meter_id: int | None) -> Tenant | None:
        meter = self.get_meter(meter_id)
        if meter is None:
            return None
        return self.tenants.get(meter.tenant_id)

    def resolve_register(self, device_id: int | None, register_id: int | None) -> DeviceRegister | None:
        if device_id is None or register_id is None:
            return None
        return self.device_registers.get((device_id, register_id))

    def registers_for_device(self, device_id: int) -> list[DeviceRegister]:
        return [reg for (dev, _), reg in self.device_registers.items() if dev == device_id]

    def summary(self) -> dict:
        return {
            "version": self.version,
            "loaded_at": self.loaded_at.isoformat() if self.loaded_at else None,
            "tenants": len(self.tenants),
            "meters": len(self.meters),
            "device_registers": len(self.device_registers),
        }


class LocalCacheManager:
    """
    Owns the current CacheSnapshot.

    Readers call `snapshot` and keep the returned object for the duration
    of their work; it never changes underneath them.
    """

    def __init__(self, local_db):
        self.local_db = local_db
        self._snapshot = CacheSnapshot()
        self._lock = asyncio.Lock()
        self._reload_count = 0
        self._failure_count = 0
        self._last_error: str | None = None

    @property
    def snapshot(self) -> CacheSnapshot:
        return self._snapshot

    async def reload(self) -> bool:
        """
        Rebuild the snapshot from the local store and swap it in.

        Returns:
            True if a new snapshot is active, False if the previous one was kept
        """
        async with self._lock:
            try:
                snapshot = await self._build(self._snapshot.version + 1)
            except Exception as e:
                self._failure_count += 1
                self._last_error = str(e)
                logger.error(
                    f"Cache reload failed, keeping version {self._snapshot.version}: {e}",
                    extra={"cache_version": self._snapshot.version},
                )
                return False

            self._snapshot = snapshot
            self._reload_count += 1
            self._last_error = None

        logger.info(
            f"Cache reloaded (version {snapshot.version}): {len(snapshot.tenants)} tenants, "
            f"{len(snapshot.meters)} meters, {len(snapshot.device_registers)} registers",
            extra=snapshot.summary(),
        )
        return True

    async def _build(self, version: int) -> CacheSnapshot:
        try:
            tenant_rows, meter_rows, register_rows = await self.local_db.load_config_tables()
        except Exception as e:
            raise CacheReloadError(str(e)) from e

        tenants = {row["id"]: Tenant.from_row(row) for row in tenant_rows}
        meters = {row["id"]: Meter.from_row(row) for row in meter_rows}
        registers = {
            (row["device_id"], row["register_id"]): DeviceRegister.from_row(row)
            for row in register_rows
        }

        return CacheSnapshot(
            version=version,
            loaded_at=datetime.now(timezone.utc),
            tenants=MappingProxyType(tenants),
            meters=MappingProxyType(meters),
            device_registers=MappingProxyType(registers),
        )

    def get_stats(self) -> dict:
        stats = self._snapshot.summary()
        stats.update({
            "reload_count": self._reload_count,
            "failure_count": self._failure_count,
            "last_error": self._last_error,
        })
        return stats
