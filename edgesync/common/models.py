"""
Domain Dataclasses

Rows and results passed between the sync, collection and upload paths.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class EntityType(str, Enum):
    """Configuration entity types reconciled from the remote store"""
    TENANT = "tenant"
    METER = "meter"
    DEVICE_REGISTER = "device_register"


@dataclass(frozen=True)
class Tenant:
    id: int
    name: str
    api_key: str | None = None
    city: str | None = None
    country: str | None = None
    active: bool = True

    @classmethod
    def from_row(cls, row: dict) -> "Tenant":
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            api_key=row.get("api_key"),
            city=row.get("city"),
            country=row.get("country"),
            active=bool(row.get("active", True)),
        )


@dataclass(frozen=True)
class Meter:
    id: int
    tenant_id: int
    name: str
    device_id: int | None = None
    ip: str | None = None
    port: int | None = None
    protocol: str | None = None
    active: bool = True

    @classmethod
    def from_row(cls, row: dict) -> "Meter":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row.get("name") or "",
            device_id=row.get("device_id"),
            ip=row.get("ip"),
            port=row.get("port"),
            protocol=row.get("protocol"),
            active=bool(row.get("active", True)),
        )


@dataclass(frozen=True)
class DeviceRegister:
    """Maps a (device, register) pair to the field a reading is stored under"""
    device_id: int
    register_id: int
    field_name: str
    register: int | None = None
    unit: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "DeviceRegister":
        return cls(
            device_id=row["device_id"],
            register_id=row["register_id"],
            field_name=row.get("field_name") or "",
            register=row.get("register"),
            unit=row.get("unit"),
        )


@dataclass
class RawReading:
    """
    One value supplied by the protocol layer.

    Either register_id (resolved through the device-register mapping) or
    field_name (already mapped) identifies the target field.
    """
    meter_id: int | None
    element_id: int
    value: Any
    timestamp: Any
    register_id: int | None = None
    field_name: str | None = None
    unit: str | None = None


@dataclass
class PendingReading:
    """A mapped reading waiting in the accumulator to be persisted"""
    entry_id: int
    meter_id: int | None
    element_id: int
    timestamp: Any
    field_name: str
    value: Any
    unit: str | None = None
    # Bumped each time a re-supplied reading replaces the value
    revision: int = 0

    @property
    def key(self) -> tuple:
        return (self.meter_id, self.element_id, self.field_name, self.timestamp)

    def to_row(self) -> dict:
        """Column values for a meter_reading insert (after validation)."""
        return {
            "meter_id": self.meter_id,
            "element_id": self.element_id,
            "timestamp": self.timestamp,
            "data_point": self.field_name,
            "value": float(self.value),
            "unit": self.unit,
        }


@dataclass
class SyncResult:
    """Outcome of reconciling one entity type"""
    entity: str
    success: bool
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def data_modified(self) -> bool:
        return self.inserted > 0 or self.updated > 0 or self.deleted > 0

    @classmethod
    def failed(cls, entity: str, error: str) -> "SyncResult":
        return cls(entity=entity, success=False, error=error)

    def to_dict(self) -> dict:
        return {
            "entity": self.entity,
            "success": self.success,
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "data_modified": self.data_modified,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }
