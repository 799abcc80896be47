"""
Entity Differ

Reconciles one configuration entity type from the remote master database
into the local mirror:

1. Fetch remote and local rows concurrently (optionally tenant-scoped)
2. Key both sides by natural key
3. Compute disjoint insert / update / delete sets
4. Apply them to the local store in one transaction

The remote is always authoritative. Running the same sync twice against
unchanged data produces zero changes the second time.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from sqlalchemy import Table

from edgesync.common.logging_setup import get_service_logger, log_sync_result
from edgesync.common.models import EntityType, SyncResult
from edgesync.storage import schema

logger = get_service_logger("config.differ")


class EntitySource(Protocol):
    async def fetch_entities(
        self, entity: str, tenant_column: str | None = None, tenant_id: int | None = None
    ) -> list[dict]:
        ...


@dataclass(frozen=True)
class EntitySpec:
    """How one entity type is keyed, compared and applied"""
    entity: EntityType
    table: Table
    key_columns: tuple[str, ...]
    compare_columns: tuple[str, ...]
    tenant_column: str | None = None
    deletable: bool = True
    validator: Callable[[dict], str | None] | None = None

    @property
    def name(self) -> str:
        return self.entity.value


@dataclass
class EntityDiff:
    to_insert: list[dict] = field(default_factory=list)
    to_update: list[dict] = field(default_factory=list)
    to_delete: list[dict] = field(default_factory=list)
    skipped: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.to_insert or self.to_update or self.to_delete)


def validate_device_register(row: dict) -> str | None:
    """Reason the mapping cannot be stored, or None if it is usable."""
    if row.get("device_id") is None:
        return "device_id is null"
    if row.get("register_id") is None:
        return "register_id is null"
    if not (row.get("field_name") or "").strip():
        return "field_name is empty"
    return None


TENANT_SPEC = EntitySpec(
    entity=EntityType.TENANT,
    table=schema.tenant,
    key_columns=("id",),
    compare_columns=("name", "api_key", "city", "country", "active"),
    tenant_column="id",
    deletable=False,
)

METER_SPEC = EntitySpec(
    entity=EntityType.METER,
    table=schema.meter,
    key_columns=("id",),
    compare_columns=("tenant_id", "name", "device_id", "ip", "port", "protocol", "active"),
    tenant_column="tenant_id",
)

DEVICE_REGISTER_SPEC = EntitySpec(
    entity=EntityType.DEVICE_REGISTER,
    table=schema.device_register,
    key_columns=("device_id", "register_id"),
    compare_columns=("register", "field_name", "unit"),
    validator=validate_device_register,
)

# Phase order for a config sync cycle
ENTITY_SPECS = (TENANT_SPEC, METER_SPEC, DEVICE_REGISTER_SPEC)


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    return value


def entity_key(row: dict, key_columns: tuple[str, ...]) -> tuple | None:
    key = tuple(row.get(col) for col in key_columns)
    if any(part is None for part in key):
        return None
    return key


def has_changes(remote: dict, local: dict, compare_columns: tuple[str, ...]) -> bool:
    return any(
        _normalize(remote.get(col)) != _normalize(local.get(col))
        for col in compare_columns
    )


def diff_entities(remote_rows: list[dict], local_rows: list[dict], spec: EntitySpec) -> EntityDiff:
    """
    Compare remote and local rows for one entity type.

    Remote rows without a complete natural key, or failing the entity's
    validator, are counted in `skipped` and never inserted or updated.
    A remote row that exists but fails validation still protects its
    local counterpart from deletion.
    """
    diff = EntityDiff()

    remote_map: dict[tuple, dict] = {}
    for row in remote_rows:
        key = entity_key(row, spec.key_columns)
        if key is None:
            diff.skipped += 1
            logger.warning(
                f"Skipping remote {spec.name}: incomplete key {row}",
                extra={"entity": spec.name},
            )
            continue
        remote_map[key] = row

    local_map: dict[tuple, dict] = {}
    for row in local_rows:
        key = entity_key(row, spec.key_columns)
        if key is not None:
            local_map[key] = row

    if spec.deletable:
        diff.to_delete = [row for key, row in local_map.items() if key not in remote_map]

    for key, remote in remote_map.items():
        local = local_map.get(key)
        if local is not None and not has_changes(remote, local, spec.compare_columns):
            continue

        if spec.validator:
            reason = spec.validator(remote)
            if reason:
                diff.skipped += 1
                logger.warning(
                    f"Skipping {spec.name} {key}: {reason}",
                    extra={"entity": spec.name, "key": list(key), "reason": reason},
                )
                continue

        values = {col: remote.get(col) for col in spec.key_columns + spec.compare_columns}
        if local is None:
            diff.to_insert.append(values)
        else:
            diff.to_update.append(values)

    return diff


class EntitySync:
    """
    Runs one reconciliation phase for a single entity type.

    Never raises: fetch or apply failures come back as a failed
    SyncResult with zero counts and the error text.
    """

    def __init__(
        self,
        spec: EntitySpec,
        remote: EntitySource,
        local,
        tenant_id: int | None = None,
    ):
        self.spec = spec
        self.remote = remote
        self.local = local
        self.tenant_id = tenant_id

    async def sync(self) -> SyncResult:
        spec = self.spec
        logger.info(f"Starting {spec.name} synchronization", extra={"entity": spec.name})

        try:
            remote_rows, local_rows = await asyncio.gather(
                self.remote.fetch_entities(spec.name, spec.tenant_column, self.tenant_id),
                self.local.fetch_entities(spec.name, spec.tenant_column, self.tenant_id),
            )

            diff = diff_entities(remote_rows, local_rows, spec)

            if diff.is_empty:
                inserted = updated = deleted = 0
            else:
                inserted, updated, deleted = await self.local.apply_changes(
                    spec.table,
                    spec.key_columns,
                    diff.to_insert,
                    diff.to_update,
                    diff.to_delete,
                )

        except Exception as e:
            result = SyncResult.failed(spec.name, str(e))
            log_sync_result(logger, result)
            return result

        result = SyncResult(
            entity=spec.name,
            success=True,
            inserted=inserted,
            updated=updated,
            deleted=deleted,
            skipped=diff.skipped,
        )
        log_sync_result(logger, result)
        return result
