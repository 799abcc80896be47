"""
Local Edge Database

Async SQLAlchemy store for the configuration mirror (tenant, meter,
device_register), persisted readings and the sync log. Defaults to
SQLite through aiosqlite; any async SQLAlchemy URL works.

Transactions are held only for one bounded unit of work: one config
phase, one reading batch, or one upload batch status update.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

from sqlalchemy import Table, and_, delete, func, insert, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from edgesync.common.logging_setup import get_service_logger

from .schema import REMOTE_COLUMNS, metadata, meter_reading, sync_log

logger = get_service_logger("storage.local_db")


def create_engine_for_url(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, making sure a SQLite file's directory exists."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(url, echo=echo)


class LocalDatabase:
    """
    Edge database access.

    Features:
    - Schema creation on startup
    - Per-phase transactional application of config diffs
    - Single multi-row INSERT per reading batch
    - Sync tracking (is_synchronized, retry_count) for the upload path
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "LocalDatabase":
        return cls(create_engine_for_url(url, echo=echo))

    async def init_schema(self) -> None:
        """Create missing tables and indexes."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self) -> None:
        await self.engine.dispose()

    # ------------------------------------------------------------------
    # Configuration mirror
    # ------------------------------------------------------------------

    async def fetch_entities(
        self,
        entity: str,
        tenant_column: str | None = None,
        tenant_id: int | None = None,
    ) -> list[dict]:
        """Rows for one config entity, using the same columns as the remote fetch."""
        columns = REMOTE_COLUMNS[entity]
        query = select(*columns)
        if tenant_column and tenant_id is not None:
            query = query.where(columns[0].table.c[tenant_column] == tenant_id)

        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [dict(row) for row in result.mappings()]

    async def apply_changes(
        self,
        table: Table,
        key_columns: Sequence[str],
        to_insert: Iterable[dict],
        to_update: Iterable[dict],
        to_delete: Iterable[dict],
    ) -> tuple[int, int, int]:
        """
        Apply a diff in one transaction: deletes, then inserts, then updates.

        Returns:
            (inserted, updated, deleted) row counts
        """
        inserted = updated = deleted = 0

        async with self.engine.begin() as conn:
            for row in to_delete:
                result = await conn.execute(
                    delete(table).where(self._key_clause(table, key_columns, row))
                )
                deleted += result.rowcount or 0

            rows = list(to_insert)
            if rows:
                await conn.execute(insert(table), rows)
                inserted = len(rows)

            for row in to_update:
                values = {k: v for k, v in row.items() if k not in key_columns}
                result = await conn.execute(
                    update(table)
                    .where(self._key_clause(table, key_columns, row))
                    .values(**values)
                )
                updated += result.rowcount or 0

        return inserted, updated, deleted

    @staticmethod
    def _key_clause(table: Table, key_columns: Sequence[str], row: dict):
        return and_(*[table.c[k] == row[k] for k in key_columns])

    async def load_config_tables(self) -> tuple[list[dict], list[dict], list[dict]]:
        """Full scan of the config mirror inside one read transaction."""
        async with self.engine.connect() as conn:
            tenants = await self._select_all(conn, "tenant")
            meters = await self._select_all(conn, "meter")
            registers = await self._select_all(conn, "device_register")
        return tenants, meters, registers

    @staticmethod
    async def _select_all(conn: AsyncConnection, entity: str) -> list[dict]:
        result = await conn.execute(select(*REMOTE_COLUMNS[entity]))
        return [dict(row) for row in result.mappings()]

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    async def insert_reading_batch(self, rows: list[dict]) -> int:
        """
        Insert one batch of readings as a single multi-row INSERT.

        The whole batch commits or rolls back together; errors propagate
        to the caller, which owns the retry policy.
        """
        if not rows:
            return 0

        async with self.engine.begin() as conn:
            await conn.execute(insert(meter_reading).values(rows))
        return len(rows)

    async def get_unsynced_readings(self, limit: int) -> list[dict]:
        """Unsynchronized readings, oldest first."""
        query = (
            select(meter_reading)
            .where(meter_reading.c.is_synchronized.is_(False))
            .order_by(meter_reading.c.timestamp, meter_reading.c.id)
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [dict(row) for row in result.mappings()]

    async def mark_synchronized(self, reading_ids: list[int]) -> int:
        """Mark readings as synchronized in one UPDATE."""
        if not reading_ids:
            return 0

        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(meter_reading)
                .where(meter_reading.c.id.in_(reading_ids))
                .values(is_synchronized=True)
            )
        return result.rowcount or 0

    async def increment_retry_count(self, reading_ids: list[int]) -> int:
        """Add one to retry_count for each reading in one UPDATE."""
        if not reading_ids:
            return 0

        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(meter_reading)
                .where(meter_reading.c.id.in_(reading_ids))
                .values(retry_count=meter_reading.c.retry_count + 1)
            )
        return result.rowcount or 0

    async def count_pending(self) -> int:
        """Readings waiting for upload."""
        query = select(func.count()).select_from(meter_reading).where(
            meter_reading.c.is_synchronized.is_(False)
        )
        async with self.engine.connect() as conn:
            return (await conn.execute(query)).scalar_one()

    async def get_retry_stats(self) -> dict[str, int]:
        """Count of rows with retry_count > 0 and the highest retry_count seen."""
        query = select(
            func.count(meter_reading.c.id),
            func.coalesce(func.max(meter_reading.c.retry_count), 0),
        ).where(meter_reading.c.retry_count > 0)
        async with self.engine.connect() as conn:
            count, max_retry = (await conn.execute(query)).one()
        return {"rows_with_retries": count, "max_retry_count": max_retry}

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    async def log_sync_operation(
        self,
        operation_type: str,
        batch_size: int,
        success: bool,
        error_message: str | None = None,
    ) -> None:
        """Append an audit row. Never raises; the audit trail is best effort."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(
                    insert(sync_log).values(
                        operation_type=operation_type,
                        batch_size=batch_size,
                        success=success,
                        error_message=error_message,
                        synced_at=datetime.now(timezone.utc),
                    )
                )
        except Exception as e:
            logger.warning(f"Failed to write sync_log entry: {e}")

    async def get_recent_sync_log(self, limit: int = 20) -> list[dict[str, Any]]:
        query = select(sync_log).order_by(sync_log.c.id.desc()).limit(limit)
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [dict(row) for row in result.mappings()]

    async def prune_sync_log(self, older_than: timedelta) -> int:
        """Delete sync_log rows older than the retention window."""
        cutoff = datetime.now(timezone.utc) - older_than
        async with self.engine.begin() as conn:
            result = await conn.execute(delete(sync_log).where(sync_log.c.synced_at < cutoff))
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Pruned {deleted} sync_log rows older than {older_than.days} days")
        return deleted
