"""
Remote Master Database

Read-only access to the authoritative tenant, meter and device_register
tables. Any driver or connection failure surfaces as
RemoteUnavailableError so the sync phase can report it and move on.
"""

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from edgesync.common.exceptions import RemoteUnavailableError
from edgesync.common.logging_setup import get_service_logger

from .local_db import create_engine_for_url
from .schema import REMOTE_COLUMNS

logger = get_service_logger("storage.remote_db")


class RemoteDatabase:
    """Fetches configuration rows from the remote master database."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "RemoteDatabase":
        return cls(create_engine_for_url(url, echo=echo))

    async def fetch_entities(
        self,
        entity: str,
        tenant_column: str | None = None,
        tenant_id: int | None = None,
    ) -> list[dict]:
        """
        Fetch rows for one entity, optionally scoped to a tenant.

        Raises:
            RemoteUnavailableError: On connection or query failure
        """
        columns = REMOTE_COLUMNS[entity]
        query = select(*columns)
        if tenant_column and tenant_id is not None:
            query = query.where(columns[0].table.c[tenant_column] == tenant_id)

        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(query)
                rows = [dict(row) for row in result.mappings()]
        except (SQLAlchemyError, OSError) as e:
            raise RemoteUnavailableError(str(e), target=f"remote_db.{entity}") from e

        logger.debug(f"Fetched {len(rows)} remote {entity} rows")
        return rows

    async def close(self) -> None:
        await self.engine.dispose()
