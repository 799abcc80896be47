"""
EdgeSync Service

Runs the three independent loops of an edge node against one shared
local database and cache:

- config sync (cron)   remote master -> local mirror -> cache
- collection (interval) protocol readings -> validated batches -> local store
- upload (cron)         unsynchronized readings -> remote API

and serves a small operator API:

    GET  /health    liveness
    GET  /status    last cycle, per-phase counts, upload outcome, backlog
    POST /sync      run a config sync now
    POST /upload    run an upload tick now
    POST /readings  enqueue raw readings from a protocol driver
"""

import asyncio
import signal
from datetime import datetime, timedelta, timezone

from aiohttp import web

from edgesync.common.config import (
    DEFAULT_CONFIG_SYNC_CRON,
    DEFAULT_UPLOAD_CRON,
    ENV_CONFIG_SYNC_CRON,
    ENV_UPLOAD_CRON,
    Settings,
    resolve_cron,
)
from edgesync.common.logging_setup import get_service_logger
from edgesync.common.models import RawReading
from edgesync.common.scheduler import CronLoop, IntervalLoop, SchedulerGroup
from edgesync.storage import LocalDatabase, RemoteDatabase

from edgesync.services.collection import (
    BatchWriter,
    ReadingAccumulator,
    ReadingCollector,
    ReadingSource,
    ReadingValidator,
)
from edgesync.services.config import ConfigSyncOrchestrator, LocalCacheManager
from edgesync.services.upload import RemoteApiClient, UploadScheduler

logger = get_service_logger("service")

LOOP_CONFIG_SYNC = "config_sync"
LOOP_COLLECTION = "collection"
LOOP_UPLOAD = "upload"


class EdgeSyncService:
    """
    Edge node service.

    Components are created from Settings but may be injected, which is
    how tests run the whole node against temporary databases.
    """

    def __init__(
        self,
        settings: Settings,
        local_db: LocalDatabase | None = None,
        remote_db: RemoteDatabase | None = None,
        api_client: RemoteApiClient | None = None,
        reading_source: ReadingSource | None = None,
    ):
        self.settings = settings

        self.local_db = local_db or LocalDatabase.from_url(settings.local.url, settings.local.echo)
        self.remote_db = remote_db or RemoteDatabase.from_url(settings.remote.db_url)
        if api_client is None and settings.remote.api_url:
            api_client = RemoteApiClient(
                settings.remote.api_url, timeout=settings.remote.upload_timeout_s
            )
        self.api_client = api_client

        self.cache = LocalCacheManager(self.local_db)
        self.orchestrator = ConfigSyncOrchestrator(
            self.remote_db, self.local_db, self.cache, tenant_id=settings.tenant_id
        )

        collection = settings.collection
        max_age = (
            timedelta(days=float(collection.max_reading_age_days))
            if collection.max_reading_age_days is not None
            else None
        )
        self.collector = ReadingCollector(
            source=reading_source,
            cache=self.cache,
            writer=BatchWriter(
                self.local_db,
                batch_size=collection.batch_size,
                attempts=collection.insert_attempts,
                backoff_s=collection.insert_backoff_s,
            ),
            validator=ReadingValidator(
                max_age=max_age,
                future_tolerance=timedelta(seconds=collection.future_tolerance_s),
            ),
            accumulator=ReadingAccumulator(max_pending=collection.max_pending_readings),
        )
        self.uploader = UploadScheduler(
            self.local_db,
            self.cache,
            self.api_client,
            tenant_id=settings.tenant_id,
            batch_size=settings.upload.batch_size,
            max_rows_per_tick=settings.upload.max_rows_per_tick,
        )

        self.loops = SchedulerGroup()
        self.config_sync_loop = self.loops.add(
            CronLoop(settings.config_sync_cron, self._config_sync_tick, name=LOOP_CONFIG_SYNC)
        )
        self.collection_loop = self.loops.add(
            IntervalLoop(
                settings.schedule.collection_interval_s,
                self._collection_tick,
                name=LOOP_COLLECTION,
            )
        )
        self.upload_loop = self.loops.add(
            CronLoop(settings.upload_cron, self._upload_tick, name=LOOP_UPLOAD)
        )

        self._start_time = datetime.now(timezone.utc)
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ------------------------------------------------------------------
    # Loop callbacks
    # ------------------------------------------------------------------

    async def _config_sync_tick(self) -> None:
        await self.orchestrator.run_cycle()

        retention = self.settings.local.sync_log_retention_days
        if retention is not None:
            await self.local_db.prune_sync_log(timedelta(days=float(retention)))

    async def _collection_tick(self) -> None:
        await self.collector.run_cycle()

    async def _upload_tick(self) -> None:
        await self.uploader.tick()

    # ------------------------------------------------------------------
    # Manual triggers (same non-reentrancy guard as the schedule)
    # ------------------------------------------------------------------

    async def trigger_sync(self) -> dict:
        """Run a config sync cycle now, overriding the cron schedule."""
        ran = await self.config_sync_loop.run_now()
        result = self.orchestrator.last_result
        return {
            "triggered": ran,
            "skipped": not ran,
            "result": result.to_dict() if (ran and result) else None,
        }

    async def trigger_upload(self) -> dict:
        ran = await self.upload_loop.run_now()
        outcome = self.uploader.last_outcome
        return {
            "triggered": ran,
            "skipped": not ran,
            "result": outcome.to_dict() if (ran and outcome) else None,
        }

    async def update_schedules(self, config_sync_cron: str | None = None, upload_cron: str | None = None) -> None:
        """
        Apply changed schedule settings.

        A schedule passed as None keeps its configured value. Both values
        then go through the same resolution as at startup (explicit, then
        environment, then default) and are validated before anything changes.
        """
        schedule = self.settings.schedule
        if config_sync_cron is None:
            config_sync_cron = schedule.config_sync_cron
        if upload_cron is None:
            upload_cron = schedule.upload_cron

        sync_expr = resolve_cron(config_sync_cron, ENV_CONFIG_SYNC_CRON, DEFAULT_CONFIG_SYNC_CRON)
        upload_expr = resolve_cron(upload_cron, ENV_UPLOAD_CRON, DEFAULT_UPLOAD_CRON)

        schedule.config_sync_cron = config_sync_cron
        schedule.upload_cron = upload_cron
        await self.config_sync_loop.reschedule(sync_expr)
        await self.upload_loop.reschedule(upload_expr)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self) -> dict:
        last_cycle = self.orchestrator.last_result
        collection = self.collector.last_metrics

        return {
            "service": "edgesync",
            "running": self._running,
            "uptime": int((datetime.now(timezone.utc) - self._start_time).total_seconds()),
            "config_sync": {
                "state": self.orchestrator.state.value,
                "last_cycle_at": (
                    last_cycle.finished_at.isoformat()
                    if last_cycle and last_cycle.finished_at
                    else None
                ),
                "last_cycle": last_cycle.to_dict() if last_cycle else None,
            },
            "upload": await self.uploader.get_stats(),
            "collection": {
                "queued": len(self.collector.accumulator),
                "dropped_overflow_total": self.collector.accumulator.dropped_overflow_total,
                "last_cycle": collection.to_dict() if collection else None,
            },
            "cache": self.cache.get_stats(),
            "loops": self.loops.get_stats(),
            "recent_sync_log": [
                {**row, "synced_at": row["synced_at"].isoformat() if row["synced_at"] else None}
                for row in await self.local_db.get_recent_sync_log(limit=10)
            ],
            "settings": self.settings.to_dict(),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        """Prepare storage and load the cache from the local mirror."""
        await self.local_db.init_schema()
        # Offline start still has the last mirrored configuration
        await self.cache.reload()

    async def start(self, serve_http: bool = True) -> None:
        """Start the service and block until a shutdown signal."""
        logger.info("Starting EdgeSync Service", extra=self.settings.to_dict())
        self._running = True

        await self.setup()

        if serve_http:
            await self._start_http_server()

        # Initial sync so a fresh node gets configuration without waiting for cron
        await self.config_sync_loop.run_now()

        await self.loops.start_all()
        self._setup_signal_handlers()

        logger.info("EdgeSync Service started")
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop loops and release resources. Committed batches are untouched."""
        logger.info("Stopping EdgeSync Service")
        self._running = False

        self.loops.stop_all()
        await self._stop_http_server()

        if self.api_client:
            await self.api_client.close()
        await self.remote_db.close()
        await self.local_db.close()

        if len(self.collector.accumulator):
            logger.warning(
                f"Discarding {len(self.collector.accumulator)} unflushed readings on shutdown"
            )
        logger.info("EdgeSync Service stopped")

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_post("/sync", self._sync_handler)
        app.router.add_post("/upload", self._upload_handler)
        app.router.add_post("/readings", self._readings_handler)
        return app

    async def _start_http_server(self) -> None:
        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.settings.http_host, self.settings.http_port)
        await site.start()

        logger.info(f"HTTP server started on {self.settings.http_host}:{self.settings.http_port}")

    async def _stop_http_server(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return web.json_response({
            "status": "healthy" if self._running else "unhealthy",
            "service": "edgesync",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "cache_version": self.cache.snapshot.version,
        })

    async def _status_handler(self, request: web.Request) -> web.Response:
        return web.json_response(await self.get_status())

    async def _sync_handler(self, request: web.Request) -> web.Response:
        result = await self.trigger_sync()
        return web.json_response(result, status=200 if result["triggered"] else 409)

    async def _upload_handler(self, request: web.Request) -> web.Response:
        result = await self.trigger_upload()
        return web.json_response(result, status=200 if result["triggered"] else 409)

    async def _readings_handler(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid JSON"}, status=400)

        items = body.get("readings") if isinstance(body, dict) else body
        if not isinstance(items, list):
            return web.json_response({"error": "expected a list of readings"}, status=400)

        try:
            readings = [
                RawReading(
                    meter_id=item.get("meter_id"),
                    element_id=_element_id(item),
                    value=item.get("value"),
                    timestamp=item.get("timestamp"),
                    register_id=item.get("register_id"),
                    field_name=item.get("field_name"),
                    unit=item.get("unit"),
                )
                for item in items
            ]
        except AttributeError:
            return web.json_response({"error": "each reading must be an object"}, status=400)

        added = self.collector.submit(readings)
        return web.json_response({
            "accepted": added.accepted,
            "replaced": added.replaced,
            "dropped_unmapped": added.dropped_unmapped,
            "queued": len(self.collector.accumulator),
        })


def _element_id(item: dict):
    # Drivers without element addressing send null or omit the key
    element_id = item.get("element_id")
    return 0 if element_id is None else element_id
