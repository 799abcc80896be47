"""
Integration tests for the EdgeSync service and its operator API.

Tests verify:
- A full node pass: config sync, reading intake, collection flush and
  upload, observed through the HTTP endpoints.
- Manual triggers honour the same guard as the schedule (409 when busy).
- Schedule changes go through the standard cron resolution and leave
  the schedule that was not passed as configured.
- The config sync tick prunes sync_log rows past the retention window.
- A null element_id from a driver is stored as element 0.
- The CLI validates settings before doing anything.
"""

from __future__ import annotations

import json
from datetime import timedelta

import httpx
import pytest
from aiohttp.test_utils import TestClient, TestServer
from sqlalchemy import insert, select

from edgesync.common.config import DEFAULT_UPLOAD_CRON, settings_from_dict
from edgesync.common.exceptions import ConfigError
from edgesync.common.timestamp import to_iso, utc_now
from edgesync.main import main
from edgesync.service import EdgeSyncService
from edgesync.services.upload import RemoteApiClient
from edgesync.storage.schema import sync_log

from factories import make_meter, make_register, make_tenant

API_URL = "https://api.example.com/api"


@pytest.fixture
def uploads() -> list[dict]:
    return []


@pytest.fixture
def service(local_db, remote_db, uploads) -> EdgeSyncService:
    def handler(request: httpx.Request) -> httpx.Response:
        uploads.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True})

    settings = settings_from_dict({
        "tenant_id": 1,
        "remote": {"db_url": "sqlite+aiosqlite:///unused.db", "api_url": API_URL},
    })
    return EdgeSyncService(
        settings,
        local_db=local_db,
        remote_db=remote_db,
        api_client=RemoteApiClient(API_URL, transport=httpx.MockTransport(handler)),
    )


class TestOperatorApi:

    @pytest.mark.asyncio
    async def test_full_node_pass(self, service, seed_remote, uploads) -> None:
        await seed_remote(
            tenants=[make_tenant(1)],
            meters=[make_meter(10, tenant_id=1, device_id=100)],
            registers=[make_register(100, 1, field_name="energy")],
        )
        await service.setup()

        async with TestClient(TestServer(service.create_app())) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            assert (await resp.json())["service"] == "edgesync"

            resp = await client.post("/sync")
            body = await resp.json()
            assert resp.status == 200
            assert body["triggered"] is True
            assert body["result"]["phases"]["meter"]["inserted"] == 1
            assert body["result"]["cache_reloaded"] is True

            resp = await client.post("/readings", json={"readings": [
                {"meter_id": 10, "register_id": 1, "value": 12.5, "timestamp": to_iso(utc_now())},
                {"meter_id": 10, "register_id": 99, "value": 1.0, "timestamp": to_iso(utc_now())},
            ]})
            body = await resp.json()
            assert resp.status == 200
            assert body["accepted"] == 1
            assert body["dropped_unmapped"] == 1

            await service.collection_loop.run_now()

            resp = await client.post("/upload")
            body = await resp.json()
            assert resp.status == 200
            assert body["result"]["status"] == "success"
            assert body["result"]["uploaded"] == 1

            resp = await client.get("/status")
            status = await resp.json()
            assert status["upload"]["pending_rows"] == 0
            assert status["collection"]["queued"] == 0
            assert list(status["config_sync"]["last_cycle"]["phases"]) == [
                "tenant", "meter", "device_register"
            ]
            assert "upload" in {r["operation_type"] for r in status["recent_sync_log"]}

        assert uploads[0]["tenant_id"] == 1
        assert uploads[0]["readings"][0]["data_point"] == "energy"
        assert uploads[0]["readings"][0]["value"] == 12.5
        await service.api_client.close()

    @pytest.mark.asyncio
    async def test_busy_trigger_returns_conflict(self, service) -> None:
        await service.setup()

        async with TestClient(TestServer(service.create_app())) as client:
            async with service.upload_loop._busy:
                resp = await client.post("/upload")
            body = await resp.json()

        assert resp.status == 409
        assert body["skipped"] is True
        assert service.upload_loop.overlap_skipped == 1

    @pytest.mark.asyncio
    async def test_readings_rejects_bad_body(self, service) -> None:
        await service.setup()

        async with TestClient(TestServer(service.create_app())) as client:
            bad_json = await client.post("/readings", data="not json")
            not_list = await client.post("/readings", json={"readings": 5})

        assert bad_json.status == 400
        assert not_list.status == 400

    @pytest.mark.asyncio
    async def test_null_element_id_defaults_to_zero(self, service) -> None:
        await service.setup()

        async with TestClient(TestServer(service.create_app())) as client:
            resp = await client.post("/readings", json=[
                {"meter_id": 10, "element_id": None, "field_name": "power", "value": 1.5,
                 "timestamp": to_iso(utc_now())},
            ])

        assert resp.status == 200
        assert (await resp.json())["accepted"] == 1
        assert service.collector.accumulator.pending()[0].element_id == 0

    @pytest.mark.asyncio
    async def test_config_sync_prunes_old_sync_log(self, service) -> None:
        await service.setup()
        now = utc_now()
        async with service.local_db.engine.begin() as conn:
            await conn.execute(insert(sync_log), [
                {"operation_type": "upload", "batch_size": 1, "success": True,
                 "synced_at": now - timedelta(days=45)},
                {"operation_type": "upload", "batch_size": 2, "success": True,
                 "synced_at": now - timedelta(days=2)},
            ])

        await service.config_sync_loop.run_now()

        async with service.local_db.engine.connect() as conn:
            sizes = [r["batch_size"] for r in (await conn.execute(select(sync_log))).mappings()]
        assert 1 not in sizes
        assert 2 in sizes


class TestSchedules:

    @pytest.mark.asyncio
    async def test_update_schedules(self, service, monkeypatch: pytest.MonkeyPatch) -> None:
        assert service.upload_loop.expression == DEFAULT_UPLOAD_CRON

        monkeypatch.setenv("EDGESYNC_UPLOAD_CRON", "*/15 * * * *")
        await service.update_schedules(config_sync_cron="30 * * * *")

        assert service.config_sync_loop.expression == "30 * * * *"
        assert service.upload_loop.expression == "*/15 * * * *"

    @pytest.mark.asyncio
    async def test_update_keeps_schedule_not_passed(self, local_db, remote_db) -> None:
        settings = settings_from_dict({
            "remote": {"db_url": "sqlite+aiosqlite:///unused.db"},
            "schedule": {"upload_cron": "*/2 * * * *"},
        })
        service = EdgeSyncService(settings, local_db=local_db, remote_db=remote_db)

        await service.update_schedules(config_sync_cron="30 * * * *")

        assert service.settings.schedule.upload_cron == "*/2 * * * *"
        assert service.upload_loop.expression == "*/2 * * * *"
        assert service.config_sync_loop.expression == "30 * * * *"

    @pytest.mark.asyncio
    async def test_invalid_schedule_changes_nothing(self, service) -> None:
        with pytest.raises(ConfigError):
            await service.update_schedules(config_sync_cron="bogus")

        assert service.settings.schedule.config_sync_cron is None
        assert service.config_sync_loop.expression == "0 * * * *"


class TestCli:

    def test_dry_run(self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture) -> None:
        monkeypatch.setenv("EDGESYNC_REMOTE_DB_URL", "sqlite+aiosqlite:///remote.db")

        assert main(["--dry-run"]) == 0
        assert "configuration valid" in capsys.readouterr().out

    def test_missing_remote_url_fails(self, capsys: pytest.CaptureFixture) -> None:
        assert main(["--dry-run"]) == 1
        assert "db_url" in capsys.readouterr().err

    def test_missing_config_file_fails(self) -> None:
        assert main(["--config", "nope.yaml", "--dry-run"]) == 1
