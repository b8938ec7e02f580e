# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Integration Tests for rbackup.

These tests drive the admin endpoints the way a browser client does:
start a run, then call advance until it reports it is no longer running.
- Authentication
- Backup and restore over HTTP
- Error to status code mapping
- Plugin lifespan
"""

from pathlib import Path

import pytest
import pytest_asyncio

AUTH = {"Authorization": "Bearer test-api-key-12345"}
PREFIX = "/admin/rbackup"


@pytest_asyncio.fixture
async def admin_client(test_config, pipeline_state):
    """HTTP client for an app with the admin routes registered."""
    from fastapi import FastAPI
    from httpx import ASGITransport, AsyncClient

    from rbackup.integrations.fastapi import register_rbackup_routes

    app = FastAPI()
    register_rbackup_routes(app, test_config, pipeline_state)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _advance_until_done(client, kind: str, limit: int = 500) -> dict:
    for _ in range(limit):
        response = await client.post(f"{PREFIX}/{kind}/advance", headers=AUTH)
        assert response.status_code == 200
        body = response.json()
        if not body["running"]:
            return body["run"]
    raise AssertionError(f"{kind} did not finish")


# ============================================================================
# Authentication
# ============================================================================

@pytest.mark.asyncio
async def test_missing_authorization(admin_client):
    response = await admin_client.get(f"{PREFIX}/backup/status")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_wrong_api_key(admin_client):
    response = await admin_client.get(
        f"{PREFIX}/backup/status",
        headers={"Authorization": "Bearer wrong-key"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_api_key_not_configured(admin_client, monkeypatch):
    monkeypatch.delenv("RBACKUP_ADMIN_API_KEY")

    response = await admin_client.get(f"{PREFIX}/backup/status", headers=AUTH)
    assert response.status_code == 500


# ============================================================================
# Backup endpoints
# ============================================================================

@pytest.mark.asyncio
async def test_backup_over_http(admin_client):
    response = await admin_client.post(
        f"{PREFIX}/backup/start", headers=AUTH, json={"backup_type": "full"}
    )
    assert response.status_code == 200
    backup_id = response.json()["id"]

    # Second start while running
    response = await admin_client.post(f"{PREFIX}/backup/start", headers=AUTH, json={})
    assert response.status_code == 409

    status = (await admin_client.get(f"{PREFIX}/backup/status", headers=AUTH)).json()
    assert status["running"] is True

    run = await _advance_until_done(admin_client, "backup")
    assert run["id"] == backup_id
    assert run["step"]["outcome"] == "success"

    listing = (await admin_client.get(f"{PREFIX}/backups", headers=AUTH)).json()
    assert [m["backup_id"] for m in listing] == [backup_id]
    assert listing[0]["files"] == ["database.sql", "files-part001.tar.gz"]

    analysis = (await admin_client.get(f"{PREFIX}/backups/{backup_id}", headers=AUTH)).json()
    assert analysis["has_db"] is True
    assert analysis["archives"] == ["files-part001.tar.gz"]

    response = await admin_client.get(
        f"{PREFIX}/backups/{backup_id}/archives/files-part001.tar.gz", headers=AUTH
    )
    assert response.status_code == 200
    assert "2026/01/notes.txt" in response.json()


@pytest.mark.asyncio
async def test_backup_request_validation(admin_client):
    response = await admin_client.post(
        f"{PREFIX}/backup/start", headers=AUTH, json={"backup_type": "everything"}
    )
    assert response.status_code == 422

    response = await admin_client.post(
        f"{PREFIX}/backup/start", headers=AUTH, json={"destinations": ["ftp"]}
    )
    assert response.status_code == 400

    response = await admin_client.post(f"{PREFIX}/backup/advance", headers=AUTH)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_cancel_backup_over_http(admin_client, test_config):
    response = await admin_client.post(
        f"{PREFIX}/backup/start", headers=AUTH, json={"backup_type": "db_only"}
    )
    backup_id = response.json()["id"]
    await admin_client.post(f"{PREFIX}/backup/advance", headers=AUTH)

    body = (await admin_client.post(f"{PREFIX}/backup/cancel", headers=AUTH)).json()

    assert body["cancelled"] is True
    assert not (test_config.backup_dir / backup_id).exists()


@pytest.mark.asyncio
async def test_delete_backup(admin_client):
    await admin_client.post(f"{PREFIX}/backup/start", headers=AUTH, json={"backup_type": "db_only"})
    run = await _advance_until_done(admin_client, "backup")

    response = await admin_client.delete(f"{PREFIX}/backups/{run['id']}", headers=AUTH)
    assert response.status_code == 200

    response = await admin_client.get(f"{PREFIX}/backups/{run['id']}", headers=AUTH)
    assert response.status_code == 404

    response = await admin_client.delete(f"{PREFIX}/backups/{run['id']}", headers=AUTH)
    assert response.status_code == 404


# ============================================================================
# Restore endpoints
# ============================================================================

@pytest.mark.asyncio
async def test_restore_over_http(admin_client, app_db: Path):
    from conftest import table_ids

    await admin_client.post(f"{PREFIX}/backup/start", headers=AUTH, json={"backup_type": "db_only"})
    backup = await _advance_until_done(admin_client, "backup")

    response = await admin_client.post(
        f"{PREFIX}/restore/start",
        headers=AUTH,
        json={"backup_id": backup["id"], "restore_files": False, "create_snapshot": False},
    )
    assert response.status_code == 200

    run = await _advance_until_done(admin_client, "restore")

    assert run["step"]["outcome"] == "success"
    assert run["progress"] == 100.0
    assert table_ids(app_db, "posts") == list(range(1, 26))

    status = (await admin_client.get(f"{PREFIX}/restore/status", headers=AUTH)).json()
    assert status["running"] is False


@pytest.mark.asyncio
async def test_restore_errors_map_to_status_codes(admin_client):
    response = await admin_client.post(
        f"{PREFIX}/restore/start", headers=AUTH, json={"backup_id": "backup-missing"}
    )
    assert response.status_code == 404

    await admin_client.post(
        f"{PREFIX}/backup/start", headers=AUTH, json={"backup_type": "files_only"}
    )
    backup = await _advance_until_done(admin_client, "backup")

    # A files-only backup has no database to restore
    response = await admin_client.post(
        f"{PREFIX}/restore/start", headers=AUTH, json={"backup_id": backup["id"]}
    )
    assert response.status_code == 400

    response = await admin_client.post(f"{PREFIX}/restore/advance", headers=AUTH)
    assert response.status_code == 404

    body = (await admin_client.post(f"{PREFIX}/restore/cancel", headers=AUTH)).json()
    assert body["cancelled"] is False


# ============================================================================
# Configuration and plugin setup
# ============================================================================

@pytest.mark.asyncio
async def test_config_endpoint_redacts_secrets(temp_dir: Path, encrypted_config):
    from fastapi import FastAPI
    from httpx import ASGITransport, AsyncClient

    from rbackup.config import Destination
    from rbackup.core import initialize_pipeline_state, shutdown_pipeline_state
    from rbackup.integrations.fastapi import register_rbackup_routes

    config = encrypted_config.with_updates(
        destinations=[Destination.LOCAL, Destination.S3],
        s3_bucket="bucket",
    )
    state = await initialize_pipeline_state(config)
    try:
        app = FastAPI()
        register_rbackup_routes(app, config, state)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get(f"{PREFIX}/config", headers=AUTH)

        assert response.status_code == 200
        data = response.json()
        assert data["encryption_enabled"] is True
        assert data["database_configured"] is True
        assert "correct horse" not in response.text
        assert "sqlite" not in response.text
    finally:
        await shutdown_pipeline_state(state)


@pytest.mark.asyncio
async def test_plugin_lifespan(test_config):
    from fastapi import FastAPI
    from httpx import ASGITransport, AsyncClient

    from rbackup.integrations import setup_rbackup_plugin
    from rbackup.integrations.fastapi import get_rbackup_state

    app = FastAPI()
    setup_rbackup_plugin(app, test_config, prefix="/ops/backups")

    with pytest.raises(RuntimeError):
        get_rbackup_state(app)

    async with app.router.lifespan_context(app):
        assert get_rbackup_state(app)["backup_dir"] == test_config.backup_dir

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/ops/backups/backup/status", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"running": False, "run": None}

    with pytest.raises(RuntimeError):
        get_rbackup_state(app)
