# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rbackup FastAPI Integration - Admin routes driving the pipeline.

The HTTP client is the driver: it starts a run and then calls the advance
endpoint repeatedly, one bounded step per request, until the run reports
``running: false``. This module provides:
- Lifespan management (startup/shutdown)
- Protected admin endpoints for backup, restore and backup management
"""

import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from rbackup.backup import (
    advance_backup,
    advance_restore,
    cancel_backup,
    cancel_restore,
    get_backup_status,
    get_restore_status,
    start_backup,
    start_restore,
)
from rbackup.config import BackupConfig, BackupType
from rbackup.core import PipelineState, initialize_pipeline_state, shutdown_pipeline_state
from rbackup.exceptions import (
    BackupNotFoundError,
    NoActiveRunError,
    RBackupError,
    RunAlreadyActiveError,
    ValidationError,
)
from rbackup.vault.storage import (
    analyze_backup,
    delete_backup,
    list_archive_members,
    list_backups,
)

logger = structlog.get_logger()

API_KEY_ENV = "RBACKUP_ADMIN_API_KEY"

# Security
security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the RBACKUP_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv(API_KEY_ENV)

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail=f"{API_KEY_ENV} environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


class BackupStartRequest(BaseModel):
    backup_type: BackupType = BackupType.FULL
    destinations: List[str] | None = None


class RestoreStartRequest(BaseModel):
    backup_id: str
    restore_db: bool = True
    restore_files: bool = True
    create_snapshot: bool = True
    selected_files: List[str] = Field(default_factory=list)


def _http_error(error: RBackupError) -> HTTPException:
    """Map pipeline errors to HTTP status codes."""
    if isinstance(error, RunAlreadyActiveError):
        status = 409
    elif isinstance(error, (NoActiveRunError, BackupNotFoundError)):
        status = 404
    elif isinstance(error, ValidationError):
        status = 400
    else:
        status = 500
    return HTTPException(status_code=status, detail=error.message)


def register_rbackup_routes(
    app: FastAPI,
    config: BackupConfig,
    state: PipelineState,
    prefix: str = "/admin/rbackup",
) -> None:
    """
    Register rbackup admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        config: Backup configuration
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/rbackup)
    """

    @app.post(f"{prefix}/backup/start", dependencies=[Depends(verify_api_key)])
    async def start_backup_run(request: BackupStartRequest) -> dict:
        """Start a backup run."""
        try:
            run = await start_backup(config, state, request.backup_type, request.destinations)
        except RBackupError as e:
            raise _http_error(e)
        return run.model_dump(mode="json")

    @app.post(f"{prefix}/backup/advance", dependencies=[Depends(verify_api_key)])
    async def advance_backup_run() -> dict:
        """
        Perform one step of the active backup.

        Call repeatedly until ``running`` is false.
        """
        try:
            run = await advance_backup(config, state)
        except RBackupError as e:
            raise _http_error(e)
        return {"running": run.running, "run": run.model_dump(mode="json")}

    @app.post(f"{prefix}/backup/cancel", dependencies=[Depends(verify_api_key)])
    async def cancel_backup_run() -> dict:
        """Cancel the active backup and delete its run directory."""
        return await cancel_backup(config, state)

    @app.get(f"{prefix}/backup/status", dependencies=[Depends(verify_api_key)])
    async def backup_status() -> dict:
        """Running flag and current backup run record."""
        return await get_backup_status(state)

    @app.get(f"{prefix}/backups", dependencies=[Depends(verify_api_key)])
    async def list_stored_backups(include_snapshots: bool = False) -> list:
        """List backups that have a manifest, newest first."""
        manifests = await list_backups(config, include_snapshots=include_snapshots)
        return [m.model_dump(mode="json") for m in manifests]

    @app.get(f"{prefix}/backups/{{backup_id}}", dependencies=[Depends(verify_api_key)])
    async def analyze_stored_backup(backup_id: str) -> dict:
        """Summarize a backup for restore planning."""
        try:
            return await analyze_backup(config, backup_id)
        except RBackupError as e:
            raise _http_error(e)

    @app.get(
        f"{prefix}/backups/{{backup_id}}/archives/{{archive_name}}",
        dependencies=[Depends(verify_api_key)],
    )
    async def list_backup_archive(backup_id: str, archive_name: str) -> list:
        """List files inside an archive part, for selective restores."""
        try:
            return await list_archive_members(config, backup_id, archive_name)
        except RBackupError as e:
            raise _http_error(e)

    @app.delete(f"{prefix}/backups/{{backup_id}}", dependencies=[Depends(verify_api_key)])
    async def delete_stored_backup(backup_id: str) -> dict:
        """Delete a backup directory."""
        try:
            await delete_backup(config, backup_id)
        except RBackupError as e:
            raise _http_error(e)
        return {"deleted": True, "backup_id": backup_id}

    @app.post(f"{prefix}/restore/start", dependencies=[Depends(verify_api_key)])
    async def start_restore_run(request: RestoreStartRequest) -> dict:
        """Start restoring a backup."""
        try:
            run = await start_restore(
                config,
                state,
                request.backup_id,
                restore_db=request.restore_db,
                restore_files=request.restore_files,
                create_snapshot=request.create_snapshot,
                selected_files=request.selected_files,
            )
        except RBackupError as e:
            raise _http_error(e)
        return run.model_dump(mode="json")

    @app.post(f"{prefix}/restore/advance", dependencies=[Depends(verify_api_key)])
    async def advance_restore_run() -> dict:
        """
        Perform one step of the active restore.

        Call repeatedly until ``running`` is false.
        """
        try:
            run = await advance_restore(config, state)
        except RBackupError as e:
            raise _http_error(e)
        return {"running": run.running, "run": run.model_dump(mode="json")}

    @app.post(f"{prefix}/restore/cancel", dependencies=[Depends(verify_api_key)])
    async def cancel_restore_run() -> dict:
        """
        Discard the active restore.

        Nothing is rolled back; the response carries a warning.
        """
        return await cancel_restore(config, state)

    @app.get(f"{prefix}/restore/status", dependencies=[Depends(verify_api_key)])
    async def restore_status() -> dict:
        """Running flag and current restore run record."""
        return await get_restore_status(state)

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration (sensitive values redacted).
        """
        return _redacted_config(config)


def _redacted_config(config: BackupConfig) -> Dict[str, Any]:
    return {
        "backup_dir": str(config.backup_dir),
        "source_dir": str(config.source_dir),
        "database_configured": config.database_url is not None,
        "destinations": [d.value for d in config.destinations],
        "archive_format": config.archive_format.value,
        "retention_count": config.retention_count,
        "encryption_enabled": config.encryption_enabled,
        "db_chunk_size": config.db_chunk_size,
        "file_batch_size": config.file_batch_size,
        "max_archive_mb": config.max_archive_mb,
        "restore_statements_per_step": config.restore_statements_per_step,
        "exclude_paths": config.exclude_paths,
        "remote_folder": config.remote_folder,
    }


@asynccontextmanager
async def rbackup_lifespan(
    app: FastAPI,
    config: BackupConfig,
    prefix: str = "/admin/rbackup",
):
    """
    Lifespan context manager for FastAPI.

    Use this directly if you prefer the lifespan pattern:

        app = FastAPI(lifespan=lambda app: rbackup_lifespan(app, config))

    Args:
        app: FastAPI application
        config: Backup configuration
        prefix: URL prefix for admin endpoints
    """
    logger.info("rbackup_lifespan_starting", backup_dir=str(config.backup_dir))

    state = await initialize_pipeline_state(config)
    app.state.rbackup_state = state
    app.state.rbackup_config = config

    register_rbackup_routes(app, config, state, prefix)

    logger.info("rbackup_lifespan_started")

    try:
        yield
    finally:
        logger.info("rbackup_lifespan_stopping")
        await shutdown_pipeline_state(state)
        app.state.rbackup_state = None
        logger.info("rbackup_lifespan_stopped")


def setup_rbackup_plugin(
    app: FastAPI,
    config: BackupConfig,
    prefix: str = "/admin/rbackup",
) -> None:
    """
    Set up the rbackup plugin on an existing app.

    Wraps the app's lifespan so that pipeline state is initialized on
    startup (and the admin routes registered) and released on shutdown.

    Args:
        app: FastAPI application
        config: Backup configuration
        prefix: URL prefix for admin endpoints
    """
    app.state.rbackup_config = config
    app.state.rbackup_state = None

    inner = app.router.lifespan_context

    @asynccontextmanager
    async def lifespan(app_: FastAPI):
        async with rbackup_lifespan(app_, config, prefix):
            async with inner(app_) as inner_state:
                yield inner_state

    app.router.lifespan_context = lifespan


def get_rbackup_state(app: FastAPI) -> PipelineState:
    """
    Get rbackup state from a FastAPI app.

    Raises:
        RuntimeError: If rbackup is not initialized
    """
    state = getattr(app.state, "rbackup_state", None)
    if not state:
        raise RuntimeError("rbackup not initialized. Call setup_rbackup_plugin first.")
    return state


def get_rbackup_config(app: FastAPI) -> BackupConfig:
    """
    Get rbackup config from a FastAPI app.

    Raises:
        RuntimeError: If rbackup is not initialized
    """
    config = getattr(app.state, "rbackup_config", None)
    if not config:
        raise RuntimeError("rbackup not initialized. Call setup_rbackup_plugin first.")
    return config
