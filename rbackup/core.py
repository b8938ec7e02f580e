# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rbackup Core - Runtime state shared by the orchestrators.

The runtime state only carries handles (paths, the S3 session, an optional
HTTP transport). Everything a run needs to resume lives in the run registry,
so a fresh process can pick up a run started by another one.
"""

from pathlib import Path
from typing import Any, TypedDict

from rbackup.config import BackupConfig


class PipelineState(TypedDict):
    """Runtime handles for backup and restore operations."""

    state_db_path: Path
    backup_dir: Path
    s3_session: Any  # aiobotocore session
    http_transport: Any  # httpx transport override (None uses the network)


async def initialize_pipeline_state(
    config: BackupConfig,
    http_transport: Any = None,
) -> PipelineState:
    """
    Initialize runtime state for backup and restore operations.

    Creates the backup directory and the run registry schema.

    Args:
        config: Backup configuration
        http_transport: Optional httpx transport for the HTTP destinations

    Returns:
        Initialized PipelineState dictionary
    """
    import structlog
    from aiobotocore.session import get_session

    from rbackup.registry import init_registry_db

    logger = structlog.get_logger()

    # Create directories
    config.backup_dir.mkdir(parents=True, exist_ok=True)
    registry_path = config.registry_path
    registry_path.parent.mkdir(parents=True, exist_ok=True)

    # Initialize registry
    await init_registry_db(registry_path)

    logger.info(
        "pipeline_state_initialized",
        backup_dir=str(config.backup_dir),
        destinations=[d.value for d in config.destinations],
    )

    return PipelineState(
        state_db_path=registry_path,
        backup_dir=config.backup_dir,
        s3_session=get_session(),
        http_transport=http_transport,
    )


async def shutdown_pipeline_state(state: PipelineState) -> None:
    """Release runtime resources."""
    import structlog

    logger = structlog.get_logger()

    transport = state.get("http_transport")
    if transport is not None and hasattr(transport, "aclose"):
        try:
            await transport.aclose()
        except Exception as e:
            logger.warning("http_transport_close_failed", error=str(e))

    logger.info("pipeline_state_shutdown_complete")
