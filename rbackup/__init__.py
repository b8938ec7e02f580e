# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rbackup - Chunked, resumable backup and restore for a web application.

Exports a SQL database and archives a file tree in small bounded steps,
optionally encrypts the artifacts, distributes them to local, S3, Dropbox
and Google Drive destinations, and restores them the same way. Every step
persists its cursor, so a run survives process restarts and request time
limits.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from rbackup.config import create_config

# Core functions
from rbackup.core import (
    initialize_pipeline_state,
    shutdown_pipeline_state,
)

# Backup and restore operations
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

from rbackup.vault.storage import analyze_backup

# Environment-based configuration and profiles (additional helpers)
from rbackup.env import (
    create_config_from_env,
    constrained_hosting,
    cloud_only,
)

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "constrained_hosting",
    "cloud_only",
    # Runtime state
    "initialize_pipeline_state",
    "shutdown_pipeline_state",
    # Backup operations
    "start_backup",
    "advance_backup",
    "cancel_backup",
    "get_backup_status",
    "analyze_backup",
    # Restore operations
    "start_restore",
    "advance_restore",
    "cancel_restore",
    "get_restore_status",
]
