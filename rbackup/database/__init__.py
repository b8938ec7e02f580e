# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Database Layer - Adapters, chunked table export and statement replay.
"""

from rbackup.database.adapters import (
    DatabaseAdapter,
    ErrorKind,
    MysqlDatabase,
    SqlOutcome,
    SqliteDatabase,
    open_database,
)

from rbackup.database.exporter import (
    ExportChunkResult,
    cancel_export,
    init_export,
    process_export_chunk,
)

from rbackup.database.replay import (
    ReplayResult,
    replay_statements,
)

__all__ = [
    # Adapters
    "DatabaseAdapter",
    "ErrorKind",
    "MysqlDatabase",
    "SqlOutcome",
    "SqliteDatabase",
    "open_database",
    # Exporter
    "ExportChunkResult",
    "cancel_export",
    "init_export",
    "process_export_chunk",
    # Replay
    "ReplayResult",
    "replay_statements",
]
