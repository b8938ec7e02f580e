# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - Backup and restore run orchestration.
"""

from rbackup.backup.manager import (
    advance_backup,
    cancel_backup,
    get_backup_status,
    start_backup,
)

from rbackup.backup.restore import (
    CANCEL_WARNING,
    advance_restore,
    cancel_restore,
    get_restore_status,
    start_restore,
)

__all__ = [
    # Manager
    "advance_backup",
    "cancel_backup",
    "get_backup_status",
    "start_backup",
    # Restore
    "CANCEL_WARNING",
    "advance_restore",
    "cancel_restore",
    "get_restore_status",
    "start_restore",
]
