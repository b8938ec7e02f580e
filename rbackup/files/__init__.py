# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
File Layer - Tree enumeration, multi-part archiving and extraction.
"""

from rbackup.files.archiver import (
    ArchiveBatchResult,
    cancel_archive,
    init_archive,
    part_file_name,
    process_archive_batch,
)

from rbackup.files.extractor import (
    detect_format,
    extract_archive,
    list_archive_members,
)

__all__ = [
    # Archiver
    "ArchiveBatchResult",
    "cancel_archive",
    "init_archive",
    "part_file_name",
    "process_archive_batch",
    # Extractor
    "detect_format",
    "extract_archive",
    "list_archive_members",
]
