# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Distribution Layer - Remote destinations and resumable upload/download.
"""

from rbackup.distribution.destinations import (
    DropboxDestination,
    GDriveDestination,
    RemoteDestination,
    S3Destination,
    open_destination,
)

from rbackup.distribution.distributor import (
    DownloadStepResult,
    UploadStepResult,
    download_step,
    init_upload,
    process_upload_step,
    upload_progress,
)

__all__ = [
    # Destinations
    "DropboxDestination",
    "GDriveDestination",
    "RemoteDestination",
    "S3Destination",
    "open_destination",
    # Distributor
    "DownloadStepResult",
    "UploadStepResult",
    "download_step",
    "init_upload",
    "process_upload_step",
    "upload_progress",
]
