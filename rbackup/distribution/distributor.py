# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Upload Distributor - Resumable multi-destination distribution.

Each call drives exactly one bounded unit of work per unfinished
destination. Failures stay scoped: a failed file is recorded and skipped, a
failed credential refresh finishes only that destination. Partial success
is a normal terminal outcome and is reported, not raised.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
import structlog

from rbackup.config import BackupConfig, Destination
from rbackup.core import PipelineState
from rbackup.distribution.destinations import open_destination
from rbackup.exceptions import DestinationAuthError, DestinationError
from rbackup.state import DestinationProgress, UploadState, advance_progress

logger = structlog.get_logger()

PARTIAL_SUFFIX = ".part"

_LABELS = {
    Destination.LOCAL.value: "Local",
    Destination.S3.value: "S3",
    Destination.DROPBOX.value: "Dropbox",
    Destination.GDRIVE.value: "Google Drive",
}


@dataclass
class UploadStepResult:
    """Outcome of one distribution step."""

    state: UploadState
    progress: float
    message: str
    done: bool
    results: Dict[str, Dict[str, Any]] | None = None


def _file_size(path: str) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


def init_upload(
    run_id: str,
    files: List[Path],
    destinations: List[str | Destination],
) -> UploadState:
    """
    Create distribution state for a set of artifacts.

    The local destination needs no transfer and starts out finished.

    Args:
        run_id: Backup id; remote folder name
        files: Artifact paths in upload order
        destinations: Destination names to distribute to

    Returns:
        Fresh UploadState
    """
    names = [str(f) for f in files]
    state = UploadState(
        run_id=run_id,
        files=names,
        total_bytes=sum(_file_size(f) for f in names),
    )
    for destination in destinations:
        name = Destination(destination).value
        progress = DestinationProgress(name=name)
        if name == Destination.LOCAL.value:
            progress.finished = True
            progress.success = True
            progress.uploaded = len(names)
            progress.bytes_done = state.total_bytes
            progress.message = f"Local: {len(names)} files kept"
        state.destinations.append(progress)
    return state


def _destination_fraction(upload: UploadState, progress: DestinationProgress) -> float:
    if progress.finished or upload.total_bytes == 0:
        return 1.0 if progress.finished else 0.0
    return min(1.0, progress.bytes_done / upload.total_bytes)


def upload_progress(upload: UploadState) -> float:
    """Mean of per-destination byte progress, in percent."""
    if not upload.destinations:
        return 100.0
    fractions = [_destination_fraction(upload, p) for p in upload.destinations]
    return round(sum(fractions) / len(fractions) * 100, 1)


def _summary(upload: UploadState, progress: DestinationProgress) -> str:
    label = _LABELS.get(progress.name, progress.name)
    message = f"{label}: {progress.uploaded}/{len(upload.files)} files uploaded"
    if progress.failed_files:
        message += ". Errors: " + ", ".join(progress.failed_files)
    return message


def _finish(upload: UploadState, progress: DestinationProgress) -> None:
    progress.finished = True
    progress.session = None
    progress.success = not progress.failed_files and progress.uploaded == len(upload.files)
    progress.bytes_done = max(progress.bytes_done, upload.total_bytes)
    progress.message = _summary(upload, progress)
    logger.info(
        "destination_finished",
        run_id=upload.run_id,
        destination=progress.name,
        uploaded=progress.uploaded,
        failed=progress.failed_files,
    )


def _next_file(upload: UploadState, progress: DestinationProgress) -> None:
    """Move past the current file and settle byte progress on a file boundary."""
    progress.session = None
    progress.file_index += 1
    completed = sum(_file_size(f) for f in upload.files[: progress.file_index])
    progress.bytes_done = max(progress.bytes_done, completed)
    if progress.file_index >= len(upload.files):
        _finish(upload, progress)


async def _advance_destination(
    config: BackupConfig,
    state: PipelineState,
    upload: UploadState,
    progress: DestinationProgress,
) -> None:
    """One bounded unit of work for one destination."""
    if progress.file_index >= len(upload.files):
        _finish(upload, progress)
        return

    path = Path(upload.files[progress.file_index])
    if not path.is_file():
        progress.failed_files.append(f"{path.name} (missing)")
        logger.warning("upload_file_missing", destination=progress.name, file=path.name)
        _next_file(upload, progress)
        return

    async with open_destination(progress.name, config, state) as destination:
        try:
            await destination.authenticate(progress)
        except DestinationAuthError as e:
            progress.failed_files.append(f"authentication ({e.message})")
            logger.error("destination_auth_failed", destination=progress.name, error=str(e))
            _finish(upload, progress)
            return

        try:
            file_done = await destination.upload_unit(progress, path, upload.run_id)
        except (DestinationError, OSError) as e:
            if progress.session is not None:
                await destination.abort(progress.session, upload.run_id)
            progress.failed_files.append(f"{path.name} ({getattr(e, 'message', str(e))})")
            logger.error(
                "upload_file_failed",
                destination=progress.name,
                file=path.name,
                error=str(e),
            )
            _next_file(upload, progress)
            return

    if file_done:
        progress.uploaded += 1
        logger.info("upload_file_completed", destination=progress.name, file=path.name)
        _next_file(upload, progress)
        return

    completed = sum(_file_size(f) for f in upload.files[: progress.file_index])
    offset = progress.session.offset if progress.session else 0
    progress.bytes_done = max(progress.bytes_done, completed + offset)


async def process_upload_step(
    config: BackupConfig,
    state: PipelineState,
    upload: UploadState,
) -> UploadStepResult:
    """
    Drive one unit of upload work for every unfinished destination.

    Updates ``upload`` in place.

    Args:
        config: Backup configuration with destination credentials
        state: Pipeline state
        upload: State from init_upload() or a previous step

    Returns:
        UploadStepResult; ``results`` is set once every destination finished
    """
    for progress in upload.destinations:
        if not progress.finished:
            await _advance_destination(config, state, upload, progress)

    done = all(p.finished for p in upload.destinations)
    progress_value = advance_progress(0.0, upload_progress(upload))

    parts: List[str] = []
    for p in upload.destinations:
        if p.finished:
            parts.append(p.message)
        else:
            label = _LABELS.get(p.name, p.name)
            parts.append(f"{label}: uploading file {p.file_index + 1}/{len(upload.files)}")
    message = "; ".join(parts) if parts else "No destinations configured"

    results = None
    if done:
        results = {
            p.name: {
                "success": p.success,
                "message": p.message,
                "uploaded": p.uploaded,
                "failed_files": list(p.failed_files),
            }
            for p in upload.destinations
        }

    return UploadStepResult(
        state=upload,
        progress=progress_value,
        message=message,
        done=done,
        results=results,
    )


# ============================================================================
# Download (restore of remotely stored artifacts)
# ============================================================================


@dataclass
class DownloadStepResult:
    """Outcome of one download step for one file."""

    done: bool
    bytes_done: int
    size: int
    path: Path | None = None


async def download_step(
    config: BackupConfig,
    state: PipelineState,
    destination: str,
    backup_id: str,
    run_dir: Path,
    file_name: str,
) -> DownloadStepResult:
    """
    Fetch the next byte range of a remotely stored artifact.

    Bytes are appended to ``<file_name>.part``; its length is the resume
    cursor, so a repeated step continues where the file ends. The part file
    is renamed to ``file_name`` once complete.

    Raises:
        DestinationError: If the destination cannot serve the file
    """
    target = run_dir / file_name
    partial = run_dir / (file_name + PARTIAL_SUFFIX)

    if target.is_file():
        size = target.stat().st_size
        return DownloadStepResult(done=True, bytes_done=size, size=size, path=target)

    offset = partial.stat().st_size if partial.is_file() else 0

    async with open_destination(destination, config, state) as remote:
        await remote.authenticate()
        size = await remote.remote_size(backup_id, file_name)
        if offset < size:
            length = min(remote.download_unit, size - offset)
            data = await remote.download_range(backup_id, file_name, offset, length)
            if not data:
                raise DestinationError(
                    f"Empty response downloading {file_name} at offset {offset}",
                    details={"destination": destination, "backup_id": backup_id},
                )
            data = data[:length]
            async with aiofiles.open(partial, "ab") as f:
                await f.write(data)
            offset += len(data)

    if offset >= size:
        partial.touch()
        partial.replace(target)
        logger.info("artifact_downloaded", destination=destination, file=file_name, size=size)
        return DownloadStepResult(done=True, bytes_done=size, size=size, path=target)

    return DownloadStepResult(done=False, bytes_done=offset, size=size)
