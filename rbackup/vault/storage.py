# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rbackup Storage - Backup directories, manifests and retention.

Every run directory under ``backup_dir`` holds its artifacts plus a
``backup-meta.json`` manifest. Once local artifacts have been removed after
a remote upload, the manifest is the only record of what the backup
contained; ``local_deleted`` tells readers that missing files live remotely.
"""

import re
import shutil
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
import structlog
from pydantic import BaseModel, Field

from rbackup.config import BackupConfig
from rbackup.exceptions import BackupNotFoundError, StorageError, ValidationError
from rbackup.vault.codec import ENCRYPTED_SUFFIX

logger = structlog.get_logger()

MANIFEST_NAME = "backup-meta.json"
DB_FILE_NAME = "database.sql"
BACKUP_PREFIX = "backup-"
SNAPSHOT_PREFIX = "pre-restore-"
SNAPSHOT_TYPE = "pre_restore_snapshot"

_BACKUP_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_ARCHIVE_PART = re.compile(r"^files-part\d{3}\.(tar\.gz|tar|zip)(\.enc)?$")


class FileDetail(BaseModel):
    name: str
    size: int


class BackupManifest(BaseModel):
    """Contents of backup-meta.json."""

    backup_id: str
    date: str
    timestamp: int
    started_at: datetime
    duration: float = 0.0
    type: str
    app_version: str | None = None
    site_url: str | None = None
    files: List[str] = Field(default_factory=list)
    file_details: List[FileDetail] = Field(default_factory=list)
    total_size: int = 0
    storages: List[str] = Field(default_factory=list)
    encrypted: bool = False
    local_deleted: bool = False
    storage_results: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


def backup_path(config: BackupConfig, backup_id: str) -> Path:
    """
    Resolve a backup id to its run directory.

    Raises:
        ValidationError: If the id is malformed
    """
    if not _BACKUP_ID.match(backup_id or ""):
        raise ValidationError(f"Invalid backup id: {backup_id!r}")
    return config.backup_dir / backup_id


def find_db_file(run_dir: Path) -> Path | None:
    """The SQL dump of a run, plain or encrypted."""
    for name in (DB_FILE_NAME, DB_FILE_NAME + ENCRYPTED_SUFFIX):
        if (run_dir / name).is_file():
            return run_dir / name
    return None


def find_archives(run_dir: Path) -> List[Path]:
    """Archive parts of a run, in part order."""
    if not run_dir.is_dir():
        return []
    return sorted(p for p in run_dir.iterdir() if p.is_file() and _ARCHIVE_PART.match(p.name))


def is_db_artifact(name: str) -> bool:
    return name in (DB_FILE_NAME, DB_FILE_NAME + ENCRYPTED_SUFFIX)


def is_archive_artifact(name: str) -> bool:
    return bool(_ARCHIVE_PART.match(name))


def artifact_files(run_dir: Path) -> List[Path]:
    """Artifacts to distribute: dump and archive parts (manifest excluded)."""
    files: List[Path] = []
    db_file = find_db_file(run_dir)
    if db_file:
        files.append(db_file)
    files.extend(find_archives(run_dir))
    return files


def build_manifest(
    run_dir: Path,
    backup_id: str,
    backup_type: str,
    started_at: datetime,
    config: BackupConfig,
    storages: List[str],
    encrypted: bool,
) -> BackupManifest:
    """Describe the artifacts currently present in run_dir."""
    details = [FileDetail(name=p.name, size=p.stat().st_size) for p in artifact_files(run_dir)]
    now = datetime.now(UTC)
    return BackupManifest(
        backup_id=backup_id,
        date=started_at.strftime("%Y-%m-%d %H:%M:%S"),
        timestamp=int(started_at.timestamp()),
        started_at=started_at,
        duration=round((now - started_at).total_seconds(), 2),
        type=backup_type,
        app_version=config.app_version,
        site_url=config.site_url,
        files=[d.name for d in details],
        file_details=details,
        total_size=sum(d.size for d in details),
        storages=storages,
        encrypted=encrypted,
    )


async def write_manifest(run_dir: Path, manifest: BackupManifest) -> None:
    """Write the manifest atomically (temp file, then rename)."""
    path = run_dir / MANIFEST_NAME
    temp_path = path.with_suffix(".json.tmp")
    try:
        async with aiofiles.open(temp_path, "w") as f:
            await f.write(manifest.model_dump_json(indent=2))
        temp_path.replace(path)
    except OSError as e:
        raise StorageError(
            f"Failed to write manifest: {e}",
            details={"run_dir": str(run_dir)},
        )


async def read_manifest(run_dir: Path) -> BackupManifest | None:
    """Read a run's manifest, or None if it has none."""
    path = run_dir / MANIFEST_NAME
    if not path.is_file():
        return None
    try:
        async with aiofiles.open(path, "r") as f:
            return BackupManifest.model_validate_json(await f.read())
    except (OSError, ValueError) as e:
        raise StorageError(
            f"Failed to read manifest: {e}",
            details={"path": str(path)},
        )


async def list_backups(config: BackupConfig, include_snapshots: bool = False) -> List[BackupManifest]:
    """
    List backups that have a manifest, newest first.

    Args:
        config: Backup configuration
        include_snapshots: Also list pre-restore snapshots

    Returns:
        Manifests sorted by timestamp, newest first
    """
    if not config.backup_dir.is_dir():
        return []

    prefixes = (BACKUP_PREFIX, SNAPSHOT_PREFIX) if include_snapshots else (BACKUP_PREFIX,)
    manifests: List[BackupManifest] = []
    for entry in config.backup_dir.iterdir():
        if not entry.is_dir() or not entry.name.startswith(prefixes):
            continue
        try:
            manifest = await read_manifest(entry)
        except StorageError as e:
            logger.warning("manifest_unreadable", backup_id=entry.name, error=str(e))
            continue
        if manifest is not None:
            manifests.append(manifest)

    manifests.sort(key=lambda m: (m.timestamp, m.backup_id), reverse=True)
    return manifests


async def analyze_backup(config: BackupConfig, backup_id: str) -> Dict[str, Any]:
    """
    Summarize a backup for restore planning.

    Files listed in the manifest count as present when they exist locally
    or when the manifest marks them as distributed remotely.

    Returns:
        Dict with date, type, has_db, has_files, sizes and archive names

    Raises:
        ValidationError: If the backup does not exist
    """
    run_dir = backup_path(config, backup_id)
    if not run_dir.is_dir():
        raise BackupNotFoundError(f"Backup not found: {backup_id}", details={"backup_id": backup_id})

    manifest = await read_manifest(run_dir)
    local_deleted = bool(manifest and manifest.local_deleted)

    if manifest is not None and local_deleted:
        sizes = {d.name: d.size for d in manifest.file_details}
    else:
        sizes = {p.name: p.stat().st_size for p in artifact_files(run_dir)}

    db_names = [n for n in sizes if is_db_artifact(n)]
    archives = sorted(n for n in sizes if is_archive_artifact(n))

    return {
        "backup_id": backup_id,
        "date": manifest.date if manifest else None,
        "type": manifest.type if manifest else "unknown",
        "site_url": manifest.site_url if manifest else None,
        "app_version": manifest.app_version if manifest else None,
        "has_db": bool(db_names),
        "db_file": db_names[0] if db_names else None,
        "db_size": sizes[db_names[0]] if db_names else 0,
        "has_files": bool(archives),
        "archives": archives,
        "archive_size": sum(sizes[n] for n in archives),
        "encrypted": any(n.endswith(ENCRYPTED_SUFFIX) for n in sizes),
        "local_deleted": local_deleted,
        "storages": manifest.storages if manifest else [],
    }


async def delete_backup(config: BackupConfig, backup_id: str) -> None:
    """
    Delete a backup directory and everything in it.

    Raises:
        ValidationError: If the backup does not exist
    """
    run_dir = backup_path(config, backup_id)
    if not run_dir.is_dir():
        raise BackupNotFoundError(f"Backup not found: {backup_id}", details={"backup_id": backup_id})
    try:
        shutil.rmtree(run_dir)
    except OSError as e:
        raise StorageError(
            f"Failed to delete backup: {e}",
            details={"backup_id": backup_id},
        )
    logger.info("backup_deleted", backup_id=backup_id)


async def delete_local_files_only(config: BackupConfig, backup_id: str) -> int:
    """
    Remove local artifacts after a remote upload, keeping the manifest.

    Returns:
        Number of files removed
    """
    run_dir = backup_path(config, backup_id)
    manifest = await read_manifest(run_dir)
    if manifest is None:
        raise StorageError(
            "Refusing to delete local files of a backup without a manifest",
            details={"backup_id": backup_id},
        )

    removed = 0
    for entry in run_dir.iterdir():
        if entry.name == MANIFEST_NAME:
            continue
        if entry.is_dir():
            shutil.rmtree(entry)
        else:
            entry.unlink()
        removed += 1

    manifest.local_deleted = True
    await write_manifest(run_dir, manifest)

    logger.info("local_backup_files_deleted", backup_id=backup_id, files=removed)
    return removed


async def enforce_retention(config: BackupConfig, keep: int | None = None) -> List[str]:
    """
    Delete the oldest backups beyond the retention count.

    Only directories with a manifest take part; pre-restore snapshots are
    never counted or deleted here.

    Args:
        config: Backup configuration
        keep: Backups to keep (default: config.retention_count, 0 keeps all)

    Returns:
        Ids of deleted backups
    """
    keep = config.retention_count if keep is None else keep
    if keep <= 0:
        return []

    backups = await list_backups(config)
    deleted: List[str] = []
    for manifest in backups[keep:]:
        try:
            await delete_backup(config, manifest.backup_id)
            deleted.append(manifest.backup_id)
        except (StorageError, ValidationError) as e:
            logger.warning("retention_delete_failed", backup_id=manifest.backup_id, error=str(e))

    if deleted:
        logger.info("retention_enforced", kept=keep, deleted=deleted)
    return deleted


async def list_archive_members(config: BackupConfig, backup_id: str, archive_name: str) -> List[str]:
    """
    List the files inside one archive part of a backup.

    Used to offer a selective file restore.

    Raises:
        ValidationError: If the part does not exist locally or is encrypted
    """
    from rbackup.files.extractor import list_archive_members as list_members

    run_dir = backup_path(config, backup_id)
    if not is_archive_artifact(archive_name) or not (run_dir / archive_name).is_file():
        raise BackupNotFoundError(
            f"Archive not found: {backup_id}/{archive_name}",
            details={"backup_id": backup_id, "archive": archive_name},
        )
    if archive_name.endswith(ENCRYPTED_SUFFIX):
        raise ValidationError(
            "Encrypted archives cannot be listed without decrypting them first",
            details={"backup_id": backup_id, "archive": archive_name},
        )
    return await list_members(run_dir / archive_name)


def new_backup_id(config: BackupConfig, prefix: str = BACKUP_PREFIX) -> str:
    """
    Timestamp-derived id for a new run directory.

    A numeric suffix is appended when a directory of that name exists.
    """
    base = prefix + datetime.now(UTC).strftime("%Y-%m-%d-%H%M%S")
    candidate = base
    suffix = 1
    while (config.backup_dir / candidate).exists():
        suffix += 1
        candidate = f"{base}-{suffix}"
    return candidate
