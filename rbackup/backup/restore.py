# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rbackup Restore - Restore run state machine.

DOWNLOAD? -> SNAPSHOT? -> INIT -> DECRYPT? -> DATABASE? -> FILES? -> DONE

Restore favours recovering as much as possible: SQL and archive failures
are recorded and the run keeps going. Only cryptographic failures stop a
restore, since unverified plaintext must never be applied.

A cancelled restore is not rolled back. Whatever statements already ran
and whatever files were already extracted stay in place.
"""

from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Tuple

import structlog

from rbackup.config import BackupConfig, Destination
from rbackup.core import PipelineState
from rbackup.errors import explain_missing_passphrase
from rbackup.exceptions import (
    ArchiveError,
    CodecError,
    DestinationError,
    NoActiveRunError,
    ValidationError,
)
from rbackup.state import (
    RestoreDatabaseStep,
    RestoreDecryptStep,
    RestoreDoneStep,
    RestoreDownloadStep,
    RestoreFilesStep,
    RestoreInitStep,
    RestorePhase,
    RestoreRun,
    RestoreSnapshotStep,
    RunKind,
    RunOutcome,
    advance_progress,
)

logger = structlog.get_logger()

CANCEL_WARNING = (
    "Restore cancelled without rollback: the database and files may be in an "
    "inconsistent state"
)

# Overall progress bands (percent)
PRE_RESTORE_BAND = (0.0, 5.0)
RESTORE_BAND = (5.0, 95.0)
DATABASE_SHARE_WITH_FILES = 50.0


def _run_dir(config: BackupConfig, run: RestoreRun) -> Path:
    return config.backup_dir / run.backup_id


def _band(run: RestoreRun, phase: RestorePhase) -> Tuple[float, float]:
    """Fixed share of overall progress owned by a phase."""
    start, end = RESTORE_BAND
    if phase is RestorePhase.DATABASE:
        return (start, start + DATABASE_SHARE_WITH_FILES) if run.restore_files else (start, end)
    if phase is RestorePhase.FILES:
        return (start + DATABASE_SHARE_WITH_FILES, end) if run.restore_db else (start, end)
    return PRE_RESTORE_BAND


def _set_progress(run: RestoreRun, phase: RestorePhase, fraction: float) -> None:
    low, high = _band(run, phase)
    fraction = min(1.0, max(0.0, fraction))
    run.progress = advance_progress(run.progress, low + (high - low) * fraction)


def _transition(run: RestoreRun, step: Any, message: str) -> None:
    run.step = step
    run.message = message
    logger.info("restore_phase_entered", run_id=run.id, phase=step.phase)


def _temp_name(run: RestoreRun, plain_name: str) -> str:
    return f".{plain_name}.{run.id}.tmp"


# ============================================================================
# Public operations
# ============================================================================


async def start_restore(
    config: BackupConfig,
    state: PipelineState,
    backup_id: str,
    restore_db: bool,
    restore_files: bool,
    create_snapshot: bool,
    selected_files: List[str] | None = None,
) -> RestoreRun:
    """
    Start restoring a backup.

    All validation happens before any state is written.

    Args:
        config: Backup configuration
        state: Pipeline state
        backup_id: Backup to restore
        restore_db: Replay the SQL dump
        restore_files: Extract the archive parts into source_dir
        create_snapshot: Export the current database first
        selected_files: Archive member names or directory prefixes to extract

    Returns:
        The new restore run record

    Raises:
        ValidationError: Nothing selected, backup or component missing, or
            no way to read the backup
        RunAlreadyActiveError: If a restore is already running
    """
    from rbackup.registry import claim_run
    from rbackup.vault.storage import (
        SNAPSHOT_PREFIX,
        analyze_backup,
        new_backup_id,
        read_manifest,
    )

    if not restore_db and not restore_files:
        raise ValidationError("Nothing to restore: select the database, the files, or both")

    analysis = await analyze_backup(config, backup_id)

    if restore_db and not analysis["has_db"]:
        raise ValidationError(
            f"Backup {backup_id} contains no database dump",
            details={"backup_id": backup_id},
        )
    if restore_files and not analysis["has_files"]:
        raise ValidationError(
            f"Backup {backup_id} contains no file archives",
            details={"backup_id": backup_id},
        )
    if (restore_db or create_snapshot) and not config.database_url:
        raise ValidationError("Restoring or snapshotting the database needs a database_url")
    if analysis["encrypted"] and not config.encryption_enabled:
        raise ValidationError(explain_missing_passphrase(backup_id))

    needed: List[str] = []
    if restore_db:
        needed.append(analysis["db_file"])
    if restore_files:
        needed.extend(analysis["archives"])

    run_dir = config.backup_dir / backup_id
    missing = [name for name in needed if not (run_dir / name).is_file()]

    download_step = None
    if missing:
        if not analysis["local_deleted"]:
            raise ValidationError(
                f"Backup {backup_id} is incomplete: " + ", ".join(missing),
                details={"backup_id": backup_id, "missing": missing},
            )
        source = _remote_source(config, analysis["storages"])
        if source is None:
            raise ValidationError(
                f"Backup {backup_id} is stored remotely but none of its destinations "
                f"({', '.join(analysis['storages']) or 'none'}) is configured",
                details={"backup_id": backup_id},
            )
        manifest = await read_manifest(run_dir)
        sizes = {d.name: d.size for d in manifest.file_details} if manifest else {}
        download_step = RestoreDownloadStep(
            destination=source,
            files=missing,
            total_bytes=sum(sizes.get(name, 0) for name in missing),
        )

    snapshot_id = new_backup_id(config, SNAPSHOT_PREFIX) if create_snapshot else None

    run = RestoreRun(
        id=f"restore-{datetime.now(UTC).strftime('%Y-%m-%d-%H%M%S')}",
        backup_id=backup_id,
        restore_db=restore_db,
        restore_files=restore_files,
        create_snapshot=create_snapshot,
        snapshot_id=snapshot_id,
        selected_files=list(selected_files or []) if restore_files else [],
        message="Restore started",
    )
    if download_step is not None:
        run.step = download_step
        run.message = f"Downloading {len(missing)} files from {download_step.destination}"
    elif snapshot_id is not None:
        run.step = RestoreSnapshotStep(snapshot_id=snapshot_id)
        run.message = "Creating safety snapshot"

    await claim_run(state["state_db_path"], run)

    logger.info(
        "restore_started",
        run_id=run.id,
        backup_id=backup_id,
        restore_db=restore_db,
        restore_files=restore_files,
        create_snapshot=create_snapshot,
        phase=run.phase.value,
    )
    return run


def _remote_source(config: BackupConfig, storages: List[str]) -> str | None:
    """First remote destination of the backup that is configured here."""
    for name in storages:
        if name == Destination.LOCAL.value:
            continue
        try:
            destination = Destination(name)
        except ValueError:
            continue
        if destination in config.destinations:
            return destination.value
    return None


async def advance_restore(config: BackupConfig, state: PipelineState) -> RestoreRun:
    """
    Perform one bounded unit of work on the active restore.

    A finished run is returned unchanged.

    Raises:
        NoActiveRunError: If no restore has been started
    """
    from rbackup.registry import load_run, save_run

    run = await load_run(state["state_db_path"], RunKind.RESTORE)
    if run is None:
        raise NoActiveRunError("No restore is running")
    if not run.running:
        return run

    try:
        handler = _HANDLERS[run.phase]
        await handler(config, state, run)
    except CodecError as e:
        _finish(config, run, failed_with=e)
    except Exception as e:
        # Anything else is recorded and the phase is skipped
        run.errors.append(str(e))
        logger.error("restore_phase_failed", run_id=run.id, phase=run.phase.value, error=str(e))
        await _skip_phase(config, run)

    await save_run(state["state_db_path"], run)
    return run


async def cancel_restore(config: BackupConfig, state: PipelineState) -> Dict[str, Any]:
    """
    Discard the active restore.

    Temporary plaintext and partial downloads are removed; applied SQL and
    extracted files are not rolled back.

    Returns:
        Confirmation dict with a warning about the undefined state
    """
    from rbackup.registry import clear_run, load_run

    run = await load_run(state["state_db_path"], RunKind.RESTORE)
    if run is None or not run.running:
        return {"cancelled": False, "message": "No restore is running"}

    _remove_temp_files(run)

    step = run.step
    if isinstance(step, RestoreDownloadStep):
        from rbackup.distribution.distributor import PARTIAL_SUFFIX

        for name in step.files:
            (_run_dir(config, run) / (name + PARTIAL_SUFFIX)).unlink(missing_ok=True)
    elif isinstance(step, RestoreSnapshotStep):
        _discard_snapshot(config, step.snapshot_id)

    await clear_run(state["state_db_path"], RunKind.RESTORE)

    logger.warning("restore_cancelled", run_id=run.id, phase=run.phase.value)
    return {
        "cancelled": True,
        "run_id": run.id,
        "message": "Restore cancelled",
        "warning": CANCEL_WARNING,
    }


async def get_restore_status(state: PipelineState) -> Dict[str, Any]:
    """Running flag plus a snapshot of the restore run record."""
    from rbackup.registry import load_run

    run = await load_run(state["state_db_path"], RunKind.RESTORE)
    if run is None:
        return {"running": False, "run": None}
    return {"running": run.running, "run": run.model_dump(mode="json")}


# ============================================================================
# Phase handlers
# ============================================================================


async def _download_phase(config: BackupConfig, state: PipelineState, run: RestoreRun) -> None:
    from rbackup.distribution import download_step

    step = run.step
    if step.file_index < len(step.files):
        name = step.files[step.file_index]
        try:
            result = await download_step(
                config, state, step.destination, run.backup_id, _run_dir(config, run), name
            )
        except DestinationError as e:
            run.errors.append(f"Download of {name} failed: {e.message}")
            logger.error("restore_download_failed", run_id=run.id, file=name, error=str(e))
            step.file_index += 1
        else:
            if result.done:
                step.bytes_done += result.size
                step.file_index += 1
                current = 0
            else:
                current = result.bytes_done
            total = step.total_bytes or 1
            _set_progress(run, RestorePhase.DOWNLOAD, (step.bytes_done + current) / total)
            run.message = f"Downloading {name} from {step.destination}"
        if step.file_index < len(step.files):
            return

    await _finish_download(config, run, step)
    _enter_after_download(run)


async def _finish_download(config: BackupConfig, run: RestoreRun, step: RestoreDownloadStep) -> None:
    from rbackup.vault.storage import read_manifest, write_manifest

    run_dir = _run_dir(config, run)
    if not all((run_dir / name).is_file() for name in step.files):
        return
    manifest = await read_manifest(run_dir)
    if manifest is not None and manifest.local_deleted:
        manifest.local_deleted = False
        await write_manifest(run_dir, manifest)
    logger.info("restore_download_completed", run_id=run.id, files=len(step.files))


def _enter_after_download(run: RestoreRun) -> None:
    if run.snapshot_id is not None:
        _transition(run, RestoreSnapshotStep(snapshot_id=run.snapshot_id), "Creating safety snapshot")
    else:
        _transition(run, RestoreInitStep(), "Preparing restore")


async def _snapshot_phase(config: BackupConfig, state: PipelineState, run: RestoreRun) -> None:
    from rbackup.database import init_export, open_database, process_export_chunk
    from rbackup.vault.storage import DB_FILE_NAME

    step = run.step
    snapshot_dir = config.backup_dir / step.snapshot_id

    try:
        async with open_database(config.database_url) as db:
            if step.export is None:
                step.export = await init_export(db, step.snapshot_id, snapshot_dir / DB_FILE_NAME)
                run.message = "Creating safety snapshot"
                return
            result = await process_export_chunk(
                db, step.export, config.db_chunk_size, config.insert_batch_rows
            )
    except Exception as e:
        run.errors.append(f"Safety snapshot failed: {e}")
        logger.warning("restore_snapshot_failed", run_id=run.id, error=str(e))
        _discard_snapshot(config, step.snapshot_id)
        run.snapshot_id = None
        _transition(run, RestoreInitStep(), "Safety snapshot failed, continuing restore")
        return

    _set_progress(run, RestorePhase.SNAPSHOT, result.progress / 100)
    run.message = f"Safety snapshot: {result.message}"

    if result.done:
        await _write_snapshot_manifest(config, step.snapshot_id)
        logger.info("restore_snapshot_created", run_id=run.id, snapshot_id=step.snapshot_id)
        _transition(run, RestoreInitStep(), f"Safety snapshot {step.snapshot_id} created")


async def _write_snapshot_manifest(config: BackupConfig, snapshot_id: str) -> None:
    from rbackup.vault.storage import SNAPSHOT_TYPE, build_manifest, write_manifest

    snapshot_dir = config.backup_dir / snapshot_id
    manifest = build_manifest(
        snapshot_dir,
        snapshot_id,
        SNAPSHOT_TYPE,
        datetime.now(UTC),
        config,
        storages=[Destination.LOCAL.value],
        encrypted=False,
    )
    await write_manifest(snapshot_dir, manifest)


def _discard_snapshot(config: BackupConfig, snapshot_id: str | None) -> None:
    import shutil

    if snapshot_id and (config.backup_dir / snapshot_id).is_dir():
        shutil.rmtree(config.backup_dir / snapshot_id)


async def _init_phase(config: BackupConfig, state: PipelineState, run: RestoreRun) -> None:
    from rbackup.vault.codec import ENCRYPTED_SUFFIX
    from rbackup.vault.storage import find_archives, find_db_file

    run_dir = _run_dir(config, run)
    needed: List[str] = []

    if run.restore_db:
        db_file = find_db_file(run_dir)
        if db_file is None:
            run.errors.append("Database dump is not available locally")
        else:
            needed.append(db_file.name)

    if run.restore_files:
        archives = find_archives(run_dir)
        if not archives:
            run.errors.append("No archive parts are available locally")
        needed.extend(a.name for a in archives)

    run.resolved_files = {name: str(run_dir / name) for name in needed}

    encrypted = [name for name in needed if name.endswith(ENCRYPTED_SUFFIX)]
    if encrypted:
        _transition(
            run,
            RestoreDecryptStep(pending=encrypted, total=len(encrypted)),
            f"Decrypting {len(encrypted)} files",
        )
        return

    await _enter_restore(config, run)


async def _decrypt_phase(config: BackupConfig, state: PipelineState, run: RestoreRun) -> None:
    from rbackup.vault.codec import ENCRYPTED_SUFFIX, decrypt_file

    step = run.step
    if step.pending:
        name = step.pending[0]
        plain_name = name[: -len(ENCRYPTED_SUFFIX)]
        source = _run_dir(config, run) / name
        target = _run_dir(config, run) / _temp_name(run, plain_name)

        await decrypt_file(
            source,
            target,
            config.encryption_passphrase,
            allow_legacy=config.allow_legacy_decrypt,
        )
        run.temp_files.append(str(target))
        run.resolved_files[name] = str(target)
        step.pending.pop(0)
        run.message = f"Decrypted {step.total - len(step.pending)}/{step.total} files"

    if not step.pending:
        await _enter_restore(config, run)


async def _enter_restore(config: BackupConfig, run: RestoreRun) -> None:
    """Route to DATABASE, FILES or DONE after preparation."""
    from rbackup.vault.storage import is_archive_artifact, is_db_artifact

    db_files = [path for name, path in run.resolved_files.items() if is_db_artifact(name)]
    archives = [
        path for name, path in sorted(run.resolved_files.items()) if is_archive_artifact(name)
    ]

    if run.restore_db and db_files:
        db_file = Path(db_files[0])
        _transition(
            run,
            RestoreDatabaseStep(db_file=str(db_file), db_size=db_file.stat().st_size),
            "Restoring database",
        )
    elif run.restore_files and archives:
        _enter_files(run, archives)
    else:
        _finish(config, run)


def _enter_files(run: RestoreRun, archives: List[str]) -> None:
    _transition(run, RestoreFilesStep(archives=archives), f"Restoring {len(archives)} archive parts")


async def _database_phase(config: BackupConfig, state: PipelineState, run: RestoreRun) -> None:
    from rbackup.database import open_database, replay_statements
    from rbackup.vault.storage import is_archive_artifact

    step = run.step
    async with open_database(config.database_url) as db:
        result = await replay_statements(
            db, Path(step.db_file), step.db_offset, config.restore_statements_per_step
        )

    step.db_offset = result.offset
    step.statements_executed += result.executed
    run.errors.extend(result.errors)

    fraction = step.db_offset / step.db_size if step.db_size else 1.0
    _set_progress(run, RestorePhase.DATABASE, 1.0 if result.eof else fraction)
    run.message = f"Restoring database ({step.statements_executed} statements)"

    if not result.eof:
        return

    logger.info(
        "restore_database_completed",
        run_id=run.id,
        statements=step.statements_executed,
        errors=len(run.errors),
    )

    archives = [
        path for name, path in sorted(run.resolved_files.items()) if is_archive_artifact(name)
    ]
    if run.restore_files and archives:
        _enter_files(run, archives)
    else:
        _finish(config, run)


async def _files_phase(config: BackupConfig, state: PipelineState, run: RestoreRun) -> None:
    from rbackup.files import extract_archive

    step = run.step
    if step.current_archive_index < len(step.archives):
        archive = Path(step.archives[step.current_archive_index])
        try:
            step.files_extracted += await extract_archive(
                archive, config.source_dir, run.selected_files
            )
        except ArchiveError as e:
            run.errors.append(f"Archive {archive.name} skipped: {e.message}")
            logger.error("restore_archive_failed", run_id=run.id, archive=archive.name, error=str(e))
        step.current_archive_index += 1
        _set_progress(run, RestorePhase.FILES, step.current_archive_index / len(step.archives))
        run.message = (
            f"Restored {step.current_archive_index}/{len(step.archives)} archive parts "
            f"({step.files_extracted} files)"
        )

    if step.current_archive_index >= len(step.archives):
        _finish(config, run)


async def _skip_phase(config: BackupConfig, run: RestoreRun) -> None:
    """Move past a phase whose work could not be done."""
    from rbackup.vault.storage import is_archive_artifact

    phase = run.phase
    if phase is RestorePhase.DOWNLOAD:
        _enter_after_download(run)
    elif phase is RestorePhase.SNAPSHOT:
        _discard_snapshot(config, run.snapshot_id)
        run.snapshot_id = None
        _transition(run, RestoreInitStep(), "Safety snapshot failed, continuing restore")
    elif phase is RestorePhase.DATABASE:
        archives = [
            path for name, path in sorted(run.resolved_files.items()) if is_archive_artifact(name)
        ]
        if run.restore_files and archives:
            _enter_files(run, archives)
        else:
            _finish(config, run)
    else:
        _finish(config, run)


def _remove_temp_files(run: RestoreRun) -> None:
    for temp in run.temp_files:
        Path(temp).unlink(missing_ok=True)
    run.temp_files = []


def _finish(config: BackupConfig, run: RestoreRun, failed_with: Exception | None = None) -> None:
    """Enter DONE, removing temporary plaintext."""
    _remove_temp_files(run)

    if failed_with is not None:
        run.errors.append(str(failed_with))
        outcome = RunOutcome.FAILED
        run.message = f"Restore failed: {getattr(failed_with, 'message', str(failed_with))}"
        logger.error("restore_failed", run_id=run.id, phase=run.phase.value, error=str(failed_with))
    elif run.errors:
        outcome = RunOutcome.COMPLETED_WITH_ERRORS
        run.message = f"Restore completed with {len(run.errors)} errors"
    else:
        outcome = RunOutcome.SUCCESS
        run.message = "Restore completed"

    duration = (datetime.now(UTC) - run.started_at).total_seconds()
    run.step = RestoreDoneStep(outcome=outcome, duration_seconds=round(duration, 2))
    run.progress = 100.0

    logger.info(
        "restore_completed",
        run_id=run.id,
        backup_id=run.backup_id,
        outcome=outcome.value,
        errors=len(run.errors),
        duration=duration,
    )


_HANDLERS = {
    RestorePhase.DOWNLOAD: _download_phase,
    RestorePhase.SNAPSHOT: _snapshot_phase,
    RestorePhase.INIT: _init_phase,
    RestorePhase.DECRYPT: _decrypt_phase,
    RestorePhase.DATABASE: _database_phase,
    RestorePhase.FILES: _files_phase,
}
