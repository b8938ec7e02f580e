# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rbackup Backup Manager - Backup run state machine.

INIT -> DATABASE? -> FILES? -> COMPRESS -> ENCRYPT? -> UPLOAD -> DONE

Every advance_backup() call loads the run record, performs one bounded unit
of work for the current phase and saves the record back. Component errors
are folded into the run's ``errors``; any error during a backup phase ends
the run as failed.
"""

import shutil
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List

import structlog

from rbackup.config import BackupConfig, BackupType, Destination, ArchiveFormat
from rbackup.core import PipelineState
from rbackup.errors import explain_invalid_backup_type, explain_invalid_destination
from rbackup.exceptions import DestinationError, NoActiveRunError, ValidationError
from rbackup.state import (
    BackupCompressStep,
    BackupDatabaseStep,
    BackupDoneStep,
    BackupEncryptStep,
    BackupFilesStep,
    BackupPhase,
    BackupRun,
    BackupUploadStep,
    RunKind,
    RunOutcome,
    advance_progress,
)

logger = structlog.get_logger()


def _run_dir(config: BackupConfig, run: BackupRun) -> Path:
    return config.backup_dir / run.id


def _includes_database(backup_type: BackupType) -> bool:
    return backup_type in (BackupType.FULL, BackupType.DB_ONLY)


def _includes_files(backup_type: BackupType) -> bool:
    return backup_type in (BackupType.FULL, BackupType.FILES_ONLY)


def _exclusions(config: BackupConfig) -> List[str]:
    """Configured exclusions plus the backup directory when it lies inside the source."""
    exclusions = list(config.exclude_paths)
    try:
        inside = config.backup_dir.resolve().relative_to(config.source_dir.resolve())
    except ValueError:
        return exclusions
    if str(inside) not in ("", "."):
        exclusions.append(inside.as_posix())
    return exclusions


def _transition(run: BackupRun, step: Any, message: str) -> None:
    run.step = step
    run.progress = 0.0
    run.message = message
    logger.info("backup_phase_entered", run_id=run.id, phase=step.phase)


# ============================================================================
# Public operations
# ============================================================================


async def start_backup(
    config: BackupConfig,
    state: PipelineState,
    backup_type: str | BackupType,
    destinations: List[str | Destination] | None = None,
) -> BackupRun:
    """
    Start a new backup run.

    Args:
        config: Backup configuration
        state: Pipeline state
        backup_type: full, db_only or files_only
        destinations: Override of the configured destinations for this run

    Returns:
        The new run record (phase INIT)

    Raises:
        ValidationError: Bad backup type, destination or missing source
        RunAlreadyActiveError: If a backup is already running
    """
    from rbackup.registry import claim_run
    from rbackup.vault.storage import new_backup_id

    try:
        backup_type = BackupType(backup_type)
    except ValueError:
        raise ValidationError(explain_invalid_backup_type(str(backup_type)))

    if _includes_database(backup_type) and not config.database_url:
        raise ValidationError(
            f"A {backup_type.value} backup needs a database_url",
            details={"backup_type": backup_type.value},
        )
    if _includes_files(backup_type) and not config.source_dir.is_dir():
        raise ValidationError(
            f"Source directory not found: {config.source_dir}",
            details={"source_dir": str(config.source_dir)},
        )

    if destinations is None:
        targets = list(config.destinations)
    else:
        targets = []
        for name in destinations:
            try:
                targets.append(Destination(name))
            except ValueError:
                raise ValidationError(explain_invalid_destination(str(name)))
        unconfigured = [
            d.value
            for d in targets
            if d not in config.destinations and d is not Destination.LOCAL
        ]
        if unconfigured:
            raise ValidationError(
                "Destinations are not configured: " + ", ".join(unconfigured),
                details={"destinations": unconfigured},
            )

    run = BackupRun(
        id=new_backup_id(config),
        backup_type=backup_type,
        destinations=[d.value for d in dict.fromkeys(targets)],
        encrypted=config.encryption_enabled,
        message="Backup started",
    )

    await claim_run(state["state_db_path"], run)
    _run_dir(config, run).mkdir(parents=True, exist_ok=True)

    logger.info(
        "backup_started",
        run_id=run.id,
        backup_type=backup_type.value,
        destinations=run.destinations,
        encrypted=run.encrypted,
    )
    return run


async def advance_backup(config: BackupConfig, state: PipelineState) -> BackupRun:
    """
    Perform one bounded unit of work on the active backup.

    A finished run is returned unchanged.

    Raises:
        NoActiveRunError: If no backup has been started
    """
    from rbackup.registry import load_run, save_run

    run = await load_run(state["state_db_path"], RunKind.BACKUP)
    if run is None:
        raise NoActiveRunError("No backup is running")
    if not run.running:
        return run

    try:
        handler = _HANDLERS[run.phase]
        await handler(config, state, run)
    except Exception as e:
        _fail(run, e)

    await save_run(state["state_db_path"], run)
    return run


async def cancel_backup(config: BackupConfig, state: PipelineState) -> Dict[str, Any]:
    """
    Cancel the active backup and delete everything it produced.

    Returns:
        Confirmation dict
    """
    from rbackup.registry import clear_run, load_run

    run = await load_run(state["state_db_path"], RunKind.BACKUP)
    if run is None or not run.running:
        return {"cancelled": False, "message": "No backup is running"}

    step = run.step
    if isinstance(step, BackupDatabaseStep):
        from rbackup.database import cancel_export

        await cancel_export(step.export)
    elif isinstance(step, BackupFilesStep):
        from rbackup.files import cancel_archive

        await cancel_archive(step.archive)
    elif isinstance(step, BackupUploadStep):
        await _abort_upload_sessions(config, state, step)

    run_dir = _run_dir(config, run)
    if run_dir.exists():
        shutil.rmtree(run_dir)

    await clear_run(state["state_db_path"], RunKind.BACKUP)

    logger.info("backup_cancelled", run_id=run.id, phase=run.phase.value)
    return {"cancelled": True, "run_id": run.id, "message": "Backup cancelled"}


async def get_backup_status(state: PipelineState) -> Dict[str, Any]:
    """Running flag plus a snapshot of the backup run record."""
    from rbackup.registry import load_run

    run = await load_run(state["state_db_path"], RunKind.BACKUP)
    if run is None:
        return {"running": False, "run": None}
    return {"running": run.running, "run": run.model_dump(mode="json")}


# ============================================================================
# Phase handlers
# ============================================================================


async def _init_phase(config: BackupConfig, state: PipelineState, run: BackupRun) -> None:
    run_dir = _run_dir(config, run)
    run_dir.mkdir(parents=True, exist_ok=True)

    if _includes_database(run.backup_type):
        from rbackup.database import init_export, open_database
        from rbackup.vault.storage import DB_FILE_NAME

        async with open_database(config.database_url) as db:
            export = await init_export(db, run.id, run_dir / DB_FILE_NAME)
        _transition(run, BackupDatabaseStep(export=export), "Exporting database")
    else:
        await _enter_files(config, run)


async def _database_phase(config: BackupConfig, state: PipelineState, run: BackupRun) -> None:
    from rbackup.database import open_database, process_export_chunk

    step = run.step
    async with open_database(config.database_url) as db:
        result = await process_export_chunk(
            db, step.export, config.db_chunk_size, config.insert_batch_rows
        )

    run.progress = advance_progress(run.progress, result.progress)
    run.message = result.message

    if result.done:
        run.artifacts.append(Path(step.export.output_file).name)
        if _includes_files(run.backup_type):
            await _enter_files(config, run)
        else:
            await _enter_compress(config, run)


async def _enter_files(config: BackupConfig, run: BackupRun) -> None:
    from rbackup.files import init_archive

    archive = await init_archive(
        run.id,
        config.source_dir,
        _run_dir(config, run),
        exclude_paths=_exclusions(config),
        max_part_bytes=config.max_archive_bytes,
        batch_size=config.file_batch_size,
        use_tar=config.archive_format is ArchiveFormat.TAR,
    )
    _transition(run, BackupFilesStep(archive=archive), f"Archiving {archive.total_files} files")


async def _files_phase(config: BackupConfig, state: PipelineState, run: BackupRun) -> None:
    from rbackup.files import process_archive_batch

    archive = run.step.archive
    result = await process_archive_batch(archive)

    run.progress = advance_progress(run.progress, result.progress)
    run.message = result.message

    if result.done:
        Path(archive.list_file).unlink(missing_ok=True)
        run.artifacts.extend(Path(p.path).name for p in result.parts)
        await _enter_compress(config, run)


async def _enter_compress(config: BackupConfig, run: BackupRun) -> None:
    from rbackup.vault.compressor import pending_tar_parts

    total = len(pending_tar_parts(_run_dir(config, run)))
    if total == 0:
        await _enter_encrypt(config, run)
        return
    _transition(run, BackupCompressStep(total_parts=total), f"Compressing {total} archive parts")


async def _compress_phase(config: BackupConfig, state: PipelineState, run: BackupRun) -> None:
    from rbackup.vault.compressor import compress_next_part

    step = run.step
    compressed = await compress_next_part(_run_dir(config, run))
    if compressed is not None:
        step.compressed += 1
        original = compressed.name[: -len(".gz")]
        run.artifacts = [compressed.name if a == original else a for a in run.artifacts]
        run.progress = advance_progress(run.progress, step.compressed / step.total_parts * 100)
        run.message = f"Compressed {step.compressed}/{step.total_parts} archive parts"
        return

    await _enter_encrypt(config, run)


async def _enter_encrypt(config: BackupConfig, run: BackupRun) -> None:
    from rbackup.vault.codec import ENCRYPTED_SUFFIX
    from rbackup.vault.storage import artifact_files

    if not config.encryption_enabled:
        await _enter_upload(config, run)
        return

    pending = [p.name for p in artifact_files(_run_dir(config, run)) if not p.name.endswith(ENCRYPTED_SUFFIX)]
    if not pending:
        await _enter_upload(config, run)
        return
    _transition(
        run,
        BackupEncryptStep(pending=pending, total=len(pending)),
        f"Encrypting {len(pending)} artifacts",
    )


async def _encrypt_phase(config: BackupConfig, state: PipelineState, run: BackupRun) -> None:
    from rbackup.vault.codec import ENCRYPTED_SUFFIX, encrypt_file

    step = run.step
    if step.pending:
        name = step.pending[0]
        source = _run_dir(config, run) / name
        target = source.with_name(name + ENCRYPTED_SUFFIX)

        # A crash between encrypt and unlink leaves both; the .enc is complete
        if source.exists():
            await encrypt_file(source, target, config.encryption_passphrase)
            source.unlink()

        step.pending.pop(0)
        step.encrypted += 1
        run.artifacts = [target.name if a == name else a for a in run.artifacts]
        run.progress = advance_progress(run.progress, step.encrypted / step.total * 100)
        run.message = f"Encrypted {step.encrypted}/{step.total} artifacts"

    if not step.pending:
        await _enter_upload(config, run)


async def _enter_upload(config: BackupConfig, run: BackupRun) -> None:
    from rbackup.distribution import init_upload
    from rbackup.vault.storage import artifact_files, build_manifest, write_manifest

    run_dir = _run_dir(config, run)
    manifest = build_manifest(
        run_dir,
        run.id,
        run.backup_type.value,
        run.started_at,
        config,
        storages=run.destinations,
        encrypted=run.encrypted,
    )
    await write_manifest(run_dir, manifest)

    files = artifact_files(run_dir)
    run.artifacts = [p.name for p in files]
    upload = init_upload(run.id, files, run.destinations)
    _transition(run, BackupUploadStep(upload=upload), "Distributing backup")


async def _upload_phase(config: BackupConfig, state: PipelineState, run: BackupRun) -> None:
    from rbackup.distribution import process_upload_step

    result = await process_upload_step(config, state, run.step.upload)
    run.progress = advance_progress(run.progress, result.progress)
    run.message = result.message

    if result.done:
        for outcome in (result.results or {}).values():
            if not outcome["success"]:
                run.errors.append(outcome["message"])
        await _complete(config, run, result.results or {})


async def _complete(
    config: BackupConfig,
    run: BackupRun,
    storage_results: Dict[str, Dict[str, Any]],
) -> None:
    """Terminal bookkeeping: manifest refresh, local cleanup and retention."""
    from rbackup.vault.storage import (
        delete_local_files_only,
        enforce_retention,
        read_manifest,
        write_manifest,
    )

    run_dir = _run_dir(config, run)
    duration = (datetime.now(UTC) - run.started_at).total_seconds()

    manifest = await read_manifest(run_dir)
    if manifest is not None:
        manifest.duration = round(duration, 2)
        manifest.storage_results = storage_results
        await write_manifest(run_dir, manifest)

    remote_success = any(
        r["success"] for name, r in storage_results.items() if name != Destination.LOCAL.value
    )
    if Destination.LOCAL.value not in run.destinations and remote_success:
        await delete_local_files_only(config, run.id)

    outcome = RunOutcome.COMPLETED_WITH_ERRORS if run.errors else RunOutcome.SUCCESS
    run.step = BackupDoneStep(
        outcome=outcome,
        duration_seconds=round(duration, 2),
        storage_results=storage_results,
    )
    run.progress = 100.0
    run.message = (
        "Backup completed" if outcome is RunOutcome.SUCCESS else "Backup completed with errors"
    )

    logger.info(
        "backup_completed",
        run_id=run.id,
        outcome=outcome.value,
        duration=duration,
        errors=len(run.errors),
    )

    deleted = await enforce_retention(config)
    if deleted:
        logger.info("backups_pruned", run_id=run.id, deleted=deleted)


def _fail(run: BackupRun, error: Exception) -> None:
    run.errors.append(str(error))
    duration = (datetime.now(UTC) - run.started_at).total_seconds()
    phase = run.phase.value
    run.step = BackupDoneStep(outcome=RunOutcome.FAILED, duration_seconds=round(duration, 2))
    run.message = f"Backup failed during {phase}: {getattr(error, 'message', str(error))}"
    logger.error("backup_failed", run_id=run.id, phase=phase, error=str(error))


async def _abort_upload_sessions(
    config: BackupConfig, state: PipelineState, step: BackupUploadStep
) -> None:
    from rbackup.distribution import open_destination

    for progress in step.upload.destinations:
        if progress.session is None:
            continue
        try:
            async with open_destination(progress.name, config, state) as destination:
                await destination.abort(progress.session, step.upload.run_id)
        except DestinationError as e:
            logger.warning("upload_session_abort_failed", destination=progress.name, error=str(e))


_HANDLERS = {
    BackupPhase.INIT: _init_phase,
    BackupPhase.DATABASE: _database_phase,
    BackupPhase.FILES: _files_phase,
    BackupPhase.COMPRESS: _compress_phase,
    BackupPhase.ENCRYPT: _encrypt_phase,
    BackupPhase.UPLOAD: _upload_phase,
}
