# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rbackup Run Registry - SQLite-backed store of active runs.

One row per run kind (backup, restore). A row whose phase is not "done"
marks an active run; starting a new run performs an atomic check-and-set
against that row so at most one run of each kind is ever active.
"""

from datetime import datetime, UTC
from pathlib import Path

import aiosqlite
import structlog

from rbackup.exceptions import RunAlreadyActiveError, StateStoreError
from rbackup.state import PERSIST_CONTEXT_KEY, BackupRun, RestoreRun, RunKind

logger = structlog.get_logger()

RunRecord = BackupRun | RestoreRun

_MODELS = {
    RunKind.BACKUP: BackupRun,
    RunKind.RESTORE: RestoreRun,
}


async def init_registry_db(db_path: Path) -> None:
    """
    Initialize the registry database schema.

    Creates the runs table if it doesn't exist. This is idempotent
    and safe to call multiple times.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    kind TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    record TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.commit()
    except Exception as e:
        raise StateStoreError(
            f"Failed to initialize run registry: {e}",
            details={"db_path": str(db_path)},
        )


async def claim_run(db_path: Path, run: RunRecord) -> None:
    """
    Register a new run if no run of the same kind is active.

    The check and the write happen inside one IMMEDIATE transaction, so two
    concurrent starts cannot both succeed.

    Args:
        db_path: Registry database path
        run: Freshly created run record

    Raises:
        RunAlreadyActiveError: If a non-done run of this kind exists
    """
    kind = RunKind(run.kind)
    try:
        async with aiosqlite.connect(db_path, isolation_level=None) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    "SELECT run_id, phase FROM runs WHERE kind = ?", (kind.value,)
                ) as cursor:
                    row = await cursor.fetchone()

                if row and row[1] != "done":
                    raise RunAlreadyActiveError(
                        f"A {kind.value} is already running",
                        details={"run_id": row[0], "phase": row[1]},
                    )

                await db.execute(
                    """
                    INSERT INTO runs (kind, run_id, phase, record, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(kind) DO UPDATE SET
                        run_id = excluded.run_id,
                        phase = excluded.phase,
                        record = excluded.record,
                        updated_at = excluded.updated_at
                    """,
                    (
                        kind.value,
                        run.id,
                        run.phase.value,
                        run.model_dump_json(context={PERSIST_CONTEXT_KEY: True}),
                        datetime.now(UTC).isoformat(),
                    ),
                )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
    except RunAlreadyActiveError:
        raise
    except Exception as e:
        raise StateStoreError(
            f"Failed to claim {kind.value} run: {e}",
            details={"run_id": run.id},
        )

    logger.info("run_claimed", kind=kind.value, run_id=run.id)


async def load_run(db_path: Path, kind: RunKind) -> RunRecord | None:
    """
    Load the current record for a run kind.

    Args:
        db_path: Registry database path
        kind: Run kind

    Returns:
        The run record, or None if no run of this kind exists
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            async with db.execute(
                "SELECT record FROM runs WHERE kind = ?", (kind.value,)
            ) as cursor:
                row = await cursor.fetchone()
    except Exception as e:
        raise StateStoreError(
            f"Failed to load {kind.value} run: {e}",
            details={"db_path": str(db_path)},
        )

    if row is None:
        return None
    return _MODELS[kind].model_validate_json(row[0])


async def save_run(db_path: Path, run: RunRecord) -> None:
    """
    Persist a whole run record (one write per step).

    Args:
        db_path: Registry database path
        run: Run record to write
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute(
                """
                UPDATE runs
                SET phase = ?, record = ?, updated_at = ?
                WHERE kind = ? AND run_id = ?
                """,
                (
                    run.phase.value,
                    run.model_dump_json(context={PERSIST_CONTEXT_KEY: True}),
                    datetime.now(UTC).isoformat(),
                    run.kind,
                    run.id,
                ),
            )
            await db.commit()
    except Exception as e:
        raise StateStoreError(
            f"Failed to save {run.kind} run: {e}",
            details={"run_id": run.id},
        )


async def clear_run(db_path: Path, kind: RunKind) -> bool:
    """
    Remove the record for a run kind.

    Returns:
        True if a record was removed
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("DELETE FROM runs WHERE kind = ?", (kind.value,))
            await db.commit()
            return cursor.rowcount > 0
    except Exception as e:
        raise StateStoreError(
            f"Failed to clear {kind.value} run: {e}",
            details={"db_path": str(db_path)},
        )
