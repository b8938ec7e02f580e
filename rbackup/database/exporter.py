# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Table Exporter - Chunked conversion of database tables into SQL.

An export is initialized once (table list, row counts, pagination keys) and
then advanced one chunk per call. Each chunk covers at most ``chunk_size``
rows of one table and is appended to the dump file in a single write.

Tables with a single integer primary key are paginated with a strict
``key > last_id`` cursor. Other tables fall back to LIMIT/OFFSET, which can
skip or repeat rows if the table is written to during the export.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Sequence

import aiofiles
import structlog

from rbackup.database.adapters import DatabaseAdapter
from rbackup.exceptions import ExportError
from rbackup.state import ExportState, TableCursor, advance_progress

logger = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_INSERT_BATCH_ROWS = 50


@dataclass
class ExportChunkResult:
    """Outcome of one export step."""

    done: bool
    progress: float
    message: str
    rows: int = 0


async def init_export(db: DatabaseAdapter, run_id: str, output_file: Path) -> ExportState:
    """
    Start an export run.

    Enumerates tables, snapshots their row counts and detects usable
    pagination keys. Any stale output file is removed.

    Args:
        db: Open database adapter
        run_id: Identifier of the owning run
        output_file: Path of the SQL dump to produce

    Returns:
        Fresh ExportState
    """
    try:
        cursors: List[TableCursor] = []
        for table in await db.list_tables():
            cursors.append(
                TableCursor(
                    name=table,
                    total_rows=await db.count_rows(table),
                    primary_key=await db.primary_key(table),
                )
            )
    except Exception as e:
        raise ExportError(f"Failed to initialize export: {e}", details={"run_id": run_id})

    output_file.parent.mkdir(parents=True, exist_ok=True)
    output_file.unlink(missing_ok=True)

    logger.info(
        "export_initialized",
        run_id=run_id,
        tables=len(cursors),
        total_rows=sum(c.total_rows for c in cursors),
        offset_paginated=[c.name for c in cursors if c.primary_key is None],
    )

    return ExportState(run_id=run_id, output_file=str(output_file), tables=cursors)


def _export_progress(state: ExportState) -> float:
    weight = sum(max(c.total_rows, 1) for c in state.tables)
    if weight == 0:
        return 100.0
    exported = sum(c.exported for c in state.tables)
    return exported / weight * 100


def _insert_statements(
    db: DatabaseAdapter,
    table: str,
    columns: List[str],
    rows: List[Sequence[Any]],
    batch_rows: int,
) -> str:
    column_list = ", ".join(db.quote(c) for c in columns)
    out: List[str] = []
    for start in range(0, len(rows), batch_rows):
        batch = rows[start : start + batch_rows]
        values = ",\n".join(
            "(" + ", ".join(db.literal(v) for v in row) + ")" for row in batch
        )
        out.append(f"INSERT INTO {db.quote(table)} ({column_list}) VALUES\n{values};\n")
    return "".join(out)


async def process_export_chunk(
    db: DatabaseAdapter,
    state: ExportState,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    insert_batch_rows: int = DEFAULT_INSERT_BATCH_ROWS,
) -> ExportChunkResult:
    """
    Export the next chunk of the current table.

    Updates ``state`` in place. The dump file is first cut back to the
    length recorded after the previous chunk, so re-running a step whose
    state was never persisted rewrites the same bytes instead of
    duplicating them.

    Args:
        db: Open database adapter
        state: Export state from init_export() or a previous chunk
        chunk_size: Maximum rows fetched in this step
        insert_batch_rows: Rows per INSERT statement

    Returns:
        ExportChunkResult; ``done`` once every table and the footer are written

    Raises:
        ExportError: On any fetch or write failure
    """
    output = Path(state.output_file)
    parts: List[str] = []
    rows_written = 0
    message = ""

    try:
        if output.exists() and output.stat().st_size > state.bytes_written:
            os.truncate(output, state.bytes_written)

        if not state.header_written:
            parts.append(db.dump_header(await db.server_version()))
            state.header_written = True

        if state.current_index < len(state.tables):
            cursor = state.tables[state.current_index]

            if not cursor.schema_written:
                parts.append(f"\n-- Table structure for {cursor.name}\n")
                parts.append("\n".join(await db.schema_statements(cursor.name)) + "\n\n")
                cursor.schema_written = True

            if cursor.primary_key:
                columns, rows = await db.fetch_after(
                    cursor.name, cursor.primary_key, cursor.last_id, chunk_size
                )
            else:
                columns, rows = await db.fetch_offset(cursor.name, cursor.exported, chunk_size)

            if rows:
                parts.append(
                    _insert_statements(db, cursor.name, columns, rows, insert_batch_rows)
                )
                if cursor.primary_key:
                    cursor.last_id = rows[-1][columns.index(cursor.primary_key)]
                cursor.exported += len(rows)
                rows_written = len(rows)

            if len(rows) < chunk_size:
                cursor.done = True
                state.current_index += 1
                logger.info("table_exported", table=cursor.name, rows=cursor.exported)

            message = f"Exporting {cursor.name} ({cursor.exported}/{cursor.total_rows} rows)"

        done = state.current_index >= len(state.tables)
        if done:
            parts.append(db.dump_footer())
            message = f"Exported {len(state.tables)} tables"

        data = "".join(parts).encode("utf-8", "surrogateescape")
        async with aiofiles.open(output, "ab") as f:
            await f.write(data)
        state.bytes_written += len(data)

    except ExportError:
        raise
    except Exception as e:
        raise ExportError(
            f"Failed to export chunk: {e}",
            details={"run_id": state.run_id, "table_index": state.current_index},
        )

    if done:
        state.progress = 100.0
    else:
        state.progress = min(99.9, advance_progress(state.progress, _export_progress(state)))
    return ExportChunkResult(done=done, progress=state.progress, message=message, rows=rows_written)


async def cancel_export(state: ExportState) -> None:
    """Delete the partial dump. The state should be discarded by the caller."""
    Path(state.output_file).unlink(missing_ok=True)
    logger.info("export_cancelled", run_id=state.run_id)
