# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Statement Replay - Resumable execution of a SQL dump.

The dump is scanned line by line from a byte offset. Lines accumulate until
one ends with ";", and exactly that statement is executed. The returned
offset always points just past the last complete statement, so the next
call resumes on a statement boundary.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import aiofiles
import structlog

from rbackup.database.adapters import DatabaseAdapter

logger = structlog.get_logger()

DEFAULT_STATEMENTS_PER_STEP = 50

_SKIPPED_PREFIXES = ("--", "/*!")

# The replay runs statement by statement; dump-level transactions are dropped
_TRANSACTION_CONTROL = re.compile(
    r"^(START\s+TRANSACTION|BEGIN(\s+TRANSACTION)?|COMMIT|ROLLBACK|SET\s+AUTOCOMMIT\s*=\s*\w+)\s*;$",
    re.IGNORECASE,
)

# Trigger bodies hold inner statements; the block closes on its own END;
_TRIGGER_START = re.compile(r"^CREATE\s+(TEMP(ORARY)?\s+)?TRIGGER\b", re.IGNORECASE)
_BLOCK_END = re.compile(r"\bEND\s*;$", re.IGNORECASE)


@dataclass
class ReplayResult:
    """Outcome of one replay step."""

    offset: int
    executed: int
    eof: bool
    swallowed: int = 0
    errors: List[str] = field(default_factory=list)


async def replay_statements(
    db: DatabaseAdapter,
    dump_path: Path,
    offset: int,
    max_statements: int = DEFAULT_STATEMENTS_PER_STEP,
) -> ReplayResult:
    """
    Execute up to ``max_statements`` statements starting at ``offset``.

    "Already exists" and "missing table" failures are expected when a dump
    is replayed over a live schema and are swallowed. Every other failure is
    recorded and replay continues.

    Args:
        db: Open database adapter
        dump_path: SQL dump file
        offset: Byte offset of the next statement
        max_statements: Statement budget for this step

    Returns:
        ReplayResult with the new offset and any recorded errors
    """
    executed = 0
    swallowed = 0
    errors: List[str] = []
    buffer: List[str] = []
    position = offset
    committed = offset
    eof = False

    await db.prepare_restore()

    async with aiofiles.open(dump_path, "rb") as f:
        await f.seek(offset)
        while executed < max_statements:
            raw = await f.readline()
            if not raw:
                eof = True
                break
            position += len(raw)

            line = raw.decode("utf-8", "surrogateescape")
            stripped = line.strip()
            if not stripped or stripped.startswith(_SKIPPED_PREFIXES):
                if not buffer:
                    committed = position
                continue

            buffer.append(line)
            if not stripped.endswith(";"):
                continue
            if _TRIGGER_START.match(buffer[0].lstrip()) and not _BLOCK_END.search(stripped):
                continue

            statement = "".join(buffer).strip()
            buffer = []
            committed = position

            if _TRANSACTION_CONTROL.match(statement):
                continue

            outcome = await db.execute(statement)
            executed += 1
            if outcome.ok:
                continue
            if outcome.harmless:
                swallowed += 1
                logger.debug("sql_error_ignored", kind=outcome.kind.value, error=outcome.message)
            else:
                errors.append(
                    f"SQL error ({outcome.kind.value}): {outcome.message} "
                    f"in statement: {statement[:120]}"
                )

    if eof and buffer:
        errors.append(f"Incomplete statement at end of dump (offset {committed})")

    await db.commit()

    return ReplayResult(
        offset=committed,
        executed=executed,
        eof=eof,
        swallowed=swallowed,
        errors=errors,
    )
