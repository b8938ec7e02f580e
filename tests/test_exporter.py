# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Database Export and Replay Tests for rbackup.

These tests verify:
- Chunked export of keyed and unkeyed tables
- Resuming after a lost step rewrites identical output
- Replay restores identical rows regardless of chunk size
- Replay resumes exactly at statement boundaries
- Triggers survive an export and replay
"""

import sqlite3
from pathlib import Path

import pytest

from conftest import seed_database, table_ids
from rbackup.database import (
    ErrorKind,
    init_export,
    open_database,
    process_export_chunk,
    replay_statements,
)
from rbackup.state import ExportState


async def _export_all(db_path: Path, output: Path, chunk_size: int) -> int:
    """Run an export to completion. Returns the number of steps."""
    steps = 0
    async with open_database(f"sqlite:///{db_path}") as db:
        state = await init_export(db, "run-test", output)
        while True:
            result = await process_export_chunk(db, state, chunk_size=chunk_size)
            steps += 1
            if result.done:
                return steps


async def _replay_all(db_path: Path, dump: Path, per_step: int) -> list:
    """Replay a dump to completion. Returns all recorded errors."""
    errors = []
    offset = 0
    async with open_database(f"sqlite:///{db_path}") as db:
        while True:
            result = await replay_statements(db, dump, offset, per_step)
            errors.extend(result.errors)
            offset = result.offset
            if result.eof:
                return errors


def _strip_timestamp(data: bytes) -> bytes:
    return b"\n".join(
        line for line in data.split(b"\n") if not line.startswith(b"-- Generated:")
    )


# ============================================================================
# Export
# ============================================================================

@pytest.mark.asyncio
async def test_three_table_export(temp_dir: Path):
    """
    Tables of 10, 0 and 10,000 rows with a chunk size of 1,000.

    Progress only reaches 100 once the large table is consumed, and the
    empty table contributes its schema without any INSERT.
    """
    db_path = temp_dir / "app.db"
    seed_database(db_path, {"alpha": 10, "beta": 0, "gamma": 10_000})
    output = temp_dir / "database.sql"

    async with open_database(f"sqlite:///{db_path}") as db:
        state = await init_export(db, "run-1", output)
        assert [t.name for t in state.tables] == ["alpha", "beta", "gamma"]
        assert [t.total_rows for t in state.tables] == [10, 0, 10_000]

        progress = []
        while True:
            result = await process_export_chunk(db, state, chunk_size=1000)
            progress.append(result.progress)
            if result.done:
                break
            assert result.progress < 100

    assert progress[-1] == 100.0
    assert progress == sorted(progress)
    assert state.tables[2].exported == 10_000
    assert all(t.done for t in state.tables)

    dump = output.read_text()
    assert 'CREATE TABLE "beta"' in dump
    assert 'INSERT INTO "beta"' not in dump
    assert dump.count('INSERT INTO "alpha"') == 1
    assert dump.rstrip().endswith("-- end of export")


@pytest.mark.asyncio
async def test_unkeyed_table_uses_offset_pagination(temp_dir: Path):
    db_path = temp_dir / "app.db"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE logs (message TEXT, level TEXT)")
    conn.executemany("INSERT INTO logs VALUES (?, ?)", [(f"event {i}", "info") for i in range(23)])
    conn.commit()
    conn.close()

    async with open_database(f"sqlite:///{db_path}") as db:
        state = await init_export(db, "run-1", temp_dir / "database.sql")
        assert state.tables[0].primary_key is None
        while not (await process_export_chunk(db, state, chunk_size=5)).done:
            pass

    assert state.tables[0].exported == 23
    assert (temp_dir / "database.sql").read_text().count("'event ") == 23


@pytest.mark.asyncio
async def test_resume_after_lost_step_is_identical(temp_dir: Path):
    """
    Re-running a step whose state was never persisted produces the same
    dump as an uninterrupted export.
    """
    db_path = temp_dir / "app.db"
    seed_database(db_path, {"comments": 37, "posts": 12})

    reference = temp_dir / "reference.sql"
    await _export_all(db_path, reference, chunk_size=5)

    for crash_after in (0, 1, 4, 9):
        output = temp_dir / f"resumed-{crash_after}.sql"
        async with open_database(f"sqlite:///{db_path}") as db:
            state = await init_export(db, "run-1", output)
            for _ in range(crash_after):
                await process_export_chunk(db, state, chunk_size=5)

            # Persisted state as of the crash; the next step runs but its
            # updated state is lost
            persisted = state.model_dump_json()
            await process_export_chunk(db, state, chunk_size=5)

            state = ExportState.model_validate_json(persisted)
            while not (await process_export_chunk(db, state, chunk_size=5)).done:
                pass

        assert _strip_timestamp(output.read_bytes()) == _strip_timestamp(reference.read_bytes())


# ============================================================================
# Replay
# ============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("chunk_size", [1, 7, 1000])
async def test_export_then_replay_preserves_rows(temp_dir: Path, chunk_size: int):
    source = temp_dir / "source.db"
    seed_database(source, {"posts": 30, "users": 4})
    dump = temp_dir / "database.sql"
    await _export_all(source, dump, chunk_size)

    target = temp_dir / "target.db"
    seed_database(target, {"posts": 2})

    errors = await _replay_all(target, dump, per_step=4)

    assert errors == []
    assert table_ids(target, "posts") == table_ids(source, "posts")
    assert table_ids(target, "users") == table_ids(source, "users")

    src = sqlite3.connect(source)
    dst = sqlite3.connect(target)
    try:
        query = "SELECT id, title, body, score FROM posts ORDER BY id"
        assert dst.execute(query).fetchall() == src.execute(query).fetchall()
    finally:
        src.close()
        dst.close()


@pytest.mark.asyncio
async def test_replay_resumes_on_statement_boundaries(temp_dir: Path):
    dump = temp_dir / "dump.sql"
    dump.write_text(
        "-- header comment\n"
        "CREATE TABLE t (id INTEGER PRIMARY KEY, v TEXT);\n"
        "INSERT INTO t VALUES\n"
        "(1, 'a'),\n"
        "(2, 'b');\n"
        "\n"
        "INSERT INTO t VALUES (3, 'c');\n"
        "INSERT INTO t VALUES (4, 'd');\n"
    )
    db_path = temp_dir / "target.db"
    sqlite3.connect(db_path).close()

    offsets = []
    async with open_database(f"sqlite:///{db_path}") as db:
        offset = 0
        while True:
            result = await replay_statements(db, dump, offset, max_statements=1)
            offsets.append(result.offset)
            offset = result.offset
            if result.eof:
                break

    content = dump.read_bytes()
    for value in offsets[:-1]:
        # Every saved offset follows a complete statement
        assert content[:value].rstrip().endswith(b";")

    assert table_ids(db_path, "t") == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_trigger_survives_export_and_replay(temp_dir: Path):
    source = temp_dir / "source.db"
    seed_database(source, {"posts": 3, "audit": 0})
    conn = sqlite3.connect(source)
    try:
        conn.execute(
            'CREATE TRIGGER "posts_audit" AFTER UPDATE ON "posts"\n'
            "BEGIN\n"
            '  INSERT INTO "audit" (title) VALUES (NEW.title);\n'
            '  UPDATE "audit" SET score = 1 WHERE score IS NULL;\n'
            "END"
        )
        conn.commit()
    finally:
        conn.close()

    dump = temp_dir / "database.sql"
    await _export_all(source, dump, chunk_size=10)

    target = temp_dir / "target.db"
    sqlite3.connect(target).close()
    errors = await _replay_all(target, dump, per_step=2)

    assert errors == []
    conn = sqlite3.connect(target)
    try:
        names = [row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'trigger'")]
        assert names == ["posts_audit"]

        conn.execute("UPDATE posts SET title = 'edited' WHERE id = 2")
        assert conn.execute("SELECT title, score FROM audit").fetchall() == [("edited", 1.0)]
    finally:
        conn.close()


@pytest.mark.asyncio
async def test_replay_swallows_expected_errors_and_records_others(temp_dir: Path):
    dump = temp_dir / "dump.sql"
    dump.write_text(
        "CREATE TABLE t (id INTEGER PRIMARY KEY);\n"
        "CREATE TABLE t (id INTEGER PRIMARY KEY);\n"
        "INSERT INTO t VALUES (1);\n"
        "INSERT INTO t VALUES (1);\n"
        "INSERT INTO missing VALUES (1);\n"
        "INSERT INTO t VALUES (2);\n"
    )
    db_path = temp_dir / "target.db"
    sqlite3.connect(db_path).close()

    async with open_database(f"sqlite:///{db_path}") as db:
        result = await replay_statements(db, dump, 0, max_statements=50)

    assert result.eof
    assert result.swallowed == 2
    assert len(result.errors) == 1
    assert ErrorKind.DUPLICATE_KEY.value in result.errors[0]
    assert table_ids(db_path, "t") == [1, 2]


@pytest.mark.asyncio
async def test_replay_reports_incomplete_trailing_statement(temp_dir: Path):
    dump = temp_dir / "dump.sql"
    dump.write_text("CREATE TABLE t (id INTEGER);\nINSERT INTO t VALUES (1)\n")
    db_path = temp_dir / "target.db"
    sqlite3.connect(db_path).close()

    async with open_database(f"sqlite:///{db_path}") as db:
        result = await replay_statements(db, dump, 0)

    assert result.eof
    assert any("Incomplete statement" in e for e in result.errors)
