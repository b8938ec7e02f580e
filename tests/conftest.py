# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for rbackup tests.

Provides a seeded application database, a source file tree, test
configuration and initialized pipeline state.
"""

import json
import os
import sqlite3
import tempfile
from pathlib import Path
from typing import Generator

import httpx
import pytest
import pytest_asyncio

# Set test environment variables
os.environ["RBACKUP_ADMIN_API_KEY"] = "test-api-key-12345"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    """Keep PBKDF2 cheap; the iteration count does not change the format."""
    from rbackup.vault import codec

    monkeypatch.setattr(codec, "KDF_ITERATIONS", 1_000)


def seed_database(path: Path, tables: dict) -> None:
    """
    Create tables with integer primary keys and N rows each.

    Args:
        path: SQLite file
        tables: Mapping of table name to row count
    """
    conn = sqlite3.connect(path)
    try:
        for name, rows in tables.items():
            conn.execute(
                f'CREATE TABLE "{name}" (id INTEGER PRIMARY KEY, title TEXT, body TEXT, score REAL)'
            )
            conn.executemany(
                f'INSERT INTO "{name}" (id, title, body, score) VALUES (?, ?, ?, ?)',
                [
                    (i, f"{name} {i}", f"line one\nit's line two {i}", i / 3)
                    for i in range(1, rows + 1)
                ],
            )
        conn.commit()
    finally:
        conn.close()


def table_ids(path: Path, table: str) -> list:
    conn = sqlite3.connect(path)
    try:
        return [row[0] for row in conn.execute(f'SELECT id FROM "{table}" ORDER BY id')]
    finally:
        conn.close()


def write_tree(root: Path, files: dict) -> None:
    """Write a mapping of relative path to bytes under root."""
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)


@pytest.fixture
def app_db(temp_dir: Path) -> Path:
    """Application database with two small tables."""
    path = temp_dir / "app.db"
    seed_database(path, {"posts": 25, "users": 7})
    return path


@pytest.fixture
def source_dir(temp_dir: Path) -> Path:
    """Uploads tree to back up."""
    root = temp_dir / "uploads"
    write_tree(
        root,
        {
            "2026/01/photo.jpg": os.urandom(3000),
            "2026/01/notes.txt": b"hello backup\n",
            "2026/02/report.pdf": os.urandom(5000),
            "avatars/a.png": os.urandom(1200),
            "cache/tmp.bin": b"skip me",
        },
    )
    return root


@pytest.fixture
def test_config(temp_dir: Path, app_db: Path, source_dir: Path):
    """Create a test configuration with small budgets."""
    from rbackup.config import create_config

    return create_config(
        backup_dir=temp_dir / "backups",
        source_dir=source_dir,
        database_url=f"sqlite:///{app_db}",
        state_db_path=temp_dir / "state" / "registry.db",
        db_chunk_size=10,
        file_batch_size=2,
        restore_statements_per_step=5,
        exclude_paths=["cache"],
        retention_count=3,
        site_url="https://example.test",
        app_version="1.2.3",
    )


@pytest.fixture
def encrypted_config(test_config):
    """Test configuration with artifact encryption."""
    return test_config.with_updates(encryption_passphrase="correct horse battery staple")


@pytest_asyncio.fixture
async def pipeline_state(test_config):
    """Create initialized pipeline state for testing."""
    from rbackup.core import initialize_pipeline_state, shutdown_pipeline_state

    state = await initialize_pipeline_state(test_config)
    yield state
    await shutdown_pipeline_state(state)


async def drive_backup(config, state, limit: int = 500):
    """Advance the active backup until it is done."""
    from rbackup.backup import advance_backup

    run = None
    for _ in range(limit):
        run = await advance_backup(config, state)
        if not run.running:
            return run
    raise AssertionError(f"Backup did not finish in {limit} steps (phase {run.phase})")


async def drive_restore(config, state, limit: int = 500):
    """Advance the active restore until it is done."""
    from rbackup.backup import advance_restore

    run = None
    for _ in range(limit):
        run = await advance_restore(config, state)
        if not run.running:
            return run
    raise AssertionError(f"Restore did not finish in {limit} steps (phase {run.phase})")


def _incorrect_offset(correct: int, nested: bool = False) -> httpx.Response:
    error = {".tag": "incorrect_offset", "correct_offset": correct}
    if nested:
        error = {".tag": "lookup_failed", "lookup_failed": error}
    return httpx.Response(409, json={"error_summary": "incorrect_offset/", "error": error})


class FakeDropbox:
    """Just enough of the Dropbox API v2 to store and serve files."""

    def __init__(self):
        self.files = {}
        self.sessions = {}
        self.token_requests = 0
        self.token_status = 200
        self.fail_paths = set()
        self.ignore_range = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)

        if url == "https://api.dropbox.com/oauth2/token":
            self.token_requests += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "token-1", "expires_in": 14400})

        if request.headers.get("authorization") != "Bearer token-1":
            return httpx.Response(401, json={"error": "expired_access_token"})

        if url.endswith("/files/get_metadata"):
            path = json.loads(request.content)["path"]
            if path not in self.files:
                return httpx.Response(409, json={"error": "path/not_found"})
            return httpx.Response(200, json={"size": len(self.files[path])})

        arg = json.loads(request.headers["dropbox-api-arg"])

        if url.endswith("/files/upload"):
            if arg["path"] in self.fail_paths:
                return httpx.Response(500, text="server error")
            self.files[arg["path"]] = request.content
            return httpx.Response(200, json={"size": len(request.content)})

        if url.endswith("/files/upload_session/start"):
            session_id = f"session-{len(self.sessions) + 1}"
            self.sessions[session_id] = bytearray(request.content)
            return httpx.Response(200, json={"session_id": session_id})

        if url.endswith("/files/upload_session/append_v2"):
            cursor = arg["cursor"]
            buffer = self.sessions[cursor["session_id"]]
            if cursor["offset"] != len(buffer):
                return _incorrect_offset(len(buffer))
            buffer.extend(request.content)
            return httpx.Response(200, json=None)

        if url.endswith("/files/upload_session/finish"):
            cursor = arg["cursor"]
            buffer = self.sessions[cursor["session_id"]]
            if cursor["offset"] != len(buffer):
                return _incorrect_offset(len(buffer), nested=True)
            del self.sessions[cursor["session_id"]]
            buffer.extend(request.content)
            self.files[arg["commit"]["path"]] = bytes(buffer)
            return httpx.Response(200, json={"size": len(buffer)})

        if url.endswith("/files/download"):
            data = self.files[arg["path"]]
            if self.ignore_range:
                return httpx.Response(200, content=data)
            start, end = request.headers["range"].removeprefix("bytes=").split("-")
            return httpx.Response(206, content=data[int(start) : int(end) + 1])

        return httpx.Response(404)
