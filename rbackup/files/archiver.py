# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
File Archiver - Enumerate a file tree and pack it into size-capped parts.

init_archive() walks the source tree once (explicit stack, no recursion)
and writes one absolute path per line to a list file. That list is the
durable cursor: each batch skips the lines already consumed, appends the
next files to the current part and returns.

Parts are tar files appended in place (files-partNNN.tar). If tar
appending fails, the current part is rebuilt as a zip container
(files-partNNN.zip) and the rest of the run uses zip.
"""

import asyncio
import contextlib
import itertools
import os
import tarfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import structlog

from rbackup.exceptions import ArchiveError
from rbackup.state import ArchivePart, ArchiveState

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 200
LIST_FILE_NAME = "file_list.txt"
PART_PREFIX = "files-part"

_BLOCK = tarfile.BLOCKSIZE
_RECORD = tarfile.RECORDSIZE


@dataclass
class ArchiveBatchResult:
    """Outcome of one archive step."""

    done: bool
    progress: float
    message: str
    parts: List[ArchivePart] = field(default_factory=list)


def part_file_name(part_number: int, use_tar: bool) -> str:
    return f"{PART_PREFIX}{part_number:03d}.{'tar' if use_tar else 'zip'}"


def _is_excluded(relative: str, exclude_paths: List[str]) -> bool:
    for prefix in exclude_paths:
        prefix = prefix.strip("/")
        if prefix and (relative == prefix or relative.startswith(prefix + "/")):
            return True
    return False


def _walk_to_list(source_root: Path, list_file: Path, exclude_paths: List[str]) -> int:
    """Depth-first walk with an explicit stack. Returns the number of files listed."""
    count = 0
    stack = [str(source_root)]

    with open(list_file, "w", encoding="utf-8", errors="surrogateescape") as out:
        while stack:
            directory = stack.pop()
            try:
                entries = list(os.scandir(directory))
            except OSError as e:
                logger.warning("directory_unreadable", path=directory, error=str(e))
                continue

            for entry in entries:
                relative = os.path.relpath(entry.path, source_root).replace(os.sep, "/")
                if _is_excluded(relative, exclude_paths):
                    continue
                if "\n" in entry.path or "\r" in entry.path:
                    logger.warning("path_with_newline_skipped", path=relative)
                    continue
                try:
                    if entry.is_dir(follow_symlinks=False):
                        stack.append(entry.path)
                    elif entry.is_file(follow_symlinks=False):
                        out.write(os.path.abspath(entry.path) + "\n")
                        count += 1
                except OSError:
                    continue

    return count


async def init_archive(
    run_id: str,
    source_root: Path,
    run_dir: Path,
    exclude_paths: List[str] | None = None,
    max_part_bytes: int = 500 * 1024 * 1024,
    batch_size: int = DEFAULT_BATCH_SIZE,
    use_tar: bool = True,
) -> ArchiveState:
    """
    Enumerate the source tree into the list file.

    Args:
        run_id: Identifier of the owning run
        source_root: Directory to archive
        run_dir: Directory receiving the list file and parts
        exclude_paths: Relative path prefixes to skip
        max_part_bytes: Part size cap
        batch_size: Files per batch
        use_tar: Start with tar parts (False forces zip)

    Returns:
        Fresh ArchiveState
    """
    if not source_root.is_dir():
        raise ArchiveError(
            f"Source directory not found: {source_root}",
            details={"source_root": str(source_root)},
        )

    run_dir.mkdir(parents=True, exist_ok=True)
    list_file = run_dir / LIST_FILE_NAME

    loop = asyncio.get_running_loop()
    try:
        total = await loop.run_in_executor(
            None, _walk_to_list, source_root.resolve(), list_file, list(exclude_paths or [])
        )
    except OSError as e:
        raise ArchiveError(
            f"Failed to enumerate files: {e}",
            details={"source_root": str(source_root)},
        )

    logger.info("files_enumerated", run_id=run_id, total_files=total)

    return ArchiveState(
        run_id=run_id,
        source_root=str(source_root.resolve()),
        run_dir=str(run_dir),
        list_file=str(list_file),
        total_files=total,
        max_part_bytes=max_part_bytes,
        batch_size=batch_size,
        use_tar=use_tar,
    )


class _TarAppendFailed(Exception):
    pass


def _round_up(value: int, multiple: int) -> int:
    return -(-value // multiple) * multiple


def _tar_projected_size(tar: tarfile.TarFile, arcname: str, size: int) -> int:
    """Size of the part after appending one member and closing."""
    name_bytes = len(arcname.encode("utf-8", "surrogateescape"))
    # Always budget a pax header: sub-second mtimes and long names need one
    header = _BLOCK + _BLOCK + _round_up(name_bytes + 96, _BLOCK)
    end = tar.offset + header + _round_up(size, _BLOCK)
    return _round_up(end + 2 * _BLOCK, _RECORD)


def _zip_projected_size(zf: zipfile.ZipFile, arcname: str, size: int) -> int:
    """Size of the part after writing one member and closing."""
    name_bytes = len(arcname.encode("utf-8", "surrogateescape"))
    directory = sum(46 + len(i.filename.encode("utf-8")) + len(i.extra) + 28 for i in zf.infolist())
    # Local header, deflated data bound, central directory entries, end record
    local = 30 + name_bytes + 28 + size + size // 100 + 64
    return zf.start_dir + local + directory + 46 + name_bytes + 28 + 22


def _trim_tar(path: Path, keep: int) -> None:
    """Drop members appended by a batch whose state was never saved."""
    if not path.exists():
        return
    if keep == 0:
        path.unlink()
        return
    with tarfile.open(path, "r:") as tar:
        members = tar.getmembers()
    if len(members) <= keep:
        return
    cut = members[keep].offset
    with open(path, "r+b") as f:
        f.truncate(cut)
        f.seek(cut)
        f.write(b"\0" * (2 * _BLOCK))


def _trim_zip(path: Path, keep: int) -> None:
    """Rebuild a zip part without members from a batch that was never saved."""
    if not path.exists():
        return
    if keep == 0:
        path.unlink()
        return
    with zipfile.ZipFile(path) as zf:
        infos = zf.infolist()
        if len(infos) <= keep:
            return
        temp = path.with_name(path.name + ".tmp")
        with zipfile.ZipFile(temp, "w", compression=zipfile.ZIP_DEFLATED) as out:
            for info in infos[:keep]:
                out.writestr(info, zf.read(info))
    os.replace(temp, path)


class _PartWriter:
    """Holds the current part open for the duration of one batch."""

    def __init__(self, state: ArchiveState):
        self.state = state
        self.handle: tarfile.TarFile | zipfile.ZipFile | None = None

    @property
    def path(self) -> Path:
        return Path(self.state.run_dir) / part_file_name(self.state.current_part, self.state.use_tar)

    def open(self) -> None:
        path = self.path
        if self.state.use_tar:
            try:
                _trim_tar(path, self.state.current_part_members)
                self.handle = tarfile.open(path, "a")
            except (tarfile.TarError, OSError) as e:
                raise _TarAppendFailed(str(e))
        else:
            _trim_zip(path, self.state.current_part_members)
            self.handle = zipfile.ZipFile(path, "a", compression=zipfile.ZIP_DEFLATED)

    def projected_size(self, arcname: str, size: int) -> int:
        if self.handle is None:
            self.open()
        if isinstance(self.handle, tarfile.TarFile):
            return _tar_projected_size(self.handle, arcname, size)
        return _zip_projected_size(self.handle, arcname, size)

    def add(self, path: str, arcname: str) -> None:
        if self.handle is None:
            self.open()
        if isinstance(self.handle, tarfile.TarFile):
            try:
                self.handle.add(path, arcname=arcname, recursive=False)
            except (FileNotFoundError, PermissionError):
                raise
            except (tarfile.TarError, OSError) as e:
                raise _TarAppendFailed(str(e))
        else:
            self.handle.write(path, arcname=arcname)
        self.state.current_part_members += 1

    def close(self) -> None:
        if self.handle is not None:
            handle, self.handle = self.handle, None
            try:
                handle.close()
            except (tarfile.TarError, OSError) as e:
                if isinstance(handle, tarfile.TarFile):
                    raise _TarAppendFailed(str(e))
                raise
        path = self.path
        self.state.current_part_size = path.stat().st_size if path.exists() else 0

    def seal(self) -> ArchivePart | None:
        self.close()
        path = self.path
        part = None
        if path.exists() and self.state.current_part_size > 0:
            part = ArchivePart(
                part_number=self.state.current_part,
                path=str(path),
                byte_size=self.state.current_part_size,
            )
            self.state.sealed_parts.append(part)
            self.state.current_part += 1
            logger.info(
                "archive_part_sealed",
                run_id=self.state.run_id,
                part=part.part_number,
                byte_size=part.byte_size,
            )
        self.state.current_part_size = 0
        self.state.current_part_members = 0
        return part


def _read_batch(state: ArchiveState) -> List[str]:
    with open(state.list_file, "r", encoding="utf-8", errors="surrogateescape") as f:
        lines = itertools.islice(f, state.lines_consumed, state.lines_consumed + state.batch_size)
        return [line.rstrip("\n") for line in lines]


def _archive_batch(state: ArchiveState) -> ArchiveBatchResult:
    batch = _read_batch(state)
    writer = _PartWriter(state)
    first_line = state.lines_consumed

    try:
        for index, path in enumerate(batch):
            line_number = first_line + index
            if not os.path.isfile(path) or not os.access(path, os.R_OK):
                state.files_skipped += 1
                continue

            arcname = os.path.relpath(path, state.source_root).replace(os.sep, "/")
            try:
                size = os.path.getsize(path)
                projected = writer.projected_size(arcname, size)
                if projected > state.max_part_bytes and _part_has_members(writer):
                    writer.seal()
                    _mark_part_start(state, line_number)
                writer.add(path, arcname)
                state.files_archived += 1
            except (FileNotFoundError, PermissionError):
                state.files_skipped += 1
                continue

        state.lines_consumed = first_line + len(batch)
        writer.close()

        eof = len(batch) < state.batch_size
        if state.current_part_size >= state.max_part_bytes or (eof and state.current_part_size):
            writer.seal()
            _mark_part_start(state, state.lines_consumed)
    finally:
        if writer.handle is not None:
            with contextlib.suppress(tarfile.TarError, OSError):
                writer.handle.close()

    done = eof
    progress = 100.0 if done else (
        state.lines_consumed / state.total_files * 100 if state.total_files else 100.0
    )
    message = f"Archived {state.files_archived}/{state.total_files} files"
    if state.files_skipped:
        message += f" ({state.files_skipped} skipped)"

    return ArchiveBatchResult(
        done=done,
        progress=round(progress, 1),
        message=message,
        parts=list(state.sealed_parts) if done else [],
    )


def _mark_part_start(state: ArchiveState, line_number: int) -> None:
    state.part_start_line = line_number
    state.part_start_archived = state.files_archived
    state.part_start_skipped = state.files_skipped


def _part_has_members(writer: _PartWriter) -> bool:
    handle = writer.handle
    if isinstance(handle, tarfile.TarFile):
        return handle.offset > 0
    if isinstance(handle, zipfile.ZipFile):
        return bool(handle.namelist())
    return False


def _fall_back_to_zip(state: ArchiveState, reason: str) -> None:
    broken = Path(state.run_dir) / part_file_name(state.current_part, True)
    broken.unlink(missing_ok=True)
    logger.warning(
        "tar_append_failed_using_zip",
        run_id=state.run_id,
        part=state.current_part,
        error=reason,
    )
    state.use_tar = False
    state.current_part_size = 0
    state.current_part_members = 0
    state.lines_consumed = state.part_start_line
    state.files_archived = state.part_start_archived
    state.files_skipped = state.part_start_skipped


def _process_batch_sync(state: ArchiveState) -> ArchiveBatchResult:
    try:
        return _archive_batch(state)
    except _TarAppendFailed as e:
        _fall_back_to_zip(state, str(e))
    return _archive_batch(state)


async def process_archive_batch(state: ArchiveState) -> ArchiveBatchResult:
    """
    Append the next batch of files to the current part.

    Updates ``state`` in place. Files that vanished or became unreadable
    since enumeration are skipped. A part is sealed before a file that
    would push it over the cap, when it reaches the cap, and at the end of
    the list.

    Args:
        state: Archive state from init_archive() or a previous batch

    Returns:
        ArchiveBatchResult; ``parts`` lists every sealed part once done

    Raises:
        ArchiveError: If the part cannot be written in either format
    """
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, _process_batch_sync, state)
    except ArchiveError:
        raise
    except (_TarAppendFailed, OSError, zipfile.BadZipFile) as e:
        raise ArchiveError(
            f"Failed to archive batch: {e}",
            details={"run_id": state.run_id, "part": state.current_part},
        )


async def cancel_archive(state: ArchiveState) -> None:
    """Delete every sealed and in-progress part and the list file."""
    run_dir = Path(state.run_dir)
    for part in state.sealed_parts:
        Path(part.path).unlink(missing_ok=True)
    for use_tar in (True, False):
        (run_dir / part_file_name(state.current_part, use_tar)).unlink(missing_ok=True)
    Path(state.list_file).unlink(missing_ok=True)
    logger.info("archive_cancelled", run_id=state.run_id)
