# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Archive Extractor - Whole-archive extraction for file restores.

The container format is detected from the leading bytes, not the file
name: gzip (tar.gz), plain tar, or zip.
"""

import asyncio
import os
import tarfile
import zipfile
from pathlib import Path
from typing import List

import structlog

from rbackup.exceptions import ArchiveError

logger = structlog.get_logger()

GZIP_MAGIC = b"\x1f\x8b"
ZIP_MAGIC = b"PK\x03\x04"
TAR_MAGIC_OFFSET = 257


def detect_format(path: Path) -> str | None:
    """
    Detect an archive container by its magic bytes.

    Returns:
        "tar.gz", "tar", "zip", or None if unrecognized
    """
    with open(path, "rb") as f:
        head = f.read(TAR_MAGIC_OFFSET + 8)
    if head.startswith(GZIP_MAGIC):
        return "tar.gz"
    if head.startswith(ZIP_MAGIC):
        return "zip"
    if head[TAR_MAGIC_OFFSET : TAR_MAGIC_OFFSET + 5] == b"ustar":
        return "tar"
    return None


def _is_selected(name: str, selected: List[str]) -> bool:
    if not selected:
        return True
    name = name.strip("/")
    for item in selected:
        item = item.strip("/")
        if name == item or name.startswith(item + "/"):
            return True
    return False


def _is_unsafe(name: str) -> bool:
    return name.startswith("/") or ".." in Path(name).parts


def _extract_sync(archive: Path, dest: Path, selected: List[str]) -> int:
    fmt = detect_format(archive)
    if fmt is None:
        raise ArchiveError(
            f"Unsupported archive format: {archive.name}",
            details={"archive": str(archive)},
        )

    dest.mkdir(parents=True, exist_ok=True)

    if fmt == "zip":
        with zipfile.ZipFile(archive) as zf:
            names = [n for n in zf.namelist() if _is_selected(n, selected)]
            for name in names:
                if _is_unsafe(name):
                    raise ArchiveError(
                        f"Unsafe path in archive: {name}",
                        details={"archive": str(archive)},
                    )
            zf.extractall(dest, members=names)
            return len([n for n in names if not n.endswith("/")])

    mode = "r:gz" if fmt == "tar.gz" else "r:"
    with tarfile.open(archive, mode) as tar:
        members = [m for m in tar.getmembers() if _is_selected(m.name, selected)]
        # Security: Check for path traversal
        for member in members:
            if _is_unsafe(member.name):
                raise ArchiveError(
                    f"Unsafe path in archive: {member.name}",
                    details={"archive": str(archive)},
                )
        tar.extractall(dest, members=members, filter="data")
        return len([m for m in members if m.isfile()])


async def extract_archive(
    archive: Path,
    dest: Path,
    selected_files: List[str] | None = None,
) -> int:
    """
    Extract a whole archive part into dest.

    Args:
        archive: Archive part (tar.gz, tar or zip)
        dest: Directory to extract into
        selected_files: Member names or directory prefixes to restore
            (empty or None restores everything)

    Returns:
        Number of regular files extracted

    Raises:
        ArchiveError: Unknown format, unsafe member path, or read failure
    """
    loop = asyncio.get_running_loop()
    try:
        count = await loop.run_in_executor(
            None, _extract_sync, archive, dest, list(selected_files or [])
        )
    except ArchiveError:
        raise
    except (tarfile.TarError, zipfile.BadZipFile, OSError, EOFError) as e:
        raise ArchiveError(
            f"Failed to extract {archive.name}: {e}",
            details={"archive": str(archive)},
        )

    logger.info("archive_extracted", archive=archive.name, files=count)
    return count


def _list_sync(archive: Path) -> List[str]:
    fmt = detect_format(archive)
    if fmt == "zip":
        with zipfile.ZipFile(archive) as zf:
            return [n for n in zf.namelist() if not n.endswith("/")]
    if fmt in ("tar", "tar.gz"):
        with tarfile.open(archive, "r:gz" if fmt == "tar.gz" else "r:") as tar:
            return [m.name for m in tar.getmembers() if m.isfile()]
    raise ArchiveError(
        f"Unsupported archive format: {archive.name}",
        details={"archive": str(archive)},
    )


async def list_archive_members(archive: Path) -> List[str]:
    """List regular file members of an archive part."""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, _list_sync, archive)
    except ArchiveError:
        raise
    except (tarfile.TarError, zipfile.BadZipFile, OSError, EOFError) as e:
        raise ArchiveError(
            f"Failed to read {archive.name}: {e}",
            details={"archive": str(archive), "exists": os.path.exists(archive)},
        )
