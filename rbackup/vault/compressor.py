# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rbackup Compressor - Trailing gzip pass over sealed tar parts.

Tar parts are appended to in place while archiving, so they are only
compressed once archiving has finished. Each call compresses one part:
files-partNNN.tar -> files-partNNN.tar.gz (written to a temp file, renamed,
then the tar is removed).
"""

import asyncio
import gzip
import os
import shutil
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List

import structlog

from rbackup.exceptions import ArchiveError

logger = structlog.get_logger()

# Thread pool for CPU-bound compression
_executor = ThreadPoolExecutor(max_workers=2)

DEFAULT_GZIP_LEVEL = 6
_COPY_BUFFER = 1024 * 1024


def pending_tar_parts(run_dir: Path) -> List[Path]:
    """Uncompressed tar parts in part order."""
    return sorted(run_dir.glob("files-part*.tar"))


def _gzip_file(source: Path, level: int) -> Path:
    target = source.with_name(source.name + ".gz")
    temp = target.with_name(target.name + ".tmp")
    try:
        with open(source, "rb") as src, gzip.open(temp, "wb", compresslevel=level) as dst:
            shutil.copyfileobj(src, dst, _COPY_BUFFER)
        os.replace(temp, target)
    except BaseException:
        temp.unlink(missing_ok=True)
        raise
    source.unlink()
    return target


async def compress_next_part(run_dir: Path, level: int = DEFAULT_GZIP_LEVEL) -> Path | None:
    """
    Gzip the first remaining tar part of a run.

    Args:
        run_dir: Run directory holding files-partNNN.tar parts
        level: gzip compression level

    Returns:
        Path of the new .tar.gz part, or None when nothing is left
    """
    pending = pending_tar_parts(run_dir)
    if not pending:
        return None

    source = pending[0]
    original_size = source.stat().st_size

    loop = asyncio.get_running_loop()
    try:
        target = await loop.run_in_executor(_executor, _gzip_file, source, level)
    except OSError as e:
        raise ArchiveError(
            f"Failed to compress {source.name}: {e}",
            details={"part": str(source)},
        )

    compressed_size = target.stat().st_size
    logger.info(
        "archive_part_compressed",
        part=target.name,
        original_size=original_size,
        compressed_size=compressed_size,
        ratio=round(original_size / compressed_size, 2) if compressed_size else 0,
    )
    return target
