# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rbackup Codec - Chunked authenticated encryption for backup artifacts.

Wire format (version 2):

    "WPRB" | 0x02 | salt(32) | { nonce(12) | tag(16) | ciphertext(<= 1 MiB) }*

The key is derived with PBKDF2-HMAC-SHA256 (600,000 iterations) and every
1 MiB chunk is sealed with AES-256-GCM under its own random nonce. A chunk
is only written to the destination after its tag verifies.

Version 1 (legacy) is "WPRB" | 0x01 | salt(16) | iv(16) | AES-256-CBC body
with PKCS#7 padding and a 10,000 iteration KDF. It has no authentication and
is only decoded when explicitly allowed.
"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from rbackup.exceptions import (
    CodecAuthenticationError,
    CodecCorruptionError,
    CodecError,
    CodecFormatError,
    UnsupportedCodecVersionError,
)

logger = structlog.get_logger()

MAGIC = b"WPRB"
VERSION_LEGACY_CBC = 1
VERSION_GCM = 2

CHUNK_SIZE = 1024 * 1024
SALT_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
KDF_ITERATIONS = 600_000

LEGACY_SALT_SIZE = 16
LEGACY_IV_SIZE = 16
LEGACY_KDF_ITERATIONS = 10_000

ENCRYPTED_SUFFIX = ".enc"


@dataclass
class CodecResult:
    """Outcome of an encrypt or decrypt pass."""

    version: int
    chunks: int
    bytes_in: int
    bytes_out: int


def derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    """Derive a 256-bit key from a passphrase with PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def is_encrypted(header: bytes) -> bool:
    """
    Check whether leading bytes carry the codec magic.

    Args:
        header: At least the first 4 bytes of a file

    Returns:
        True if the bytes start with the codec magic
    """
    return header[: len(MAGIC)] == MAGIC


def _read_exact(source: BinaryIO, size: int) -> bytes:
    """Read up to size bytes, looping over short reads until EOF."""
    buffer = bytearray()
    while len(buffer) < size:
        block = source.read(size - len(buffer))
        if not block:
            break
        buffer.extend(block)
    return bytes(buffer)


def encrypt_stream(source: BinaryIO, dest: BinaryIO, passphrase: str) -> CodecResult:
    """
    Encrypt a byte stream into the version 2 format.

    An empty source still produces one sealed empty chunk so that a wrong
    passphrase is detected on decryption.

    Args:
        source: Readable binary stream
        dest: Writable binary stream
        passphrase: Non-empty passphrase

    Returns:
        CodecResult with chunk and byte counts
    """
    if not passphrase:
        raise CodecError("No passphrase provided")

    salt = os.urandom(SALT_SIZE)
    aead = AESGCM(derive_key(passphrase, salt, KDF_ITERATIONS))

    dest.write(MAGIC + bytes([VERSION_GCM]) + salt)
    bytes_out = len(MAGIC) + 1 + SALT_SIZE
    bytes_in = 0
    chunks = 0

    while True:
        chunk = _read_exact(source, CHUNK_SIZE)
        if not chunk and chunks > 0:
            break

        nonce = os.urandom(NONCE_SIZE)
        sealed = aead.encrypt(nonce, chunk, None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        dest.write(nonce + tag + ciphertext)

        bytes_in += len(chunk)
        bytes_out += NONCE_SIZE + TAG_SIZE + len(ciphertext)
        chunks += 1

        if len(chunk) < CHUNK_SIZE:
            break

    return CodecResult(version=VERSION_GCM, chunks=chunks, bytes_in=bytes_in, bytes_out=bytes_out)


def decrypt_stream(
    source: BinaryIO,
    dest: BinaryIO,
    passphrase: str,
    allow_legacy: bool = False,
) -> CodecResult:
    """
    Decrypt a codec stream, verifying every chunk before emitting it.

    Args:
        source: Readable binary stream positioned at the magic
        dest: Writable binary stream
        passphrase: Passphrase used for encryption
        allow_legacy: Decode the unauthenticated version 1 format

    Returns:
        CodecResult with chunk and byte counts

    Raises:
        CodecFormatError: Missing or mismatched magic
        UnsupportedCodecVersionError: Unknown version, or legacy not allowed
        CodecAuthenticationError: A chunk failed to verify
        CodecCorruptionError: Truncated header or chunk framing
    """
    if not passphrase:
        raise CodecError("Passphrase missing")

    header = _read_exact(source, len(MAGIC) + 1)
    if len(header) < len(MAGIC) + 1 or not is_encrypted(header):
        raise CodecFormatError("Invalid file format (not an encrypted backup artifact)")

    version = header[len(MAGIC)]
    if version == VERSION_GCM:
        return _decrypt_gcm(source, dest, passphrase)
    if version == VERSION_LEGACY_CBC:
        if not allow_legacy:
            raise UnsupportedCodecVersionError(
                "Unsupported/insecure legacy format (version 1)",
                details={"version": version},
            )
        return _decrypt_legacy_cbc(source, dest, passphrase)

    raise UnsupportedCodecVersionError(
        f"Unsupported version: {version}",
        details={"version": version},
    )


def _decrypt_gcm(source: BinaryIO, dest: BinaryIO, passphrase: str) -> CodecResult:
    salt = _read_exact(source, SALT_SIZE)
    if len(salt) != SALT_SIZE:
        raise CodecCorruptionError("File truncated (salt)")

    aead = AESGCM(derive_key(passphrase, salt, KDF_ITERATIONS))
    bytes_in = len(MAGIC) + 1 + SALT_SIZE
    bytes_out = 0
    index = 0

    while True:
        nonce = _read_exact(source, NONCE_SIZE)
        if not nonce:
            break
        if len(nonce) != NONCE_SIZE:
            raise CodecCorruptionError(f"Corrupt chunk {index} (IV)", details={"chunk": index})

        tag = _read_exact(source, TAG_SIZE)
        if len(tag) != TAG_SIZE:
            raise CodecCorruptionError(f"Corrupt chunk {index} (Tag)", details={"chunk": index})

        ciphertext = _read_exact(source, CHUNK_SIZE)
        try:
            plaintext = aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise CodecAuthenticationError(
                f"Decryption failed at chunk {index} (wrong passphrase or corrupted data)",
                details={"chunk": index},
            )

        dest.write(plaintext)
        bytes_in += NONCE_SIZE + TAG_SIZE + len(ciphertext)
        bytes_out += len(plaintext)
        index += 1

        if len(ciphertext) < CHUNK_SIZE:
            trailing = source.read(1)
            if trailing:
                raise CodecCorruptionError(
                    f"Corrupt chunk {index} (data after final chunk)",
                    details={"chunk": index},
                )
            break

    if index == 0:
        raise CodecCorruptionError("Corrupt chunk 0 (no chunks)", details={"chunk": 0})

    return CodecResult(version=VERSION_GCM, chunks=index, bytes_in=bytes_in, bytes_out=bytes_out)


def _decrypt_legacy_cbc(source: BinaryIO, dest: BinaryIO, passphrase: str) -> CodecResult:
    salt = _read_exact(source, LEGACY_SALT_SIZE)
    iv = _read_exact(source, LEGACY_IV_SIZE)
    if len(salt) != LEGACY_SALT_SIZE or len(iv) != LEGACY_IV_SIZE:
        raise CodecCorruptionError("File truncated (legacy header)")

    key = derive_key(passphrase, salt, LEGACY_KDF_ITERATIONS)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()

    bytes_in = len(MAGIC) + 1 + LEGACY_SALT_SIZE + LEGACY_IV_SIZE
    bytes_out = 0
    chunks = 0
    held = b""  # Last plaintext block, kept back until padding is known

    while True:
        chunk = _read_exact(source, CHUNK_SIZE)
        if not chunk:
            break
        bytes_in += len(chunk)
        chunks += 1
        plaintext = held + decryptor.update(chunk)
        held, plaintext = plaintext[-16:], plaintext[:-16]
        dest.write(plaintext)
        bytes_out += len(plaintext)

    try:
        held += decryptor.finalize()
    except ValueError:
        raise CodecCorruptionError(
            f"Corrupt chunk {max(chunks - 1, 0)} (ciphertext not block aligned)",
            details={"chunk": max(chunks - 1, 0)},
        )

    if held:
        pad = held[-1]
        if 0 < pad <= 16 and held[-pad:] == bytes([pad]) * pad:
            held = held[:-pad]
        dest.write(held)
        bytes_out += len(held)

    return CodecResult(version=VERSION_LEGACY_CBC, chunks=chunks, bytes_in=bytes_in, bytes_out=bytes_out)


def _encrypt_path(source_path: Path, dest_path: Path, passphrase: str) -> CodecResult:
    temp_path = dest_path.with_name(dest_path.name + ".tmp")
    try:
        with open(source_path, "rb") as src, open(temp_path, "wb") as dst:
            result = encrypt_stream(src, dst, passphrase)
        os.replace(temp_path, dest_path)
        return result
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def _decrypt_path(
    source_path: Path, dest_path: Path, passphrase: str, allow_legacy: bool
) -> CodecResult:
    temp_path = dest_path.with_name(dest_path.name + ".tmp")
    try:
        with open(source_path, "rb") as src, open(temp_path, "wb") as dst:
            result = decrypt_stream(src, dst, passphrase, allow_legacy=allow_legacy)
        os.replace(temp_path, dest_path)
        return result
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


async def encrypt_file(source_path: Path, dest_path: Path, passphrase: str) -> CodecResult:
    """
    Encrypt a file into dest_path.

    Runs in a worker thread. The destination only appears once the whole
    file has been written.
    """
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, _encrypt_path, source_path, dest_path, passphrase)

    logger.info(
        "artifact_encrypted",
        source=source_path.name,
        chunks=result.chunks,
        bytes_out=result.bytes_out,
    )
    return result


async def decrypt_file(
    source_path: Path,
    dest_path: Path,
    passphrase: str,
    allow_legacy: bool = False,
) -> CodecResult:
    """
    Decrypt a file into dest_path.

    On any failure the partial output is removed, so dest_path never holds
    unverified plaintext.
    """
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        None, _decrypt_path, source_path, dest_path, passphrase, allow_legacy
    )

    if result.version == VERSION_LEGACY_CBC:
        logger.warning("legacy_artifact_decrypted", source=source_path.name)
    else:
        logger.info("artifact_decrypted", source=source_path.name, chunks=result.chunks)
    return result
