# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Vault - Artifact codec, compression and backup storage.
"""

from rbackup.vault.codec import (
    CodecResult,
    decrypt_file,
    decrypt_stream,
    encrypt_file,
    encrypt_stream,
    is_encrypted,
)

from rbackup.vault.compressor import (
    compress_next_part,
    pending_tar_parts,
)

from rbackup.vault.storage import (
    BackupManifest,
    analyze_backup,
    delete_backup,
    delete_local_files_only,
    enforce_retention,
    list_backups,
    read_manifest,
    list_archive_members,
    write_manifest,
)

__all__ = [
    # Codec
    "CodecResult",
    "decrypt_file",
    "decrypt_stream",
    "encrypt_file",
    "encrypt_stream",
    "is_encrypted",
    # Compressor
    "compress_next_part",
    "pending_tar_parts",
    # Storage
    "BackupManifest",
    "analyze_backup",
    "delete_backup",
    "delete_local_files_only",
    "enforce_retention",
    "list_backups",
    "read_manifest",
    "list_archive_members",
    "write_manifest",
]
