# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rbackup Exceptions - Custom exceptions for the rbackup package.
"""


class RBackupError(Exception):
    """Base exception for all rbackup errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(RBackupError):
    """Raised when configuration is invalid."""

    pass


class ValidationError(RBackupError):
    """Raised when an operation receives bad input. No state is changed."""

    pass


class RunAlreadyActiveError(ValidationError):
    """Raised when a run of the same kind is already in progress."""

    pass


class NoActiveRunError(ValidationError):
    """Raised when an operation needs an active run and there is none."""

    pass


class BackupNotFoundError(ValidationError):
    """Raised when a backup id does not name an existing backup."""

    pass


class ExportError(RBackupError):
    """Raised when a table export step fails."""

    pass


class ArchiveError(RBackupError):
    """Raised when file enumeration, archiving or extraction fails."""

    pass


class DestinationError(RBackupError):
    """Raised when a remote destination rejects a transfer."""

    pass


class DestinationAuthError(DestinationError):
    """Raised when a destination credential cannot be refreshed."""

    pass


class CodecError(RBackupError):
    """Base class for encryption codec failures. Always fatal."""

    pass


class CodecFormatError(CodecError):
    """Raised when the input does not start with the codec magic."""

    pass


class CodecAuthenticationError(CodecError):
    """Raised when a chunk fails authentication (wrong passphrase or tampering)."""

    pass


class CodecCorruptionError(CodecError):
    """Raised when chunk framing is truncated."""

    pass


class UnsupportedCodecVersionError(CodecError):
    """Raised for unknown or disallowed format versions."""

    pass


class StateStoreError(RBackupError):
    """Raised when the run registry cannot be read or written."""

    pass


class StorageError(RBackupError):
    """Raised when backup listing, manifest or deletion operations fail."""

    pass
