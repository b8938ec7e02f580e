# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
rbackup Run State - Durable records for backup and restore runs.

A run record is read once and written once per step. Each phase carries
only the sub-state it needs; the active variant is selected by its
``phase`` tag when the record is loaded back from the registry.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, Field, SerializationInfo, field_serializer

from rbackup.config import BackupType


class BackupPhase(str, Enum):
    """Backup state machine phases, in visiting order."""

    INIT = "init"
    DATABASE = "database"
    FILES = "files"
    COMPRESS = "compress"
    ENCRYPT = "encrypt"
    UPLOAD = "upload"
    DONE = "done"


class RestorePhase(str, Enum):
    """Restore state machine phases, in visiting order."""

    DOWNLOAD = "download"
    SNAPSHOT = "snapshot"
    INIT = "init"
    DECRYPT = "decrypt"
    DATABASE = "database"
    FILES = "files"
    DONE = "done"


class RunOutcome(str, Enum):
    """Terminal label of a run."""

    SUCCESS = "success"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class RunKind(str, Enum):
    """Registry key. At most one active run per kind."""

    BACKUP = "backup"
    RESTORE = "restore"


# ============================================================================
# Component sub-state
# ============================================================================


class TableCursor(BaseModel):
    """Export position within one table."""

    name: str
    total_rows: int
    exported: int = 0
    done: bool = False
    schema_written: bool = False
    primary_key: str | None = None
    last_id: Any = None


class ExportState(BaseModel):
    """Table exporter progress across all tables of one export run."""

    run_id: str
    output_file: str
    tables: List[TableCursor] = Field(default_factory=list)
    current_index: int = 0
    header_written: bool = False
    # Output length after the last completed chunk; a resumed step
    # truncates back to it before appending.
    bytes_written: int = 0
    progress: float = 0.0


class ArchivePart(BaseModel):
    """A sealed archive part."""

    part_number: int
    path: str
    byte_size: int


class ArchiveState(BaseModel):
    """Archiver progress through the enumerated file list."""

    run_id: str
    source_root: str
    run_dir: str
    list_file: str
    total_files: int
    max_part_bytes: int
    batch_size: int
    use_tar: bool = True
    lines_consumed: int = 0
    files_archived: int = 0
    files_skipped: int = 0
    current_part: int = 1
    current_part_size: int = 0
    # Members recorded in the current part; extra members came from a lost batch
    current_part_members: int = 0
    # List line where the current part began; a zip fallback re-archives from here
    part_start_line: int = 0
    part_start_archived: int = 0
    part_start_skipped: int = 0
    sealed_parts: List[ArchivePart] = Field(default_factory=list)


# Serialization context flag for dumps that go to the run registry
PERSIST_CONTEXT_KEY = "persist"


class UploadSession(BaseModel):
    """Resumable transfer of one file to one destination."""

    file_name: str
    offset: int = 0
    token: str | None = None  # Session id, upload id or resumable URL
    parts: List[Dict[str, Any]] = Field(default_factory=list)


class DestinationProgress(BaseModel):
    """Per-destination distribution progress."""

    name: str
    file_index: int = 0
    bytes_done: int = 0
    uploaded: int = 0
    failed_files: List[str] = Field(default_factory=list)
    session: UploadSession | None = None
    finished: bool = False
    success: bool = False
    message: str = ""
    access_token: str | None = None
    token_expires_at: float | None = None
    folder_id: str | None = None

    @field_serializer("access_token")
    def _redact_token(self, value: str | None, info: SerializationInfo) -> str | None:
        # Only the run registry keeps the cached token
        if info.context and info.context.get(PERSIST_CONTEXT_KEY):
            return value
        return None


class UploadState(BaseModel):
    """Distribution progress across all destinations."""

    run_id: str
    files: List[str]
    total_bytes: int
    destinations: List[DestinationProgress] = Field(default_factory=list)


# ============================================================================
# Backup phase variants
# ============================================================================


class BackupInitStep(BaseModel):
    phase: Literal["init"] = "init"


class BackupDatabaseStep(BaseModel):
    phase: Literal["database"] = "database"
    export: ExportState


class BackupFilesStep(BaseModel):
    phase: Literal["files"] = "files"
    archive: ArchiveState


class BackupCompressStep(BaseModel):
    phase: Literal["compress"] = "compress"
    total_parts: int = 0
    compressed: int = 0


class BackupEncryptStep(BaseModel):
    phase: Literal["encrypt"] = "encrypt"
    pending: List[str]
    total: int
    encrypted: int = 0


class BackupUploadStep(BaseModel):
    phase: Literal["upload"] = "upload"
    upload: UploadState


class BackupDoneStep(BaseModel):
    phase: Literal["done"] = "done"
    outcome: RunOutcome
    duration_seconds: float = 0.0
    storage_results: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


BackupStep = Annotated[
    Union[
        BackupInitStep,
        BackupDatabaseStep,
        BackupFilesStep,
        BackupCompressStep,
        BackupEncryptStep,
        BackupUploadStep,
        BackupDoneStep,
    ],
    Field(discriminator="phase"),
]


class BackupRun(BaseModel):
    """Durable record of one backup run."""

    kind: Literal["backup"] = "backup"
    id: str
    backup_type: BackupType
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    progress: float = 0.0
    message: str = ""
    errors: List[str] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list)
    destinations: List[str] = Field(default_factory=list)
    encrypted: bool = False
    step: BackupStep = Field(default_factory=BackupInitStep)

    @property
    def phase(self) -> BackupPhase:
        return BackupPhase(self.step.phase)

    @property
    def running(self) -> bool:
        return self.phase is not BackupPhase.DONE


# ============================================================================
# Restore phase variants
# ============================================================================


class RestoreDownloadStep(BaseModel):
    phase: Literal["download"] = "download"
    destination: str
    files: List[str]
    file_index: int = 0
    total_bytes: int = 0
    bytes_done: int = 0


class RestoreSnapshotStep(BaseModel):
    phase: Literal["snapshot"] = "snapshot"
    snapshot_id: str
    export: ExportState | None = None


class RestoreInitStep(BaseModel):
    phase: Literal["init"] = "init"


class RestoreDecryptStep(BaseModel):
    phase: Literal["decrypt"] = "decrypt"
    pending: List[str]
    total: int


class RestoreDatabaseStep(BaseModel):
    phase: Literal["database"] = "database"
    db_file: str
    db_size: int
    db_offset: int = 0
    statements_executed: int = 0


class RestoreFilesStep(BaseModel):
    phase: Literal["files"] = "files"
    archives: List[str]
    current_archive_index: int = 0
    files_extracted: int = 0


class RestoreDoneStep(BaseModel):
    phase: Literal["done"] = "done"
    outcome: RunOutcome
    duration_seconds: float = 0.0


RestoreStep = Annotated[
    Union[
        RestoreDownloadStep,
        RestoreSnapshotStep,
        RestoreInitStep,
        RestoreDecryptStep,
        RestoreDatabaseStep,
        RestoreFilesStep,
        RestoreDoneStep,
    ],
    Field(discriminator="phase"),
]


class RestoreRun(BaseModel):
    """Durable record of one restore run."""

    kind: Literal["restore"] = "restore"
    id: str
    backup_id: str
    restore_db: bool
    restore_files: bool
    create_snapshot: bool
    snapshot_id: str | None = None
    selected_files: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    progress: float = 0.0
    message: str = ""
    errors: List[str] = Field(default_factory=list)
    # Decrypted plaintext copies removed at DONE and cancel
    temp_files: List[str] = Field(default_factory=list)
    # Artifact names with decrypted copies substituted in
    resolved_files: Dict[str, str] = Field(default_factory=dict)
    step: RestoreStep = Field(default_factory=RestoreInitStep)

    @property
    def phase(self) -> RestorePhase:
        return RestorePhase(self.step.phase)

    @property
    def running(self) -> bool:
        return self.phase is not RestorePhase.DONE


def advance_progress(current: float, value: float) -> float:
    """Clamp to [0, 100] and never move backwards."""
    return max(current, min(100.0, max(0.0, round(value, 1))))
