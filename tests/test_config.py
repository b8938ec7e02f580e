# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Configuration Tests for rbackup.

Covers create_config() validation, environment parsing and the hosting
profiles.
"""

from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

from rbackup import cloud_only, constrained_hosting, create_config, create_config_from_env
from rbackup.config import ArchiveFormat, Destination
from rbackup.exceptions import ConfigurationError


def _config(temp_dir: Path, **kwargs):
    return create_config(backup_dir=temp_dir / "backups", source_dir=temp_dir, **kwargs)


# ============================================================================
# create_config
# ============================================================================

def test_defaults(temp_dir: Path):
    config = _config(temp_dir)

    assert config.destinations == [Destination.LOCAL]
    assert config.archive_format is ArchiveFormat.TAR
    assert config.registry_path == temp_dir / "backups" / ".rbackup-state.db"
    assert config.remote_folder == "rbackup"
    assert not config.encryption_enabled
    assert config.max_archive_bytes == 500 * 1024 * 1024


def test_remote_folder_from_site_url(temp_dir: Path):
    assert _config(temp_dir, site_url="https://shop.example.com/blog").remote_folder == "shop.example.com"
    assert _config(temp_dir, storage_folder="custom").remote_folder == "custom"


def test_strings_are_coerced(temp_dir: Path):
    config = create_config(
        backup_dir=str(temp_dir / "backups"),
        source_dir=str(temp_dir),
        destinations=["local", "s3"],
        archive_format="zip",
        s3_bucket="bucket",
    )

    assert config.backup_dir == temp_dir / "backups"
    assert config.destinations == [Destination.LOCAL, Destination.S3]
    assert config.archive_format is ArchiveFormat.ZIP


@pytest.mark.parametrize(
    "kwargs",
    [
        {"destinations": ["ftp"]},
        {"archive_format": "rar"},
        {"db_chunk_size": 0},
        {"max_archive_mb": 0},
        {"transfer_chunk_mb": 0},
        {"retention_count": -1},
        {"encryption_passphrase": ""},
        {"database_url": "postgres://localhost/app"},
        {"destinations": ["local", "local"]},
    ],
    ids=[
        "unknown-destination",
        "unknown-archive-format",
        "zero-chunk",
        "zero-part-size",
        "zero-transfer-unit",
        "negative-retention",
        "empty-passphrase",
        "unsupported-database",
        "duplicate-destination",
    ],
)
def test_invalid_values_are_rejected(temp_dir: Path, kwargs):
    with pytest.raises(ConfigurationError):
        _config(temp_dir, **kwargs)


def test_remote_destination_needs_credentials(temp_dir: Path):
    with pytest.raises(ConfigurationError) as exc_info:
        _config(temp_dir, destinations=["dropbox"], dropbox_app_key="key")

    errors = exc_info.value.details["errors"]
    assert len(errors) == 1
    assert "dropbox_app_secret" in errors[0]
    assert "dropbox_refresh_token" in errors[0]


def test_config_is_frozen(temp_dir: Path):
    config = _config(temp_dir)

    with pytest.raises(FrozenInstanceError):
        config.db_chunk_size = 5


def test_with_updates_revalidates(temp_dir: Path):
    config = _config(temp_dir)

    assert config.with_updates(db_chunk_size=5).db_chunk_size == 5
    assert config.db_chunk_size == 1000

    with pytest.raises(ConfigurationError):
        config.with_updates(file_batch_size=0)


# ============================================================================
# Environment
# ============================================================================

@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "RBACKUP_BACKUP_DIR",
        "RBACKUP_SOURCE_DIR",
        "DATABASE_URL",
        "RBACKUP_DESTINATIONS",
        "RBACKUP_RETENTION",
        "RBACKUP_DB_CHUNK_SIZE",
        "RBACKUP_EXCLUDE_PATHS",
        "RBACKUP_ENCRYPTION_PASSPHRASE",
        "RBACKUP_ALLOW_LEGACY_DECRYPT",
        "S3_BUCKET",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_env_requires_backup_dir(clean_env):
    with pytest.raises(ConfigurationError, match="RBACKUP_BACKUP_DIR"):
        create_config_from_env()


def test_env_parsing(clean_env, temp_dir: Path):
    clean_env.setenv("RBACKUP_BACKUP_DIR", str(temp_dir / "backups"))
    clean_env.setenv("RBACKUP_SOURCE_DIR", str(temp_dir))
    clean_env.setenv("DATABASE_URL", f"sqlite:///{temp_dir / 'app.db'}")
    clean_env.setenv("RBACKUP_DESTINATIONS", "local, S3")
    clean_env.setenv("S3_BUCKET", "my-bucket")
    clean_env.setenv("RBACKUP_RETENTION", "0")
    clean_env.setenv("RBACKUP_DB_CHUNK_SIZE", "250")
    clean_env.setenv("RBACKUP_EXCLUDE_PATHS", "cache, tmp/")
    clean_env.setenv("RBACKUP_ENCRYPTION_PASSPHRASE", "secret")
    clean_env.setenv("RBACKUP_ALLOW_LEGACY_DECRYPT", "yes")

    config = create_config_from_env()

    assert config.destinations == [Destination.LOCAL, Destination.S3]
    assert config.s3_bucket == "my-bucket"
    assert config.retention_count == 0
    assert config.db_chunk_size == 250
    assert config.exclude_paths == ["cache", "tmp/"]
    assert config.encryption_enabled
    assert config.allow_legacy_decrypt is True


@pytest.mark.parametrize("value", ["many", "0"])
def test_env_rejects_bad_integers(clean_env, temp_dir: Path, value: str):
    clean_env.setenv("RBACKUP_BACKUP_DIR", str(temp_dir))
    clean_env.setenv("RBACKUP_DB_CHUNK_SIZE", value)

    with pytest.raises(ConfigurationError, match="RBACKUP_DB_CHUNK_SIZE"):
        create_config_from_env()


# ============================================================================
# Profiles
# ============================================================================

def test_constrained_hosting_caps_budgets(temp_dir: Path):
    config = constrained_hosting(_config(temp_dir, db_chunk_size=5000, file_batch_size=10))

    assert config.db_chunk_size == 250
    assert config.file_batch_size == 10
    assert config.restore_statements_per_step == 20
    assert config.max_archive_mb == 100


def test_cloud_only_drops_local(temp_dir: Path):
    config = cloud_only(_config(temp_dir, destinations=["local", "s3"], s3_bucket="bucket"))
    assert config.destinations == [Destination.S3]

    with pytest.raises(ConfigurationError):
        cloud_only(_config(temp_dir))
