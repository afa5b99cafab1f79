# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Configuration - Immutable configuration data structures.

Both the engine configuration and the backup policies are frozen after
creation. Policy edits produce a new policy object, so historical runs
(which only reference policies by id) are never altered retroactively.
"""

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Tuple


class BackupKind(str, Enum):
    """Export scope strategy of a backup policy."""

    FULL = "full"  # All rows
    INCREMENTAL = "incremental"  # Rows changed since the last successful run
    DIFFERENTIAL = "differential"  # Rows changed since the last full run


class RunStatus(str, Enum):
    """Lifecycle state of a backup or restore run."""

    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class StorageBackend(str, Enum):
    """Where backup artifacts are persisted."""

    LOCAL = "local"
    S3 = "s3"


AES_KEY_SIZES = (16, 24, 32)


def _normalize_tables(tables: Iterable[str]) -> Tuple[str, ...]:
    """Turn a table list into an ordered set (first occurrence wins)."""
    if isinstance(tables, str):
        tables = [tables]
    seen: List[str] = []
    for table in tables:
        if table not in seen:
            seen.append(table)
    return tuple(seen)


@dataclass(frozen=True)
class BackupPolicy:
    """
    Named backup policy: what to back up, how often, and how long to keep it.

    Policies are never deleted, only disabled. ``revision`` is bumped by the
    registry every time the policy is upserted.
    """

    # Unique policy id, also used in artifact names
    id: str

    # Human readable name
    name: str

    # Ordered set of table names to export
    tables: Tuple[str, ...] = ()

    # Export scope
    kind: BackupKind = BackupKind.FULL

    # Cadence expression ("daily", "every 6 hours", "0 2 * * *", ...)
    schedule: str = "daily"

    # Days to keep superseded successful runs (0 = delete once superseded)
    retention_days: int = 7

    # Compress artifacts with zstd
    compress: bool = True

    # Encrypt artifacts with AES-GCM
    encrypt: bool = False

    # Disabled policies are skipped by the scheduler
    enabled: bool = True

    # Registry revision counter
    revision: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        """Validate policy after creation."""
        object.__setattr__(self, "tables", _normalize_tables(self.tables))
        if not isinstance(self.kind, BackupKind):
            try:
                object.__setattr__(self, "kind", BackupKind(self.kind))
            except ValueError:
                pass

        errors: List[str] = []

        if not isinstance(self.id, str) or not self.id.strip():
            errors.append("id must be a non-empty string")

        if not isinstance(self.name, str) or not self.name.strip():
            errors.append("name must be a non-empty string")

        if not isinstance(self.kind, BackupKind):
            errors.append(f"kind must be one of full, incremental, differential, got {self.kind!r}")

        if not self.tables:
            from dbsnap.errors import explain_missing_tables

            errors.append(explain_missing_tables(self.id))
        for table in self.tables:
            if not isinstance(table, str) or not table.strip():
                errors.append(f"Invalid table name: {table!r}")

        if (
            not isinstance(self.retention_days, int)
            or isinstance(self.retention_days, bool)
            or self.retention_days < 0
        ):
            errors.append(f"retention_days must be an integer >= 0, got {self.retention_days!r}")

        if not isinstance(self.schedule, str) or not self.schedule.strip():
            errors.append("schedule must be a non-empty cadence expression")

        if errors:
            from dbsnap.exceptions import InvalidPolicy

            raise InvalidPolicy(
                "Policy validation failed",
                details={"policy_id": self.id, "errors": errors},
            )

    def with_updates(self, **kwargs) -> "BackupPolicy":
        """
        Create a new policy with updated values.

        Any field may change except the id.
        """
        if "id" in kwargs and kwargs["id"] != self.id:
            from dbsnap.exceptions import InvalidPolicy

            raise InvalidPolicy(
                "Policy id cannot be changed",
                details={"policy_id": self.id, "requested_id": kwargs["id"]},
            )
        known = {f.name for f in fields(self)}
        unknown = sorted(set(kwargs) - known)
        if unknown:
            from dbsnap.exceptions import InvalidPolicy

            raise InvalidPolicy(
                "Unknown policy fields",
                details={"policy_id": self.id, "fields": unknown},
            )
        return replace(self, **kwargs)


@dataclass(frozen=True)
class EngineConfig:
    """
    Immutable configuration for the backup and recovery engine.

    This configuration is frozen after creation to ensure it can be shared
    safely between scheduler timers and on-demand runs.
    """

    # Directory holding registry.db and ledger.db
    data_path: Path = field(default_factory=lambda: Path("./dbsnap_data"))

    # Artifact storage backend
    storage_backend: StorageBackend = StorageBackend.LOCAL

    # Root directory for local artifacts
    artifact_root: Path = field(default_factory=lambda: Path("./dbsnap_data/artifacts"))

    # Object storage settings (storage_backend = s3)
    s3_bucket: str | None = None
    s3_prefix: str = "backups/"
    region: str = "us-east-1"

    # AES key used when a policy requests encryption
    encryption_key: bytes | None = field(default=None, repr=False)

    # Cadence used when a schedule cannot be parsed
    default_interval_seconds: int = 24 * 60 * 60

    # Overall deadline for a single backup or restore run
    run_timeout_seconds: float = 30 * 60

    # Attempts for transient I/O steps (export, import, artifact read/write)
    max_retries: int = 3

    # Base delay of the exponential backoff between attempts
    retry_backoff_seconds: float = 0.5

    # zstd compression level (1-22)
    zstd_level: int = 19

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        if isinstance(self.data_path, str):
            object.__setattr__(self, "data_path", Path(self.data_path))
        if isinstance(self.artifact_root, str):
            object.__setattr__(self, "artifact_root", Path(self.artifact_root))
        if isinstance(self.storage_backend, str) and not isinstance(
            self.storage_backend, StorageBackend
        ):
            try:
                object.__setattr__(self, "storage_backend", StorageBackend(self.storage_backend))
            except ValueError:
                pass

        errors: List[str] = []

        if not isinstance(self.storage_backend, StorageBackend):
            errors.append(f"Invalid storage_backend: {self.storage_backend!r}")

        if self.storage_backend == StorageBackend.S3 and not self.s3_bucket:
            errors.append("s3_bucket required when storage_backend is s3")

        if self.encryption_key is not None and len(self.encryption_key) not in AES_KEY_SIZES:
            errors.append(
                f"encryption_key must be 16, 24 or 32 bytes, got {len(self.encryption_key)}"
            )

        if self.default_interval_seconds < 1:
            errors.append(
                f"default_interval_seconds must be >= 1, got {self.default_interval_seconds}"
            )

        if self.run_timeout_seconds <= 0:
            errors.append(f"run_timeout_seconds must be > 0, got {self.run_timeout_seconds}")

        if self.max_retries < 1:
            errors.append(f"max_retries must be >= 1, got {self.max_retries}")

        if self.retry_backoff_seconds < 0:
            errors.append(
                f"retry_backoff_seconds must be >= 0, got {self.retry_backoff_seconds}"
            )

        if not 1 <= self.zstd_level <= 22:
            errors.append(f"zstd_level must be between 1 and 22, got {self.zstd_level}")

        # Raise all errors at once
        if errors:
            from dbsnap.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def registry_db_path(self) -> Path:
        return self.data_path / "registry.db"

    @property
    def ledger_db_path(self) -> Path:
        return self.data_path / "ledger.db"

    def with_updates(self, **kwargs) -> "EngineConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        return replace(self, **kwargs)
