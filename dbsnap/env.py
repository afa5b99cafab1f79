# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and profiles.

These helpers are small, convenient wrappers around EngineConfig and
EngineConfig.with_updates(). They make it easy to:

- Build a configuration from environment variables
- Resolve the encryption key from the process's secret configuration
- Apply ready-made profiles
"""

from __future__ import annotations

import base64
import binascii
import os
from pathlib import Path

from dbsnap.config import AES_KEY_SIZES, EngineConfig, StorageBackend
from dbsnap.errors import (
    explain_invalid_encryption_key_env,
    explain_invalid_number_env,
    explain_invalid_storage_backend_env,
    explain_missing_bucket_env,
    explain_missing_encryption_key,
)
from dbsnap.exceptions import ConfigurationError, EncryptionKeyMissing


def _parse_storage_backend(value: str | None) -> StorageBackend:
    if not value:
        return StorageBackend.LOCAL
    try:
        return StorageBackend(value.lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_storage_backend_env(value)) from exc


def parse_encryption_key(value: str | None) -> bytes | None:
    """
    Decode an AES key given as hex or base64 (standard or urlsafe).

    Hex is tried first because a 32/48/64 character hex string is also
    valid base64 but would decode to the wrong length.
    """
    if not value:
        return None
    value = value.strip()

    candidates = []
    try:
        candidates.append(bytes.fromhex(value))
    except ValueError:
        pass
    for decoder in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            candidates.append(decoder(value + "=" * (-len(value) % 4)))
        except (binascii.Error, ValueError):
            continue

    for key in candidates:
        if len(key) in AES_KEY_SIZES:
            return key
    raise ConfigurationError(explain_invalid_encryption_key_env(value))


def _parse_number(name: str, value: str | None, default: float, minimum: float) -> float:
    if not value:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_number_env(name, value, minimum)) from exc
    if number < minimum:
        raise ConfigurationError(explain_invalid_number_env(name, value, minimum))
    return number


def create_config_from_env() -> EngineConfig:
    """
    Create an EngineConfig from environment variables.

    Optional environment variables:
        - DBSNAP_DATA_PATH: Directory for registry.db and ledger.db (default: ./dbsnap_data)
        - DBSNAP_STORAGE_BACKEND: 'local' | 's3' (default: local)
        - DBSNAP_ARTIFACT_ROOT: Local artifact directory (default: <data path>/artifacts)
        - DBSNAP_S3_BUCKET: Bucket for the s3 backend
        - DBSNAP_S3_PREFIX: Key prefix for the s3 backend (default: backups/)
        - AWS_REGION: AWS region (default: us-east-1)
        - DBSNAP_ENCRYPTION_KEY: base64 or hex AES key (16/24/32 bytes)
        - DBSNAP_RUN_TIMEOUT_SECONDS: Overall deadline per run (default: 1800)
        - DBSNAP_MAX_RETRIES: Attempts for transient I/O (default: 3)
    """

    data_path = Path(os.getenv("DBSNAP_DATA_PATH") or "./dbsnap_data")
    artifact_root_env = os.getenv("DBSNAP_ARTIFACT_ROOT")
    artifact_root = Path(artifact_root_env) if artifact_root_env else data_path / "artifacts"

    backend = _parse_storage_backend(os.getenv("DBSNAP_STORAGE_BACKEND"))
    bucket = os.getenv("DBSNAP_S3_BUCKET")
    if backend == StorageBackend.S3 and not bucket:
        raise ConfigurationError(explain_missing_bucket_env())

    return EngineConfig(
        data_path=data_path,
        storage_backend=backend,
        artifact_root=artifact_root,
        s3_bucket=bucket,
        s3_prefix=os.getenv("DBSNAP_S3_PREFIX", "backups/"),
        region=os.getenv("AWS_REGION", "us-east-1"),
        encryption_key=parse_encryption_key(os.getenv("DBSNAP_ENCRYPTION_KEY")),
        run_timeout_seconds=_parse_number(
            "DBSNAP_RUN_TIMEOUT_SECONDS", os.getenv("DBSNAP_RUN_TIMEOUT_SECONDS"), 1800, 1
        ),
        max_retries=int(
            _parse_number("DBSNAP_MAX_RETRIES", os.getenv("DBSNAP_MAX_RETRIES"), 3, 1)
        ),
    )


def resolve_encryption_key(config: EngineConfig, policy_id: str | None = None) -> bytes:
    """
    Return the configured encryption key or fail.

    Raises:
        EncryptionKeyMissing: If no key is configured
    """
    if not config.encryption_key:
        raise EncryptionKeyMissing(
            explain_missing_encryption_key(policy_id),
            details={"policy_id": policy_id} if policy_id else None,
        )
    return config.encryption_key


# ============================================================================
# Profiles
# ============================================================================

def hardened(config: EngineConfig) -> EngineConfig:
    """
    Apply a profile for flaky storage and long-running exports.

    - At least 5 attempts for transient I/O
    - Backoff base of at least one second
    - Deadline of at least one hour
    """

    return config.with_updates(
        max_retries=max(config.max_retries, 5),
        retry_backoff_seconds=max(config.retry_backoff_seconds, 1.0),
        run_timeout_seconds=max(config.run_timeout_seconds, 60 * 60),
    )


def fast_local(config: EngineConfig) -> EngineConfig:
    """
    Apply a profile for development machines.

    - Local storage
    - Cheap zstd level
    - No backoff between retries
    """

    return config.with_updates(
        storage_backend=StorageBackend.LOCAL,
        zstd_level=min(config.zstd_level, 3),
        retry_backoff_seconds=0.0,
    )
