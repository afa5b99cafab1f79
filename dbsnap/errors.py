# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for dbsnap.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_missing_encryption_key(policy_id: str | None = None) -> str:
    """
    Explain that encryption was requested but no key is configured.
    """

    target = f"Policy {policy_id!r} requires" if policy_id else "This run requires"
    return (
        f"{target} encryption but no key is configured. "
        "Set DBSNAP_ENCRYPTION_KEY (base64 or hex, 16/24/32 bytes) or pass "
        "encryption_key=... to EngineConfig. Backups are never written unencrypted "
        "when encryption was requested."
    )


def explain_invalid_encryption_key_env(value: str | None) -> str:
    """
    Explain that DBSNAP_ENCRYPTION_KEY could not be decoded.
    """

    shown = f"{value[:4]}..." if value else repr(value)
    return (
        f"Invalid DBSNAP_ENCRYPTION_KEY value: {shown}. "
        "Expected a base64 or hex encoded AES key of 16, 24 or 32 bytes."
    )


def explain_invalid_storage_backend_env(value: str | None) -> str:
    """
    Explain that DBSNAP_STORAGE_BACKEND is invalid.
    """

    return (
        f"Invalid DBSNAP_STORAGE_BACKEND value: {value!r}. "
        "Expected 'local' or 's3'."
    )


def explain_missing_bucket_env() -> str:
    """
    Explain that the S3 bucket is missing for the s3 storage backend.
    """

    return (
        "S3 storage backend selected but no bucket is configured. "
        "Set the DBSNAP_S3_BUCKET environment variable or pass s3_bucket=... to EngineConfig."
    )


def explain_invalid_number_env(name: str, value: str | None, minimum: float) -> str:
    """
    Explain that a numeric environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        f"It must be a number greater than or equal to {minimum}."
    )


def explain_missing_tables(policy_id: str) -> str:
    """
    Explain that a policy has no tables to back up.
    """

    return (
        f"Policy {policy_id!r} has no tables. "
        "A backup policy must name at least one table, e.g. tables=['users']."
    )


def explain_unparseable_schedule(schedule: str, fallback_seconds: int) -> str:
    """
    Explain that a cadence expression was not understood.
    """

    return (
        f"Could not derive a cadence from schedule {schedule!r}; "
        f"falling back to every {fallback_seconds} seconds. "
        "Use 'hourly', 'daily', 'weekly', 'every <n> <unit>' or a 5-field cron expression."
    )
