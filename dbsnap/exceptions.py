# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Exceptions - Custom exceptions for the dbsnap package.

Every exception carries a ``kind`` (the machine-checkable name stored on
failed run records), a ``client_error`` flag (the caller's input was invalid
and should be fixed before resubmitting) and a ``retryable`` flag (transient
I/O that the orchestrators retry with backoff).
"""


class DBSnapError(Exception):
    """Base exception for all dbsnap errors."""

    kind = "DBSnapError"
    client_error = False
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# ============================================================================
# Configuration errors
# ============================================================================

class ConfigurationError(DBSnapError):
    """Raised when engine configuration is invalid."""

    kind = "ConfigurationError"
    client_error = True


class InvalidPolicy(ConfigurationError):
    """Raised when a backup policy violates its invariants."""

    kind = "InvalidPolicy"


class PolicyNotFound(ConfigurationError):
    """Raised when a policy id is unknown, or disabled for a scheduled run."""

    kind = "PolicyNotFound"


class ScheduleParseWarning(UserWarning):
    """Issued when a cadence expression cannot be parsed and the default is used."""


# ============================================================================
# Integrity errors (never retried)
# ============================================================================

class IntegrityError(DBSnapError):
    """Base class for payload integrity failures."""

    kind = "IntegrityError"


class IntegrityCheckFailed(IntegrityError):
    """Raised when an artifact's checksum does not match the recorded one."""

    kind = "IntegrityCheckFailed"


class AuthenticationFailed(IntegrityError):
    """Raised when decryption fails authentication."""

    kind = "AuthenticationFailed"


class DecompressionError(IntegrityError):
    """Raised when a payload cannot be decompressed."""

    kind = "DecompressionError"


# ============================================================================
# Transient I/O errors (retried with backoff)
# ============================================================================

class TransientError(DBSnapError):
    """Base class for errors worth a bounded number of retries."""

    kind = "TransientError"
    retryable = True


class ArtifactStoreError(TransientError):
    """Raised when the artifact store cannot be read or written."""

    kind = "ArtifactStoreError"


class TableExportError(TransientError):
    """Raised when a table cannot be exported."""

    kind = "TableExportError"


class TableImportError(TransientError):
    """Raised when rows cannot be imported into a table."""

    kind = "TableImportError"


# ============================================================================
# Policy violations
# ============================================================================

class PolicyViolationError(DBSnapError):
    """Raised when a run cannot honour what its policy requires."""

    kind = "PolicyViolation"


class EncryptionKeyMissing(PolicyViolationError):
    """Raised when encryption is requested but no key is configured."""

    kind = "EncryptionKeyMissing"


# ============================================================================
# Run outcomes
# ============================================================================

class BackupError(DBSnapError):
    """Raised when a backup run fails."""

    kind = "BackupFailed"


class BackupNotFound(BackupError):
    """Raised when a backup run id is unknown."""

    kind = "BackupNotFound"
    client_error = True


class BackupNotRestorable(BackupError):
    """Raised when restoring from a run that did not succeed."""

    kind = "BackupNotRestorable"
    client_error = True


class ArtifactMissing(DBSnapError):
    """Raised when a run's artifact is no longer in the store."""

    kind = "ArtifactMissing"


class RunCancelled(DBSnapError):
    """Raised when a backup run is cancelled while in flight."""

    kind = "Cancelled"


class RunTimeout(DBSnapError):
    """Raised when a run exceeds its deadline."""

    kind = "Timeout"


class OverlappingRunSkipped(DBSnapError):
    """Raised when a backup is requested while another run of the policy is in progress."""

    kind = "SkippedOverlappingRun"


# ============================================================================
# Persistence
# ============================================================================

class LedgerError(DBSnapError):
    """Raised when run ledger operations fail."""

    kind = "LedgerError"


class RegistryError(DBSnapError):
    """Raised when policy registry operations fail."""

    kind = "RegistryError"
