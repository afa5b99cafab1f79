# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Configuration, policy building and cadence parsing tests.
"""

import base64
from datetime import datetime, timedelta, UTC
from pathlib import Path

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from dbsnap.builder import (
    backup_tables,
    build_policy,
    compose,
    create_empty_policy,
    create_policy,
    default_policies,
    differential,
    disabled,
    encrypted,
    retain_for_days,
    run_on,
)
from dbsnap.config import BackupKind, BackupPolicy, EngineConfig, StorageBackend
from dbsnap.env import create_config_from_env, fast_local, hardened, parse_encryption_key, resolve_encryption_key
from dbsnap.exceptions import (
    ConfigurationError,
    EncryptionKeyMissing,
    InvalidPolicy,
    ScheduleParseWarning,
)
from dbsnap.scheduler import next_fire_time, parse_cadence
from dbsnap.storage import LocalArtifactStore, S3ArtifactStore, create_artifact_store

_ENV_VARS = [
    "DBSNAP_DATA_PATH",
    "DBSNAP_STORAGE_BACKEND",
    "DBSNAP_ARTIFACT_ROOT",
    "DBSNAP_S3_BUCKET",
    "DBSNAP_S3_PREFIX",
    "AWS_REGION",
    "DBSNAP_ENCRYPTION_KEY",
    "DBSNAP_RUN_TIMEOUT_SECONDS",
    "DBSNAP_MAX_RETRIES",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


# ============================================================================
# Policies
# ============================================================================

def test_policy_normalizes_tables_and_kind():
    policy = BackupPolicy(id="p", name="P", tables=("users", "posts", "users"), kind="incremental")

    assert policy.tables == ("users", "posts")
    assert policy.kind == BackupKind.INCREMENTAL


def test_policy_collects_every_error():
    with pytest.raises(InvalidPolicy) as exc_info:
        BackupPolicy(id="", name="", tables=(), kind="hourly", retention_days=-1, schedule=" ")

    errors = exc_info.value.details["errors"]
    assert len(errors) == 6
    assert any("no tables" in e for e in errors)
    assert any("retention_days" in e for e in errors)


def test_policy_with_updates():
    policy = create_policy("p", ["users"])

    updated = policy.with_updates(retention_days=1, encrypt=True)

    assert updated.retention_days == 1 and updated.encrypt
    assert policy.retention_days == 7
    with pytest.raises(InvalidPolicy):
        policy.with_updates(id="other")
    with pytest.raises(InvalidPolicy):
        policy.with_updates(colour="blue")


def test_builder_composition():
    make = compose(
        differential,
        lambda p: run_on(p, "every 6 hours"),
        lambda p: retain_for_days(p, 30),
        encrypted,
        disabled,
    )

    policy = build_policy(make(backup_tables(create_empty_policy("d"), ["a", "b", "a"])))

    assert policy.name == "d"
    assert policy.tables == ("a", "b")
    assert policy.kind == BackupKind.DIFFERENTIAL
    assert policy.schedule == "every 6 hours"
    assert policy.retention_days == 30
    assert policy.encrypt and not policy.enabled

    with pytest.raises(ValueError):
        retain_for_days(create_empty_policy("d"), -1)


def test_default_policies():
    policies = {p.id: p for p in default_policies()}

    assert set(policies) == {"daily_full", "hourly_incremental", "weekly_differential"}
    assert policies["daily_full"].encrypt
    assert policies["hourly_incremental"].kind == BackupKind.INCREMENTAL
    assert policies["weekly_differential"].retention_days == 30
    for policy in policies.values():
        assert isinstance(parse_cadence(policy.schedule), CronTrigger)


# ============================================================================
# Engine configuration
# ============================================================================

def test_config_defaults_and_paths(tmp_path: Path):
    config = EngineConfig(data_path=str(tmp_path))

    assert config.data_path == tmp_path
    assert config.registry_db_path == tmp_path / "registry.db"
    assert config.ledger_db_path == tmp_path / "ledger.db"
    assert config.storage_backend == StorageBackend.LOCAL
    assert "encryption_key" not in repr(config.with_updates(encryption_key=bytes(16)))


def test_config_collects_every_error():
    with pytest.raises(ConfigurationError) as exc_info:
        EngineConfig(
            storage_backend="s3",
            encryption_key=b"short",
            run_timeout_seconds=0,
            max_retries=0,
            zstd_level=40,
        )

    errors = exc_info.value.details["errors"]
    assert len(errors) == 5
    assert any("s3_bucket" in e for e in errors)


def test_storage_backend_selection(tmp_path: Path):
    local = create_artifact_store(EngineConfig(artifact_root=tmp_path))
    assert isinstance(local, LocalArtifactStore)

    s3 = create_artifact_store(EngineConfig(storage_backend=StorageBackend.S3, s3_bucket="b", s3_prefix="x/"))
    assert isinstance(s3, S3ArtifactStore)
    assert s3.bucket == "b" and s3.prefix == "x/"


def test_profiles():
    base = EngineConfig(max_retries=2, retry_backoff_seconds=0.1, zstd_level=19)

    strong = hardened(base)
    assert strong.max_retries == 5
    assert strong.retry_backoff_seconds == 1.0
    assert strong.run_timeout_seconds == 60 * 60

    dev = fast_local(base.with_updates(storage_backend=StorageBackend.S3, s3_bucket="b"))
    assert dev.storage_backend == StorageBackend.LOCAL
    assert dev.zstd_level == 3
    assert dev.retry_backoff_seconds == 0.0


# ============================================================================
# Environment
# ============================================================================

def test_config_from_empty_env(clean_env):
    config = create_config_from_env()

    assert config.data_path == Path("./dbsnap_data")
    assert config.artifact_root == Path("./dbsnap_data/artifacts")
    assert config.encryption_key is None
    assert config.max_retries == 3


def test_config_from_env(clean_env, tmp_path: Path):
    key = bytes(range(32))
    clean_env.setenv("DBSNAP_DATA_PATH", str(tmp_path))
    clean_env.setenv("DBSNAP_STORAGE_BACKEND", "S3")
    clean_env.setenv("DBSNAP_S3_BUCKET", "snapshots")
    clean_env.setenv("AWS_REGION", "eu-west-1")
    clean_env.setenv("DBSNAP_ENCRYPTION_KEY", base64.b64encode(key).decode())
    clean_env.setenv("DBSNAP_RUN_TIMEOUT_SECONDS", "90")
    clean_env.setenv("DBSNAP_MAX_RETRIES", "4")

    config = create_config_from_env()

    assert config.storage_backend == StorageBackend.S3
    assert config.s3_bucket == "snapshots"
    assert config.region == "eu-west-1"
    assert config.artifact_root == tmp_path / "artifacts"
    assert config.encryption_key == key
    assert config.run_timeout_seconds == 90
    assert config.max_retries == 4


@pytest.mark.parametrize(
    "name,value",
    [
        ("DBSNAP_STORAGE_BACKEND", "ftp"),
        ("DBSNAP_ENCRYPTION_KEY", "not-a-key"),
        ("DBSNAP_RUN_TIMEOUT_SECONDS", "soon"),
        ("DBSNAP_MAX_RETRIES", "0"),
    ],
)
def test_invalid_env_values(clean_env, name, value):
    clean_env.setenv(name, value)

    with pytest.raises(ConfigurationError):
        create_config_from_env()


def test_s3_backend_requires_bucket(clean_env):
    clean_env.setenv("DBSNAP_STORAGE_BACKEND", "s3")

    with pytest.raises(ConfigurationError) as exc_info:
        create_config_from_env()
    assert "DBSNAP_S3_BUCKET" in str(exc_info.value)


def test_encryption_key_formats():
    key = bytes(range(16))

    assert parse_encryption_key(key.hex()) == key
    assert parse_encryption_key(base64.b64encode(key).decode()) == key
    assert parse_encryption_key(base64.b64encode(key).decode().rstrip("=")) == key
    assert parse_encryption_key("") is None


def test_resolve_encryption_key():
    assert resolve_encryption_key(EngineConfig(encryption_key=bytes(32))) == bytes(32)

    with pytest.raises(EncryptionKeyMissing) as exc_info:
        resolve_encryption_key(EngineConfig(), "nightly")
    assert exc_info.value.details == {"policy_id": "nightly"}


# ============================================================================
# Cadence parsing
# ============================================================================

@pytest.mark.parametrize(
    "schedule,seconds",
    [
        ("hourly", 3600),
        ("daily", 86400),
        ("Weekly", 604800),
        ("every 15 minutes", 900),
        ("every 1 day", 86400),
        ("every  2   hours", 7200),
    ],
)
def test_interval_cadences(schedule, seconds):
    trigger = parse_cadence(schedule)

    assert isinstance(trigger, IntervalTrigger)
    assert trigger.interval == timedelta(seconds=seconds)


@pytest.mark.filterwarnings("error::dbsnap.exceptions.ScheduleParseWarning")
@pytest.mark.parametrize(
    "schedule",
    [
        "0 2 * * *",
        "*/15 * * * *",
        "0 3 * * 0",
        "0 2 * * 0-3",
        "0 2 * * 5-7",
        "0 2 * * 5-1",
        "0 2 * * */2",
        "0 2 * * 1,3,7",
        "0 2 * * sun-tue",
        "@daily",
        "@weekly",
    ],
)
def test_cron_cadences(schedule):
    assert isinstance(parse_cadence(schedule), CronTrigger)


@pytest.mark.parametrize(
    "schedule",
    ["sometimes", "every 0 hours", "61 * * * *", "* * *", "0 2 * * 8", "0 2 * * */0"],
)
def test_unparseable_cadence_falls_back_with_warning(schedule):
    with pytest.warns(ScheduleParseWarning):
        trigger = parse_cadence(schedule, default_interval_seconds=600)

    assert isinstance(trigger, IntervalTrigger)
    assert trigger.interval == timedelta(seconds=600)


def test_next_fire_time_interval():
    start = datetime(2026, 10, 18, 10, 0, tzinfo=UTC)

    assert next_fire_time("daily", start) == start + timedelta(days=1)
    assert next_fire_time("every 30 minutes", start) == start + timedelta(minutes=30)


def test_next_fire_time_cron():
    start = datetime(2026, 10, 18, 10, 0, tzinfo=UTC)  # A Sunday

    assert next_fire_time("0 2 * * *", start) == datetime(2026, 10, 19, 2, 0, tzinfo=UTC)
    assert next_fire_time("0 10 * * *", start) == datetime(2026, 10, 19, 10, 0, tzinfo=UTC)
    # Cron day 0 is Sunday
    assert next_fire_time("0 3 * * 0", start) == datetime(2026, 10, 25, 3, 0, tzinfo=UTC)
    assert next_fire_time("0 3 * * 0", start.replace(hour=1)) == datetime(2026, 10, 18, 3, 0, tzinfo=UTC)
    assert next_fire_time("0 3 * * 1-5", start) == datetime(2026, 10, 19, 3, 0, tzinfo=UTC)


def test_next_fire_time_cron_weekday_ranges_count_from_sunday():
    sunday = datetime(2026, 10, 18, 10, 0, tzinfo=UTC)
    saturday = datetime(2026, 10, 17, 10, 0, tzinfo=UTC)

    # 0-3 is Sunday through Wednesday
    assert next_fire_time("0 3 * * 0-3", saturday) == datetime(2026, 10, 18, 3, 0, tzinfo=UTC)
    assert next_fire_time("0 3 * * 0-3", sunday) == datetime(2026, 10, 19, 3, 0, tzinfo=UTC)
    # Steps start from Sunday: Sunday, Tuesday, Thursday, Saturday
    assert next_fire_time("0 3 * * */2", sunday) == datetime(2026, 10, 20, 3, 0, tzinfo=UTC)
    # 7 is Sunday too
    assert next_fire_time("0 3 * * 5-7", sunday) == datetime(2026, 10, 23, 3, 0, tzinfo=UTC)
    # Wrapping range: Friday through Monday
    assert next_fire_time("0 3 * * 5-1", sunday) == datetime(2026, 10, 19, 3, 0, tzinfo=UTC)


def test_next_fire_time_treats_naive_as_utc():
    naive = datetime(2026, 10, 18, 10, 0)

    assert next_fire_time("0 2 * * *", naive) == datetime(2026, 10, 19, 2, 0, tzinfo=UTC)


# ============================================================================
# Error taxonomy
# ============================================================================

def test_error_flags():
    from dbsnap.exceptions import (
        ArtifactStoreError,
        BackupNotFound,
        IntegrityCheckFailed,
        RunCancelled,
        RunTimeout,
        TableImportError,
    )

    assert InvalidPolicy.client_error and BackupNotFound.client_error
    assert not IntegrityCheckFailed.client_error
    assert ArtifactStoreError.retryable and TableImportError.retryable
    assert not IntegrityCheckFailed.retryable and not EncryptionKeyMissing.retryable
    assert (RunCancelled.kind, RunTimeout.kind) == ("Cancelled", "Timeout")


def test_error_str_includes_details():
    error = ConfigurationError("bad config", details={"field": "zstd_level"})

    assert str(error) == "bad config | Details: {'field': 'zstd_level'}"
    assert str(ConfigurationError("plain")) == "plain"
