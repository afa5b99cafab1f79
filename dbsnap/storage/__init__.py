# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Artifact Store - Local disk or S3 persistence of backup payloads.
"""

from dbsnap.config import EngineConfig, StorageBackend
from dbsnap.storage.base import ArtifactStore, artifact_name, sanitize_name
from dbsnap.storage.local import LocalArtifactStore
from dbsnap.storage.s3 import S3ArtifactStore


def create_artifact_store(config: EngineConfig) -> ArtifactStore:
    """
    Create the artifact store selected by the configuration.

    Args:
        config: Engine configuration

    Returns:
        LocalArtifactStore or S3ArtifactStore
    """
    if config.storage_backend == StorageBackend.S3:
        from aiobotocore.session import get_session

        return S3ArtifactStore(
            get_session(),
            bucket=config.s3_bucket,
            prefix=config.s3_prefix,
            region=config.region,
        )

    return LocalArtifactStore(config.artifact_root)


__all__ = [
    "ArtifactStore",
    "LocalArtifactStore",
    "S3ArtifactStore",
    "artifact_name",
    "create_artifact_store",
    "sanitize_name",
]
