# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Artifact Store contract.

A store persists opaque byte payloads under a name and hands back a
reference. The reference is the only thing recorded on a backup run; the
orchestrators never build paths or keys themselves.
"""

import hashlib
from typing import Protocol, runtime_checkable

ARTIFACT_SUFFIX = ".backup"


def artifact_name(policy_id: str, run_id: str) -> str:
    """Name of the artifact produced by a backup run."""
    return f"{policy_id}_{run_id}{ARTIFACT_SUFFIX}"


def sanitize_name(name: str) -> str:
    """
    Convert an artifact name to a safe single path component.

    Replaces path separators and special characters with underscores.
    """
    safe = name.replace("/", "_").replace("\\", "_")

    for char in [":", "*", "?", '"', "<", ">", "|", "\x00"]:
        safe = safe.replace(char, "_")

    if safe in ("", ".", ".."):
        safe = f"_{safe}_"

    # Keep names short enough for every filesystem
    if len(safe) > 200:
        name_hash = hashlib.sha256(name.encode()).hexdigest()[:8]
        safe = safe[-190:] + "_" + name_hash

    return safe


@runtime_checkable
class ArtifactStore(Protocol):
    """Uniform get/put/delete/exists over local disk or object storage."""

    async def put(self, name: str, data: bytes) -> str:
        """Persist data and return its reference."""
        ...

    async def get(self, ref: str) -> bytes:
        """Fetch data by reference. Raises ArtifactMissing if absent."""
        ...

    async def delete(self, ref: str) -> bool:
        """Delete by reference. Returns False if nothing was there."""
        ...

    async def exists(self, ref: str) -> bool:
        ...
