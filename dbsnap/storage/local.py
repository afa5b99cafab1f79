# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Local Artifact Store - Backup artifacts on the local filesystem.

Artifacts are written atomically (write to temp, then rename) so a crash
mid-write never leaves a truncated artifact under its final name.
"""

from pathlib import Path

import aiofiles
import structlog

from dbsnap.exceptions import ArtifactMissing, ArtifactStoreError
from dbsnap.storage.base import sanitize_name

logger = structlog.get_logger()


class LocalArtifactStore:
    """Artifact store rooted at a directory. References are file names."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _path(self, ref: str) -> Path:
        root = self.root.resolve()
        path = (root / sanitize_name(ref)).resolve()
        if path.parent != root:
            raise ArtifactStoreError(
                "Artifact reference escapes the store root",
                details={"ref": ref, "root": str(root)},
            )
        return path

    async def put(self, name: str, data: bytes) -> str:
        """
        Write an artifact.

        Returns:
            The artifact reference (its sanitized file name)
        """
        ref = sanitize_name(name)
        path = self._path(ref)
        temp_path = path.with_name(path.name + ".tmp")

        try:
            self.root.mkdir(parents=True, exist_ok=True)

            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(data)

            # Rename to final path (atomic on most filesystems)
            temp_path.replace(path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise ArtifactStoreError(
                f"Failed to write artifact: {e}",
                details={"ref": ref},
            ) from e

        logger.debug("artifact_written", path=str(path), size=len(data))
        return ref

    async def get(self, ref: str) -> bytes:
        path = self._path(ref)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise ArtifactMissing(
                f"Artifact not found: {ref}",
                details={"ref": ref, "path": str(path)},
            ) from e
        except OSError as e:
            raise ArtifactStoreError(
                f"Failed to read artifact: {e}",
                details={"ref": ref},
            ) from e

    async def delete(self, ref: str) -> bool:
        path = self._path(ref)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise ArtifactStoreError(
                f"Failed to delete artifact: {e}",
                details={"ref": ref},
            ) from e

        logger.debug("artifact_deleted", path=str(path))
        return True

    async def exists(self, ref: str) -> bool:
        return self._path(ref).is_file()
