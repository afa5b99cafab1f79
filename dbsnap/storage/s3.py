# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap S3 Artifact Store - Backup artifacts in an S3 bucket.

A client is created per operation from the shared aiobotocore session.
References are full object keys (prefix included).
"""

from typing import Any

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from dbsnap.exceptions import ArtifactMissing, ArtifactStoreError

logger = structlog.get_logger()

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3ArtifactStore:
    """Artifact store backed by an S3 bucket."""

    def __init__(
        self,
        session: Any,
        bucket: str,
        prefix: str = "backups/",
        region: str = "us-east-1",
    ):
        self.session = session
        self.bucket = bucket
        self.prefix = prefix
        self.region = region

    def _client(self):
        return self.session.create_client("s3", region_name=self.region)

    async def put(self, name: str, data: bytes) -> str:
        key = f"{self.prefix}{name}"
        try:
            async with self._client() as s3_client:
                await s3_client.put_object(Bucket=self.bucket, Key=key, Body=data)
        except (ClientError, BotoCoreError) as e:
            raise ArtifactStoreError(
                f"Failed to upload artifact: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e

        logger.debug("artifact_uploaded", bucket=self.bucket, key=key, size=len(data))
        return key

    async def get(self, ref: str) -> bytes:
        try:
            async with self._client() as s3_client:
                response = await s3_client.get_object(Bucket=self.bucket, Key=ref)
                async with response["Body"] as stream:
                    return await stream.read()
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise ArtifactMissing(
                    f"Artifact not found: {ref}",
                    details={"bucket": self.bucket, "key": ref},
                ) from e
            raise ArtifactStoreError(
                f"Failed to download artifact: {e}",
                details={"bucket": self.bucket, "key": ref},
            ) from e
        except BotoCoreError as e:
            raise ArtifactStoreError(
                f"Failed to download artifact: {e}",
                details={"bucket": self.bucket, "key": ref},
            ) from e

    async def delete(self, ref: str) -> bool:
        """
        Delete an object.

        S3 deletes are idempotent, so existence is checked first to report
        whether anything was removed.
        """
        if not await self.exists(ref):
            return False

        try:
            async with self._client() as s3_client:
                await s3_client.delete_object(Bucket=self.bucket, Key=ref)
        except (ClientError, BotoCoreError) as e:
            raise ArtifactStoreError(
                f"Failed to delete artifact: {e}",
                details={"bucket": self.bucket, "key": ref},
            ) from e

        logger.debug("artifact_deleted", bucket=self.bucket, key=ref)
        return True

    async def exists(self, ref: str) -> bool:
        try:
            async with self._client() as s3_client:
                await s3_client.head_object(Bucket=self.bucket, Key=ref)
                return True
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return False
            raise ArtifactStoreError(
                f"Failed to check artifact: {e}",
                details={"bucket": self.bucket, "key": ref},
            ) from e
        except BotoCoreError as e:
            raise ArtifactStoreError(
                f"Failed to check artifact: {e}",
                details={"bucket": self.bucket, "key": ref},
            ) from e
