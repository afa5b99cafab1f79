# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Integrity Codec - Checksums, compression and encryption in one place.

The orchestrators only talk to an IntegrityCodec instance held in the
engine state, so the algorithms can be swapped without touching the
backup or restore pipelines.
"""

import asyncio
import hashlib

from dbsnap.vault.cipher import decrypt_payload, encrypt_payload
from dbsnap.vault.compressor import (
    DEFAULT_ZSTD_LEVEL,
    OFFLOAD_THRESHOLD,
    compress_payload,
    decompress_payload,
)


def checksum(data: bytes) -> str:
    """
    Calculate the SHA-256 digest of a payload.

    Returns:
        Hex-encoded digest
    """
    return hashlib.sha256(data).hexdigest()


class IntegrityCodec:
    """
    Default codec: zstd compression, AES-GCM encryption, SHA-256 checksums.

    Backup applies compress -> encrypt -> checksum; restore applies
    checksum -> decrypt -> decompress.
    """

    algorithm = "zstd+aes-gcm+sha256"

    def __init__(self, zstd_level: int = DEFAULT_ZSTD_LEVEL):
        self.zstd_level = zstd_level

    async def compress(self, data: bytes) -> bytes:
        return await compress_payload(data, self.zstd_level)

    async def decompress(self, data: bytes) -> bytes:
        """Raises DecompressionError on invalid input."""
        return await decompress_payload(data)

    async def encrypt(self, data: bytes, key: bytes) -> bytes:
        if len(data) > OFFLOAD_THRESHOLD:
            return await asyncio.to_thread(encrypt_payload, data, key)
        return encrypt_payload(data, key)

    async def decrypt(self, data: bytes, key: bytes) -> bytes:
        """Raises AuthenticationFailed on any tag mismatch."""
        if len(data) > OFFLOAD_THRESHOLD:
            return await asyncio.to_thread(decrypt_payload, data, key)
        return decrypt_payload(data, key)

    def checksum(self, data: bytes) -> str:
        return checksum(data)
