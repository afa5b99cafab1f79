# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Compressor - zstd compression for backup payloads.

Serialized table snapshots are JSON, which compresses well; typical
ratios are 5-15x.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import structlog
import zstandard as zstd

from dbsnap.exceptions import DecompressionError

logger = structlog.get_logger()

# Thread pool for CPU-bound compression of large payloads
_executor = ThreadPoolExecutor(max_workers=4)

# Default compression settings
DEFAULT_ZSTD_LEVEL = 19  # Maximum practical compression
OFFLOAD_THRESHOLD = 1024 * 1024  # Payloads above 1MB go to the thread pool


async def compress_payload(
    raw_bytes: bytes,
    zstd_level: int = DEFAULT_ZSTD_LEVEL,
) -> bytes:
    """
    Compress a serialized snapshot.

    Args:
        raw_bytes: Serialized snapshot
        zstd_level: zstd compression level (1-22, default 19)

    Returns:
        Compressed bytes
    """
    compressed = await _run(_compress_zstd_sync, raw_bytes, zstd_level)

    logger.debug(
        "compression_complete",
        original_size=len(raw_bytes),
        compressed_size=len(compressed),
        compression_ratio=f"{compression_ratio(len(raw_bytes), len(compressed)):.2f}x",
    )
    return compressed


async def decompress_payload(compressed_bytes: bytes) -> bytes:
    """
    Decompress a payload produced by compress_payload.

    Raises:
        DecompressionError: If the payload is not a valid zstd frame
    """
    try:
        return await _run(_decompress_zstd_sync, compressed_bytes)
    except zstd.ZstdError as e:
        raise DecompressionError(
            f"Decompression failed: {e}",
            details={"compressed_size": len(compressed_bytes)},
        ) from e


async def _run(func, *args):
    """Run small payloads inline, large ones in the thread pool."""
    if len(args[0]) > OFFLOAD_THRESHOLD:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_executor, func, *args)
    return func(*args)


def _compress_zstd_sync(data: bytes, level: int) -> bytes:
    """Synchronous zstd compression."""
    cctx = zstd.ZstdCompressor(level=level)
    return cctx.compress(data)


def _decompress_zstd_sync(data: bytes) -> bytes:
    """Synchronous zstd decompression."""
    dctx = zstd.ZstdDecompressor()
    return dctx.decompress(data)


def compression_ratio(original_size: int, compressed_size: int) -> float:
    """Raw bytes divided by compressed bytes (0 when nothing was written)."""
    if compressed_size <= 0:
        return 0.0
    return original_size / compressed_size


def get_compression_stats(
    original_size: int,
    compressed_size: int,
) -> dict:
    """
    Calculate compression statistics.

    Args:
        original_size: Original data size in bytes
        compressed_size: Compressed data size in bytes

    Returns:
        Dict with compression statistics
    """
    if compressed_size == 0:
        return {
            "original_size": original_size,
            "compressed_size": compressed_size,
            "compression_ratio": 0,
            "space_saved_bytes": 0,
            "space_saved_percent": 0,
        }

    ratio = compression_ratio(original_size, compressed_size)
    saved_bytes = original_size - compressed_size
    saved_percent = (saved_bytes / original_size) * 100 if original_size > 0 else 0

    return {
        "original_size": original_size,
        "compressed_size": compressed_size,
        "compression_ratio": round(ratio, 2),
        "space_saved_bytes": saved_bytes,
        "space_saved_percent": round(saved_percent, 2),
    }
