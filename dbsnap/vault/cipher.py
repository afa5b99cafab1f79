# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Cipher - Authenticated encryption for backup payloads.

Payloads are sealed with AES-GCM. The stored layout is:

    nonce (12 bytes) || ciphertext || tag (16 bytes)

A fresh random nonce is drawn for every payload. Decryption verifies the
tag before returning anything, so a tampered or truncated artifact is
rejected rather than yielding corrupted plaintext.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from dbsnap.config import AES_KEY_SIZES
from dbsnap.exceptions import AuthenticationFailed, ConfigurationError

NONCE_SIZE = 12
TAG_SIZE = 16


def validate_key(key: bytes) -> None:
    """
    Check that a key is usable for AES.

    Raises:
        ConfigurationError: If the key length is not 16, 24 or 32 bytes
    """
    if not isinstance(key, (bytes, bytearray)) or len(key) not in AES_KEY_SIZES:
        raise ConfigurationError(
            "Encryption key must be 16, 24 or 32 bytes",
            details={"key_length": len(key) if isinstance(key, (bytes, bytearray)) else None},
        )


def encrypt_payload(data: bytes, key: bytes) -> bytes:
    """
    Encrypt and authenticate a payload.

    Args:
        data: Plaintext bytes
        key: AES key (16, 24 or 32 bytes)

    Returns:
        nonce || ciphertext || tag
    """
    validate_key(key)
    nonce = os.urandom(NONCE_SIZE)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    ciphertext = encryptor.update(data) + encryptor.finalize()
    return nonce + ciphertext + encryptor.tag


def decrypt_payload(data: bytes, key: bytes) -> bytes:
    """
    Verify and decrypt a payload produced by encrypt_payload.

    Raises:
        AuthenticationFailed: If the payload is too short, was modified,
            or was sealed with a different key
    """
    validate_key(key)
    if len(data) < NONCE_SIZE + TAG_SIZE:
        raise AuthenticationFailed(
            "Encrypted payload is too small to contain nonce and tag",
            details={"size": len(data)},
        )

    nonce = data[:NONCE_SIZE]
    tag = data[-TAG_SIZE:]
    ciphertext = data[NONCE_SIZE:-TAG_SIZE]

    decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
    try:
        return decryptor.update(ciphertext) + decryptor.finalize()
    except InvalidTag as e:
        raise AuthenticationFailed(
            "Encrypted payload failed authentication",
            details={"size": len(data)},
        ) from e


def generate_key(size: int = 32) -> bytes:
    """Generate a random AES key."""
    if size not in AES_KEY_SIZES:
        raise ValueError(f"key size must be one of {AES_KEY_SIZES}, got {size}")
    return os.urandom(size)
