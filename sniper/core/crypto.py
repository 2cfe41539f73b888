from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sniper.core.errors import DecryptionError

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    """Seal ``plaintext`` as ``nonce || ciphertext || tag`` with a fresh nonce."""
    nonce = os.urandom(NONCE_SIZE)
    return nonce + _aesgcm(key).encrypt(nonce, plaintext, None)


def decrypt(blob: bytes, key: bytes) -> bytes:
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("ciphertext is too short")
    nonce = blob[:NONCE_SIZE]
    try:
        return _aesgcm(key).decrypt(nonce, blob[NONCE_SIZE:], None)
    except InvalidTag as exc:
        raise DecryptionError("ciphertext failed authentication") from exc


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except ValueError as exc:
        raise DecryptionError("value is not valid base64") from exc


def decode_master_key(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    try:
        key = base64.urlsafe_b64decode(padded)
    except ValueError as exc:
        raise ValueError("master key is not valid base64url") from exc
    if len(key) != KEY_SIZE:
        raise ValueError("master key must be 32 bytes (base64url encoded)")
    return key


def wipe(buffer: bytearray) -> None:
    for index in range(len(buffer)):
        buffer[index] = 0


def _aesgcm(key: bytes) -> AESGCM:
    if len(key) != KEY_SIZE:
        raise DecryptionError("data key must be 32 bytes")
    return AESGCM(bytes(key))
