from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol

import boto3

from sniper.core import crypto
from sniper.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DataKey:
    plaintext: bytearray
    ciphertext: bytes


class KeyService(Protocol):
    async def generate_data_key(self) -> DataKey: ...

    async def decrypt_data_key(self, ciphertext: bytes) -> bytes: ...


class KmsKeyService:
    """Data keys from AWS KMS. boto3 is blocking, so calls run in a worker thread."""

    def __init__(self, key_id: str, *, region: str, client: Any | None = None) -> None:
        self.key_id = key_id
        self._client = client or boto3.client("kms", region_name=region)

    async def generate_data_key(self) -> DataKey:
        response = await asyncio.to_thread(self._client.generate_data_key, KeyId=self.key_id, KeySpec="AES_256")
        return DataKey(plaintext=bytearray(response["Plaintext"]), ciphertext=bytes(response["CiphertextBlob"]))

    async def decrypt_data_key(self, ciphertext: bytes) -> bytes:
        response = await asyncio.to_thread(self._client.decrypt, CiphertextBlob=ciphertext, KeyId=self.key_id)
        plaintext = response.get("Plaintext")
        if not plaintext:
            raise RuntimeError("KMS decrypt returned no plaintext")
        return bytes(plaintext)


class LocalKeyService:
    """Wraps data keys under a local AES-GCM master key."""

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != crypto.KEY_SIZE:
            raise ValueError("master key must be 32 bytes")
        self._master_key = master_key

    async def generate_data_key(self) -> DataKey:
        plaintext = bytearray(os.urandom(crypto.KEY_SIZE))
        return DataKey(plaintext=plaintext, ciphertext=crypto.encrypt(bytes(plaintext), self._master_key))

    async def decrypt_data_key(self, ciphertext: bytes) -> bytes:
        return crypto.decrypt(ciphertext, self._master_key)


def build_key_service(settings: Settings) -> KeyService:
    provider = settings.key_provider.lower()
    if provider == "kms":
        if not settings.kms_key_id:
            raise ValueError("SNIPER_KMS_KEY_ID is required when SNIPER_KEY_PROVIDER=kms")
        return KmsKeyService(settings.kms_key_id, region=settings.aws_region)
    if provider == "local":
        if not settings.local_master_key:
            raise ValueError("SNIPER_LOCAL_MASTER_KEY is required when SNIPER_KEY_PROVIDER=local")
        return LocalKeyService(crypto.decode_master_key(settings.local_master_key))
    raise ValueError(f"unsupported key provider: {settings.key_provider}")
