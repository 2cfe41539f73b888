"""Data-key cache and the encrypted envelope file format.

Envelope files hold a JSON object::

    {"version": 1, "encryptedDataKey": "<b64>", "encryptedData": "<b64>",
     "timestamp": "<ISO8601>"}

Each save generates a fresh data key; the wrapped key travels with the data
and is unwrapped through ``SecretCache`` on load.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sniper.core import crypto, metrics
from sniper.core.errors import DecryptionError, UnsupportedEnvelopeVersionError
from sniper.core.protection import BreakerOptions, BreakerRegistry, RetryPolicy, protect
from sniper.services.key_service import KeyService

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
KMS_BREAKER = "kms"


@dataclass(slots=True)
class CachedSecret:
    plaintext: bytes
    cached_at: float


class SecretCache:
    def __init__(
        self,
        key_service: KeyService,
        breakers: BreakerRegistry,
        *,
        ttl_seconds: float = 3600.0,
        sweep_interval_seconds: float = 300.0,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key_service = key_service
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: dict[str, CachedSecret] = {}
        self._sweep_task: asyncio.Task[None] | None = None
        breaker = breakers.get(KMS_BREAKER, BreakerOptions(failure_threshold=5, reset_timeout_seconds=60.0))
        policy = retry_policy or RetryPolicy(retries=3, min_delay=1.0, max_delay=10.0)
        self._decrypt_data_key = protect(
            key_service.decrypt_data_key,
            breaker=breaker,
            policy=policy,
            context="kms.decrypt_data_key",
        )
        self.generate_data_key = protect(
            key_service.generate_data_key,
            breaker=breaker,
            policy=policy,
            context="kms.generate_data_key",
        )

    def __len__(self) -> int:
        return len(self._entries)

    async def unwrap_key(self, ciphertext: bytes) -> bytes:
        cache_key = crypto.b64encode(ciphertext)
        cached = self._entries.get(cache_key)
        if cached is not None and not self._is_expired(cached):
            metrics.kms_cache_hits.add(1)
            return cached.plaintext

        metrics.kms_cache_misses.add(1)
        plaintext = await self._decrypt_data_key(ciphertext)
        self._entries[cache_key] = CachedSecret(plaintext=plaintext, cached_at=self._clock())
        return plaintext

    def sweep(self) -> int:
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("evicted expired data keys count=%s", len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="secret-cache-sweep")

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()

    def _is_expired(self, entry: CachedSecret) -> bool:
        return self._clock() - entry.cached_at >= self.ttl_seconds


class EnvelopeStore:
    def __init__(self, key_service: KeyService, cache: SecretCache) -> None:
        self.key_service = key_service
        self.cache = cache

    async def save_encrypted(self, value: Any, path: str | Path) -> None:
        target = Path(path)
        data_key = await self.cache.generate_data_key()
        try:
            sealed = crypto.encrypt(json.dumps(value).encode("utf-8"), bytes(data_key.plaintext))
        finally:
            crypto.wipe(data_key.plaintext)

        envelope = {
            "version": ENVELOPE_VERSION,
            "encryptedDataKey": crypto.b64encode(data_key.ciphertext),
            "encryptedData": crypto.b64encode(sealed),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        await asyncio.to_thread(_write_atomic, target, json.dumps(envelope, indent=2))
        logger.info("encrypted envelope saved path=%s", target)

    async def load_decrypted(self, path: str | Path) -> Any | None:
        target = Path(path)
        try:
            raw = await asyncio.to_thread(target.read_text, "utf-8")
        except FileNotFoundError:
            return None

        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DecryptionError(f"envelope is not valid JSON: {target}") from exc
        if not isinstance(envelope, dict):
            raise DecryptionError(f"envelope is not a JSON object: {target}")

        version = envelope.get("version")
        if version != ENVELOPE_VERSION:
            raise UnsupportedEnvelopeVersionError(f"unsupported envelope version: {version}")

        wrapped_key = envelope.get("encryptedDataKey")
        sealed = envelope.get("encryptedData")
        if not isinstance(wrapped_key, str) or not isinstance(sealed, str):
            raise DecryptionError(f"envelope is missing encrypted fields: {target}")

        data_key = await self.cache.unwrap_key(crypto.b64decode(wrapped_key))
        plaintext = crypto.decrypt(crypto.b64decode(sealed), data_key)
        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecryptionError("decrypted payload is not valid JSON") from exc


def _write_atomic(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(temp_path, 0o600)
        os.replace(temp_path, target)
    except BaseException:
        Path(temp_path).unlink(missing_ok=True)
        raise
