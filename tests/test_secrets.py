from __future__ import annotations

import asyncio
import base64
import json
import os
import stat

import pytest

from fakes import ManualClock
from sniper.core import crypto
from sniper.core.config import Settings
from sniper.core.errors import CircuitOpenError, DecryptionError, TransientError, UnsupportedEnvelopeVersionError
from sniper.core.protection import BreakerRegistry, RetryPolicy
from sniper.services.key_service import LocalKeyService, build_key_service
from sniper.services.secrets import EnvelopeStore, SecretCache


class CountingKeyService(LocalKeyService):
    def __init__(self, master_key: bytes) -> None:
        super().__init__(master_key)
        self.unwraps = 0

    async def decrypt_data_key(self, ciphertext: bytes) -> bytes:
        self.unwraps += 1
        return await super().decrypt_data_key(ciphertext)


def _store(clock: ManualClock | None = None) -> tuple[EnvelopeStore, CountingKeyService, SecretCache]:
    key_service = CountingKeyService(os.urandom(crypto.KEY_SIZE))
    cache = SecretCache(
        key_service,
        BreakerRegistry(),
        ttl_seconds=3600.0,
        retry_policy=RetryPolicy(retries=0),
        clock=clock or ManualClock(),
    )
    return EnvelopeStore(key_service, cache), key_service, cache


def test_encrypt_decrypt_and_tamper_detection() -> None:
    key = os.urandom(crypto.KEY_SIZE)
    sealed = crypto.encrypt(b"secret payload", key)
    assert len(sealed) == crypto.NONCE_SIZE + len(b"secret payload") + crypto.TAG_SIZE
    assert crypto.decrypt(sealed, key) == b"secret payload"
    assert crypto.encrypt(b"secret payload", key) != sealed

    tampered = bytearray(sealed)
    tampered[crypto.NONCE_SIZE] ^= 0x01
    with pytest.raises(DecryptionError):
        crypto.decrypt(bytes(tampered), key)
    with pytest.raises(DecryptionError, match="too short"):
        crypto.decrypt(sealed[: crypto.NONCE_SIZE + 4], key)
    with pytest.raises(DecryptionError):
        crypto.decrypt(sealed, os.urandom(crypto.KEY_SIZE))


def test_wipe_zeroes_buffer() -> None:
    buffer = bytearray(b"\x01\x02\x03")
    crypto.wipe(buffer)
    assert buffer == bytearray(3)


def test_envelope_roundtrip_writes_versioned_file(tmp_path) -> None:
    store, _, _ = _store()
    target = tmp_path / "nested" / "session.json"
    value = {"signInUserSession": {"accessToken": "abc"}, "cookies": []}

    asyncio.run(store.save_encrypted(value, target))

    envelope = json.loads(target.read_text(encoding="utf-8"))
    assert envelope["version"] == 1
    assert set(envelope) == {"version", "encryptedDataKey", "encryptedData", "timestamp"}
    assert "abc" not in target.read_text(encoding="utf-8")
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    assert list(target.parent.glob("*.tmp")) == []
    assert asyncio.run(store.load_decrypted(target)) == value


def test_missing_envelope_returns_none(tmp_path) -> None:
    store, _, _ = _store()
    assert asyncio.run(store.load_decrypted(tmp_path / "absent.json")) is None


def test_tampered_envelope_raises(tmp_path) -> None:
    store, _, _ = _store()
    target = tmp_path / "session.json"
    asyncio.run(store.save_encrypted({"a": 1}, target))

    envelope = json.loads(target.read_text(encoding="utf-8"))
    sealed = bytearray(base64.b64decode(envelope["encryptedData"]))
    sealed[-1] ^= 0xFF
    envelope["encryptedData"] = base64.b64encode(bytes(sealed)).decode("ascii")
    target.write_text(json.dumps(envelope), encoding="utf-8")

    with pytest.raises(DecryptionError):
        asyncio.run(store.load_decrypted(target))


def test_unknown_envelope_version_is_rejected(tmp_path) -> None:
    store, _, _ = _store()
    target = tmp_path / "session.json"
    asyncio.run(store.save_encrypted({"a": 1}, target))
    envelope = json.loads(target.read_text(encoding="utf-8"))
    envelope["version"] = 2
    target.write_text(json.dumps(envelope), encoding="utf-8")

    with pytest.raises(UnsupportedEnvelopeVersionError):
        asyncio.run(store.load_decrypted(target))


def test_malformed_envelope_raises_decryption_error(tmp_path) -> None:
    store, _, _ = _store()
    target = tmp_path / "session.json"
    target.write_text("{not json", encoding="utf-8")
    with pytest.raises(DecryptionError):
        asyncio.run(store.load_decrypted(target))

    target.write_text(json.dumps({"version": 1, "encryptedDataKey": "!!"}), encoding="utf-8")
    with pytest.raises(DecryptionError):
        asyncio.run(store.load_decrypted(target))


def test_cache_serves_unwrapped_keys_until_ttl(tmp_path) -> None:
    clock = ManualClock()
    store, key_service, cache = _store(clock)
    target = tmp_path / "session.json"
    asyncio.run(store.save_encrypted({"a": 1}, target))

    asyncio.run(store.load_decrypted(target))
    asyncio.run(store.load_decrypted(target))
    assert key_service.unwraps == 1
    assert len(cache) == 1

    clock.advance(3599.0)
    assert cache.sweep() == 0
    clock.advance(1.0)
    asyncio.run(store.load_decrypted(target))
    assert key_service.unwraps == 2

    clock.advance(3600.0)
    assert cache.sweep() == 1
    assert len(cache) == 0


class UnavailableKeyService(LocalKeyService):
    def __init__(self) -> None:
        super().__init__(os.urandom(crypto.KEY_SIZE))
        self.generate_calls = 0

    async def generate_data_key(self):
        self.generate_calls += 1
        raise TransientError("kms unavailable")


def test_failing_key_generation_opens_the_kms_breaker(tmp_path) -> None:
    key_service = UnavailableKeyService()
    breakers = BreakerRegistry()
    cache = SecretCache(key_service, breakers, retry_policy=RetryPolicy(retries=0))
    store = EnvelopeStore(key_service, cache)
    target = tmp_path / "session.json"

    for _ in range(10):
        with pytest.raises(TransientError):
            asyncio.run(store.save_encrypted({"a": 1}, target))
    with pytest.raises(CircuitOpenError):
        asyncio.run(store.save_encrypted({"a": 1}, target))

    assert key_service.generate_calls == 10
    assert breakers.snapshot()["kms"]["state"] == "OPEN"
    assert not target.exists()


def test_background_sweep_evicts_expired_keys() -> None:
    clock = ManualClock()
    key_service = CountingKeyService(os.urandom(crypto.KEY_SIZE))
    cache = SecretCache(
        key_service,
        BreakerRegistry(),
        ttl_seconds=60.0,
        sweep_interval_seconds=0.01,
        retry_policy=RetryPolicy(retries=0),
        clock=clock,
    )

    async def scenario() -> tuple[int, int, int]:
        data_key = await key_service.generate_data_key()
        await cache.unwrap_key(data_key.ciphertext)
        cache.start()
        await asyncio.sleep(0.05)
        before = len(cache)
        clock.advance(61.0)
        for _ in range(100):
            if len(cache) == 0:
                break
            await asyncio.sleep(0.01)
        after = len(cache)
        await cache.unwrap_key(data_key.ciphertext)
        await cache.stop()
        return before, after, len(cache)

    assert asyncio.run(scenario()) == (1, 0, 0)


def test_build_key_service_validates_configuration() -> None:
    master = base64.urlsafe_b64encode(os.urandom(32)).decode("ascii").rstrip("=")
    assert isinstance(build_key_service(Settings(key_provider="local", local_master_key=master)), LocalKeyService)
    with pytest.raises(ValueError):
        build_key_service(Settings(key_provider="local", local_master_key=None))
    with pytest.raises(ValueError):
        build_key_service(Settings(key_provider="kms", kms_key_id=None))
    with pytest.raises(ValueError):
        build_key_service(Settings(key_provider="vault"))
