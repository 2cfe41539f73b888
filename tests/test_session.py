from __future__ import annotations

import asyncio
import json
import os
import random
from pathlib import Path

import httpx
import pytest

from fakes import CountingSolver, FakeLauncher, FakeLoginFlow, ManualClock, StaticCodeRetriever
from sniper.core import crypto
from sniper.core.errors import SessionError, TransientError
from sniper.core.protection import BreakerRegistry, RetryPolicy
from sniper.schemas.session import DEFAULT_IDENTITY, Identity
from sniper.services.key_service import LocalKeyService
from sniper.services.secrets import EnvelopeStore, SecretCache
from sniper.services.session import SessionAuthority, SessionState, load_identity_pool

BASE_URL = "https://portal.example.test"


class RefreshEndpoint:
    def __init__(self, status_code: int = 200, body: dict | None = None) -> None:
        self.status_code = status_code
        self.body = body if body is not None else {"accessToken": "refreshed", "expiresIn": 1800}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)


def _envelopes() -> EnvelopeStore:
    key_service = LocalKeyService(os.urandom(crypto.KEY_SIZE))
    return EnvelopeStore(key_service, SecretCache(key_service, BreakerRegistry(), retry_policy=RetryPolicy(retries=0)))


def _authority(
    path: Path,
    *,
    envelopes: EnvelopeStore | None = None,
    launcher: FakeLauncher | None = None,
    login_flow: FakeLoginFlow | None = None,
    solver: CountingSolver | None = None,
    refresh: RefreshEndpoint | None = None,
    clock: ManualClock | None = None,
    identities: list[Identity] | None = None,
) -> SessionAuthority:
    return SessionAuthority(
        envelopes=envelopes or _envelopes(),
        launcher=launcher or FakeLauncher(),
        login_flow=login_flow or FakeLoginFlow(),
        challenge_solver=solver or CountingSolver(),
        code_retriever=StaticCodeRetriever(),
        breakers=BreakerRegistry(),
        session_path=path,
        refresh_url=f"{BASE_URL}/api/auth/refresh",
        account_url=f"{BASE_URL}/account",
        identities=identities,
        refresh_policy=RetryPolicy(retries=0),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(refresh or RefreshEndpoint())),
        rng=random.Random(3),
        clock=clock or ManualClock(),
    )


def test_full_login_when_no_session_is_stored(tmp_path) -> None:
    path = tmp_path / "session.json"
    launcher = FakeLauncher()
    flow = FakeLoginFlow()
    authority = _authority(path, launcher=launcher, login_flow=flow)

    async def scenario() -> None:
        first = await authority.get_authenticated_context()
        second = await authority.get_authenticated_context()
        assert first is second

    asyncio.run(scenario())
    assert authority.state is SessionState.VALID
    assert flow.runs == 1
    assert len(launcher.contexts) == 1
    assert authority.get_auth_tokens().access_token == "access-1"
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1


def test_concurrent_callers_share_one_login(tmp_path) -> None:
    flow = FakeLoginFlow()
    authority = _authority(tmp_path / "session.json", login_flow=flow)

    async def scenario() -> list:
        return await asyncio.gather(*(authority.get_authenticated_context() for _ in range(5)))

    contexts = asyncio.run(scenario())
    assert flow.runs == 1
    assert all(context is contexts[0] for context in contexts)


def test_stored_session_is_resumed_after_validation(tmp_path) -> None:
    path = tmp_path / "session.json"
    envelopes = _envelopes()
    clock = ManualClock()
    asyncio.run(_authority(path, envelopes=envelopes, clock=clock).get_authenticated_context())

    flow = FakeLoginFlow()
    launcher = FakeLauncher()
    resumed = _authority(path, envelopes=envelopes, clock=clock, login_flow=flow, launcher=launcher)
    asyncio.run(resumed.get_authenticated_context())

    assert resumed.state is SessionState.VALID
    assert flow.runs == 0
    assert launcher.contexts[0].visited == [f"{BASE_URL}/account"]
    assert launcher.contexts[0].added_cookies[0]["name"] == "session-id"


def test_login_redirect_during_validation_triggers_full_login(tmp_path) -> None:
    path = tmp_path / "session.json"
    envelopes = _envelopes()
    clock = ManualClock()
    asyncio.run(_authority(path, envelopes=envelopes, clock=clock).get_authenticated_context())

    flow = FakeLoginFlow()
    launcher = FakeLauncher(landing_url=f"{BASE_URL}/login?redirect=%2Faccount")
    authority = _authority(path, envelopes=envelopes, clock=clock, login_flow=flow, launcher=launcher)
    asyncio.run(authority.get_authenticated_context())

    assert flow.runs == 1
    assert authority.state is SessionState.VALID
    assert launcher.contexts[0].closed


def test_expired_session_is_refreshed_and_persisted(tmp_path) -> None:
    path = tmp_path / "session.json"
    envelopes = _envelopes()
    clock = ManualClock()
    asyncio.run(_authority(path, envelopes=envelopes, clock=clock, login_flow=FakeLoginFlow(expires_in=60)).get_authenticated_context())
    clock.advance(120.0)

    refresh = RefreshEndpoint()
    flow = FakeLoginFlow()
    authority = _authority(path, envelopes=envelopes, clock=clock, login_flow=flow, refresh=refresh)
    asyncio.run(authority.get_authenticated_context())

    assert flow.runs == 0
    assert authority.state is SessionState.VALID
    assert authority.get_auth_tokens().access_token == "refreshed"
    assert json.loads(refresh.requests[0].content) == {"refreshToken": "refresh-1"}
    stored = asyncio.run(envelopes.load_decrypted(path))
    assert stored["signInUserSession"]["accessToken"] == "refreshed"
    assert stored["signInUserSession"]["refreshToken"] == "refresh-1"


def test_rejected_refresh_falls_back_to_full_login(tmp_path) -> None:
    path = tmp_path / "session.json"
    envelopes = _envelopes()
    clock = ManualClock()
    asyncio.run(_authority(path, envelopes=envelopes, clock=clock, login_flow=FakeLoginFlow(expires_in=60)).get_authenticated_context())
    clock.advance(120.0)

    flow = FakeLoginFlow()
    authority = _authority(
        path,
        envelopes=envelopes,
        clock=clock,
        login_flow=flow,
        refresh=RefreshEndpoint(status_code=400, body={"error": "invalid_grant"}),
    )
    asyncio.run(authority.get_authenticated_context())

    assert flow.runs == 1
    assert authority.get_auth_tokens().access_token == "access-1"


def test_invalidate_forces_refresh_on_next_use(tmp_path) -> None:
    refresh = RefreshEndpoint()
    authority = _authority(tmp_path / "session.json", refresh=refresh)
    asyncio.run(authority.get_authenticated_context())

    authority.invalidate()
    assert authority.state is SessionState.INVALID
    with pytest.raises(SessionError):
        authority.get_auth_tokens()

    asyncio.run(authority.get_authenticated_context())
    assert len(refresh.requests) == 1
    assert authority.get_auth_tokens().access_token == "refreshed"


def test_stale_tokens_mark_session_expired(tmp_path) -> None:
    clock = ManualClock()
    authority = _authority(tmp_path / "session.json", clock=clock, login_flow=FakeLoginFlow(expires_in=60))
    asyncio.run(authority.get_authenticated_context())

    clock.advance(61.0)
    with pytest.raises(SessionError, match="expired"):
        authority.get_auth_tokens()
    assert authority.state is SessionState.EXPIRED


def test_failed_login_raises_session_error_and_closes_context(tmp_path) -> None:
    launcher = FakeLauncher()
    authority = _authority(
        tmp_path / "session.json",
        launcher=launcher,
        login_flow=FakeLoginFlow(error=RuntimeError("pin rejected")),
    )

    with pytest.raises(SessionError, match="pin rejected"):
        asyncio.run(authority.get_authenticated_context())
    assert authority.state is SessionState.FAILED
    assert launcher.contexts[0].closed
    assert not (tmp_path / "session.json").exists()


def test_challenge_breaker_opens_after_repeated_failures(tmp_path) -> None:
    solver = CountingSolver(error=TransientError("solver unavailable"))
    authority = _authority(tmp_path / "session.json", login_flow=FakeLoginFlow(solve=True), solver=solver)

    async def scenario() -> list[str]:
        messages = []
        for _ in range(4):
            with pytest.raises(SessionError) as excinfo:
                await authority.get_authenticated_context()
            messages.append(str(excinfo.value))
        return messages

    messages = asyncio.run(scenario())
    assert solver.calls == 3
    assert "circuit breaker is OPEN for challenge-solver" in messages[-1]


def test_corrupt_session_file_falls_back_to_full_login(tmp_path) -> None:
    path = tmp_path / "session.json"
    path.write_text("{broken", encoding="utf-8")
    flow = FakeLoginFlow()
    authority = _authority(path, login_flow=flow)

    asyncio.run(authority.get_authenticated_context())
    assert flow.runs == 1
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1


def test_unsupported_envelope_version_is_not_overwritten(tmp_path) -> None:
    path = tmp_path / "session.json"
    path.write_text(json.dumps({"version": 9, "encryptedDataKey": "", "encryptedData": ""}), encoding="utf-8")
    flow = FakeLoginFlow()
    authority = _authority(path, login_flow=flow)

    with pytest.raises(SessionError, match="unsupported"):
        asyncio.run(authority.get_authenticated_context())
    assert flow.runs == 0
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 9


def test_identity_is_drawn_from_the_pool(tmp_path) -> None:
    pool = [
        Identity(id="desktop-a", user_agent="UA-A"),
        Identity(id="desktop-b", user_agent="UA-B"),
    ]
    launcher = FakeLauncher()
    authority = _authority(tmp_path / "session.json", launcher=launcher, identities=pool)
    asyncio.run(authority.get_authenticated_context())
    assert launcher.contexts[0].identity in pool


def test_load_identity_pool_defaults_when_missing(tmp_path) -> None:
    assert load_identity_pool(tmp_path / "missing.json") == [DEFAULT_IDENTITY]

    pool_path = tmp_path / "pool.json"
    pool_path.write_text(
        json.dumps({"identities": [{"id": "x", "userAgent": "UA", "viewport": {"width": 1280, "height": 720}}]}),
        encoding="utf-8",
    )
    identities = load_identity_pool(pool_path)
    assert identities[0].user_agent == "UA"
    assert identities[0].viewport.width == 1280
