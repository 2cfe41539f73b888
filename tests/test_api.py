from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from fakes import FakeSession, RecordingAction, ScriptedCatalog, StaticTokens, make_page
from sniper.api.main import create_app
from sniper.core.config import Settings, get_settings
from sniper.core.errors import SessionError
from sniper.core.protection import BreakerRegistry, RetryPolicy
from sniper.jobs.claims import ClaimQueue
from sniper.jobs.coordinator import Coordinator
from sniper.jobs.discovery import ResourceDiscoverer, SearchParams
from sniper.runtime import Runtime
from sniper.schemas.session import DEFAULT_IDENTITY
from sniper.services.store import InMemoryStore

ADMIN_HEADERS = {"X-API-Key": "local-admin-key"}


class UnreachableStore(InMemoryStore):
    async def ping(self) -> bool:
        return False


class BrokenDiscoverer:
    async def discover(self) -> int:
        raise RuntimeError("catalog exploded")


def _runtime_factory(store: InMemoryStore, *, discoverer=None, session_error: Exception | None = None):
    def factory(settings: Settings) -> Runtime:
        session = FakeSession(DEFAULT_IDENTITY, error=session_error)
        breakers = BreakerRegistry()
        coordinator = Coordinator(
            session=session,
            discoverer=discoverer
            or ResourceDiscoverer(
                catalog=ScriptedCatalog([make_page(["a", "b"])]),
                tokens=StaticTokens(),
                repository=store,
                records=store,
                breakers=breakers,
                search=SearchParams(location="Leeds", keywords="Picker"),
                retry_policy=RetryPolicy(retries=0),
            ),
            repository=store,
            claims=ClaimQueue(
                queue_repository=store,
                locks=store,
                records=store,
                session=session,
                action=RecordingAction(),
                poll_interval_seconds=0.05,
            ),
            breakers=breakers,
            run_initial_cycle=False,
        )
        return Runtime(settings=settings, repository=store, breakers=breakers, session=session, coordinator=coordinator)

    return factory


@pytest.fixture(autouse=True)
def admin_settings(monkeypatch) -> Iterator[None]:
    monkeypatch.setenv("SNIPER_ADMIN_API_KEY", "local-admin-key")
    monkeypatch.setenv("SNIPER_OTEL_ENABLED", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _client(store: InMemoryStore | None = None, **kwargs) -> TestClient:
    return TestClient(create_app(runtime_factory=_runtime_factory(store or InMemoryStore(), **kwargs)))


def test_livez_and_readyz() -> None:
    with _client() as client:
        assert client.get("/livez").json() == {"status": "ok"}
        response = client.get("/readyz")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_readyz_reports_unreachable_store() -> None:
    with _client(UnreachableStore()) as client:
        response = client.get("/readyz")
    assert response.status_code == 503


def test_admin_routes_require_api_key() -> None:
    with _client() as client:
        assert client.get("/admin/stats").status_code == 401
        assert client.get("/admin/stats", headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.post("/admin/trigger").status_code == 401


def test_admin_routes_unavailable_without_configured_key(monkeypatch) -> None:
    monkeypatch.delenv("SNIPER_ADMIN_API_KEY")
    get_settings.cache_clear()
    with _client() as client:
        response = client.get("/admin/stats", headers=ADMIN_HEADERS)
    assert response.status_code == 503


def test_trigger_runs_a_cycle_and_stats_reflect_it() -> None:
    store = InMemoryStore()
    with _client(store) as client:
        triggered = client.post("/admin/trigger", headers=ADMIN_HEADERS)
        stats = client.get("/admin/stats", headers=ADMIN_HEADERS)

    assert triggered.status_code == 200
    assert triggered.json()["status"] == "completed"
    assert triggered.json()["new_items"] == 2
    body = stats.json()
    assert body["seen_items"] == 2
    assert body["session_state"] == "VALID"
    assert body["last_cycle"]["status"] == "completed"
    assert "catalog-api" in body["breakers"]


def test_failed_trigger_returns_server_error() -> None:
    with _client(discoverer=BrokenDiscoverer()) as client:
        response = client.post("/admin/trigger", headers=ADMIN_HEADERS)
    assert response.status_code == 500
    assert response.json()["detail"] == "catalog exploded"


def test_skipped_trigger_reports_unavailable() -> None:
    with _client(session_error=SessionError("no valid session")) as client:
        response = client.post("/admin/trigger", headers=ADMIN_HEADERS)
    assert response.status_code == 503
    assert response.json()["detail"] == "no valid session"
