from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from sniper.core.errors import AuthenticationError, SchemaDriftError, TransientError
from sniper.services.catalog_client import SEARCH_JOBS_QUERY, CatalogClient, load_query

ENDPOINT = "https://catalog.example.test/graphql"


def _client(handler) -> CatalogClient:
    return CatalogClient(ENDPOINT, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def _fetch(handler) -> Any:
    return asyncio.run(_client(handler).fetch_page("token-1", {"offset": 0, "limit": 2}))


def _cards(jobs: list[Any], *, next_offset: int | None = None) -> dict[str, Any]:
    return {"data": {"searchJobCardsByLocation": {"nextOffset": next_offset, "totalCount": len(jobs), "jobs": jobs}}}


def test_fetch_page_sends_query_and_parses_jobs() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=_cards(
                [
                    {"id": "JOB-1", "title": "Picker", "city": "Leeds", "state": "West Yorkshire"},
                    {"id": "JOB-2", "title": "Packer", "applicationUrl": "https://portal.example.test/apply/2"},
                ],
                next_offset=2,
            ),
        )

    page = _fetch(handler)

    assert seen["auth"] == "Bearer token-1"
    assert seen["body"]["query"] == SEARCH_JOBS_QUERY
    assert seen["body"]["variables"] == {"offset": 0, "limit": 2}
    assert [job.id for job in page.jobs] == ["JOB-1", "JOB-2"]
    assert page.jobs[0].location == "Leeds, West Yorkshire"
    assert page.jobs[1].application_url == "https://portal.example.test/apply/2"
    assert page.next_offset == 2


def test_invalid_jobs_are_skipped_and_counted() -> None:
    page = _fetch(lambda request: httpx.Response(200, json=_cards([{"id": "JOB-1", "title": "Picker"}, {"title": "no id"}])))
    assert [job.id for job in page.jobs] == ["JOB-1"]
    assert page.invalid_jobs == 1


def test_unauthorized_raises_authentication_error() -> None:
    with pytest.raises(AuthenticationError):
        _fetch(lambda request: httpx.Response(401, json={"message": "expired"}))


def test_validation_failure_is_schema_drift() -> None:
    body = {"errors": [{"message": "Cannot query field", "extensions": {"code": "GRAPHQL_VALIDATION_FAILED"}}]}
    with pytest.raises(SchemaDriftError, match="Cannot query field"):
        _fetch(lambda request: httpx.Response(400, json=body))


def test_missing_result_shape_is_schema_drift() -> None:
    with pytest.raises(SchemaDriftError):
        _fetch(lambda request: httpx.Response(200, json={"data": {"somethingElse": {}}}))


def test_execution_errors_without_data_are_transient() -> None:
    body = {"data": None, "errors": [{"message": "upstream timeout"}]}
    with pytest.raises(TransientError, match="upstream timeout"):
        _fetch(lambda request: httpx.Response(200, json=body))


def test_server_errors_propagate_as_status_errors() -> None:
    with pytest.raises(httpx.HTTPStatusError):
        _fetch(lambda request: httpx.Response(503, text="unavailable"))


def test_load_query_reads_override_file(tmp_path) -> None:
    assert load_query(None) == SEARCH_JOBS_QUERY
    query_path = tmp_path / "query.graphql"
    query_path.write_text("query Other { ping }\n", encoding="utf-8")
    assert load_query(str(query_path)) == "query Other { ping }"
    query_path.write_text("   ", encoding="utf-8")
    with pytest.raises(ValueError):
        load_query(str(query_path))
