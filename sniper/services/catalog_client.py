from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from sniper.core import metrics
from sniper.core.errors import AuthenticationError, SchemaDriftError, TransientError
from sniper.schemas.catalog import CatalogPage, DiscoveredItem

logger = logging.getLogger(__name__)

SEARCH_OPERATION = "searchJobs"
VALIDATION_FAILED_CODE = "GRAPHQL_VALIDATION_FAILED"
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

SEARCH_JOBS_QUERY = """
query searchJobs(
  $location: String!
  $radius: Int
  $sort: String
  $filters: JobSearchFilters
  $offset: Int
  $limit: Int
) {
  searchJobCardsByLocation(
    location: $location
    radius: $radius
    sort: $sort
    filters: $filters
    offset: $offset
    limit: $limit
  ) {
    totalCount
    nextOffset
    jobs {
      id
      title
      jobType
      employmentType
      city
      state
      country
      postalCode
      address
      description
      postedDate
      closingDate
      requisitionId
      applicationUrl
      distance
      schedule
      compensation
    }
  }
}
""".strip()


def load_query(path: str | None) -> str:
    if not path:
        return SEARCH_JOBS_QUERY
    query = Path(path).read_text(encoding="utf-8").strip()
    if not query:
        raise ValueError(f"catalog query file is empty: {path}")
    logger.info("loaded catalog query path=%s", path)
    return query


class CatalogClient:
    def __init__(
        self,
        endpoint: str,
        *,
        query: str = SEARCH_JOBS_QUERY,
        timeout_seconds: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.query = query
        self.user_agent = user_agent
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_page(self, access_token: str, variables: dict[str, Any]) -> CatalogPage:
        metrics.catalog_requests.add(1, {"operation": SEARCH_OPERATION, "status": "attempt"})
        try:
            with metrics.record_duration(metrics.catalog_duration, {"operation": SEARCH_OPERATION}):
                response = await self._client.post(
                    self.endpoint,
                    json={"query": self.query, "variables": variables},
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json",
                        "User-Agent": self.user_agent,
                    },
                )
            page = self._parse(response)
        except Exception:
            metrics.catalog_requests.add(1, {"operation": SEARCH_OPERATION, "status": "error"})
            raise

        metrics.catalog_requests.add(1, {"operation": SEARCH_OPERATION, "status": "success"})
        return page

    def _parse(self, response: httpx.Response) -> CatalogPage:
        if response.status_code == 401:
            raise AuthenticationError("catalog rejected the access token; session may be expired")

        body = _json_or_none(response)
        errors = body.get("errors") if isinstance(body, dict) else None
        if isinstance(errors, list) and _has_validation_failure(errors):
            raise SchemaDriftError(f"catalog query failed validation: {_error_messages(errors)}")

        response.raise_for_status()

        if not isinstance(body, dict):
            raise SchemaDriftError("catalog response is not a JSON object")
        data = body.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("searchJobCardsByLocation"), dict):
            if isinstance(errors, list) and errors:
                raise TransientError(f"catalog returned errors: {_error_messages(errors)}")
            raise SchemaDriftError("catalog response is missing searchJobCardsByLocation")

        return parse_page(data["searchJobCardsByLocation"])


def parse_page(raw: dict[str, Any]) -> CatalogPage:
    jobs = raw.get("jobs")
    if not isinstance(jobs, list):
        raise SchemaDriftError("catalog page has no jobs list")

    next_offset = raw.get("nextOffset")
    if next_offset is not None and not isinstance(next_offset, int):
        raise SchemaDriftError("catalog page nextOffset is not an integer")

    items: list[DiscoveredItem] = []
    invalid = 0
    for entry in jobs:
        try:
            items.append(DiscoveredItem.model_validate(entry))
        except ValidationError as exc:
            invalid += 1
            logger.warning("skipping catalog job that failed validation errors=%s", exc.error_count())

    total_count = raw.get("totalCount")
    return CatalogPage(
        total_count=total_count if isinstance(total_count, int) else len(jobs),
        next_offset=next_offset,
        jobs=items,
        invalid_jobs=invalid,
    )


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _has_validation_failure(errors: list[Any]) -> bool:
    for error in errors:
        if not isinstance(error, dict):
            continue
        extensions = error.get("extensions")
        if isinstance(extensions, dict) and extensions.get("code") == VALIDATION_FAILED_CODE:
            return True
    return False


def _error_messages(errors: list[Any]) -> str:
    messages = [str(error.get("message")) for error in errors if isinstance(error, dict) and error.get("message")]
    return "; ".join(messages) or "unknown error"
