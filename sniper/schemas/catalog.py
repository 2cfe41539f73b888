from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DiscoveredItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore")

    id: str = Field(min_length=1)
    title: str
    job_type: str | None = None
    employment_type: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    postal_code: str | None = None
    address: str | None = None
    description: str | None = None
    posted_date: str | None = None
    closing_date: str | None = None
    requisition_id: str | None = None
    application_url: str | None = None
    distance: float | None = None
    schedule: dict[str, Any] | None = None
    compensation: dict[str, Any] | None = None

    @property
    def location(self) -> str:
        return ", ".join(part for part in (self.city, self.state) if part)

    def to_payload(self, now: datetime | None = None) -> dict[str, Any]:
        timestamp = (now or datetime.now(timezone.utc)).isoformat()
        return {
            "id": self.id,
            "title": self.title,
            "location": self.location,
            "postedDate": self.posted_date,
            "closingDate": self.closing_date,
            "applicationUrl": self.application_url,
            "requisitionId": self.requisition_id,
            "schedule": self.schedule,
            "compensation": self.compensation,
            "timestamp": timestamp,
        }


class CatalogPage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    total_count: int = 0
    next_offset: int | None = None
    jobs: list[DiscoveredItem] = Field(default_factory=list)
    invalid_jobs: int = 0


class DiscoveryReport(BaseModel):
    candidates: int = 0
    new: int = 0
    pages: int = 0
    invalid_jobs: int = 0
    schema_drift: bool = False
