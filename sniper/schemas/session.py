from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class Viewport(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int = 1920
    height: int = 1080


class Identity(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    user_agent: str
    viewport: Viewport = Field(default_factory=Viewport)
    locale: str = "en-US"
    timezone: str = "America/New_York"


DEFAULT_IDENTITY = Identity(
    id="default",
    user_agent=(
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    viewport=Viewport(width=1920, height=1080),
    locale="en-US",
    timezone="America/New_York",
)


class IdentityPool(BaseModel):
    identities: list[Identity] = Field(default_factory=list)


class SessionTokens(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        current = now if now is not None else datetime.now(timezone.utc).timestamp()
        return self.expires_at <= current


class SessionRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tokens: SessionTokens = Field(alias="signInUserSession")
    cookies: list[dict[str, Any]] = Field(default_factory=list)
    identity: Identity
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="timestamp")

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AuthTokens(BaseModel):
    access_token: str
    id_token: str | None = None


class RefreshResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    access_token: str = Field(min_length=1)
    id_token: str | None = None
    expires_in: int = DEFAULT_TOKEN_LIFETIME_SECONDS


class CapturedSignIn(BaseModel):
    """Shape of the ``signInUserSession`` entry the portal keeps in local storage."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    id_token: str | None = None
    expires_in: int = DEFAULT_TOKEN_LIFETIME_SECONDS
