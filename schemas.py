from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Annotated, Any, Dict, List, Optional
from datetime import datetime, timezone


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Naive timestamps in stored data are taken as UTC.
Timestamp = Annotated[datetime, AfterValidator(_as_aware)]


class ClickEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: Timestamp
    source: str = "Direct"
    location: str = "Unknown"


class LinkRecord(BaseModel):
    """A shortened link as persisted in the stored collection.

    Serialized with camelCase keys. Collections saved by earlier versions used
    `clicks`, `clickData` and an optional `customCode` string; those keys are
    still accepted on load and written back under the current names.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    original_url: str = Field(alias="originalUrl")
    short_code: str = Field(alias="shortCode")
    created_at: Timestamp = Field(alias="createdAt")
    expires_at: Timestamp = Field(alias="expiresAt")
    is_custom_code: bool = Field(default=False, alias="isCustomCode")
    click_count: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("clickCount", "click_count", "clicks"),
        serialization_alias="clickCount",
    )
    click_events: List[ClickEvent] = Field(
        default_factory=list,
        validation_alias=AliasChoices("clickEvents", "click_events", "clickData"),
        serialization_alias="clickEvents",
    )

    @model_validator(mode="before")
    @classmethod
    def legacy_custom_code(cls, data):
        if isinstance(data, dict) and "isCustomCode" not in data and "is_custom_code" not in data:
            if "customCode" in data:
                data = dict(data)
                data["isCustomCode"] = bool(data.pop("customCode"))
        return data

    @field_validator("click_events", mode="before")
    @classmethod
    def missing_history(cls, value):
        return [] if value is None else value

    @model_validator(mode="after")
    def click_count_matches_history(self):
        if self.click_count != len(self.click_events):
            raise ValueError(
                f"clickCount {self.click_count} does not match {len(self.click_events)} click events"
            )
        return self


class ShortenRequest(BaseModel):
    """Raw form input. Values are left untyped so every field problem is
    reported together by `links.validate_create` rather than rejected here."""
    model_config = ConfigDict(populate_by_name=True)

    url: Any = ""
    custom_code: Any = Field(default=None, alias="customCode")
    validity_minutes: Any = Field(default=30, alias="validityMinutes")


class LinkView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    original_url: str = Field(alias="originalUrl")
    short_code: str = Field(alias="shortCode")
    short_url: str = Field(alias="shortUrl")
    created_at: datetime = Field(alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")
    is_custom_code: bool = Field(alias="isCustomCode")
    click_count: int = Field(alias="clickCount")
    click_events: List[ClickEvent] = Field(alias="clickEvents")
    expired: bool
    validity: str


class LinkSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_links: int = Field(alias="totalLinks")
    total_clicks: int = Field(alias="totalClicks")
    active_links: int = Field(alias="activeLinks")
    expired_links: int = Field(alias="expiredLinks")


class StatsResponse(LinkSummary):
    links: List[LinkView]


class ValidationErrorResponse(BaseModel):
    errors: Dict[str, List[str]]


class ExpiredResponse(BaseModel):
    detail: str
    link: LinkView
