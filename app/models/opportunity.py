"""Domain models for funding opportunities and ingestion runs."""

from __future__ import annotations

import math
from datetime import date, datetime, time, timezone
from enum import StrEnum
from typing import Any, Literal
from urllib.parse import urlparse
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OpportunityType(StrEnum):
    SCHOLARSHIP = "scholarship"
    FELLOWSHIP = "fellowship"
    GRANT = "grant"
    ACCELERATOR = "accelerator"
    INTERNSHIP = "internship"
    COMPETITION = "competition"
    AWARD = "award"
    OTHER = "other"


class OpportunityStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CLOSED = "closed"
    DUPLICATE = "duplicate"


SortField = Literal[
    "created_at", "updated_at", "application_deadline", "title", "amount_min", "amount_max"
]
SortOrder = Literal["asc", "desc"]


def is_absolute_url(value: str) -> bool:
    """Return True when `value` parses as an absolute URL with a scheme and host."""
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc) and " " not in value.strip()


class RawHit(BaseModel):
    """One raw result returned by the search provider."""

    title: str = ""
    text: str = ""
    url: str = ""
    html: str | None = None

    @classmethod
    def from_exa(cls, result: dict[str, Any]) -> RawHit:
        """Build a hit from an Exa result object, tolerating missing or odd fields."""
        html = result.get("html")
        return cls(
            title=str(result.get("title") or ""),
            text=str(result.get("text") or ""),
            url=str(result.get("url") or ""),
            html=str(html) if html else None,
        )


class ExtractedFields(BaseModel):
    """Best-effort structured fields derived from a raw hit."""

    opportunity_type: OpportunityType = OpportunityType.OTHER
    country: str | None = None
    application_deadline: date | None = None
    amount_min: float | None = None
    amount_max: float | None = None
    tags: list[str] = Field(default_factory=list)
    organization: str | None = None
    meta_description: str | None = None
    eligibility_criteria: str | None = None
    source_domain: str = ""
    extracted_data: dict[str, Any] = Field(default_factory=dict)


class SearchFilters(BaseModel):
    """Structured filters accompanying an ingestion query."""

    model_config = ConfigDict(extra="ignore")

    country: str | None = Field(default=None, max_length=100)
    type: OpportunityType | None = None
    amount_min: float | None = Field(default=None, ge=0)
    amount_max: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, pattern=r"^[A-Za-z]{3}$")
    deadline_after: date | None = None
    deadline_before: date | None = None
    tags: list[str] = Field(default_factory=list, max_length=10)

    @field_validator("tags")
    @classmethod
    def _limit_tag_length(cls, value: list[str]) -> list[str]:
        for tag in value:
            if len(tag) > 50:
                raise ValueError("tags must be at most 50 characters each.")
        return value

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str | None) -> str | None:
        return value.upper() if value else value


class AmountRange(BaseModel):
    min: float | None = None
    max: float | None = None
    currency: str = "USD"


class OpportunityResponse(BaseModel):
    """Wire representation returned by the HTTP API."""

    id: UUID
    title: str
    description: str | None = None
    organization: str | None = None
    url: str
    opportunity_type: OpportunityType
    country: str | None = None
    region: str | None = None
    application_deadline: date | None = None
    start_date: date | None = None
    end_date: date | None = None
    amount: AmountRange
    eligibility_criteria: str | None = None
    application_requirements: str | None = None
    benefits: str | None = None
    tags: list[str] = Field(default_factory=list)
    source_domain: str | None = None
    status: OpportunityStatus
    is_expired: bool
    days_until_deadline: int | None = None
    created_at: datetime
    updated_at: datetime
    last_crawled_at: datetime


class Opportunity(BaseModel):
    """Validated funding opportunity; the unit persisted and served by the API."""

    id: UUID = Field(default_factory=uuid4)
    title: str
    url: str
    opportunity_type: OpportunityType
    description: str | None = None
    organization: str | None = None
    country: str | None = None
    region: str | None = None
    application_deadline: date | None = None
    start_date: date | None = None
    end_date: date | None = None
    amount_min: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    amount_max: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    eligibility_criteria: str | None = None
    application_requirements: str | None = None
    benefits: str | None = None
    tags: list[str] = Field(default_factory=list)
    source_domain: str | None = None
    raw_content: str | None = None
    extracted_data: dict[str, Any] = Field(default_factory=dict)
    status: OpportunityStatus = OpportunityStatus.ACTIVE
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_crawled_at: datetime = Field(default_factory=_utcnow)

    @field_validator("title")
    @classmethod
    def _require_title(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Title is required")
        return value

    @field_validator("url")
    @classmethod
    def _require_absolute_url(cls, value: str) -> str:
        if not value or not is_absolute_url(value):
            raise ValueError("Valid URL is required")
        return value

    @field_validator("currency", mode="before")
    @classmethod
    def _default_currency(cls, value: object) -> object:
        if value is None or value == "":
            return "USD"
        return value.upper() if isinstance(value, str) else value

    @field_validator("tags")
    @classmethod
    def _collapse_tags(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(tag for tag in value if tag))

    @model_validator(mode="after")
    def _check_amount_range(self) -> "Opportunity":
        if (
            self.amount_min is not None
            and self.amount_max is not None
            and self.amount_min > self.amount_max
        ):
            raise ValueError("Minimum amount cannot be greater than maximum amount")
        return self

    def _deadline_instant(self) -> datetime | None:
        if self.application_deadline is None:
            return None
        return datetime.combine(self.application_deadline, time.min, tzinfo=timezone.utc)

    def is_expired(self, now: datetime | None = None) -> bool:
        deadline = self._deadline_instant()
        if deadline is None:
            return False
        return deadline < (now or _utcnow())

    def days_until_deadline(self, now: datetime | None = None) -> int | None:
        """Whole days until the deadline, truncated toward zero; None without a deadline."""
        deadline = self._deadline_instant()
        if deadline is None:
            return None
        remaining = (deadline - (now or _utcnow())).total_seconds() / 86400
        return math.trunc(remaining)

    def to_api_response(self, now: datetime | None = None) -> OpportunityResponse:
        moment = now or _utcnow()
        payload = self.model_dump(
            exclude={"amount_min", "amount_max", "currency", "raw_content", "extracted_data"}
        )
        return OpportunityResponse(
            **payload,
            amount=AmountRange(min=self.amount_min, max=self.amount_max, currency=self.currency),
            is_expired=self.is_expired(moment),
            days_until_deadline=self.days_until_deadline(moment),
        )

    def to_storage_dict(self) -> dict[str, Any]:
        """Flat column mapping used by the persistence layer."""
        payload = self.model_dump()
        payload["opportunity_type"] = self.opportunity_type.value
        payload["status"] = self.status.value
        return payload


class OpportunityUpdate(BaseModel):
    """Partial field update; unset fields are left untouched."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    organization: str | None = None
    url: str | None = None
    opportunity_type: OpportunityType | None = None
    country: str | None = None
    region: str | None = None
    application_deadline: date | None = None
    start_date: date | None = None
    end_date: date | None = None
    amount_min: float | None = None
    amount_max: float | None = None
    currency: str | None = None
    eligibility_criteria: str | None = None
    application_requirements: str | None = None
    benefits: str | None = None
    tags: list[str] | None = None
    status: OpportunityStatus | None = None


class SearchRun(BaseModel):
    """One persisted ingestion query."""

    id: UUID = Field(default_factory=uuid4)
    query_text: str
    filters: dict[str, Any] = Field(default_factory=dict)
    results_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


class IngestionSummary(BaseModel):
    """Aggregate counters for one ingestion run; serialized in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    search_id: UUID
    total_found: int = 0
    new_opportunities: int = 0
    duplicates: int = 0
    errors: int = 0


class OpportunityListFilters(BaseModel):
    """Optional read-side filters; unset filters are ignored."""

    type: OpportunityType | None = None
    country: str | None = Field(default=None, max_length=100)
    region: str | None = Field(default=None, max_length=100)
    status: OpportunityStatus | None = None
    amount_min: float | None = Field(default=None, ge=0)
    amount_max: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, pattern=r"^[A-Z]{3}$")
    deadline_after: date | None = None
    deadline_before: date | None = None
    tags: list[str] = Field(default_factory=list, max_length=10)
    search: str | None = Field(default=None, max_length=200)


class Pagination(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sort_by: SortField = "created_at"
    sort_order: SortOrder = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class PageInfo(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class OpportunityPage(BaseModel):
    opportunities: list[OpportunityResponse]
    pagination: PageInfo


class DistributionEntry(BaseModel):
    value: str
    count: int


class OpportunityStats(BaseModel):
    """Aggregate counts over the stored opportunities."""

    total_opportunities: int = 0
    active_opportunities: int = 0
    expired_opportunities: int = 0
    closed_opportunities: int = 0
    unique_types: int = 0
    unique_countries: int = 0
    avg_min_amount: float = 0.0
    avg_max_amount: float = 0.0
    upcoming_deadlines: int = 0
    type_distribution: list[DistributionEntry] = Field(default_factory=list)
    country_distribution: list[DistributionEntry] = Field(default_factory=list)
