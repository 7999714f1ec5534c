"""SQLModel mappings for stored opportunities and search runs."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Column, Date, DateTime, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import expression
from sqlmodel import Field, SQLModel

from app.models.opportunity import Opportunity, SearchRun


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back out.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


class UtcNow(expression.FunctionElement):
    """Dialect-aware server default that pins timestamps to UTC."""

    type = DateTime(timezone=True)
    inherit_cache = True


@compiles(UtcNow)
def _utc_now_default(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "CURRENT_TIMESTAMP"


@compiles(UtcNow, "postgresql")
def _utc_now_default_postgres(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "timezone('utc', now())"


def _timestamp_column(*, onupdate: bool = False) -> Column:
    return Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=UtcNow(),
        onupdate=UtcNow() if onupdate else None,
    )


class OpportunityRecord(SQLModel, table=True):
    """ORM model for persisted opportunities; `url` is the dedup key."""

    __tablename__ = "opportunities"
    __table_args__ = (
        sa.UniqueConstraint("url", name="uq_opportunities_url"),
        sa.CheckConstraint(
            "amount_min IS NULL OR amount_max IS NULL OR amount_min <= amount_max",
            name="ck_opportunities_amount_range",
        ),
        sa.Index("ix_opportunities_type", "opportunity_type"),
        sa.Index("ix_opportunities_country", "country"),
        sa.Index("ix_opportunities_status", "status"),
        sa.Index("ix_opportunities_deadline", "application_deadline"),
        sa.Index("ix_opportunities_created_at", "created_at"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    title: str = Field(sa_column=Column(Text, nullable=False))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    organization: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    url: str = Field(sa_column=Column(String(length=2048), nullable=False))
    opportunity_type: str = Field(sa_column=Column(String(length=32), nullable=False))
    country: str | None = Field(default=None, sa_column=Column(String(length=100), nullable=True))
    region: str | None = Field(default=None, sa_column=Column(String(length=100), nullable=True))
    application_deadline: date | None = Field(default=None, sa_column=Column(Date, nullable=True))
    start_date: date | None = Field(default=None, sa_column=Column(Date, nullable=True))
    end_date: date | None = Field(default=None, sa_column=Column(Date, nullable=True))
    amount_min: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    amount_max: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    currency: str = Field(default="USD", sa_column=Column(String(length=3), nullable=False))
    eligibility_criteria: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    application_requirements: str | None = Field(
        default=None, sa_column=Column(Text, nullable=True)
    )
    benefits: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    tags: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    source_domain: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    raw_content: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    extracted_data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    status: str = Field(default="active", sa_column=Column(String(length=16), nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp_column())
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamp_column(onupdate=True)
    )
    last_crawled_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp_column())

    @classmethod
    def from_opportunity(cls, opportunity: Opportunity) -> OpportunityRecord:
        """Convert a validated Opportunity into a persistence row."""
        return cls(**opportunity.to_storage_dict())

    def to_opportunity(self) -> Opportunity:
        """Hydrate the domain model from the stored row."""
        return Opportunity(
            id=self.id,
            title=self.title,
            description=self.description,
            organization=self.organization,
            url=self.url,
            opportunity_type=self.opportunity_type,
            country=self.country,
            region=self.region,
            application_deadline=self.application_deadline,
            start_date=self.start_date,
            end_date=self.end_date,
            amount_min=self.amount_min,
            amount_max=self.amount_max,
            currency=self.currency,
            eligibility_criteria=self.eligibility_criteria,
            application_requirements=self.application_requirements,
            benefits=self.benefits,
            tags=list(self.tags or []),
            source_domain=self.source_domain,
            raw_content=self.raw_content,
            extracted_data=dict(self.extracted_data or {}),
            status=self.status,
            created_at=_as_utc(self.created_at),
            updated_at=_as_utc(self.updated_at),
            last_crawled_at=_as_utc(self.last_crawled_at),
        )


class SearchQueryRecord(SQLModel, table=True):
    """ORM model for one ingestion query."""

    __tablename__ = "search_queries"

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    query_text: str = Field(sa_column=Column(Text, nullable=False))
    filters: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    results_count: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp_column())

    @classmethod
    def from_search_run(cls, run: SearchRun) -> SearchQueryRecord:
        return cls(
            id=run.id,
            query_text=run.query_text,
            filters=run.filters,
            results_count=run.results_count,
            created_at=run.created_at,
        )

    def to_search_run(self) -> SearchRun:
        return SearchRun(
            id=self.id,
            query_text=self.query_text,
            filters=dict(self.filters or {}),
            results_count=self.results_count,
            created_at=_as_utc(self.created_at),
        )


class OpportunitySearchLink(SQLModel, table=True):
    """Join row between a search run and the opportunities it produced."""

    __tablename__ = "opportunity_searches"

    search_id: UUID = Field(
        sa_column=Column(
            Uuid(as_uuid=True),
            ForeignKey("search_queries.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
    )
    opportunity_id: UUID = Field(
        sa_column=Column(
            Uuid(as_uuid=True),
            ForeignKey("opportunities.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
    )
    relevance_score: float = Field(default=0.8, sa_column=Column(Float, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp_column())
