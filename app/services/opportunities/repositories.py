"""Persistence backends for opportunities and search runs."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import date
from threading import Lock
from typing import Any, Protocol
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from app.config import settings
from app.models.opportunity import (
    DistributionEntry,
    Opportunity,
    OpportunityListFilters,
    OpportunityStats,
    OpportunityStatus,
    Pagination,
    SearchRun,
)
from app.models.opportunity_record import (
    OpportunityRecord,
    OpportunitySearchLink,
    SearchQueryRecord,
)
from app.observability.metrics import metrics
from app.services.opportunities.errors import (
    DuplicateOpportunityError,
    OpportunityNotFound,
    OpportunityPersistenceError,
)

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "created_at": OpportunityRecord.created_at,
    "updated_at": OpportunityRecord.updated_at,
    "application_deadline": OpportunityRecord.application_deadline,
    "title": OpportunityRecord.title,
    "amount_min": OpportunityRecord.amount_min,
    "amount_max": OpportunityRecord.amount_max,
}
COUNTRY_DISTRIBUTION_LIMIT = 10


class OpportunityRepository(Protocol):
    """Persistence contract for opportunities; `url` is unique across the store."""

    def find_by_url(self, url: str) -> Opportunity | None:
        ...

    def get(self, opportunity_id: UUID) -> Opportunity | None:
        ...

    def insert(
        self,
        opportunity: Opportunity,
        *,
        search_id: UUID | None = None,
        relevance_score: float = 0.8,
    ) -> Opportunity:
        """Persist a new opportunity, raising DuplicateOpportunityError on a URL collision."""
        ...

    def update(self, opportunity: Opportunity) -> Opportunity:
        ...

    def delete(self, opportunity_id: UUID) -> bool:
        ...

    def list(
        self, filters: OpportunityListFilters, pagination: Pagination
    ) -> tuple[list[Opportunity], int]:
        ...

    def stats(self, today: date) -> OpportunityStats:
        ...

    def create_search_run(self, run: SearchRun) -> SearchRun:
        ...

    def get_search_run(self, search_id: UUID) -> SearchRun | None:
        ...

    def list_search_links(self, search_id: UUID) -> dict[UUID, float]:
        ...

    def ping(self) -> bool:
        ...


def _matches(opportunity: Opportunity, filters: OpportunityListFilters) -> bool:
    if filters.type is not None and opportunity.opportunity_type != filters.type:
        return False
    if filters.country and opportunity.country != filters.country:
        return False
    if filters.region and opportunity.region != filters.region:
        return False
    if filters.status is not None and opportunity.status != filters.status:
        return False
    if filters.currency and opportunity.currency != filters.currency:
        return False
    if filters.amount_min is not None and (
        opportunity.amount_min is None or opportunity.amount_min < filters.amount_min
    ):
        return False
    if filters.amount_max is not None and (
        opportunity.amount_max is None or opportunity.amount_max > filters.amount_max
    ):
        return False
    deadline = opportunity.application_deadline
    if filters.deadline_after is not None and (deadline is None or deadline < filters.deadline_after):
        return False
    if filters.deadline_before is not None and (
        deadline is None or deadline > filters.deadline_before
    ):
        return False
    if filters.tags and not set(filters.tags) & set(opportunity.tags):
        return False
    if filters.search:
        haystack = " ".join(
            part
            for part in (opportunity.title, opportunity.description, opportunity.organization)
            if part
        ).lower()
        if not all(term in haystack for term in filters.search.lower().split()):
            return False
    return True


def _sorted(opportunities: Sequence[Opportunity], pagination: Pagination) -> list[Opportunity]:
    # Mirrors Postgres: NULLs sort last ascending and first descending.
    field = pagination.sort_by
    present = [item for item in opportunities if getattr(item, field) is not None]
    missing = [item for item in opportunities if getattr(item, field) is None]
    descending = pagination.sort_order == "desc"
    present.sort(key=lambda item: getattr(item, field), reverse=descending)
    return missing + present if descending else present + missing


def _distribution(values: Sequence[str], limit: int | None = None) -> list[DistributionEntry]:
    counts = Counter(values).most_common(limit)
    return [DistributionEntry(value=value, count=count) for value, count in counts]


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class InMemoryOpportunityRepository(OpportunityRepository):
    """Thread-safe repository used for API/local development."""

    def __init__(self) -> None:
        self._opportunities: dict[UUID, Opportunity] = {}
        self._url_index: dict[str, UUID] = {}
        self._runs: dict[UUID, SearchRun] = {}
        self._links: dict[UUID, dict[UUID, float]] = {}
        self._lock = Lock()

    def find_by_url(self, url: str) -> Opportunity | None:
        with self._lock:
            opportunity_id = self._url_index.get(url)
            return self._opportunities.get(opportunity_id) if opportunity_id else None

    def get(self, opportunity_id: UUID) -> Opportunity | None:
        with self._lock:
            return self._opportunities.get(opportunity_id)

    def insert(
        self,
        opportunity: Opportunity,
        *,
        search_id: UUID | None = None,
        relevance_score: float = 0.8,
    ) -> Opportunity:
        with self._lock:
            if opportunity.url in self._url_index:
                metrics.increment("persistence.conflict", tags={"repository": "memory"})
                raise DuplicateOpportunityError(opportunity.url)
            self._opportunities[opportunity.id] = opportunity
            self._url_index[opportunity.url] = opportunity.id
            if search_id is not None:
                self._links.setdefault(search_id, {})[opportunity.id] = relevance_score
        metrics.increment("persistence.persisted", tags={"repository": "memory"})
        logger.info(
            "opportunities.persistence.persisted",
            extra={"opportunity_id": str(opportunity.id), "url": opportunity.url, "backend": "memory"},
        )
        return opportunity

    def update(self, opportunity: Opportunity) -> Opportunity:
        with self._lock:
            current = self._opportunities.get(opportunity.id)
            if current is None:
                raise OpportunityNotFound(opportunity.id)
            owner = self._url_index.get(opportunity.url)
            if owner is not None and owner != opportunity.id:
                raise DuplicateOpportunityError(opportunity.url)
            if current.url != opportunity.url:
                del self._url_index[current.url]
                self._url_index[opportunity.url] = opportunity.id
            self._opportunities[opportunity.id] = opportunity
        return opportunity

    def delete(self, opportunity_id: UUID) -> bool:
        with self._lock:
            removed = self._opportunities.pop(opportunity_id, None)
            if removed is None:
                return False
            self._url_index.pop(removed.url, None)
            for links in self._links.values():
                links.pop(opportunity_id, None)
        return True

    def list(
        self, filters: OpportunityListFilters, pagination: Pagination
    ) -> tuple[list[Opportunity], int]:
        with self._lock:
            candidates = list(self._opportunities.values())
        matched = [item for item in candidates if _matches(item, filters)]
        ordered = _sorted(matched, pagination)
        window = ordered[pagination.offset : pagination.offset + pagination.limit]
        return window, len(matched)

    def stats(self, today: date) -> OpportunityStats:
        with self._lock:
            items = list(self._opportunities.values())
        active = [item for item in items if item.status == OpportunityStatus.ACTIVE]
        return OpportunityStats(
            total_opportunities=len(items),
            active_opportunities=len(active),
            expired_opportunities=sum(item.status == OpportunityStatus.EXPIRED for item in items),
            closed_opportunities=sum(item.status == OpportunityStatus.CLOSED for item in items),
            unique_types=len({item.opportunity_type for item in items}),
            unique_countries=len({item.country for item in items if item.country}),
            avg_min_amount=_mean([item.amount_min for item in items if item.amount_min is not None]),
            avg_max_amount=_mean([item.amount_max for item in items if item.amount_max is not None]),
            upcoming_deadlines=sum(
                1
                for item in items
                if item.application_deadline is not None and item.application_deadline > today
            ),
            type_distribution=_distribution([item.opportunity_type.value for item in active]),
            country_distribution=_distribution(
                [item.country for item in active if item.country], COUNTRY_DISTRIBUTION_LIMIT
            ),
        )

    def create_search_run(self, run: SearchRun) -> SearchRun:
        with self._lock:
            self._runs[run.id] = run
        return run

    def get_search_run(self, search_id: UUID) -> SearchRun | None:
        with self._lock:
            return self._runs.get(search_id)

    def list_search_links(self, search_id: UUID) -> dict[UUID, float]:
        with self._lock:
            return dict(self._links.get(search_id, {}))

    def ping(self) -> bool:
        return True


class SqlOpportunityRepository(OpportunityRepository):
    """SQLModel-backed repository that persists opportunities to Postgres (or SQLite)."""

    def __init__(
        self,
        database_url: str | None = None,
        *,
        engine: Engine | None = None,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
    ) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("DATABASE_URL is required for SqlOpportunityRepository.")
            engine = _build_engine(
                database_url, pool_min_size=pool_min_size, pool_max_size=pool_max_size
            )
        self._engine: Engine = engine
        self._dialect = engine.dialect.name
        if auto_create_schema:
            SQLModel.metadata.create_all(self._engine)
        self._metrics_tags = {"repository": _resolve_metrics_tag(self._dialect)}

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    def find_by_url(self, url: str) -> Opportunity | None:
        with self._guard("find_by_url", url=url), self._session() as session:
            record = session.exec(select(OpportunityRecord).where(OpportunityRecord.url == url)).first()
            return record.to_opportunity() if record else None

    def get(self, opportunity_id: UUID) -> Opportunity | None:
        with self._guard("get", opportunity_id=str(opportunity_id)), self._session() as session:
            record = session.get(OpportunityRecord, opportunity_id)
            return record.to_opportunity() if record else None

    def insert(
        self,
        opportunity: Opportunity,
        *,
        search_id: UUID | None = None,
        relevance_score: float = 0.8,
    ) -> Opportunity:
        record = OpportunityRecord.from_opportunity(opportunity)
        try:
            with self._session() as session:
                session.add(record)
                if search_id is not None:
                    session.flush()
                    session.add(
                        OpportunitySearchLink(
                            search_id=search_id,
                            opportunity_id=record.id,
                            relevance_score=relevance_score,
                        )
                    )
                session.commit()
        except IntegrityError as exc:
            if self.find_by_url(opportunity.url) is None:
                logger.exception(
                    "opportunities.persistence.error",
                    extra={"url": opportunity.url, **self._metrics_tags},
                )
                raise OpportunityPersistenceError(
                    "Failed to persist opportunity.", code="500_INTERNAL"
                ) from exc
            metrics.increment("persistence.conflict", tags=self._metrics_tags)
            logger.warning(
                "opportunities.persistence.conflict",
                extra={"url": opportunity.url, **self._metrics_tags},
            )
            raise DuplicateOpportunityError(opportunity.url) from exc
        except SQLAlchemyError as exc:
            logger.exception(
                "opportunities.persistence.error",
                extra={"url": opportunity.url, **self._metrics_tags},
            )
            raise OpportunityPersistenceError(
                "Failed to persist opportunity.", code="500_INTERNAL"
            ) from exc
        metrics.increment("persistence.persisted", tags=self._metrics_tags)
        logger.info(
            "opportunities.persistence.persisted",
            extra={"opportunity_id": str(opportunity.id), "url": opportunity.url, **self._metrics_tags},
        )
        return opportunity

    def update(self, opportunity: Opportunity) -> Opportunity:
        payload = opportunity.to_storage_dict()
        try:
            with self._session() as session:
                record = session.get(OpportunityRecord, opportunity.id)
                if record is None:
                    raise OpportunityNotFound(opportunity.id)
                for field, value in payload.items():
                    if field not in {"id", "created_at"}:
                        setattr(record, field, value)
                session.add(record)
                session.commit()
                session.refresh(record)
                return record.to_opportunity()
        except IntegrityError as exc:
            owner = self.find_by_url(opportunity.url)
            if owner is not None and owner.id != opportunity.id:
                metrics.increment("persistence.conflict", tags=self._metrics_tags)
                raise DuplicateOpportunityError(opportunity.url) from exc
            logger.exception(
                "opportunities.persistence.error",
                extra={"opportunity_id": str(opportunity.id), **self._metrics_tags},
            )
            raise OpportunityPersistenceError(
                "Failed to update opportunity.", code="500_INTERNAL"
            ) from exc
        except SQLAlchemyError as exc:
            logger.exception(
                "opportunities.persistence.error",
                extra={"opportunity_id": str(opportunity.id), **self._metrics_tags},
            )
            raise OpportunityPersistenceError(
                "Failed to update opportunity.", code="500_INTERNAL"
            ) from exc

    def delete(self, opportunity_id: UUID) -> bool:
        with self._guard("delete", opportunity_id=str(opportunity_id)), self._session() as session:
            record = session.get(OpportunityRecord, opportunity_id)
            if record is None:
                return False
            links = session.exec(
                select(OpportunitySearchLink).where(
                    OpportunitySearchLink.opportunity_id == opportunity_id
                )
            ).all()
            for link in links:
                session.delete(link)
            session.delete(record)
            session.commit()
            return True

    def list(
        self, filters: OpportunityListFilters, pagination: Pagination
    ) -> tuple[list[Opportunity], int]:
        conditions = self._filter_conditions(filters)
        column = SORT_COLUMNS[pagination.sort_by]
        ordering = column.asc() if pagination.sort_order == "asc" else column.desc()
        with self._guard("list"), self._session() as session:
            total = session.exec(
                select(sa.func.count()).select_from(OpportunityRecord).where(*conditions)
            ).one()
            statement = (
                select(OpportunityRecord)
                .where(*conditions)
                .order_by(ordering, OpportunityRecord.id)
                .offset(pagination.offset)
                .limit(pagination.limit)
            )
            records = session.exec(statement).all()
            return [record.to_opportunity() for record in records], int(total)

    def stats(self, today: date) -> OpportunityStats:
        def count(*conditions: Any) -> int:
            statement = select(sa.func.count()).select_from(OpportunityRecord).where(*conditions)
            return int(session.exec(statement).one())

        active = OpportunityRecord.status == OpportunityStatus.ACTIVE.value
        with self._guard("stats"), self._session() as session:
            total, unique_types, unique_countries = session.exec(
                select(
                    sa.func.count(),
                    sa.func.count(sa.distinct(OpportunityRecord.opportunity_type)),
                    sa.func.count(sa.distinct(OpportunityRecord.country)),
                ).select_from(OpportunityRecord)
            ).one()
            avg_min, avg_max = session.exec(
                select(
                    sa.func.avg(OpportunityRecord.amount_min),
                    sa.func.avg(OpportunityRecord.amount_max),
                )
            ).one()
            type_rows = session.exec(
                select(OpportunityRecord.opportunity_type, sa.func.count())
                .where(active)
                .group_by(OpportunityRecord.opportunity_type)
                .order_by(sa.func.count().desc())
            ).all()
            country_rows = session.exec(
                select(OpportunityRecord.country, sa.func.count())
                .where(active, OpportunityRecord.country.is_not(None))
                .group_by(OpportunityRecord.country)
                .order_by(sa.func.count().desc())
                .limit(COUNTRY_DISTRIBUTION_LIMIT)
            ).all()
            return OpportunityStats(
                total_opportunities=int(total),
                active_opportunities=count(active),
                expired_opportunities=count(
                    OpportunityRecord.status == OpportunityStatus.EXPIRED.value
                ),
                closed_opportunities=count(OpportunityRecord.status == OpportunityStatus.CLOSED.value),
                unique_types=int(unique_types),
                unique_countries=int(unique_countries),
                avg_min_amount=float(avg_min or 0.0),
                avg_max_amount=float(avg_max or 0.0),
                upcoming_deadlines=count(OpportunityRecord.application_deadline > today),
                type_distribution=[
                    DistributionEntry(value=value, count=int(total)) for value, total in type_rows
                ],
                country_distribution=[
                    DistributionEntry(value=value, count=int(total)) for value, total in country_rows
                ],
            )

    def create_search_run(self, run: SearchRun) -> SearchRun:
        with self._guard("create_search_run"), self._session() as session:
            session.add(SearchQueryRecord.from_search_run(run))
            session.commit()
        logger.info(
            "opportunities.persistence.search_run",
            extra={"search_id": str(run.id), "results_count": run.results_count},
        )
        return run

    def get_search_run(self, search_id: UUID) -> SearchRun | None:
        with self._guard("get_search_run"), self._session() as session:
            record = session.get(SearchQueryRecord, search_id)
            return record.to_search_run() if record else None

    def list_search_links(self, search_id: UUID) -> dict[UUID, float]:
        with self._guard("list_search_links"), self._session() as session:
            links = session.exec(
                select(OpportunitySearchLink).where(OpportunitySearchLink.search_id == search_id)
            ).all()
            return {link.opportunity_id: link.relevance_score for link in links}

    def ping(self) -> bool:
        try:
            with self._engine.connect() as connection:
                connection.execute(sa.text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.exception("opportunities.persistence.ping_failed", extra=self._metrics_tags)
            return False

    def _filter_conditions(self, filters: OpportunityListFilters) -> list[Any]:
        record = OpportunityRecord
        conditions: list[Any] = []
        if filters.type is not None:
            conditions.append(record.opportunity_type == filters.type.value)
        if filters.country:
            conditions.append(record.country == filters.country)
        if filters.region:
            conditions.append(record.region == filters.region)
        if filters.status is not None:
            conditions.append(record.status == filters.status.value)
        if filters.currency:
            conditions.append(record.currency == filters.currency)
        if filters.amount_min is not None:
            conditions.append(record.amount_min >= filters.amount_min)
        if filters.amount_max is not None:
            conditions.append(record.amount_max <= filters.amount_max)
        if filters.deadline_after is not None:
            conditions.append(record.application_deadline >= filters.deadline_after)
        if filters.deadline_before is not None:
            conditions.append(record.application_deadline <= filters.deadline_before)
        if filters.tags:
            conditions.append(self._tags_overlap(list(filters.tags)))
        if filters.search:
            conditions.append(self._full_text(filters.search))
        return conditions

    def _tags_overlap(self, tags: list[str]) -> Any:
        if self._dialect == "postgresql":
            return OpportunityRecord.tags.op("?|")(
                sa.cast(postgresql.array(tags), postgresql.ARRAY(sa.Text))
            )
        tag_values = sa.func.json_each(OpportunityRecord.tags).table_valued("value")
        return sa.exists(sa.select(1).select_from(tag_values).where(tag_values.c.value.in_(tags)))

    def _full_text(self, search: str) -> Any:
        record = OpportunityRecord
        if self._dialect == "postgresql":
            document = (
                record.title
                + " "
                + sa.func.coalesce(record.description, "")
                + " "
                + sa.func.coalesce(record.organization, "")
            )
            return sa.func.to_tsvector("english", document).bool_op("@@")(
                sa.func.plainto_tsquery("english", search)
            )
        clauses = []
        for term in search.split():
            pattern = f"%{term}%"
            clauses.append(
                sa.or_(
                    record.title.ilike(pattern),
                    record.description.ilike(pattern),
                    record.organization.ilike(pattern),
                )
            )
        return sa.and_(sa.true(), *clauses)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session

    @contextmanager
    def _guard(self, operation: str, **context: Any) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.exception(
                "opportunities.persistence.error",
                extra={"operation": operation, **context, **self._metrics_tags},
            )
            raise OpportunityPersistenceError(
                f"Failed to {operation.replace('_', ' ')}.", code="500_INTERNAL"
            ) from exc


def _build_engine(
    database_url: str, *, pool_min_size: int | None, pool_max_size: int | None
) -> Engine:
    sync_url, connect_args, drivername = coerce_sync_database_url(make_url(database_url))
    pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
    pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
    is_sqlite = drivername.startswith("sqlite")
    engine_kwargs: dict[str, Any] = {
        "echo": settings.debug,
        "connect_args": connect_args,
        "pool_pre_ping": not is_sqlite,
    }
    if not is_sqlite:
        engine_kwargs["pool_size"] = pool_min
        engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)
    return create_engine(sync_url, **engine_kwargs)


def coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+aiosqlite"):
        drivername = drivername.replace("+aiosqlite", "")
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = query.pop("ssl", None) is not None
    sync_url = sync_url.set(query=query)

    if drivername.startswith("postgresql") and "sslmode" not in query and removed_ssl:
        connect_args["sslmode"] = "require"
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def _resolve_metrics_tag(dialect: str) -> str:
    if dialect == "sqlite":
        return "sqlite"
    return "postgres" if dialect == "postgresql" else dialect


def build_opportunity_repository(database_url: str | None = None) -> OpportunityRepository:
    """Instantiate a repository using DATABASE_URL when available."""
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        logger.info("opportunities.repository.initialized", extra={"backend": "memory"})
        return InMemoryOpportunityRepository()
    try:
        repository = SqlOpportunityRepository(
            resolved_url,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
            auto_create_schema=settings.db_auto_create_schema,
        )
        logger.info("opportunities.repository.initialized", extra={"backend": "database"})
        return repository
    except SQLAlchemyError:
        logger.exception("opportunities.repository.init_failed", extra={"backend": "database"})
        raise
