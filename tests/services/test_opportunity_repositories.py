from __future__ import annotations

from datetime import date
from uuid import uuid4

import pytest
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from app.models.opportunity import (
    OpportunityListFilters,
    OpportunityStatus,
    OpportunityType,
    Pagination,
    SearchRun,
)
from app.services.opportunities import repositories as repositories_module
from app.services.opportunities.errors import (
    DuplicateOpportunityError,
    OpportunityNotFound,
    OpportunityPersistenceError,
)
from app.services.opportunities.repositories import (
    InMemoryOpportunityRepository,
    SqlOpportunityRepository,
    build_opportunity_repository,
    coerce_sync_database_url,
)
from tests.helpers.search_stub import make_opportunity


def _sqlite_repository() -> SqlOpportunityRepository:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return SqlOpportunityRepository(engine=engine, auto_create_schema=True)


@pytest.fixture(params=["memory", "sqlite"])
def repository(request):
    if request.param == "memory":
        yield InMemoryOpportunityRepository()
        return
    repo = _sqlite_repository()
    yield repo
    repo.dispose()


@pytest.fixture
def seeded(repository):
    scholarship = make_opportunity(
        title="Women in STEM Scholarship",
        description="For engineering students",
        url="https://scholarships.com/women-stem",
        opportunity_type=OpportunityType.SCHOLARSHIP,
        country="United States",
        amount_min=1000,
        amount_max=5000,
        application_deadline=date(2030, 1, 1),
        tags=["scholarship", "women"],
    )
    grant = make_opportunity(
        title="Kenya Research Grant",
        description="Funding for field research",
        url="https://grants.example.org/kenya",
        opportunity_type=OpportunityType.GRANT,
        country="Kenya",
        amount_min=10_000,
        amount_max=20_000,
        application_deadline=date(2024, 1, 1),
        tags=["grant", "research"],
        status=OpportunityStatus.EXPIRED,
    )
    fellowship = make_opportunity(
        title="Global Research Fellowship",
        url="https://fellowships.example.org/global",
        opportunity_type=OpportunityType.FELLOWSHIP,
        country="United States",
        organization="Research Institute",
        tags=["fellowship", "research"],
    )
    for item in (scholarship, grant, fellowship):
        repository.insert(item)
    return {"scholarship": scholarship, "grant": grant, "fellowship": fellowship}


def _titles(repository, pagination=None, **filters) -> list[str]:
    records, _ = repository.list(
        OpportunityListFilters(**filters), pagination or Pagination(sort_by="title", sort_order="asc")
    )
    return [record.title for record in records]


def test_url_is_unique(repository, seeded):
    clone = make_opportunity(url=seeded["grant"].url, title="Another title")
    with pytest.raises(DuplicateOpportunityError):
        repository.insert(clone)
    assert repository.find_by_url(seeded["grant"].url).title == "Kenya Research Grant"
    assert repository.find_by_url("https://missing.example.org") is None


def test_get_round_trips_fields(repository, seeded):
    stored = repository.get(seeded["scholarship"].id)
    assert stored is not None
    assert stored.tags == ["scholarship", "women"]
    assert stored.application_deadline == date(2030, 1, 1)
    assert stored.amount_max == 5000
    assert stored.created_at.tzinfo is not None
    assert repository.get(uuid4()) is None


def test_list_filters(repository, seeded):
    assert _titles(repository, type=OpportunityType.GRANT) == ["Kenya Research Grant"]
    assert _titles(repository, country="United States") == [
        "Global Research Fellowship",
        "Women in STEM Scholarship",
    ]
    assert _titles(repository, status=OpportunityStatus.EXPIRED) == ["Kenya Research Grant"]
    assert _titles(repository, amount_min=5000) == ["Kenya Research Grant"]
    assert _titles(repository, amount_max=5000) == ["Women in STEM Scholarship"]
    assert _titles(repository, deadline_after=date(2025, 1, 1)) == ["Women in STEM Scholarship"]
    assert _titles(repository, deadline_before=date(2025, 1, 1)) == ["Kenya Research Grant"]


def test_tag_filter_matches_any_tag(repository, seeded):
    assert _titles(repository, tags=["women", "grant"]) == [
        "Kenya Research Grant",
        "Women in STEM Scholarship",
    ]
    assert _titles(repository, tags=["nonexistent"]) == []


def test_search_requires_every_term(repository, seeded):
    assert _titles(repository, search="stem engineering") == ["Women in STEM Scholarship"]
    assert _titles(repository, search="research") == [
        "Global Research Fellowship",
        "Kenya Research Grant",
    ]


def test_pagination_and_sorting(repository, seeded):
    records, total = repository.list(
        OpportunityListFilters(), Pagination(page=2, limit=2, sort_by="title", sort_order="asc")
    )
    assert total == 3
    assert [record.title for record in records] == ["Women in STEM Scholarship"]

    records, _ = repository.list(
        OpportunityListFilters(country="United States", amount_min=0),
        Pagination(sort_by="amount_min", sort_order="desc"),
    )
    assert [record.title for record in records] == ["Women in STEM Scholarship"]


def test_stats(repository, seeded):
    stats = repository.stats(date(2025, 6, 1))

    assert stats.total_opportunities == 3
    assert stats.active_opportunities == 2
    assert stats.expired_opportunities == 1
    assert stats.closed_opportunities == 0
    assert stats.unique_types == 3
    assert stats.unique_countries == 2
    assert stats.avg_min_amount == pytest.approx(5500)
    assert stats.avg_max_amount == pytest.approx(12_500)
    assert stats.upcoming_deadlines == 1
    assert {(entry.value, entry.count) for entry in stats.type_distribution} == {
        ("scholarship", 1),
        ("fellowship", 1),
    }
    assert [(entry.value, entry.count) for entry in stats.country_distribution] == [
        ("United States", 2)
    ]


def test_update_and_delete(repository, seeded):
    grant = seeded["grant"]
    updated = repository.update(grant.model_copy(update={"status": OpportunityStatus.CLOSED}))
    assert updated.status == OpportunityStatus.CLOSED
    assert repository.get(grant.id).status == OpportunityStatus.CLOSED

    with pytest.raises(OpportunityNotFound):
        repository.update(make_opportunity(url="https://unknown.example.org"))

    assert repository.delete(grant.id) is True
    assert repository.delete(grant.id) is False
    assert repository.find_by_url(grant.url) is None


def test_sql_update_separates_url_conflicts_from_other_constraint_failures():
    repository = _sqlite_repository()
    try:
        stored = repository.insert(make_opportunity(amount_min=100, amount_max=200))
        other = repository.insert(make_opportunity(url="https://other.example.org/grant"))

        with pytest.raises(OpportunityPersistenceError):
            repository.update(stored.model_copy(update={"amount_min": 500}))
        assert repository.get(stored.id).amount_min == 100

        with pytest.raises(DuplicateOpportunityError):
            repository.update(other.model_copy(update={"url": stored.url}))
        assert repository.get(other.id).url == "https://other.example.org/grant"
    finally:
        repository.dispose()


def test_search_runs_and_links(repository):
    run = repository.create_search_run(SearchRun(query_text="stem", filters={"tags": ["stem"]}))
    opportunity = make_opportunity()
    repository.insert(opportunity, search_id=run.id, relevance_score=0.8)

    fetched = repository.get_search_run(run.id)
    assert fetched is not None
    assert fetched.query_text == "stem"
    assert fetched.filters == {"tags": ["stem"]}
    assert repository.list_search_links(run.id) == {opportunity.id: 0.8}
    assert repository.get_search_run(uuid4()) is None
    assert repository.ping() is True


def test_build_repository_defaults_to_memory(monkeypatch):
    monkeypatch.setattr(repositories_module.settings, "database_url", None)
    assert isinstance(build_opportunity_repository(), InMemoryOpportunityRepository)
    assert isinstance(build_opportunity_repository("sqlite://"), SqlOpportunityRepository)


def test_async_urls_are_coerced_to_sync_drivers():
    url, connect_args, driver = coerce_sync_database_url(
        make_url("postgresql+asyncpg://user:pw@db.example.org/app?ssl=require")
    )
    assert driver == "postgresql+psycopg2"
    assert url == "postgresql+psycopg2://user:pw@db.example.org/app"
    assert connect_args == {"sslmode": "require"}

    _, connect_args, driver = coerce_sync_database_url(make_url("sqlite+aiosqlite:///./dev.db"))
    assert driver == "sqlite"
    assert connect_args == {"check_same_thread": False}
