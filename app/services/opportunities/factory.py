"""Process-wide accessors wiring settings into the opportunity services."""

from __future__ import annotations

from threading import Lock

from app.config import settings
from app.services.opportunities.ingestion import OpportunityIngestor
from app.services.opportunities.query import OpportunityQueryService
from app.services.opportunities.repositories import (
    OpportunityRepository,
    build_opportunity_repository,
)
from app.services.opportunities.search_provider import ExaSearchProvider, SearchProviderConfig

_REPOSITORY: OpportunityRepository | None = None
_INGESTOR: OpportunityIngestor | None = None
_LOCK = Lock()


def get_opportunity_repository() -> OpportunityRepository:
    """Singleton store shared by the API routes."""
    global _REPOSITORY  # noqa: PLW0603
    with _LOCK:
        if _REPOSITORY is None:
            _REPOSITORY = build_opportunity_repository()
        return _REPOSITORY


def get_query_service() -> OpportunityQueryService:
    return OpportunityQueryService(get_opportunity_repository())


def get_ingestor() -> OpportunityIngestor:
    """Singleton ingestor; raises ValueError when the search provider is not configured."""
    global _INGESTOR  # noqa: PLW0603
    repository = get_opportunity_repository()
    with _LOCK:
        if _INGESTOR is None:
            provider = ExaSearchProvider(SearchProviderConfig.from_settings(settings))
            _INGESTOR = OpportunityIngestor(
                provider=provider,
                repository=repository,
                relevance_score=settings.default_relevance_score,
            )
        return _INGESTOR


def reset_services() -> None:
    """Drop cached singletons (used on shutdown and by tests)."""
    global _REPOSITORY, _INGESTOR  # noqa: PLW0603
    with _LOCK:
        _REPOSITORY = None
        _INGESTOR = None
