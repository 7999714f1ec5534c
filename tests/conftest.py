import asyncio
import os

import httpx
import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("ALLOWED_HOSTS", '["*"]')
os.environ.setdefault("METRICS_BACKEND", "stdout")

from app.api.routes.opportunities import resolve_ingestor  # noqa: E402
from app.main import app  # noqa: E402
from app.services.opportunities.factory import (  # noqa: E402
    get_opportunity_repository,
    get_query_service,
)
from app.services.opportunities.ingestion import OpportunityIngestor  # noqa: E402
from app.services.opportunities.query import OpportunityQueryService  # noqa: E402
from app.services.opportunities.repositories import InMemoryOpportunityRepository  # noqa: E402
from tests.helpers.search_stub import StubSearchProvider  # noqa: E402


class _SyncASGIClient:
    """Minimal synchronous wrapper around httpx.AsyncClient for ASGI apps."""

    def __init__(self, app):
        transport = httpx.ASGITransport(app=app)
        self._client = httpx.AsyncClient(transport=transport, base_url="http://testserver")

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._client.request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)

    def close(self) -> None:
        asyncio.run(self._client.aclose())


@pytest.fixture
def repository():
    return InMemoryOpportunityRepository()


@pytest.fixture
def search_provider():
    return StubSearchProvider()


@pytest.fixture
def client(repository, search_provider):
    """Test client wired to an in-memory store and a scripted search provider."""
    app.dependency_overrides[get_opportunity_repository] = lambda: repository
    app.dependency_overrides[get_query_service] = lambda: OpportunityQueryService(repository)
    app.dependency_overrides[resolve_ingestor] = lambda: OpportunityIngestor(
        provider=search_provider, repository=repository
    )
    try:
        try:
            test_client = TestClient(app)
        except TypeError:
            fallback_client = _SyncASGIClient(app)
            try:
                yield fallback_client
            finally:
                fallback_client.close()
        else:
            yield test_client
    finally:
        app.dependency_overrides.clear()
