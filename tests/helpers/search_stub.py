from __future__ import annotations

from app.models.opportunity import Opportunity, OpportunityType, RawHit, SearchFilters
from app.services.opportunities.errors import ProviderUnavailable


class StubSearchProvider:
    """Scripted SearchProvider that records every query it receives."""

    def __init__(self, hits: list[RawHit] | None = None, *, error: Exception | None = None) -> None:
        self.hits = list(hits or [])
        self.error = error
        self.calls: list[tuple[str, SearchFilters | None]] = []

    def search(self, query: str, filters: SearchFilters | None = None) -> list[RawHit]:
        self.calls.append((query, filters))
        if self.error is not None:
            raise self.error
        return list(self.hits)

    def get_content(self, url: str) -> RawHit | None:
        return next((hit for hit in self.hits if hit.url == url), None)


class FailingSearchProvider(StubSearchProvider):
    def __init__(self) -> None:
        super().__init__(error=ProviderUnavailable("Exa search failed: upstream 500"))


def make_hit(
    url: str = "https://grants.example.org/women-in-stem",
    *,
    title: str = "Women in STEM Scholarship",
    text: str = "Scholarship for women in engineering. Award of $5,000. Deadline: 12/31/2030.",
    html: str | None = None,
) -> RawHit:
    return RawHit(title=title, text=text, url=url, html=html)


def make_opportunity(**overrides) -> Opportunity:
    payload = {
        "title": "Global Research Fellowship",
        "url": "https://fellowships.example.org/research",
        "opportunity_type": OpportunityType.FELLOWSHIP,
        "country": "Global",
        "tags": ["fellowship", "research"],
    }
    payload.update(overrides)
    return Opportunity(**payload)
