"""Search provider adapter that turns queries + filters into raw Exa hits."""

from __future__ import annotations

import calendar
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Final, Protocol

from app.clients.exa import ExaClient, ExaError
from app.config import Settings
from app.models.opportunity import OpportunityType, RawHit, SearchFilters
from app.observability.metrics import metrics
from app.services.opportunities.errors import ProviderUnavailable
from app.services.opportunities.extraction import country_override

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

TYPE_QUERY_KEYWORDS: Final[Mapping[OpportunityType, str]] = {
    OpportunityType.SCHOLARSHIP: "scholarship financial aid tuition",
    OpportunityType.FELLOWSHIP: "fellowship research program",
    OpportunityType.GRANT: "grant funding research",
    OpportunityType.ACCELERATOR: "accelerator startup incubator",
    OpportunityType.INTERNSHIP: "internship training program",
    OpportunityType.COMPETITION: "competition contest challenge",
    OpportunityType.AWARD: "award recognition prize",
}

RELEVANT_DOMAINS: Final[tuple[str, ...]] = (
    "scholarships.com",
    "fastweb.com",
    "unigo.com",
    "collegeboard.org",
    "studentaid.gov",
    "foundationcenter.org",
    "grantspace.org",
    "grants.gov",
    "ycombinator.com",
    "techstars.com",
    "500.co",
    "university.edu",
    "foundation.org",
    "institute.org",
    "association.org",
    "government.gov",
    "nonprofit.org",
)

EXCLUDED_DOMAINS: Final[tuple[str, ...]] = (
    "facebook.com",
    "twitter.com",
    "linkedin.com",
    "instagram.com",
    "youtube.com",
    "tiktok.com",
    "reddit.com",
    "wikipedia.org",
    "google.com",
    "bing.com",
    "yahoo.com",
)


@dataclass(frozen=True)
class SearchProviderConfig:
    """Everything the Exa-backed provider needs; built once and passed in explicitly."""

    api_key: str
    base_url: str = "https://api.exa.ai"
    timeout_seconds: float = 30.0
    num_results: int = 50
    lookback_months: int = 6
    use_autoprompt: bool = True
    include_domains: tuple[str, ...] = RELEVANT_DOMAINS
    exclude_domains: tuple[str, ...] = EXCLUDED_DOMAINS

    @classmethod
    def from_settings(cls, source: Settings) -> SearchProviderConfig:
        if not source.exa_api_key:
            raise ValueError("EXA_API_KEY is required to search for opportunities.")
        return cls(
            api_key=source.exa_api_key,
            base_url=source.exa_base_url,
            timeout_seconds=source.exa_timeout_seconds,
            num_results=source.exa_num_results,
            lookback_months=source.search_lookback_months,
            use_autoprompt=source.exa_use_autoprompt,
        )


class SearchProvider(Protocol):
    """Contract for anything that can supply raw hits for a query."""

    def search(self, query: str, filters: SearchFilters | None = None) -> list[RawHit]:
        ...

    def get_content(self, url: str) -> RawHit | None:
        ...


def _format_amount(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


def build_search_query(query: str, filters: SearchFilters | None = None) -> str:
    """Append filter hints to the free-text query.

    Order is query, type keywords, country, amount, deadline year, tags; the
    upstream ranking depends on it.
    """
    parts = [query]
    if filters is None:
        return " ".join(parts).strip()

    if filters.type is not None and filters.type in TYPE_QUERY_KEYWORDS:
        parts.append(TYPE_QUERY_KEYWORDS[filters.type])

    country = country_override(filters.country)
    if country:
        parts.append(country)

    if filters.amount_min and filters.amount_max:
        parts.append(f"${_format_amount(filters.amount_min)} to ${_format_amount(filters.amount_max)}")
    elif filters.amount_min:
        parts.append(f"minimum ${_format_amount(filters.amount_min)}")
    elif filters.amount_max:
        parts.append(f"maximum ${_format_amount(filters.amount_max)}")

    if filters.deadline_after is not None:
        parts.append(str(filters.deadline_after.year))

    if filters.tags:
        parts.append(" ".join(filters.tags))

    return " ".join(parts).strip()


def months_before(moment: date, months: int) -> date:
    """Shift a date back by calendar months, clamping to the month's last day."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month_zero = divmod(month_index, 12)
    last_day = calendar.monthrange(year, month_zero + 1)[1]
    return date(year, month_zero + 1, min(moment.day, last_day))


def crawl_date_range(now: datetime, lookback_months: int) -> tuple[str, str]:
    today = now.date()
    return months_before(today, lookback_months).isoformat(), today.isoformat()


class ExaSearchProvider:
    """SearchProvider backed by the Exa neural search API."""

    def __init__(
        self,
        config: SearchProviderConfig,
        *,
        client: ExaClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or ExaClient(
            config.api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
        )
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def search(self, query: str, filters: SearchFilters | None = None) -> list[RawHit]:
        """Return raw hits for the query; an empty list when Exa finds nothing.

        Raises ProviderUnavailable when the upstream call errors or times out.
        """
        search_query = build_search_query(query, filters)
        start_date, end_date = crawl_date_range(self._clock(), self._config.lookback_months)
        logger.info(
            "exa.search.started",
            extra={"query": search_query[:200], "start_crawl_date": start_date},
        )
        started = time.perf_counter()
        try:
            results = self._client.search(
                query=search_query,
                num_results=self._config.num_results,
                include_domains=self._config.include_domains,
                exclude_domains=self._config.exclude_domains,
                start_crawl_date=start_date,
                end_crawl_date=end_date,
                use_autoprompt=self._config.use_autoprompt,
            )
        except ExaError as exc:
            metrics.increment("provider.failure", tags={"provider": "exa", "code": exc.code})
            logger.error(
                "exa.search.failed",
                extra={"query": search_query[:200], "code": exc.code, "error": str(exc)},
            )
            raise ProviderUnavailable(f"Exa search failed: {exc}") from exc
        finally:
            metrics.timing(
                "provider.latency_ms",
                (time.perf_counter() - started) * 1000,
                tags={"provider": "exa"},
            )

        if not results:
            logger.warning("exa.search.empty", extra={"query": search_query[:200]})
            return []

        metrics.increment("provider.results", len(results), tags={"provider": "exa"})
        logger.info("exa.search.completed", extra={"results": len(results)})
        return [RawHit.from_exa(result) for result in results]

    def get_content(self, url: str) -> RawHit | None:
        """Fetch text and HTML for one URL; None when Exa has nothing for it."""
        try:
            results = self._client.get_contents([url])
        except ExaError as exc:
            logger.error("exa.contents.failed", extra={"url": url, "code": exc.code})
            raise ProviderUnavailable(f"Failed to fetch content: {exc}") from exc
        if not results:
            logger.warning("exa.contents.empty", extra={"url": url})
            return None
        return RawHit.from_exa(results[0])

    def ping(self) -> bool:
        """Return True when a one-result search succeeds."""
        try:
            self._client.search(query="test", num_results=1)
        except ExaError as exc:
            logger.error("exa.ping.failed", extra={"code": exc.code})
            return False
        return True

    def __enter__(self) -> "ExaSearchProvider":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
