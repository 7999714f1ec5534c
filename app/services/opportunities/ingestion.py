"""Search, extract, validate and deduplicate opportunities into the store."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from app.models.opportunity import (
    ExtractedFields,
    IngestionSummary,
    Opportunity,
    OpportunityStatus,
    RawHit,
    SearchFilters,
    SearchRun,
)
from app.observability.metrics import metrics
from app.services.opportunities.errors import (
    DuplicateOpportunityError,
    ExtractionError,
    OpportunityPersistenceError,
)
from app.services.opportunities.extraction import country_override, extract_fields
from app.services.opportunities.repositories import OpportunityRepository
from app.services.opportunities.search_provider import SearchProvider

logger = logging.getLogger(__name__)

DEFAULT_RELEVANCE_SCORE = 0.8
DEFAULT_CURRENCY = "USD"

Clock = Callable[[], datetime]


def extract_hit(hit: RawHit, filters: SearchFilters) -> ExtractedFields:
    """Run extraction for one hit, skipping country detection when the filters pin it."""
    try:
        return extract_fields(hit, resolve_country=country_override(filters.country) is None)
    except Exception as exc:
        raise ExtractionError(f"Failed to extract fields from {hit.url or '<no url>'}: {exc}") from exc


def build_candidate(
    hit: RawHit,
    fields: ExtractedFields,
    filters: SearchFilters,
    *,
    now: datetime,
) -> Opportunity:
    """Assemble and validate a candidate record.

    Precedence is fixed: extracted fields first, then filter overrides (country),
    then defaults (status, currency). Raises pydantic.ValidationError when the
    result breaks a record invariant.
    """
    payload: dict[str, Any] = {
        "title": hit.title,
        "description": hit.text,
        "url": hit.url,
        "source_domain": fields.source_domain,
        "raw_content": hit.html or "",
        "extracted_data": fields.extracted_data,
        "opportunity_type": fields.opportunity_type,
        "country": fields.country,
        "application_deadline": fields.application_deadline,
        "amount_min": fields.amount_min,
        "amount_max": fields.amount_max,
        "tags": fields.tags,
        "organization": fields.organization,
        "eligibility_criteria": fields.eligibility_criteria,
    }

    override = country_override(filters.country)
    if override:
        payload["country"] = override

    payload["status"] = OpportunityStatus.ACTIVE
    payload.setdefault("currency", DEFAULT_CURRENCY)
    payload["created_at"] = payload["updated_at"] = payload["last_crawled_at"] = now
    return Opportunity.model_validate(payload)


@dataclass
class _RunCounters:
    new: int = 0
    duplicates: int = 0
    errors: int = 0


class OpportunityIngestor:
    """Runs one search and folds every hit into the store at most once per URL."""

    def __init__(
        self,
        *,
        provider: SearchProvider,
        repository: OpportunityRepository,
        relevance_score: float = DEFAULT_RELEVANCE_SCORE,
        clock: Clock | None = None,
    ) -> None:
        self._provider = provider
        self._repository = repository
        self._relevance_score = relevance_score
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def ingest(self, query: str, filters: SearchFilters | None = None) -> IngestionSummary:
        """Search, extract and persist novel opportunities.

        Provider failures propagate as ProviderUnavailable. Once the provider has
        answered, per-hit failures only show up in the returned counters.
        """
        resolved_filters = filters or SearchFilters()
        logger.info(
            "opportunities.ingest.started",
            extra={"query": query[:200], "filters": resolved_filters.model_dump(mode="json")},
        )
        started = time.perf_counter()
        hits = self._provider.search(query, resolved_filters)

        if not hits:
            logger.info("opportunities.ingest.empty", extra={"query": query[:200]})
            return IngestionSummary(search_id=uuid4())

        run = self._repository.create_search_run(
            SearchRun(
                query_text=query,
                filters=resolved_filters.model_dump(mode="json", exclude_none=True),
                results_count=len(hits),
                created_at=self._clock(),
            )
        )

        counters = _RunCounters()
        for hit in hits:
            self._ingest_hit(hit, resolved_filters, run, counters)

        summary = IngestionSummary(
            search_id=run.id,
            total_found=len(hits),
            new_opportunities=counters.new,
            duplicates=counters.duplicates,
            errors=counters.errors,
        )
        metrics.timing("ingest.latency_ms", (time.perf_counter() - started) * 1000)
        logger.info(
            "opportunities.ingest.completed",
            extra={
                "search_id": str(run.id),
                "total_found": summary.total_found,
                "new_opportunities": summary.new_opportunities,
                "duplicates": summary.duplicates,
                "errors": summary.errors,
            },
        )
        return summary

    def _ingest_hit(
        self,
        hit: RawHit,
        filters: SearchFilters,
        run: SearchRun,
        counters: _RunCounters,
    ) -> None:
        try:
            fields = extract_hit(hit, filters)
            candidate = build_candidate(hit, fields, filters, now=self._clock())
        except ExtractionError as exc:
            self._record_error(counters, "extraction", hit, str(exc))
            return
        except ValidationError as exc:
            reasons = "; ".join(error["msg"] for error in exc.errors())
            self._record_error(counters, "validation", hit, reasons)
            return

        try:
            if self._repository.find_by_url(candidate.url) is not None:
                self._record_duplicate(counters, candidate.url)
                return
            self._repository.insert(
                candidate,
                search_id=run.id,
                relevance_score=self._relevance_score,
            )
        except DuplicateOpportunityError:
            self._record_duplicate(counters, candidate.url)
            return
        except OpportunityPersistenceError as exc:
            self._record_error(counters, "persistence", hit, str(exc))
            return

        counters.new += 1
        metrics.increment("ingest.new")

    def _record_duplicate(self, counters: _RunCounters, url: str) -> None:
        counters.duplicates += 1
        metrics.increment("ingest.duplicate")
        logger.debug("opportunities.ingest.duplicate", extra={"url": url})

    def _record_error(self, counters: _RunCounters, stage: str, hit: RawHit, reason: str) -> None:
        counters.errors += 1
        metrics.increment("ingest.error", tags={"stage": stage})
        logger.warning(
            "opportunities.ingest.rejected",
            extra={"stage": stage, "url": hit.url, "reason": reason[:500]},
        )
