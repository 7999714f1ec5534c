"""Command-line entry point that runs one opportunity ingestion."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from datetime import date

from pydantic import ValidationError

from app.config import Settings, settings
from app.models.opportunity import IngestionSummary, OpportunityType, SearchFilters
from app.services.opportunities.errors import OpportunityPersistenceError, ProviderUnavailable
from app.services.opportunities.ingestion import OpportunityIngestor
from app.services.opportunities.repositories import build_opportunity_repository
from app.services.opportunities.search_provider import ExaSearchProvider, SearchProviderConfig

logger = logging.getLogger("pipelines.opportunity_search")


def build_provider(source: Settings = settings) -> ExaSearchProvider:
    """Construct the Exa provider; raises ValueError when EXA_API_KEY is missing."""
    return ExaSearchProvider(SearchProviderConfig.from_settings(source))


def run_search(
    query: str,
    filters: SearchFilters,
    *,
    provider: ExaSearchProvider,
    database_url: str | None = None,
) -> IngestionSummary:
    ingestor = OpportunityIngestor(
        provider=provider,
        repository=build_opportunity_repository(database_url),
        relevance_score=settings.default_relevance_score,
    )
    return ingestor.ingest(query, filters)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """CLI argument parsing."""
    parser = argparse.ArgumentParser(description="Search Exa for funding opportunities and store new ones.")
    parser.add_argument("query", nargs="?", default="", help="Free-text search query.")
    parser.add_argument(
        "--type",
        dest="opportunity_type",
        choices=[item.value for item in OpportunityType],
        help="Restrict results to one opportunity type.",
    )
    parser.add_argument("--country", help="Pin every stored record to this country.")
    parser.add_argument("--amount-min", type=float, help="Minimum award amount.")
    parser.add_argument("--amount-max", type=float, help="Maximum award amount.")
    parser.add_argument(
        "--deadline-after",
        type=date.fromisoformat,
        help="Only deadlines after this date (YYYY-MM-DD).",
    )
    parser.add_argument(
        "--tag",
        dest="tags",
        action="append",
        default=[],
        help="Tag hint appended to the query; repeatable.",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only verify that the search provider is reachable.",
    )
    return parser.parse_args(argv)


def _filters_from_args(args: argparse.Namespace) -> SearchFilters:
    return SearchFilters(
        type=args.opportunity_type,
        country=args.country,
        amount_min=args.amount_min,
        amount_max=args.amount_max,
        deadline_after=args.deadline_after,
        tags=args.tags,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint for opportunity ingestion."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        provider = build_provider()
    except ValueError as exc:
        logger.error("Search provider is not configured: %s", exc)
        return 1

    with provider:
        if args.check:
            reachable = provider.ping()
            print(json.dumps({"provider": "exa", "reachable": reachable}))
            return 0 if reachable else 1

        if len(args.query.strip()) < 3:
            logger.error("Query must be at least 3 characters.")
            return 1
        try:
            filters = _filters_from_args(args)
        except ValidationError as exc:
            logger.error("Invalid filters: %s", exc)
            return 1

        try:
            summary = run_search(args.query, filters, provider=provider)
        except ProviderUnavailable as exc:
            logger.error("Opportunity search failed: %s (code=%s)", exc, exc.code)
            return 1
        except OpportunityPersistenceError as exc:
            logger.error("Opportunity store unavailable: %s (code=%s)", exc, exc.code)
            return 1

    print(json.dumps(summary.model_dump(mode="json", by_alias=True), indent=2))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
