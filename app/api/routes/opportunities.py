"""API endpoints for searching, browsing and curating funding opportunities."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, ValidationError

from app.models.opportunity import (
    OpportunityListFilters,
    OpportunityStatus,
    OpportunityType,
    OpportunityUpdate,
    Pagination,
    SearchFilters,
    SortField,
    SortOrder,
)
from app.services.opportunities.errors import OpportunityError
from app.services.opportunities.factory import get_ingestor, get_query_service
from app.services.opportunities.ingestion import OpportunityIngestor
from app.services.opportunities.query import OpportunityQueryService

router = APIRouter()
logger = logging.getLogger(__name__)


class SearchOpportunitiesRequest(BaseModel):
    """Request payload for one ingestion run."""

    query: str = Field(min_length=3, max_length=500)
    filters: SearchFilters = Field(default_factory=SearchFilters)


class StatusUpdateRequest(BaseModel):
    status: str


def resolve_ingestor() -> OpportunityIngestor:
    try:
        return get_ingestor()
    except ValueError as exc:
        logger.error("opportunities.api.provider_not_configured", extra={"error": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Search provider is not configured.",
        ) from exc


@router.post("/opportunities/search-opportunities")
def search_opportunities(
    payload: SearchOpportunitiesRequest,
    ingestor: OpportunityIngestor = Depends(resolve_ingestor),
) -> dict[str, Any]:
    """Run one search and ingest every novel result."""
    try:
        summary = ingestor.ingest(payload.query, payload.filters)
    except OpportunityError as exc:
        _log_api_error("search", exc)
        raise HTTPException(status_code=_map_error_code(exc.code), detail=str(exc)) from exc
    return {
        "success": True,
        "message": (
            f"Found {summary.total_found} opportunities, "
            f"{summary.new_opportunities} new, {summary.duplicates} duplicates"
        ),
        "data": summary.model_dump(mode="json", by_alias=True),
    }


@router.get("/opportunities")
def list_opportunities(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: SortField = Query("created_at"),
    sort_order: SortOrder = Query("desc"),
    type: OpportunityType | None = Query(None),  # noqa: A002
    country: str | None = Query(None, max_length=100),
    region: str | None = Query(None, max_length=100),
    status_filter: OpportunityStatus | None = Query(None, alias="status"),
    amount_min: float | None = Query(None, ge=0),
    amount_max: float | None = Query(None, ge=0),
    currency: str | None = Query(None, pattern=r"^[A-Z]{3}$"),
    deadline_after: date | None = Query(None),
    deadline_before: date | None = Query(None),
    tags: list[str] | None = Query(None),
    search: str | None = Query(None, max_length=200),
    service: OpportunityQueryService = Depends(get_query_service),
) -> dict[str, Any]:
    """List stored opportunities with filtering, sorting and pagination."""
    try:
        filters = OpportunityListFilters(
            type=type,
            country=country,
            region=region,
            status=status_filter,
            amount_min=amount_min,
            amount_max=amount_max,
            currency=currency,
            deadline_after=deadline_after,
            deadline_before=deadline_before,
            tags=tags or [],
            search=search,
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="; ".join(error["msg"] for error in exc.errors()),
        ) from exc
    pagination = Pagination(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)
    result = _call(lambda: service.list(filters, pagination), "list")
    return {"success": True, "data": result.model_dump(mode="json")}


@router.get("/opportunities/stats/summary")
def opportunity_stats(
    service: OpportunityQueryService = Depends(get_query_service),
) -> dict[str, Any]:
    stats = _call(service.stats, "stats")
    return {"success": True, "data": stats.model_dump(mode="json")}


@router.get("/opportunities/{opportunity_id}")
def get_opportunity(
    opportunity_id: UUID,
    service: OpportunityQueryService = Depends(get_query_service),
) -> dict[str, Any]:
    opportunity = _call(lambda: service.get_by_id(opportunity_id), "get")
    return {"success": True, "data": opportunity.model_dump(mode="json")}


@router.patch("/opportunities/{opportunity_id}/status")
def update_opportunity_status(
    opportunity_id: UUID,
    payload: StatusUpdateRequest,
    service: OpportunityQueryService = Depends(get_query_service),
) -> dict[str, Any]:
    updated = _call(lambda: service.update_status(opportunity_id, payload.status), "update_status")
    return {
        "success": True,
        "message": "Opportunity status updated successfully",
        "data": updated.model_dump(mode="json"),
    }


@router.patch("/opportunities/{opportunity_id}")
def update_opportunity(
    opportunity_id: UUID,
    payload: OpportunityUpdate,
    service: OpportunityQueryService = Depends(get_query_service),
) -> dict[str, Any]:
    updated = _call(lambda: service.update_fields(opportunity_id, payload), "update")
    return {
        "success": True,
        "message": "Opportunity updated successfully",
        "data": updated.model_dump(mode="json"),
    }


@router.delete("/opportunities/{opportunity_id}")
def delete_opportunity(
    opportunity_id: UUID,
    service: OpportunityQueryService = Depends(get_query_service),
) -> dict[str, Any]:
    deleted = _call(lambda: service.delete(opportunity_id), "delete")
    return {
        "success": True,
        "message": "Opportunity deleted successfully" if deleted else "Opportunity not found",
        "data": {"deleted": deleted},
    }


def _call(operation, name: str):
    try:
        return operation()
    except OpportunityError as exc:
        _log_api_error(name, exc)
        raise HTTPException(status_code=_map_error_code(exc.code), detail=str(exc)) from exc


def _log_api_error(operation: str, exc: OpportunityError) -> None:
    logger.error(
        "opportunities.api_error",
        extra={"operation": operation, "code": exc.code, "error": str(exc)},
    )


def _map_error_code(code: str) -> int:
    if code == "404_NOT_FOUND":
        return status.HTTP_404_NOT_FOUND
    if code == "409_DUPLICATE_URL":
        return status.HTTP_409_CONFLICT
    if code == "422_INVALID_OPPORTUNITY":
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if code == "502_PROVIDER_UNAVAILABLE":
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR
