"""Read, update and delete access over persisted opportunities."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

from pydantic import ValidationError

from app.models.opportunity import (
    Opportunity,
    OpportunityListFilters,
    OpportunityPage,
    OpportunityResponse,
    OpportunityStats,
    OpportunityStatus,
    OpportunityUpdate,
    PageInfo,
    Pagination,
)
from app.services.opportunities.errors import OpportunityNotFound, OpportunityValidationError
from app.services.opportunities.repositories import OpportunityRepository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class OpportunityQueryService:
    """Filtered listing, lookups and lifecycle changes for stored opportunities."""

    def __init__(self, repository: OpportunityRepository, *, clock: Clock | None = None) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def list(
        self,
        filters: OpportunityListFilters | None = None,
        pagination: Pagination | None = None,
    ) -> OpportunityPage:
        resolved_filters = filters or OpportunityListFilters()
        resolved_page = pagination or Pagination()
        records, total = self._repository.list(resolved_filters, resolved_page)
        now = self._clock()
        return OpportunityPage(
            opportunities=[record.to_api_response(now) for record in records],
            pagination=PageInfo(
                page=resolved_page.page,
                limit=resolved_page.limit,
                total=total,
                pages=math.ceil(total / resolved_page.limit),
            ),
        )

    def get_by_id(self, opportunity_id: UUID) -> OpportunityResponse:
        """Return the wire form of one opportunity; raises OpportunityNotFound."""
        return self._require(opportunity_id).to_api_response(self._clock())

    def update_status(
        self, opportunity_id: UUID, status: OpportunityStatus | str
    ) -> OpportunityResponse:
        """Move an opportunity to a new status and refresh `updated_at`.

        Raises OpportunityValidationError for an unknown status and
        OpportunityNotFound when the id is not stored.
        """
        try:
            resolved = OpportunityStatus(status)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in OpportunityStatus)
            raise OpportunityValidationError(f"Status must be one of: {allowed}") from exc

        current = self._require(opportunity_id)
        now = self._clock()
        updated = self._repository.update(
            current.model_copy(update={"status": resolved, "updated_at": now})
        )
        logger.info(
            "opportunities.status.updated",
            extra={"opportunity_id": str(opportunity_id), "status": resolved.value},
        )
        return updated.to_api_response(now)

    def update_fields(self, opportunity_id: UUID, changes: OpportunityUpdate) -> OpportunityResponse:
        """Apply a partial update and re-validate the whole record."""
        current = self._require(opportunity_id)
        now = self._clock()
        payload = current.model_dump()
        payload.update(changes.model_dump(exclude_unset=True))
        payload["updated_at"] = now
        try:
            candidate = Opportunity.model_validate(payload)
        except ValidationError as exc:
            reasons = "; ".join(error["msg"] for error in exc.errors())
            raise OpportunityValidationError(reasons) from exc
        updated = self._repository.update(candidate)
        logger.info(
            "opportunities.fields.updated",
            extra={
                "opportunity_id": str(opportunity_id),
                "fields": sorted(changes.model_fields_set),
            },
        )
        return updated.to_api_response(now)

    def delete(self, opportunity_id: UUID) -> bool:
        """Delete an opportunity; returns False (not an error) when nothing was stored."""
        deleted = self._repository.delete(opportunity_id)
        logger.info(
            "opportunities.deleted",
            extra={"opportunity_id": str(opportunity_id), "deleted": deleted},
        )
        return deleted

    def stats(self) -> OpportunityStats:
        return self._repository.stats(self._clock().date())

    def _require(self, opportunity_id: UUID) -> Opportunity:
        record = self._repository.get(opportunity_id)
        if record is None:
            raise OpportunityNotFound(opportunity_id)
        return record
