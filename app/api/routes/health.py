from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.config import settings
from app.services.opportunities.factory import get_opportunity_repository
from app.services.opportunities.repositories import (
    InMemoryOpportunityRepository,
    OpportunityRepository,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
def readiness_check(repository: OpportunityRepository = Depends(get_opportunity_repository)):
    """Readiness check endpoint that includes store connectivity."""
    if not repository.ping():
        logger.warning("health.store_unavailable")
        raise HTTPException(status_code=503, detail="Database is not available")

    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": (
            "in-memory" if isinstance(repository, InMemoryOpportunityRepository) else "connected"
        ),
    }
