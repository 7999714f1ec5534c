"""Shared error classes for opportunity ingestion, storage and queries."""

from __future__ import annotations


class OpportunityError(RuntimeError):
    """Base exception raised by the opportunity services."""

    def __init__(self, message: str, code: str = "OPPORTUNITY_ERROR") -> None:
        super().__init__(message)
        self.code = code


class OpportunityValidationError(OpportunityError):
    """Raised when a candidate or update violates the record invariants."""

    def __init__(self, message: str, code: str = "422_INVALID_OPPORTUNITY") -> None:
        super().__init__(message, code=code)


class ProviderUnavailable(OpportunityError):
    """Raised when the upstream search provider fails or times out."""

    def __init__(self, message: str, code: str = "502_PROVIDER_UNAVAILABLE") -> None:
        super().__init__(message, code=code)


class ExtractionError(OpportunityError):
    """Raised when field extraction blows up on malformed content."""

    def __init__(self, message: str, code: str = "EXTRACTION_FAILED") -> None:
        super().__init__(message, code=code)


class OpportunityNotFound(OpportunityError):
    """Raised when an opportunity id does not exist in the store."""

    def __init__(self, opportunity_id: object) -> None:
        super().__init__(f"No opportunity found with ID: {opportunity_id}", code="404_NOT_FOUND")
        self.opportunity_id = opportunity_id


class DuplicateOpportunityError(OpportunityError):
    """Raised by the store when an insert collides with an existing URL."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Opportunity already exists for URL: {url}", code="409_DUPLICATE_URL")
        self.url = url


class OpportunityPersistenceError(OpportunityError):
    """Raised when the store fails to read or write."""
