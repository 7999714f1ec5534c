from __future__ import annotations

from datetime import UTC, date, datetime

import pytest
from pydantic import ValidationError

from app.models.opportunity import (
    IngestionSummary,
    Opportunity,
    OpportunityType,
    SearchFilters,
    is_absolute_url,
)
from tests.helpers.search_stub import make_opportunity


def test_amount_range_must_be_ordered():
    with pytest.raises(ValidationError, match="Minimum amount cannot be greater"):
        make_opportunity(amount_min=500, amount_max=100)
    assert make_opportunity(amount_min=100, amount_max=100).amount_max == 100


def test_negative_amounts_are_rejected():
    with pytest.raises(ValidationError):
        make_opportunity(amount_min=-1)


@pytest.mark.parametrize("value", [float("inf"), float("nan")])
def test_non_finite_amounts_are_rejected(value):
    with pytest.raises(ValidationError):
        make_opportunity(amount_min=value)
    with pytest.raises(ValidationError):
        make_opportunity(amount_max=value)


@pytest.mark.parametrize("url", ["not a url", "/relative/path", "", "https://exa mple.org"])
def test_url_must_be_absolute(url):
    assert is_absolute_url(url) is False
    with pytest.raises(ValidationError):
        make_opportunity(url=url)


def test_title_must_not_be_blank():
    with pytest.raises(ValidationError, match="Title is required"):
        make_opportunity(title="   ")


def test_currency_defaults_and_normalises():
    assert make_opportunity(currency=None).currency == "USD"
    assert make_opportunity(currency="eur").currency == "EUR"
    with pytest.raises(ValidationError):
        make_opportunity(currency="EURO")


def test_tags_are_deduplicated_in_order():
    opportunity = make_opportunity(tags=["grant", "women", "grant", "", "stem"])
    assert opportunity.tags == ["grant", "women", "stem"]


def test_expiry_compares_deadline_midnight_utc():
    opportunity = make_opportunity(application_deadline=date(2025, 3, 10))
    assert opportunity.is_expired(datetime(2025, 3, 9, 23, 59, tzinfo=UTC)) is False
    assert opportunity.is_expired(datetime(2025, 3, 10, 0, 0, 1, tzinfo=UTC)) is True
    assert make_opportunity().is_expired() is False


def test_days_until_deadline_truncates_toward_zero():
    opportunity = make_opportunity(application_deadline=date(2025, 3, 10))
    assert opportunity.days_until_deadline(datetime(2025, 3, 7, 12, 0, tzinfo=UTC)) == 2
    assert opportunity.days_until_deadline(datetime(2025, 3, 10, 12, 0, tzinfo=UTC)) == 0
    assert opportunity.days_until_deadline(datetime(2025, 3, 12, 12, 0, tzinfo=UTC)) == -2
    assert make_opportunity().days_until_deadline() is None


def test_api_response_nests_amounts_and_hides_raw_content():
    opportunity = make_opportunity(
        amount_min=1000,
        amount_max=5000,
        currency="GBP",
        raw_content="<html>",
        extracted_data={"emails": []},
        application_deadline=date(2025, 3, 10),
    )
    payload = opportunity.to_api_response(datetime(2025, 3, 1, tzinfo=UTC)).model_dump(mode="json")
    assert payload["amount"] == {"min": 1000.0, "max": 5000.0, "currency": "GBP"}
    assert payload["is_expired"] is False
    assert payload["days_until_deadline"] == 9
    assert "raw_content" not in payload
    assert "extracted_data" not in payload
    assert "amount_min" not in payload


def test_storage_dict_is_flat_with_plain_enum_values():
    stored = make_opportunity(opportunity_type=OpportunityType.AWARD).to_storage_dict()
    assert stored["opportunity_type"] == "award"
    assert stored["status"] == "active"
    assert stored["currency"] == "USD"


def test_search_filters_bounds():
    with pytest.raises(ValidationError):
        SearchFilters(tags=[f"tag{i}" for i in range(11)])
    with pytest.raises(ValidationError):
        SearchFilters(tags=["x" * 51])
    with pytest.raises(ValidationError):
        SearchFilters(amount_min=-5)
    assert SearchFilters(currency="usd", unknown="ignored").currency == "USD"


def test_ingestion_summary_serialises_camel_case():
    summary = IngestionSummary(search_id="6f1c1d7e-4a4c-4b8a-9a7e-0c6f5b6d8e21", total_found=3)
    payload = summary.model_dump(mode="json", by_alias=True)
    assert payload == {
        "searchId": "6f1c1d7e-4a4c-4b8a-9a7e-0c6f5b6d8e21",
        "totalFound": 3,
        "newOpportunities": 0,
        "duplicates": 0,
        "errors": 0,
    }


def test_opportunity_round_trips_type_strings():
    opportunity = Opportunity(
        title="Hackathon", url="https://contest.example.org", opportunity_type="competition"
    )
    assert opportunity.opportunity_type is OpportunityType.COMPETITION
