from __future__ import annotations

from datetime import date

import pytest

from app.models.opportunity import OpportunityType, RawHit
from app.services.opportunities import extraction
from app.services.opportunities.extraction import (
    classify_type,
    country_override,
    extract_amounts,
    extract_country,
    extract_deadline,
    extract_fields,
    extract_page_metadata,
    extract_source_domain,
    extract_structured,
    generate_tags,
    parse_date_token,
)


def test_classify_type_uses_first_matching_group():
    assert classify_type("Grant Scholarship for Women", "") == OpportunityType.SCHOLARSHIP
    assert classify_type("Startup Incubator", "Seed funding for founders") == OpportunityType.GRANT


@pytest.mark.parametrize(
    ("title", "description", "expected"),
    [
        ("Research Fellowship 2025", None, OpportunityType.FELLOWSHIP),
        ("Summer Internship", "Paid placement", OpportunityType.INTERNSHIP),
        ("Robotics Contest", None, OpportunityType.COMPETITION),
        ("Community Recognition", None, OpportunityType.AWARD),
        ("Open call", "Nothing specific here", OpportunityType.OTHER),
    ],
)
def test_classify_type_keyword_groups(title, description, expected):
    assert classify_type(title, description) == expected


def test_extract_country_respects_alias_order():
    assert (
        extract_country("Scholarship in Canada", "Open to residents of the United States")
        == "United States"
    )
    assert extract_country("Study in the UK", None) == "United Kingdom"
    assert extract_country("Research visit to Japan", "") == "Japan"


def test_extract_country_ignores_lowercase_acronyms():
    assert extract_country("Small business grants", "Contact us for details") == "Global"
    assert extract_country("Apply in the US today", None) == "United States"


def test_country_override_treats_global_as_unset():
    assert country_override("Kenya") == "Kenya"
    assert country_override("global") is None
    assert country_override("GLOBAL") is None
    assert country_override("  ") is None
    assert country_override(None) is None


def test_parse_date_token_shifts_short_years():
    assert parse_date_token("03/15/09") == date(2009, 3, 15)
    assert parse_date_token("3-5-2025") == date(2025, 3, 5)
    assert parse_date_token("13/45/2024") is None


def test_extract_deadline_prefers_keyword_family_over_bare_dates():
    text = "Posted 01/02/2024. Applications close 05/06/2024."
    assert extract_deadline("Call for proposals", text, None) == date(2024, 5, 6)


def test_extract_deadline_stops_at_first_family_even_when_unparseable():
    text = "Posted 01/02/2024. Deadline: 13/45/2024"
    assert extract_deadline(None, text, None) is None


def test_extract_deadline_reads_short_year():
    assert extract_deadline("Apply now", "Deadline: 03/15/09", None) == date(2009, 3, 15)
    assert extract_deadline("Apply now", "Deadline: 03/15/1999", None) == date(1999, 3, 15)


def test_extract_amounts_range_beats_later_patterns():
    assert extract_amounts(None, "$1,000 - $5,000, up to $9,000", None) == (1000.0, 5000.0)
    assert extract_amounts("Awards from $200 to $800", None, None) == (200.0, 800.0)


def test_extract_amounts_single_values_keep_the_largest_as_minimum():
    assert extract_amounts(None, "Awards up to $2,500 per student", None) == (2500.0, None)
    assert extract_amounts(None, "Prizes of $500 and $1,200.50", None) == (1200.5, None)
    assert extract_amounts("No money mentioned", None, None) == (None, None)


def test_extract_amounts_drops_values_that_overflow_a_float():
    huge = "$" + "9" * 400
    assert extract_amounts(None, f"Award of {huge}", None) == (None, None)
    assert extract_amounts(None, f"Between $100 - {huge}", None) == (100.0, None)


def test_generate_tags_starts_with_type_and_dedupes():
    tags = generate_tags(
        "Women in STEM Scholarship", "for graduate students", OpportunityType.SCHOLARSHIP
    )
    assert tags == ["scholarship", "women", "stem", "graduate"]


def test_extract_structured_collects_contact_details():
    structured = extract_structured("Email info@example.org before 01/02/2025 for $1,500 awards")
    assert structured["emails"] == ["info@example.org"]
    assert "01/02/2025" in structured["dates"]
    assert "$1,500" in structured["amounts"]


def test_extract_source_domain():
    assert extract_source_domain("https://www.grants.gov/apply") == "www.grants.gov"
    assert extract_source_domain("not a url") == ""
    assert extract_source_domain(None) == ""


def test_extract_page_metadata_reads_meta_and_eligibility():
    html = """
    <html><head>
      <meta name="description" content="Funding for early-career scientists">
      <meta property="og:site_name" content="Science Trust">
    </head><body>
      <h1>Early Career Grant</h1>
      <ul><li>Eligibility: PhD awarded within five years</li><li>Unrelated item</li></ul>
    </body></html>
    """
    metadata = extract_page_metadata(html)
    assert metadata.meta_description == "Funding for early-career scientists"
    assert metadata.organization == "Science Trust"
    assert metadata.eligibility_text == "Eligibility: PhD awarded within five years"


def test_extract_page_metadata_falls_back_to_heading_and_tolerates_broken_markup():
    metadata = extract_page_metadata("<div><h2>Maker Foundation<p>unclosed <b>tags")
    assert metadata.organization is not None
    assert metadata.organization.startswith("Maker Foundation")
    assert extract_page_metadata(None) == extraction.PageMetadata()


def test_extract_fields_can_skip_country_detection():
    hit = RawHit(
        title="Grant for researchers in Germany",
        text="Funding of $10,000 - $20,000. Deadline: 06/30/2030.",
        url="https://foundation.org/grants/germany",
    )
    fields = extract_fields(hit, resolve_country=False)
    assert fields.country is None
    assert fields.opportunity_type == OpportunityType.GRANT
    assert (fields.amount_min, fields.amount_max) == (10_000.0, 20_000.0)
    assert fields.application_deadline == date(2030, 6, 30)
    assert fields.source_domain == "foundation.org"
    assert extract_fields(hit).country == "Germany"
