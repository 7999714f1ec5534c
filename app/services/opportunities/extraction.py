"""Heuristic field extraction for raw opportunity search hits.

Every extractor here is pure: it never performs I/O and never raises on odd
input, returning whatever partial result it can. Priority between competing
matches is carried by the order of the lookup tables below, so changing an
entry's position changes behaviour.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from typing import Any, Final
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup

from app.models.opportunity import ExtractedFields, OpportunityType, RawHit

logger = logging.getLogger(__name__)

# First matching group wins.
TYPE_KEYWORD_GROUPS: Final[tuple[tuple[OpportunityType, tuple[str, ...]], ...]] = (
    (OpportunityType.SCHOLARSHIP, ("scholarship", "financial aid")),
    (OpportunityType.FELLOWSHIP, ("fellowship", "research program")),
    (OpportunityType.GRANT, ("grant", "funding")),
    (OpportunityType.ACCELERATOR, ("accelerator", "incubator")),
    (OpportunityType.INTERNSHIP, ("internship", "training program")),
    (OpportunityType.COMPETITION, ("competition", "contest")),
    (OpportunityType.AWARD, ("award", "recognition")),
)


@dataclass(frozen=True)
class CountryAlias:
    token: str
    country: str
    case_sensitive: bool = False

    @property
    def pattern(self) -> re.Pattern[str]:
        flags = 0 if self.case_sensitive else re.IGNORECASE
        return re.compile(rf"\b{re.escape(self.token)}\b", flags)


# Scanned in order; the first alias found anywhere in the text wins. The two-letter
# acronyms only match upper-case so "contact us" or "business" never count.
COUNTRY_ALIASES: Final[tuple[CountryAlias, ...]] = (
    CountryAlias("united states", "United States"),
    CountryAlias("usa", "United States"),
    CountryAlias("US", "United States", case_sensitive=True),
    CountryAlias("america", "United States"),
    CountryAlias("canada", "Canada"),
    CountryAlias("mexico", "Mexico"),
    CountryAlias("brazil", "Brazil"),
    CountryAlias("argentina", "Argentina"),
    CountryAlias("united kingdom", "United Kingdom"),
    CountryAlias("UK", "United Kingdom", case_sensitive=True),
    CountryAlias("england", "England"),
    CountryAlias("scotland", "Scotland"),
    CountryAlias("germany", "Germany"),
    CountryAlias("france", "France"),
    CountryAlias("spain", "Spain"),
    CountryAlias("italy", "Italy"),
    CountryAlias("australia", "Australia"),
    CountryAlias("new zealand", "New Zealand"),
    CountryAlias("japan", "Japan"),
    CountryAlias("china", "China"),
    CountryAlias("india", "India"),
    CountryAlias("south korea", "South Korea"),
    CountryAlias("singapore", "Singapore"),
    CountryAlias("global", "Global"),
)
_COUNTRY_PATTERNS: Final = tuple((alias.pattern, alias.country) for alias in COUNTRY_ALIASES)
DEFAULT_COUNTRY: Final = "Global"
GLOBAL_SENTINEL: Final = "global"

_DATE_TOKEN = r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}(?!\d)"

# Families are tried in order; within a family the first match in the text wins.
DEADLINE_PATTERN_FAMILIES: Final[tuple[tuple[str, re.Pattern[str]], ...]] = (
    (
        "deadline",
        re.compile(rf"\b(?:deadline|due|closes?|ends?)\s*:?\s*({_DATE_TOKEN})", re.IGNORECASE),
    ),
    (
        "application",
        re.compile(rf"\b(?:application|apply by)\s*:?\s*({_DATE_TOKEN})", re.IGNORECASE),
    ),
    ("bare", re.compile(rf"(?<![\d/\-])({_DATE_TOKEN})")),
)
_DATE_SEPARATOR = re.compile(r"[/\-]")

_AMOUNT = r"\$(\d[\d,]*(?:\.\d{2})?)"


@dataclass(frozen=True)
class AmountPattern:
    name: str
    regex: re.Pattern[str]
    is_range: bool


# The first pattern with at least one match decides; later patterns are not consulted.
AMOUNT_PATTERNS: Final[tuple[AmountPattern, ...]] = (
    AmountPattern("dash_range", re.compile(_AMOUNT + r"\s*[-–]\s*" + _AMOUNT), True),
    AmountPattern("to_range", re.compile(_AMOUNT + r"\s*to\s*" + _AMOUNT, re.IGNORECASE), True),
    AmountPattern("up_to", re.compile(r"up to " + _AMOUNT, re.IGNORECASE), False),
    AmountPattern("single", re.compile(_AMOUNT), False),
)

TAG_KEYWORDS: Final[Mapping[str, tuple[str, ...]]] = {
    "women": ("women", "female", "girls"),
    "minority": ("minority", "diverse", "underrepresented"),
    "stem": ("stem", "science", "technology", "engineering", "mathematics"),
    "research": ("research", "study", "academic"),
    "entrepreneurship": ("entrepreneur", "startup", "business"),
    "international": ("international", "global", "worldwide"),
    "graduate": ("graduate", "masters", "phd", "doctoral"),
    "undergraduate": ("undergraduate", "bachelor", "college"),
    "merit": ("merit", "academic", "gpa"),
    "need": ("need-based", "financial need", "low income"),
}

STRUCTURED_PATTERNS: Final[Mapping[str, re.Pattern[str]]] = {
    "dates": re.compile(r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}|\d{4}[/\-]\d{1,2}[/\-]\d{1,2}"),
    "amounts": re.compile(r"\$[\d,]+(?:\.\d{2})?|\d+,\d+|\d+\.\d{2}"),
    "emails": re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
    "phones": re.compile(r"\(?\d[\d\s\-()]{8,}\d"),
}

ELIGIBILITY_PATTERN: Final = re.compile(r"eligib|requirement|criteria", re.IGNORECASE)
ELIGIBILITY_MAX_CHARS: Final = 2000
ORGANIZATION_SELECTORS: Final = ".organization, .org, .company"


@dataclass(frozen=True)
class PageMetadata:
    meta_description: str | None = None
    organization: str | None = None
    eligibility_text: str | None = None


def _join_text(*parts: str | None) -> str:
    return " ".join(part for part in parts if part)


def classify_type(title: str | None, description: str | None) -> OpportunityType:
    """Return the first keyword group matching the lower-cased title + description."""
    content = _join_text(title, description).lower()
    for opportunity_type, keywords in TYPE_KEYWORD_GROUPS:
        if any(keyword in content for keyword in keywords):
            return opportunity_type
    return OpportunityType.OTHER


def extract_country(title: str | None, description: str | None) -> str:
    """Return the first listed country alias present in the text, else "Global"."""
    content = _join_text(title, description)
    for pattern, country in _COUNTRY_PATTERNS:
        if pattern.search(content):
            return country
    return DEFAULT_COUNTRY


def country_override(country: str | None) -> str | None:
    """Return a caller-supplied country unless it is empty or the "global" sentinel."""
    if not country or not country.strip():
        return None
    if country.strip().lower() == GLOBAL_SENTINEL:
        return None
    return country


def parse_date_token(token: str) -> date | None:
    """Parse a M/D/Y token; two- and three-digit years are shifted into the 2000s."""
    parts = _DATE_SEPARATOR.split(token.strip())
    if len(parts) != 3:
        return None
    month_text, day_text, year_text = parts
    try:
        month, day, year = int(month_text), int(day_text), int(year_text)
    except ValueError:
        return None
    # Four-digit years are taken literally, so "1999" stays 1999.
    if len(year_text) < 4 and year < 2000:
        year += 2000
    try:
        return date(year, month, day)
    except ValueError:
        return None


def extract_deadline(
    title: str | None, description: str | None, raw_content: str | None
) -> date | None:
    content = _join_text(title, description, raw_content)
    for family, pattern in DEADLINE_PATTERN_FAMILIES:
        match = pattern.search(content)
        if match is None:
            continue
        parsed = parse_date_token(match.group(1))
        if parsed is None:
            logger.debug(
                "opportunities.extract.deadline_unparsed",
                extra={"family": family, "token": match.group(1)},
            )
        return parsed
    return None


def _parse_amount(token: str) -> float | None:
    try:
        value = float(token.replace(",", ""))
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def extract_amounts(
    title: str | None, description: str | None, raw_content: str | None
) -> tuple[float | None, float | None]:
    """Return `(amount_min, amount_max)`.

    Ranges set both bounds from their first occurrence. Single-value patterns
    keep the largest amount seen as the minimum and never set a maximum.
    """
    content = _join_text(title, description, raw_content)
    for amount_pattern in AMOUNT_PATTERNS:
        matches = list(amount_pattern.regex.finditer(content))
        if not matches:
            continue
        if amount_pattern.is_range:
            first = matches[0]
            return _parse_amount(first.group(1)), _parse_amount(first.group(2))
        best: float | None = None
        for match in matches:
            value = _parse_amount(match.group(1))
            if value is not None and (best is None or value > best):
                best = value
        return best, None
    return None, None


def generate_tags(
    title: str | None, description: str | None, opportunity_type: OpportunityType
) -> list[str]:
    content = _join_text(title, description).lower()
    tags = [opportunity_type.value]
    for tag, keywords in TAG_KEYWORDS.items():
        if any(keyword in content for keyword in keywords):
            tags.append(tag)
    return list(dict.fromkeys(tags))


def extract_structured(content: str | None) -> dict[str, list[str]]:
    """Collect loose date, amount, email and phone tokens for informational storage."""
    text = content or ""
    return {
        name: [token.strip() for token in pattern.findall(text)]
        for name, pattern in STRUCTURED_PATTERNS.items()
    }


def extract_source_domain(url: str | None) -> str:
    if not url:
        return ""
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


def extract_page_metadata(html: str | None) -> PageMetadata:
    """Pull the meta description, organization and eligibility text out of page HTML."""
    if not html:
        return PageMetadata()
    try:
        soup = BeautifulSoup(html, "html.parser")
    except ParserRejectedMarkup:
        logger.debug("opportunities.extract.html_rejected")
        return PageMetadata()

    description_tag = soup.find("meta", attrs={"name": "description"})
    meta_description = _attr_text(description_tag, "content")

    organization = _attr_text(soup.find("meta", attrs={"property": "og:site_name"}), "content")
    if not organization:
        org_element = soup.select_one(ORGANIZATION_SELECTORS)
        organization = org_element.get_text(" ", strip=True) if org_element else None
    if not organization:
        heading = soup.find(["h1", "h2", "h3"])
        organization = heading.get_text(" ", strip=True) if heading else None

    snippets = [
        text
        for element in soup.find_all(["p", "li", "td", "dd"])
        if (text := element.get_text(" ", strip=True)) and ELIGIBILITY_PATTERN.search(text)
    ]
    eligibility = "\n".join(snippets)[:ELIGIBILITY_MAX_CHARS] or None

    return PageMetadata(
        meta_description=meta_description or None,
        organization=organization or None,
        eligibility_text=eligibility,
    )


def _attr_text(tag: Any, attribute: str) -> str | None:
    if tag is None:
        return None
    value = tag.get(attribute)
    if isinstance(value, Sequence) and not isinstance(value, str):
        value = " ".join(value)
    return value.strip() if isinstance(value, str) and value.strip() else None


def extract_fields(hit: RawHit, *, resolve_country: bool = True) -> ExtractedFields:
    """Run every extractor over one hit.

    When `resolve_country` is False the country is left unset so that a
    caller-supplied override can take its place without scanning the text.
    """
    opportunity_type = classify_type(hit.title, hit.text)
    amount_min, amount_max = extract_amounts(hit.title, hit.text, hit.html)
    page = extract_page_metadata(hit.html)
    structured: dict[str, Any] = dict(extract_structured(hit.text))
    if page.meta_description:
        structured["meta_description"] = page.meta_description
    return ExtractedFields(
        opportunity_type=opportunity_type,
        country=extract_country(hit.title, hit.text) if resolve_country else None,
        application_deadline=extract_deadline(hit.title, hit.text, hit.html),
        amount_min=amount_min,
        amount_max=amount_max,
        tags=generate_tags(hit.title, hit.text, opportunity_type),
        organization=page.organization,
        meta_description=page.meta_description,
        eligibility_criteria=page.eligibility_text,
        source_domain=extract_source_domain(hit.url),
        extracted_data=structured,
    )
