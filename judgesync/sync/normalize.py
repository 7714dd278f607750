"""
JudgeSync - Field Normalization

Pure helpers applied to upstream values before they are upserted:
names, jurisdictions, slugs, court types and judge biography entries.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Iterable, List, Optional

from judgesync.core.models import CourtType, Education, PoliticalAffiliation

STATE_CODES = {
    "alabama": "AL",
    "alaska": "AK",
    "arizona": "AZ",
    "arkansas": "AR",
    "california": "CA",
    "colorado": "CO",
    "connecticut": "CT",
    "delaware": "DE",
    "district of columbia": "DC",
    "florida": "FL",
    "georgia": "GA",
    "hawaii": "HI",
    "idaho": "ID",
    "illinois": "IL",
    "indiana": "IN",
    "iowa": "IA",
    "kansas": "KS",
    "kentucky": "KY",
    "louisiana": "LA",
    "maine": "ME",
    "maryland": "MD",
    "massachusetts": "MA",
    "michigan": "MI",
    "minnesota": "MN",
    "mississippi": "MS",
    "missouri": "MO",
    "montana": "MT",
    "nebraska": "NE",
    "nevada": "NV",
    "new hampshire": "NH",
    "new jersey": "NJ",
    "new mexico": "NM",
    "new york": "NY",
    "north carolina": "NC",
    "north dakota": "ND",
    "ohio": "OH",
    "oklahoma": "OK",
    "oregon": "OR",
    "pennsylvania": "PA",
    "rhode island": "RI",
    "south carolina": "SC",
    "south dakota": "SD",
    "tennessee": "TN",
    "texas": "TX",
    "utah": "UT",
    "vermont": "VT",
    "virginia": "VA",
    "washington": "WA",
    "west virginia": "WV",
    "wisconsin": "WI",
    "wyoming": "WY",
}

VALID_CODES = frozenset(STATE_CODES.values()) | {"US"}

FEDERAL = "US"

# CourtListener court-level jurisdiction codes for the federal system.
FEDERAL_COURT_CODES = frozenset({"F", "FD", "FB", "FBP", "FS", "FTC"})

_FEDERAL_ALIASES = frozenset({"us", "u.s.", "u.s", "usa", "united states", "federal", "fed"})

# Longest names first so "west virginia" wins over "virginia".
_STATE_NAME_RE = re.compile(
    r"\b(" + "|".join(re.escape(n) for n in sorted(STATE_CODES, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)

_FEDERAL_NAME_RE = re.compile(r"\b(U\.S\.|United States|Federal|Circuit)\b", re.IGNORECASE)

TITLE_PREFIX_RE = re.compile(
    r"^(?:the\s+)?(?:"
    r"hon(?:orable|\.)?|"
    r"chief\s+(?:judge|justice)|"
    r"associate\s+justice|"
    r"magistrate(?:\s+judge)?|"
    r"presiding\s+judge|"
    r"judge|justice"
    r")\s+",
    re.IGNORECASE,
)

_ROMAN_SUFFIX_RE = re.compile(r"^(?:ii|iii|iv|vi{0,3})[.,]?$", re.IGNORECASE)


def collapse_whitespace(value: str | None) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip()


def strip_title_prefix(name: str) -> str:
    """Drop leading judicial titles ("Hon.", "Judge", "Chief Justice", ...), repeatedly."""
    previous = None
    while previous != name:
        previous = name
        name = TITLE_PREFIX_RE.sub("", name, count=1)
    return name


def _title_word(word: str) -> str:
    if _ROMAN_SUFFIX_RE.match(word):
        return word.upper()
    return word.title()


def normalize_person_name(name: str | None) -> str:
    """
    Canonical display form of a judge's name.

    - Collapse whitespace
    - Strip judicial title prefixes
    - Title-case names that arrive all upper or all lower case

    Mixed-case names are assumed to be intentional and kept as-is.
    """
    cleaned = strip_title_prefix(collapse_whitespace(name))
    if cleaned and (cleaned == cleaned.upper() or cleaned == cleaned.lower()):
        cleaned = " ".join(_title_word(w) for w in cleaned.split(" "))
    return cleaned


def normalize_court_name(name: str | None) -> str:
    return collapse_whitespace(name)


def jurisdiction_from_name(name: str | None) -> Optional[str]:
    """Infer a jurisdiction code from a court or judge name."""
    if not name:
        return None
    match = _STATE_NAME_RE.search(name)
    if match:
        return STATE_CODES[match.group(1).lower()]
    if _FEDERAL_NAME_RE.search(name):
        return FEDERAL
    return None


def canonical_jurisdiction(value: str | None, name: str | None = None) -> Optional[str]:
    """
    Map a jurisdiction to its two-letter code.

    Accepts state codes, state names, federal aliases and CourtListener's
    federal court-level codes. Empty values are inferred from ``name``.
    Unrecognized values are returned trimmed so nothing is silently lost.
    """
    text = collapse_whitespace(value)
    if not text:
        return jurisdiction_from_name(name)
    lowered = text.lower()
    if lowered in _FEDERAL_ALIASES or text.upper() in FEDERAL_COURT_CODES:
        return FEDERAL
    if text.upper() in VALID_CODES:
        return text.upper()
    if lowered in STATE_CODES:
        return STATE_CODES[lowered]
    # State court-level codes (S, SA, ST, ...) say nothing about which state.
    if len(text) <= 3 and text.isalpha() and name:
        return jurisdiction_from_name(name) or text
    return text


def infer_court_type(name: str | None, jurisdiction: str | None = None) -> CourtType:
    """Federal when the name mentions U.S., United States, Federal or Circuit."""
    if name and _FEDERAL_NAME_RE.search(name):
        return CourtType.FEDERAL
    if jurisdiction and jurisdiction.upper() in FEDERAL_COURT_CODES:
        return CourtType.FEDERAL
    return CourtType.STATE


def slugify(value: str | None) -> str:
    """ASCII, lowercase, hyphen-separated slug."""
    if not value:
        return ""
    text = unicodedata.normalize("NFKD", str(value)).encode("ascii", "ignore").decode("ascii")
    text = re.sub(r"[^a-zA-Z0-9]+", "-", text.lower())
    return text.strip("-")


# =============================================================================
# Biography
# =============================================================================

PARTY_NAMES = {
    "d": "Democratic Party",
    "r": "Republican Party",
    "i": "Independent",
    "g": "Green Party",
    "l": "Libertarian Party",
    "f": "Federalist",
    "w": "Whig",
    "dr": "Democratic-Republican",
    "n": "Non-partisan",
}

UNKNOWN_SCHOOL = "Unknown institution"
UNKNOWN_PARTY = "Unknown"


def _text(value: Any) -> Optional[str]:
    """Trimmed string, the ``name`` of a nested object, or None."""
    if isinstance(value, dict):
        value = value.get("name")
    if value is None:
        return None
    cleaned = collapse_whitespace(str(value))
    return cleaned or None


def _year(value: Any) -> Optional[int]:
    match = re.match(r"\s*(\d{4})", str(value or ""))
    return int(match.group(1)) if match else None


def normalize_educations(entries: Iterable[Dict[str, Any]]) -> List[Education]:
    """
    Degrees in upstream order. Entries with no school, degree or year carry
    nothing and are dropped; a degree without a school keeps a placeholder.
    """
    result = []
    for entry in entries:
        school = _text(entry.get("school"))
        degree = _text(entry.get("degree")) or _text(entry.get("degree_detail")) or _text(entry.get("degree_level"))
        year = _text(entry.get("degree_year"))
        if not (school or degree or year):
            continue
        result.append(Education(school=school or UNKNOWN_SCHOOL, degree=degree, year=year))
    return result


def party_name(party: Any, party_id: Any = None) -> str:
    """Display name for a party given as a name or as CourtListener's short code."""
    for value in (party, party_id):
        text = _text(value)
        if text and text.lower() in PARTY_NAMES:
            return PARTY_NAMES[text.lower()]
    return _text(party) or UNKNOWN_PARTY


def normalize_affiliations(entries: Iterable[Dict[str, Any]]) -> List[PoliticalAffiliation]:
    """Affiliations newest first; undated ones last."""
    result = [
        PoliticalAffiliation(
            party=party_name(entry.get("political_party"), entry.get("political_party_id")),
            start_year=_year(entry.get("date_start")),
            end_year=_year(entry.get("date_end")),
            appointer=_text(entry.get("appointer")) if isinstance(entry.get("appointer"), dict) else None,
        )
        for entry in entries
    ]
    return sorted(result, key=lambda a: (a.start_year is None, -(a.start_year or 0)))
