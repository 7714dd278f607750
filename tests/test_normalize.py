"""Field normalization helpers."""

import pytest

from judgesync.core.models import CourtType
from judgesync.sync.normalize import (
    canonical_jurisdiction,
    infer_court_type,
    jurisdiction_from_name,
    normalize_affiliations,
    normalize_court_name,
    normalize_educations,
    normalize_person_name,
    party_name,
    slugify,
    strip_title_prefix,
)


class TestPersonNames:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("  HON. JOHN   SMITH III ", "John Smith III"),
            ("Chief Judge jane doe", "Jane Doe"),
            ("The Honorable Judge Mary O'Neil", "Mary O'Neil"),
            ("ruth bader ginsburg", "Ruth Bader Ginsburg"),
            ("JAMES SMITH JR.", "James Smith Jr."),
            ("Patricia McDonald", "Patricia McDonald"),
            (None, ""),
        ],
    )
    def test_normalize_person_name(self, raw, expected):
        assert normalize_person_name(raw) == expected

    def test_strip_title_prefix_repeats(self):
        assert strip_title_prefix("Hon. Judge Magistrate Judge Lee") == "Lee"

    def test_mixed_case_is_intentional(self):
        assert normalize_person_name("deLeon Smith") == "deLeon Smith"


class TestJurisdiction:
    @pytest.mark.parametrize(
        "value, name, expected",
        [
            ("ca", None, "CA"),
            ("California", None, "CA"),
            ("F", None, "US"),
            ("federal", None, "US"),
            (None, "Supreme Court of Texas", "TX"),
            ("", "United States Court of Appeals", "US"),
            ("S", "Supreme Court of West Virginia", "WV"),
            ("S", None, "S"),
            ("Narnia", None, "Narnia"),
        ],
    )
    def test_canonical_jurisdiction(self, value, name, expected):
        assert canonical_jurisdiction(value, name) == expected

    def test_longest_state_name_wins(self):
        assert jurisdiction_from_name("Circuit Court of West Virginia") == "WV"

    def test_unknown_name(self):
        assert jurisdiction_from_name("Court of Narnia") is None
        assert jurisdiction_from_name(None) is None


class TestCourts:
    @pytest.mark.parametrize(
        "name, jurisdiction, expected",
        [
            ("Court of Appeals for the Ninth Circuit", "F", CourtType.FEDERAL),
            ("Superior Court of California", "S", CourtType.STATE),
            ("Bankruptcy Court", "FB", CourtType.FEDERAL),
            (None, None, CourtType.STATE),
        ],
    )
    def test_infer_court_type(self, name, jurisdiction, expected):
        assert infer_court_type(name, jurisdiction) == expected

    def test_court_name_whitespace(self):
        assert normalize_court_name(" Supreme  Court\nof Ohio ") == "Supreme Court of Ohio"

    def test_slugify(self):
        assert slugify("Cour d'Appel: Québec") == "cour-d-appel-quebec"
        assert slugify("  Supreme Court of Ohio ") == "supreme-court-of-ohio"
        assert slugify(None) == ""


class TestBiography:
    @pytest.mark.parametrize(
        "party, party_id, expected",
        [
            ("d", None, "Democratic Party"),
            ("DR", None, "Democratic-Republican"),
            (None, "n", "Non-partisan"),
            ("  Progressive Party ", None, "Progressive Party"),
            (None, None, "Unknown"),
        ],
    )
    def test_party_name(self, party, party_id, expected):
        assert party_name(party, party_id) == expected

    def test_degree_without_school_keeps_a_placeholder(self):
        (entry,) = normalize_educations([{"school": "", "degree_year": "1971"}])

        assert (entry.school, entry.degree, entry.year) == ("Unknown institution", None, "1971")

    def test_undated_affiliations_sort_last(self):
        parties = normalize_affiliations(
            [
                {"political_party": "i"},
                {"political_party": "r", "date_start": "1990-05-01"},
                {"political_party": "d", "date_start": "2001"},
            ]
        )

        assert [(a.party, a.start_year) for a in parties] == [
            ("Democratic Party", 2001),
            ("Republican Party", 1990),
            ("Independent", None),
        ]
