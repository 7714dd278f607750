"""
Data Quality Rule Tests

Each check is a pure function over an EntitySnapshot, so these tests build
snapshots by hand and assert on the issues returned.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any
from uuid import uuid4

import pytest

from judgesync.core.models import (
    AssignmentType,
    Court,
    CourtAssignment,
    Decision,
    DecisionSource,
    EntitySnapshot,
    FixAction,
    IssueSeverity,
    IssueType,
    Judge,
)
from judgesync.quality.rules import (
    Thresholds,
    check_assignment_overlaps,
    check_case_count_drift,
    check_duplicate_docket_numbers,
    check_duplicate_external_ids,
    check_jurisdiction_mismatch,
    check_missing_fields,
    check_name_standards,
    check_orphaned_assignments,
    check_orphaned_cases,
    check_outcome_taxonomy,
    check_primary_assignments,
    check_sample_size,
    check_stale_records,
    intervals_overlap,
    is_auto_fixable,
    name_violations,
    suggest_outcome,
    suggest_standard_name,
)
from tests.helpers import T0

THRESHOLDS = Thresholds()


# =============================================================================
# FACTORIES
# =============================================================================


def make_court(**fields: Any) -> Court:
    defaults = dict(
        id=uuid4(),
        external_id="ca1",
        name="Court of Appeals for the First Circuit",
        slug="court-of-appeals-for-the-first-circuit",
        jurisdiction="US",
        created_at=T0,
        updated_at=T0,
        last_synced_at=T0,
    )
    return Court(**{**defaults, **fields})


def make_judge(**fields: Any) -> Judge:
    defaults = dict(
        id=uuid4(),
        external_id="1213",
        name="Jane Doe",
        slug="jane-doe",
        jurisdiction="US",
        total_cases=600,
        created_at=T0,
        updated_at=T0,
        last_synced_at=T0,
    )
    return Judge(**{**defaults, **fields})


def make_assignment(judge: Judge, court: Court, start: date, end: date | None = None, **fields: Any) -> CourtAssignment:
    defaults = dict(
        id=uuid4(),
        judge_id=judge.id,
        court_id=court.id,
        assignment_type=AssignmentType.PRIMARY,
        start_date=start,
        end_date=end,
    )
    return CourtAssignment(**{**defaults, **fields})


def make_case(**fields: Any) -> Decision:
    defaults = dict(
        id=uuid4(),
        external_id=f"opinion:{uuid4().hex[:6]}",
        case_name="Smith v. Jones",
        created_at=T0,
        updated_at=T0,
        last_synced_at=T0,
    )
    return Decision(**{**defaults, **fields})


def snapshot(**rows: Any) -> EntitySnapshot:
    return EntitySnapshot(**rows)


# =============================================================================
# HEURISTICS
# =============================================================================


class TestHeuristics:
    @pytest.mark.parametrize(
        "a, b, expected",
        [
            ((date(2020, 1, 1), date(2022, 1, 1)), (date(2021, 6, 1), None), True),
            ((date(2020, 1, 1), date(2021, 1, 1)), (date(2021, 1, 1), None), False),
            ((date(2020, 1, 1), None), (date(2010, 1, 1), None), True),
            ((date(2000, 1, 1), date(2001, 1, 1)), (date(2005, 1, 1), date(2006, 1, 1)), False),
        ],
    )
    def test_intervals_overlap(self, a, b, expected):
        assert intervals_overlap(a[0], a[1], b[0], b[1]) is expected
        assert intervals_overlap(b[0], b[1], a[0], a[1]) is expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Affirmed", ("affirmed", 100)),
            ("Dismissed with prejudice", ("dismissed", 90)),
            ("Affirmed in part, reversed in part", ("affirmed", 60)),
            ("Transferred", ("other", 40)),
        ],
    )
    def test_suggest_outcome(self, raw, expected):
        assert suggest_outcome(raw) == expected

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Jane Doe", ("Jane Doe", 100)),
            ("Hon. Jane  Doe", ("Jane Doe", 95)),
            ("JOHN SMITH", ("John Smith", 75)),
            ("J@ne Doe", ("Jne Doe", 50)),
        ],
    )
    def test_suggest_standard_name(self, name, expected):
        assert suggest_standard_name(name) == expected

    def test_name_violations(self):
        assert name_violations("jane doe") == ["all lowercase"]
        assert name_violations("Judge Jane Doe ") == ["contains title prefix", "excess whitespace"]
        assert name_violations("Patricia O'Neil-McDonald, Jr.") == []

    @pytest.mark.parametrize(
        "severity, action, confidence, expected",
        [
            (IssueSeverity.HIGH, FixAction.NULLIFY_REFERENCE, None, True),
            (IssueSeverity.CRITICAL, FixAction.NULLIFY_REFERENCE, None, False),
            (IssueSeverity.LOW, None, None, False),
            (IssueSeverity.LOW, FixAction.APPLY_MAPPING, 80, True),
            (IssueSeverity.LOW, FixAction.APPLY_MAPPING, 79, False),
        ],
    )
    def test_is_auto_fixable(self, severity, action, confidence, expected):
        assert is_auto_fixable(severity, action, confidence, 80) is expected


# =============================================================================
# ORPHANS AND DUPLICATES
# =============================================================================


class TestOrphans:
    def test_case_with_missing_judge(self):
        court = make_court()
        case = make_case(judge_id=uuid4(), court_id=court.id)

        issues = check_orphaned_cases(snapshot(courts=[court], cases=[case]), THRESHOLDS, T0)

        assert len(issues) == 1
        issue = issues[0]
        assert issue.type == IssueType.ORPHANED_RECORD
        assert issue.severity == IssueSeverity.HIGH
        assert issue.fix_action == FixAction.NULLIFY_REFERENCE
        assert issue.auto_fixable is True
        assert issue.metadata["field"] == "judge_id"
        assert issue.entity_id == str(case.id)

    def test_cases_without_references_are_fine(self):
        assert check_orphaned_cases(snapshot(cases=[make_case()]), THRESHOLDS, T0) == []

    def test_assignment_with_missing_court_needs_review(self):
        judge = make_judge()
        assignment = make_assignment(judge, make_court(), date(2010, 1, 1))

        issues = check_orphaned_assignments(snapshot(judges=[judge], assignments=[assignment]), THRESHOLDS, T0)

        assert [i.severity for i in issues] == [IssueSeverity.CRITICAL]
        assert issues[0].auto_fixable is False
        assert "missing court" in issues[0].message


class TestDuplicates:
    def test_duplicate_external_ids(self):
        judges = [make_judge(), make_judge()]

        issues = check_duplicate_external_ids(snapshot(judges=judges), THRESHOLDS, T0)

        assert len(issues) == 1
        assert issues[0].severity == IssueSeverity.CRITICAL
        assert issues[0].metadata["ids"] == [str(j.id) for j in judges]

    def test_docket_numbers_grouped_by_court_and_source(self):
        court = make_court()
        cases = [
            make_case(court_id=court.id, docket_number="19-cv-1"),
            make_case(court_id=court.id, docket_number=" 19-CV-1 "),
            make_case(court_id=court.id, docket_number="19-cv-1", source=DecisionSource.DOCKET),
            make_case(court_id=uuid4(), docket_number="19-cv-1"),
        ]

        issues = check_duplicate_docket_numbers(snapshot(courts=[court], cases=cases), THRESHOLDS, T0)

        assert len(issues) == 1
        assert issues[0].severity == IssueSeverity.MEDIUM
        assert issues[0].metadata["docket_number"] == "19-CV-1"
        assert len(issues[0].metadata["ids"]) == 2


# =============================================================================
# STALENESS AND MISSING FIELDS
# =============================================================================


class TestStaleness:
    def test_stale_judge_queues_resync(self):
        judge = make_judge(last_synced_at=T0 - timedelta(days=181))

        issues = check_stale_records(snapshot(judges=[judge]), THRESHOLDS, T0)

        assert len(issues) == 1
        issue = issues[0]
        assert issue.severity == IssueSeverity.MEDIUM
        assert issue.auto_fixable is True
        assert issue.metadata["resync_entity_type"] == "judge"
        assert issue.metadata["resync_external_id"] == "1213"

    def test_boundary_is_not_stale(self):
        judge = make_judge(last_synced_at=T0 - timedelta(days=180))

        assert check_stale_records(snapshot(judges=[judge]), THRESHOLDS, T0) == []

    def test_never_synced_court_is_stale(self):
        court = make_court(last_synced_at=None)

        issues = check_stale_records(snapshot(courts=[court]), THRESHOLDS, T0)

        assert [i.severity for i in issues] == [IssueSeverity.LOW]


class TestMissingFields:
    def test_missing_jurisdiction_is_fixable(self):
        judge = make_judge(jurisdiction=None)

        issues = check_missing_fields(snapshot(judges=[judge]), THRESHOLDS, T0)

        assert [(i.severity, i.auto_fixable) for i in issues] == [(IssueSeverity.MEDIUM, True)]

    def test_missing_name_is_critical(self):
        court = make_court(name="  ")

        issues = check_missing_fields(snapshot(courts=[court]), THRESHOLDS, T0)

        assert [(i.severity, i.auto_fixable) for i in issues] == [(IssueSeverity.CRITICAL, False)]

    def test_nameless_case_resyncs_its_judge(self):
        judge = make_judge()
        with_judge = make_case(case_name="", judge_id=judge.id)
        without_judge = make_case(case_name="")

        issues = check_missing_fields(snapshot(judges=[judge], cases=[with_judge, without_judge]), THRESHOLDS, T0)

        by_case = {i.entity_id: i for i in issues}
        fixable = by_case[str(with_judge.id)]
        assert fixable.auto_fixable is True
        assert fixable.metadata["resync_entity_type"] == "decision"
        assert fixable.metadata["resync_external_id"] == "1213"
        assert by_case[str(without_judge.id)].auto_fixable is False


# =============================================================================
# INTEGRITY
# =============================================================================


class TestIntegrity:
    @pytest.mark.parametrize(
        "recorded, expected",
        [(5, []), (10, [IssueSeverity.MEDIUM]), (21, [IssueSeverity.HIGH])],
    )
    def test_case_count_drift(self, recorded, expected):
        judge = make_judge(total_cases=recorded)

        issues = check_case_count_drift(snapshot(judges=[judge]), THRESHOLDS, T0)

        assert [i.severity for i in issues] == expected
        assert all(i.fix_action == FixAction.RECALCULATE_COUNT and i.auto_fixable for i in issues)

    @pytest.mark.parametrize(
        "count, expected",
        [
            (500, []),
            (499, [IssueSeverity.LOW]),
            (249, [IssueSeverity.MEDIUM]),
            (99, [IssueSeverity.HIGH]),
        ],
    )
    def test_sample_size(self, count, expected):
        judge = make_judge(total_cases=count)

        issues = check_sample_size(snapshot(judges=[judge]), THRESHOLDS, T0)

        assert [i.severity for i in issues] == expected
        if issues:
            assert issues[0].metadata["deficit"] == 500 - count
            assert issues[0].auto_fixable is False

    def test_outcome_mapping_confidence_gates_auto_fix(self):
        confident = make_case(outcome="Dismissed with prejudice")
        ambiguous = make_case(outcome="Affirmed in part, reversed in part")
        standard = make_case(outcome="Affirmed")

        issues = check_outcome_taxonomy(snapshot(cases=[confident, ambiguous, standard]), THRESHOLDS, T0)

        by_case = {i.entity_id: i for i in issues}
        assert set(by_case) == {str(confident.id), str(ambiguous.id)}
        assert by_case[str(confident.id)].auto_fixable is True
        assert by_case[str(confident.id)].metadata["suggested_mapping"] == "dismissed"
        assert by_case[str(ambiguous.id)].auto_fixable is False
        assert by_case[str(ambiguous.id)].metadata["fix_confidence"] == 60

    def test_name_standards_are_review_only(self):
        judge = make_judge(name="JOHN SMITH")

        issues = check_name_standards(snapshot(judges=[judge]), THRESHOLDS, T0)

        assert len(issues) == 1
        assert issues[0].metadata["suggested_name"] == "John Smith"
        assert issues[0].auto_fixable is False


# =============================================================================
# RELATIONSHIPS
# =============================================================================


class TestRelationships:
    def test_overlapping_assignments_at_one_court(self):
        judge, court = make_judge(), make_court()
        a = make_assignment(judge, court, date(2020, 1, 1), date(2022, 1, 1), assignment_type=AssignmentType.VISITING)
        b = make_assignment(judge, court, date(2021, 6, 1))

        issues = check_assignment_overlaps(snapshot(assignments=[b, a]), THRESHOLDS, T0)

        assert len(issues) == 1
        assert issues[0].severity == IssueSeverity.CRITICAL
        assert issues[0].metadata["assignment_ids"] == [str(a.id), str(b.id)]

    def test_back_to_back_assignments_do_not_overlap(self):
        judge, court = make_judge(), make_court()
        a = make_assignment(judge, court, date(2020, 1, 1), date(2021, 1, 1))
        b = make_assignment(judge, court, date(2021, 1, 1))

        assert check_assignment_overlaps(snapshot(assignments=[a, b]), THRESHOLDS, T0) == []

    def test_different_courts_may_overlap(self):
        judge = make_judge()
        a = make_assignment(judge, make_court(), date(2020, 1, 1))
        b = make_assignment(judge, make_court(), date(2020, 1, 1), assignment_type=AssignmentType.VISITING)

        assert check_assignment_overlaps(snapshot(assignments=[a, b]), THRESHOLDS, T0) == []

    def test_two_active_primaries(self):
        judge = make_judge()
        assignments = [
            make_assignment(judge, make_court(), date(2010, 1, 1)),
            make_assignment(judge, make_court(), date(2015, 1, 1)),
        ]

        issues = check_primary_assignments(snapshot(assignments=assignments), THRESHOLDS, T0)

        assert [i.severity for i in issues] == [IssueSeverity.CRITICAL]

    def test_no_active_primary(self):
        judge, court = make_judge(), make_court()
        ended = make_assignment(judge, court, date(2010, 1, 1), date(2012, 1, 1))
        visiting = make_assignment(judge, court, date(2013, 1, 1), assignment_type=AssignmentType.VISITING)

        issues = check_primary_assignments(snapshot(assignments=[ended, visiting]), THRESHOLDS, T0)

        assert [i.severity for i in issues] == [IssueSeverity.HIGH]

    def test_retired_judges_need_no_primary(self):
        judge, court = make_judge(), make_court()
        retired = make_assignment(
            judge, court, date(2000, 1, 1), date(2015, 1, 1), assignment_type=AssignmentType.RETIRED
        )

        assert check_primary_assignments(snapshot(assignments=[retired]), THRESHOLDS, T0) == []

    def test_single_primary_is_fine(self):
        judge, court = make_judge(), make_court()

        assert check_primary_assignments(
            snapshot(assignments=[make_assignment(judge, court, date(2010, 1, 1))]), THRESHOLDS, T0
        ) == []

    def test_jurisdiction_mismatch(self):
        court = make_court(jurisdiction="US")
        judge = make_judge(jurisdiction="ca", court_id=court.id)
        matching = make_judge(external_id="2", jurisdiction="us", court_id=court.id)

        issues = check_jurisdiction_mismatch(snapshot(courts=[court], judges=[judge, matching]), THRESHOLDS, T0)

        assert [i.entity_id for i in issues] == [str(judge.id)]
        assert issues[0].metadata["judge_jurisdiction"] == "CA"
