"""Judge sync pipeline: position rules, fetch by id and discovery."""

from __future__ import annotations

from datetime import date

import httpx
import pytest

from judgesync.core.error_taxonomy import JobCancelled, NonRetryableUpstreamError
from judgesync.core.models import AssignmentType, EntityType, JobStatus, SyncPhase, UpstreamPosition
from judgesync.storage.memory import InMemoryEntityStore
from judgesync.sync.judge_sync import (
    JudgeSyncPipeline,
    classify_position,
    current_position,
    is_temporary,
)
from tests.helpers import BASE_URL, FakeCourtListener, page, run_pipeline, seed_court

CURRENT = {
    "id": 1,
    "court": f"{BASE_URL}/courts/ca1/",
    "job_title": "Circuit Judge",
    "date_start": "2015-03-01",
    "date_termination": None,
}
EARLIER = {
    "id": 2,
    "court": {"id": "ca1"},
    "position_type": "jud",
    "date_start": "2005-01-01",
    "date_termination": "2015-02-28",
    "termination_reason": "retire_vol",
}
UNKNOWN_COURT = {
    "id": 3,
    "court": "nysd",
    "date_start": "2000-01-01",
    "date_termination": "2004-12-31",
    "termination_reason": "resign",
}
PERSON = {
    "id": 1213,
    "name_first": "JOHN",
    "name_middle": "Q",
    "name_last": "PUBLIC",
    "positions": [CURRENT, EARLIER, UNKNOWN_COURT],
    "educations": [{"school": {"name": "Yale University"}}],
}


def position(**fields) -> UpstreamPosition:
    return UpstreamPosition(court=fields.pop("court", "ca1"), **fields)


class TestPositionRules:
    def test_current_is_first_open_position(self):
        closed = position(date_start=date(2001, 1, 1), date_termination=date(2005, 1, 1))
        open_ = position(date_start=date(2010, 1, 1))

        assert current_position([closed, open_]) is open_

    def test_current_falls_back_to_most_recent_start(self):
        older = position(date_start=date(2001, 1, 1), date_termination=date(2005, 1, 1))
        newer = position(date_confirmation=date(2006, 1, 1), date_termination=date(2012, 1, 1))

        assert current_position([older, newer]) is newer

    def test_positions_without_court_are_ignored(self):
        assert current_position([UpstreamPosition(date_start=date(2001, 1, 1))]) is None

    @pytest.mark.parametrize(
        "fields, is_current, expected",
        [
            ({"date_termination": date(2015, 1, 1), "termination_reason": "Retired"}, False, AssignmentType.RETIRED),
            ({"date_termination": date(2015, 1, 1), "termination_reason": "elevated"}, False, AssignmentType.PRIMARY),
            ({}, True, AssignmentType.PRIMARY),
            ({"job_title": "Acting Judge"}, False, AssignmentType.TEMPORARY),
            ({"position_type": "act-jud"}, False, AssignmentType.TEMPORARY),
            ({"job_title": "Judge"}, False, AssignmentType.VISITING),
        ],
    )
    def test_classify_position(self, fields, is_current, expected):
        assert classify_position(position(date_start=date(2010, 1, 1), **fields), is_current) == expected

    def test_pro_tem_titles_are_temporary(self):
        assert is_temporary(position(job_title="Judge Pro Tem"))
        assert not is_temporary(position(job_title="Senior Judge"))


@pytest.fixture
def pipeline(make_client, upstream: FakeCourtListener, entity_store: InMemoryEntityStore) -> JudgeSyncPipeline:
    return JudgeSyncPipeline(make_client(upstream), entity_store, discovery_limit=50, min_cases_for_analytics=500)


@pytest.fixture
def first_circuit(entity_store: InMemoryEntityStore):
    return seed_court(entity_store, "ca1", "Court of Appeals for the First Circuit", "US")


class TestFetchById:
    def test_upserts_judge_and_assignments(self, pipeline, upstream, queue, entity_store, first_circuit):
        upstream.routes["people/1213/"] = PERSON

        result = run_pipeline(queue, pipeline, EntityType.JUDGE, "1213")

        judge = entity_store.get_judge_by_external_id("1213")
        assert judge.name == "John Q Public"
        assert judge.slug == "john-q-public"
        assert judge.jurisdiction == "US"
        assert judge.court_id == first_circuit.id
        assert judge.appointed_date == date(2015, 3, 1)

        assignments = entity_store.list_assignments(judge.id)
        assert [(a.start_date, a.assignment_type, a.end_date) for a in assignments] == [
            (date(2005, 1, 1), AssignmentType.RETIRED, date(2015, 2, 28)),
            (date(2015, 3, 1), AssignmentType.PRIMARY, None),
        ]
        assert assignments[1].position_title == "Circuit Judge"
        assert result["assignments"] == 2
        assert result["unresolved_courts"] == ["nysd"]

        progress = entity_store.get_progress(EntityType.JUDGE, judge.id)
        assert progress.has_positions and progress.has_details
        assert progress.phase == SyncPhase.OPINIONS

    def test_fans_out_court_and_decision_jobs(self, pipeline, upstream, queue, first_circuit):
        upstream.routes["people/1213/"] = PERSON

        run_pipeline(queue, pipeline, EntityType.JUDGE, "1213", priority=4)

        follow_ups = {
            (j.entity_type, j.entity_external_id): j
            for j in queue.list_jobs(JobStatus.PENDING)
            if j.entity_type != EntityType.JUDGE
        }
        assert set(follow_ups) == {(EntityType.COURT, "nysd"), (EntityType.DECISION, "1213")}
        assert follow_ups[(EntityType.COURT, "nysd")].payload["reason"] == "unknown_court"
        assert follow_ups[(EntityType.DECISION, "1213")].priority == 4

    def test_decisions_can_be_skipped(self, pipeline, upstream, queue, first_circuit):
        upstream.routes["people/1213/"] = PERSON

        run_pipeline(queue, pipeline, EntityType.JUDGE, "1213", payload={"sync_decisions": False})

        assert not [j for j in queue.list_jobs() if j.entity_type == EntityType.DECISION]

    def test_resync_is_idempotent(self, pipeline, upstream, queue, entity_store, first_circuit):
        upstream.routes["people/1213/"] = PERSON
        run_pipeline(queue, pipeline, EntityType.JUDGE, "1213")

        result = run_pipeline(queue, pipeline, EntityType.JUDGE, "1213")

        assert result["created"] == 0
        assert len(entity_store.list_judges()) == 1
        assert len(entity_store.list_assignments()) == 2

    def test_linked_positions_are_fetched(self, pipeline, upstream, queue, entity_store, first_circuit):
        upstream.routes["people/77/"] = {
            "id": 77,
            "name_first": "Ann",
            "name_last": "Lee",
            "positions": [f"{BASE_URL}/positions/5/"],
        }
        upstream.routes["positions/"] = page([{"id": 5, "court": "ca1", "date_start": "2019-01-01"}])

        result = run_pipeline(queue, pipeline, EntityType.JUDGE, "77")

        assert result["assignments"] == 1
        judge = entity_store.get_judge_by_external_id("77")
        assert judge.court_id == first_circuit.id
        assert upstream.requests[-1].url.params["person"] == "77"

    def test_missing_person_is_permanent(self, pipeline, queue):
        with pytest.raises(NonRetryableUpstreamError):
            run_pipeline(queue, pipeline, EntityType.JUDGE, "404404")


class TestDiscovery:
    def test_enqueues_one_job_per_person(self, pipeline, upstream, queue):
        upstream.routes["people/"] = page([{"id": 1}, {"id": 1}, {"name_first": "No Id"}, {"id": 2}])

        result = run_pipeline(queue, pipeline, EntityType.JUDGE, priority=2)

        assert result == {"count": 2, "discovered": 2, "errors": 1}
        queued = [j for j in queue.list_jobs(JobStatus.PENDING) if j.entity_external_id]
        assert sorted(j.entity_external_id for j in queued) == ["1", "2"]
        assert all(j.priority == 2 for j in queued)
        assert all(j.payload["reason"] == "discovery" for j in queued)

    def test_discovery_limit(self, pipeline, upstream, queue):
        upstream.routes["people/"] = page([{"id": n} for n in range(10)])

        result = run_pipeline(queue, pipeline, EntityType.JUDGE, payload={"discovery_limit": 3})

        assert result["count"] == 3

    def test_jurisdiction_walks_known_courts(self, pipeline, upstream, queue, entity_store, first_circuit):
        seed_court(entity_store, "ohio", "Supreme Court of Ohio", "OH")
        seed_court(entity_store, "ohioctapp", "Ohio Court of Appeals", "OH")
        by_court = {"ohio": [{"id": 10}], "ohioctapp": [{"id": 11}, {"id": 10}]}

        def _people(request: httpx.Request) -> dict:
            return page(by_court.get(request.url.params.get("positions__court"), []))

        upstream.routes["people/"] = _people

        result = run_pipeline(queue, pipeline, EntityType.JUDGE, payload={"jurisdiction": "Ohio"})

        assert result["discovered"] == 2
        requested = {r.url.params.get("positions__court") for r in upstream.requests}
        assert requested == {"ohio", "ohioctapp"}


class TestBiography:
    def test_education_and_affiliations_are_stored(self, pipeline, upstream, queue, entity_store, first_circuit):
        upstream.routes["people/1213/"] = {
            **PERSON,
            "educations": [
                {"school": {"name": "Harvard Law School"}, "degree_level": "jd", "degree_detail": "J.D.", "degree_year": 1995},
                {"school": {"name": "Yale University"}, "degree_detail": "B.A."},
                {"school": None},
                f"{BASE_URL}/educations/9/",
            ],
            "political_affiliations": [
                {"political_party": "r", "date_start": "2003-01-01", "date_end": "2018-01-01"},
                {"political_party": "d", "date_start": "2018-01-01", "appointer": {"name": "Jane Roe"}},
            ],
        }

        run_pipeline(queue, pipeline, EntityType.JUDGE, "1213")

        judge = entity_store.get_judge_by_external_id("1213")
        assert [(e.school, e.degree, e.year) for e in judge.education] == [
            ("Harvard Law School", "J.D.", "1995"),
            ("Yale University", "B.A.", None),
        ]
        assert [(a.party, a.start_year, a.end_year, a.appointer) for a in judge.political_affiliation] == [
            ("Democratic Party", 2018, None, "Jane Roe"),
            ("Republican Party", 2003, 2018, None),
        ]

    def test_no_biography_means_no_details(self, pipeline, upstream, queue, entity_store, first_circuit):
        upstream.routes["people/1213/"] = {**PERSON, "educations": []}

        run_pipeline(queue, pipeline, EntityType.JUDGE, "1213")

        judge = entity_store.get_judge_by_external_id("1213")
        assert judge.education == [] and judge.political_affiliation == []
        assert entity_store.get_progress(EntityType.JUDGE, judge.id).has_details is False


class TestCancellation:
    def test_cancelled_before_courts_resolve_enqueues_nothing(self, pipeline, upstream, queue, entity_store, first_circuit):
        def _cancel_while_fetching(request: httpx.Request) -> dict:
            (job,) = queue.list_jobs(JobStatus.PENDING)
            queue.cancel(job.id)
            return PERSON

        upstream.routes["people/1213/"] = _cancel_while_fetching

        with pytest.raises(JobCancelled):
            run_pipeline(queue, pipeline, EntityType.JUDGE, "1213")

        assert [j.entity_type for j in queue.list_jobs()] == [EntityType.JUDGE]
        assert entity_store.get_judge_by_external_id("1213") is None
