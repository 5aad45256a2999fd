"""
AI triage pipeline and triage worker tests.

Tests cover:
  - begin_triage / complete_triage happy path (ledger: STATUS_CHANGE + AI_ANALYSIS)
  - No before-image short circuit
  - Oracle / parse failures still validate with ai_score 0
  - TriageQueue: idempotent enqueue, drain, early exit, retry exhaustion fallback
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from civiclens import create_app
from civiclens.ai import task_runner
from civiclens.ai.gateway import OracleGateway, init_oracle_gateway
from civiclens.ai.task_runner import LEASE_EXPIRED_ERROR, TriageQueue, get_triage_queue
from civiclens.config import TestingConfig
from civiclens.models import db
from civiclens.models.ai import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    PURPOSE_TRIAGE,
    OracleCallLog,
    TriageJob,
)
from civiclens.models.audit import AI_ANALYSIS, STATUS_CHANGE, ledger_for, verify_chain
from civiclens.models.issue import AI_ANALYZING, PENDING, REJECTED, VALIDATED, Issue
from civiclens.services import triage_service
from civiclens.services.image_store import ImageStore, init_image_store

from conftest import ScriptedProvider

VERDICT = {
    "verified": True,
    "confidence_score": 82,
    "summary": "Deep pothole across the carriageway.",
    "severity": "high",
}


def _reload(issue_id):
    db.session.expire_all()
    return db.session.get(Issue, issue_id)


def _run_triage(issue_id):
    assert triage_service.begin_triage(issue_id) == triage_service.STARTED
    db.session.commit()
    triage_service.complete_triage(issue_id)
    db.session.commit()
    return _reload(issue_id)


class TestTriageService:
    def test_verdict_recorded_and_issue_validated(self, oracle, seed_issue):
        issue = seed_issue(PENDING)
        oracle.queue(json.dumps(VERDICT))

        issue = _run_triage(issue.id)

        assert issue.status == VALIDATED
        assert issue.ai_score == 82
        entries = ledger_for(issue.id)
        assert [(e.action, e.prev_status, e.new_status) for e in entries[1:]] == [
            (STATUS_CHANGE, PENDING, AI_ANALYZING),
            (AI_ANALYSIS, AI_ANALYZING, VALIDATED),
        ]
        assert entries[1].details == {"triggered_by": "AI_PIPELINE"}
        analysis = entries[2].details
        assert analysis["severity"] == "high"
        assert analysis["summary"] == VERDICT["summary"]
        assert analysis["manual_review_required"] is False
        assert analysis["model"] == "gemini-2.5-flash"
        assert verify_chain(entries)[0]

    def test_oracle_receives_image_and_category(self, oracle, seed_issue):
        issue = seed_issue(PENDING, category="waste", title="Overflowing bins")
        oracle.queue(json.dumps(VERDICT))

        _run_triage(issue.id)

        (call,) = oracle.calls
        assert call["json_response"] is True
        assert len(call["images"]) == 1
        assert "waste" in call["prompt"]
        assert "Overflowing bins" in call["prompt"]

    def test_no_image_short_circuits(self, oracle, seed_issue):
        issue = seed_issue(PENDING, with_image=False)

        issue = _run_triage(issue.id)

        assert issue.status == VALIDATED
        assert issue.ai_score == 0
        assert oracle.calls == []
        assert ledger_for(issue.id)[-1].details["summary"] == triage_service.NO_IMAGE_SUMMARY

    @pytest.mark.parametrize("reply", [
        RuntimeError("503 from provider"),
        "I think it is a pothole.",
    ])
    def test_failure_still_validates_for_manual_review(self, oracle, seed_issue, reply):
        issue = seed_issue(PENDING)
        oracle.queue(reply)

        issue = _run_triage(issue.id)

        assert issue.status == VALIDATED
        assert issue.ai_score == 0
        details = ledger_for(issue.id)[-1].details
        assert details["manual_review_required"] is True
        assert details["summary"] == triage_service.FAILED_SUMMARY

    def test_unconfigured_oracle_still_validates(self, seed_issue):
        issue = seed_issue(PENDING)
        issue = _run_triage(issue.id)
        assert issue.status == VALIDATED
        assert issue.ai_score == 0

    def test_partial_verdict_uses_defaults(self, oracle, seed_issue):
        issue = seed_issue(PENDING)
        oracle.queue('{"confidence_score": 250}')

        issue = _run_triage(issue.id)

        assert issue.ai_score == 0
        details = ledger_for(issue.id)[-1].details
        assert details["severity"] == "medium"
        assert details["summary"] == "Analysis complete."
        assert details["manual_review_required"] is False

    def test_begin_is_idempotent(self, seed_issue):
        analysing = seed_issue(AI_ANALYZING)
        done = seed_issue(VALIDATED)
        assert triage_service.begin_triage(analysing.id) == triage_service.RESUMED
        assert triage_service.begin_triage(done.id) == triage_service.SKIPPED


class TestTriageQueue:
    def test_enqueue_is_idempotent(self, seed_issue):
        issue = seed_issue(PENDING)
        queue = get_triage_queue()

        first = queue.enqueue(issue.id)
        second = queue.enqueue(issue.id)

        assert first["id"] == second["id"]
        assert first["status"] == JOB_PENDING
        assert TriageJob.query.filter_by(issue_id=issue.id).count() == 1

    def test_drain_runs_pending_jobs(self, oracle, seed_issue):
        issue = seed_issue(PENDING)
        oracle.queue(json.dumps(VERDICT))
        get_triage_queue().enqueue(issue.id)

        (job,) = get_triage_queue().drain()

        assert job["status"] == JOB_COMPLETED
        assert job["attempts"] == 1
        assert _reload(issue.id).status == VALIDATED
        assert [c for c in oracle.calls if c["json_response"]]

    def test_rejected_issue_completes_without_triage(self, oracle, seed_issue):
        issue = seed_issue(REJECTED)
        job = get_triage_queue().enqueue(issue.id)

        result = get_triage_queue().run_job(job["id"])

        assert result["status"] == JOB_COMPLETED
        assert oracle.calls == []
        assert _reload(issue.id).status == REJECTED

    def test_exhausted_retries_force_validation(self, seed_issue, monkeypatch):
        issue = seed_issue(PENDING)
        queue = TriageQueue(mode="deferred", max_attempts=1)
        job = queue.enqueue(issue.id)

        def _explode(issue):
            raise RuntimeError("worker crashed mid-analysis")

        monkeypatch.setattr(triage_service, "analyze", _explode)
        result = queue.run_job(job["id"])

        assert result["status"] == JOB_FAILED
        assert "worker crashed" in result["last_error"]
        issue = _reload(issue.id)
        assert issue.status == VALIDATED
        assert issue.ai_score == 0
        assert ledger_for(issue.id)[-1].details["manual_review_required"] is True

    def test_inline_mode_runs_on_enqueue(self, oracle, seed_issue):
        issue = seed_issue(PENDING)
        oracle.queue(json.dumps(VERDICT))

        job = TriageQueue(mode="inline").enqueue(issue.id)

        assert job["status"] == JOB_COMPLETED
        assert _reload(issue.id).ai_score == 82

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError):
            TriageQueue(mode="celery")

    def test_calls_logged_with_triage_purpose(self, oracle, seed_issue):
        issue = seed_issue(PENDING)
        oracle.queue(json.dumps(VERDICT))
        _run_triage(issue.id)

        assert OracleCallLog.query.filter_by(purpose=PURPOSE_TRIAGE, success=True).count() == 1


class TestTriageLease:
    """A worker killed mid-job must not pin its issue in ai_analyzing."""

    @staticmethod
    def _orphaned_job(issue_id, *, age, attempts=1):
        job = TriageJob(
            issue_id=issue_id, status=JOB_RUNNING, attempts=attempts,
            started_at=datetime.now(timezone.utc) - age,
        )
        db.session.add(job)
        db.session.commit()
        return job.id

    def test_expired_job_is_requeued_and_drained(self, oracle, seed_issue):
        issue = seed_issue(AI_ANALYZING)
        job_id = self._orphaned_job(issue.id, age=timedelta(hours=1))
        oracle.queue(json.dumps(VERDICT))

        requeued = get_triage_queue().enqueue(issue.id)
        assert requeued["id"] == job_id
        assert requeued["status"] == JOB_PENDING

        (job,) = get_triage_queue().drain()

        assert job["status"] == JOB_COMPLETED
        assert job["attempts"] == 2
        issue = _reload(issue.id)
        assert issue.status == VALIDATED
        assert issue.ai_score == 82
        assert len(oracle.calls) == 1
        assert verify_chain(ledger_for(issue.id))[0]

    def test_drain_reclaims_without_a_retrigger(self, oracle, seed_issue):
        issue = seed_issue(AI_ANALYZING)
        self._orphaned_job(issue.id, age=timedelta(hours=1))
        oracle.queue(json.dumps(VERDICT))

        (job,) = get_triage_queue().drain()

        assert job["status"] == JOB_COMPLETED
        assert _reload(issue.id).status == VALIDATED

    def test_live_lease_is_left_alone(self, oracle, seed_issue):
        issue = seed_issue(AI_ANALYZING)
        job_id = self._orphaned_job(issue.id, age=timedelta(seconds=5))

        assert get_triage_queue().enqueue(issue.id)["status"] == JOB_RUNNING
        assert get_triage_queue().drain() == []
        assert db.session.get(TriageJob, job_id).status == JOB_RUNNING
        assert _reload(issue.id).status == AI_ANALYZING
        assert oracle.calls == []

    def test_expired_job_without_attempts_left_forces_validation(self, oracle, seed_issue):
        issue = seed_issue(AI_ANALYZING)
        job_id = self._orphaned_job(issue.id, age=timedelta(hours=1), attempts=3)

        assert get_triage_queue().drain() == []

        db.session.expire_all()
        job = db.session.get(TriageJob, job_id)
        assert job.status == JOB_FAILED
        assert job.last_error == LEASE_EXPIRED_ERROR
        issue = _reload(issue.id)
        assert issue.status == VALIDATED
        assert issue.ai_score == 0
        assert ledger_for(issue.id)[-1].details["manual_review_required"] is True
        assert oracle.calls == []

    def test_claimed_job_is_not_run_twice(self, oracle, seed_issue):
        issue = seed_issue(AI_ANALYZING)
        job_id = self._orphaned_job(issue.id, age=timedelta(seconds=5))

        result = get_triage_queue().run_job(job_id)

        assert result["status"] == JOB_RUNNING
        assert result["attempts"] == 1
        assert oracle.calls == []


class TestThreadWorker:
    """The default execution mode: one daemon thread per job."""

    @pytest.fixture()
    def file_app(self, tmp_path, monkeypatch):
        # The worker thread opens its own connection, so the database must live in a file
        monkeypatch.setattr(TestingConfig, "SQLALCHEMY_DATABASE_URI",
                            f"sqlite:///{tmp_path / 'triage.db'}")
        application = create_app("testing")
        init_image_store(application, ImageStore(str(tmp_path / "media")))
        provider = ScriptedProvider()
        init_oracle_gateway(application, OracleGateway(providers={"gemini": provider}))
        with application.app_context():
            yield application, provider
            db.session.remove()
            db.engine.dispose()

    def test_thread_mode_validates_issue(self, file_app, seed_issue):
        application, provider = file_app
        provider.queue(json.dumps(VERDICT))
        issue = seed_issue(PENDING)

        job = TriageQueue(mode="thread").enqueue(issue.id)
        worker = task_runner._running_jobs.get(job["id"])
        if worker is not None:
            worker.join(timeout=10)
            assert not worker.is_alive()

        issue = _reload(issue.id)
        assert issue.status == VALIDATED
        assert issue.ai_score == 82
        entries = ledger_for(issue.id)
        assert entries[-1].action == AI_ANALYSIS
        assert entries[-1].details["severity"] == "high"
        assert verify_chain(entries)[0]
        assert db.session.get(TriageJob, job["id"]).status == JOB_COMPLETED
        assert len(provider.calls) == 1
