"""
CivicLens
Triage Task Runner — queue handoff for background AI triage.

Creating an issue never waits for triage.  The request enqueues a
``TriageJob`` keyed by issue id; a worker processes it with its own retry
policy.

Execution modes (``TRIAGE_EXECUTION``):
    thread    — daemon thread per job, own app context (default)
    inline    — run synchronously right after enqueue (single-process dev)
    deferred  — leave pending; processed by ``drain()`` / ``flask triage-drain``

Workers claim a job by moving it pending → running with a compare-and-swap.
A running job holds a lease of ``TRIAGE_JOB_LEASE`` seconds from
``started_at``; once it expires (worker thread killed with its process) the
job is handed back to the queue, or force-validated when its attempts are
spent.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import update

from civiclens.core.exceptions import InvalidTransition, NotFoundError
from civiclens.models import db
from civiclens.models.ai import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_OPEN_STATUSES,
    JOB_PENDING,
    JOB_RUNNING,
    TriageJob,
)

logger = logging.getLogger(__name__)

EXECUTION_MODES = ("thread", "inline", "deferred")

DEFAULT_LEASE_SECONDS = 300

LEASE_EXPIRED_ERROR = "worker lease expired"

# In-memory registry of running jobs (job_id → Thread)
_running_jobs: dict[int, threading.Thread] = {}


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TriageQueue:
    """Enqueues and runs triage jobs."""

    def __init__(self, mode: str = "thread", max_attempts: int = 3,
                 lease_seconds: float = DEFAULT_LEASE_SECONDS):
        if mode not in EXECUTION_MODES:
            raise ValueError(f"Unknown triage execution mode: {mode}")
        self.mode = mode
        self.max_attempts = max(1, max_attempts)
        self.lease_seconds = lease_seconds

    def enqueue(self, issue_id: str) -> dict:
        """
        Queue triage for an issue.  Idempotent: an open job for the same
        issue is returned instead of creating another.  A running job whose
        lease expired is reclaimed first, so re-triggering recovers an issue
        whose worker died.

        Commits, so a background worker can see the job.
        """
        self.reclaim_expired(issue_id)

        job = (
            TriageJob.query
            .filter(TriageJob.issue_id == issue_id, TriageJob.status.in_(JOB_OPEN_STATUSES))
            .order_by(TriageJob.id.asc())
            .first()
        )
        if job is None:
            job = TriageJob(issue_id=issue_id, status=JOB_PENDING, attempts=0)
            db.session.add(job)
            db.session.commit()
            logger.info("Triage job %d queued for issue %s", job.id, issue_id,
                        extra={"issue_id": issue_id, "event_type": "triage_queued"})
        elif job.status == JOB_RUNNING:
            return job.to_dict()

        job_id = job.id
        self._dispatch(job_id)

        job = db.session.get(TriageJob, job_id)
        return job.to_dict()

    def drain(self, limit: int | None = None) -> list[dict]:
        """Run pending jobs (and reclaimed expired ones) synchronously in FIFO order."""
        self.reclaim_expired()
        q = TriageJob.query.filter_by(status=JOB_PENDING).order_by(TriageJob.id.asc())
        if limit:
            q = q.limit(limit)
        job_ids = [j.id for j in q.all()]
        return [self.run_job(job_id) for job_id in job_ids]

    def reclaim_expired(self, issue_id: str | None = None) -> list[int]:
        """
        Hand running jobs whose lease expired back to the queue.

        Jobs that already used every attempt are finished as failed and their
        issue gets the manual-review verdict instead.  Returns the ids of the
        jobs put back to pending.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.lease_seconds)
        q = TriageJob.query.filter(TriageJob.status == JOB_RUNNING)
        if issue_id is not None:
            q = q.filter(TriageJob.issue_id == issue_id)

        reclaimed = []
        for job in q.order_by(TriageJob.id.asc()).all():
            started = _as_utc(job.started_at)
            if started is not None and started > cutoff:
                continue

            job_id, job_issue_id, attempts = job.id, job.issue_id, job.attempts
            logger.warning("Triage job %d for issue %s lost its worker (attempt %d/%d)",
                           job_id, job_issue_id, attempts, self.max_attempts,
                           extra={"issue_id": job_issue_id, "event_type": "triage_lease_expired"})

            if attempts >= self.max_attempts:
                self._force_validate(job_issue_id)
                self._finish(job_id, JOB_FAILED, error=LEASE_EXPIRED_ERROR)
                continue

            reset = db.session.execute(
                update(TriageJob)
                .where(TriageJob.id == job_id, TriageJob.status == JOB_RUNNING)
                .values(status=JOB_PENDING, started_at=None, last_error=LEASE_EXPIRED_ERROR)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.session.commit()
            if reset == 1:
                reclaimed.append(job_id)
        return reclaimed

    def run_job(self, job_id: int) -> dict:
        """
        Process one job, retrying unexpected errors with exponential backoff.

        Oracle failures never reach this loop (triage absorbs them).  If every
        attempt fails, the issue is validated with the manual-review fallback
        so it cannot stay in ``ai_analyzing``.  A job already claimed by
        another worker (or finished) is returned untouched.
        """
        from civiclens.services import triage_service

        job = db.session.get(TriageJob, job_id)
        if job is None:
            raise NotFoundError("TriageJob", job_id)
        issue_id = job.issue_id

        # Compare-and-swap claim: only one worker moves pending → running
        claimed = db.session.execute(
            update(TriageJob)
            .where(TriageJob.id == job_id, TriageJob.status == JOB_PENDING)
            .values(status=JOB_RUNNING, started_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        ).rowcount
        db.session.commit()
        if claimed != 1:
            return db.session.get(TriageJob, job_id).to_dict()

        last_error = None
        while True:
            job = db.session.get(TriageJob, job_id)
            job.attempts += 1
            attempt = job.attempts
            db.session.commit()
            try:
                outcome = triage_service.begin_triage(issue_id)
                db.session.commit()
                if outcome != triage_service.SKIPPED:
                    triage_service.complete_triage(issue_id)
                    db.session.commit()
                return self._finish(job_id, JOB_COMPLETED)
            except (InvalidTransition, NotFoundError) as e:
                # Issue moved on (e.g. rejected by an officer) or vanished: nothing to retry
                db.session.rollback()
                logger.info("Triage job %d for issue %s ended early: %s", job_id, issue_id, e,
                            extra={"issue_id": issue_id, "event_type": "triage_skipped"})
                return self._finish(job_id, JOB_COMPLETED, error=str(e))
            except Exception as e:
                db.session.rollback()
                last_error = e
                logger.error("Triage job %d attempt %d/%d failed: %s",
                             job_id, attempt, self.max_attempts, e, exc_info=True,
                             extra={"issue_id": issue_id, "event_type": "triage_error"})
                if attempt >= self.max_attempts:
                    break
                backoff = min(2 ** (attempt - 1), 8)
                threading.Event().wait(backoff)

        self._force_validate(issue_id)
        return self._finish(job_id, JOB_FAILED, error=str(last_error))

    # ── Internal ──────────────────────────────────────────────────────────

    def _dispatch(self, job_id: int) -> None:
        """Hand a pending job to a worker according to the execution mode."""
        if self.mode == "inline":
            self.run_job(job_id)
        elif self.mode == "thread":
            app = current_app._get_current_object()
            t = threading.Thread(
                target=self._execute_in_background,
                args=(app, job_id),
                daemon=True,
                name=f"triage-{job_id}",
            )
            _running_jobs[job_id] = t
            t.start()

    @staticmethod
    def _force_validate(issue_id: str) -> None:
        """Last resort: leave ai_analyzing with the manual-review verdict."""
        from civiclens.models.issue import AI_ANALYZING, Issue
        from civiclens.services import triage_service

        issue = db.session.get(Issue, issue_id)
        if issue is None or issue.status != AI_ANALYZING:
            return
        try:
            triage_service.complete_triage(
                issue_id, verdict=triage_service.fallback_verdict(), failed=True,
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error("Issue %s left in ai_analyzing after triage failure: %s", issue_id, e,
                         extra={"issue_id": issue_id, "event_type": "triage_stuck"})

    @staticmethod
    def _finish(job_id: int, status: str, error: str | None = None) -> dict:
        job = db.session.get(TriageJob, job_id)
        job.status = status
        job.last_error = error
        job.finished_at = datetime.now(timezone.utc)
        db.session.commit()
        return job.to_dict()

    def _execute_in_background(self, app, job_id: int):
        """Run the job in a background thread with its own app context."""
        with app.app_context():
            try:
                self.run_job(job_id)
            except Exception as e:
                logger.error("TriageQueue: job %d crashed: %s", job_id, e, exc_info=True)
            finally:
                _running_jobs.pop(job_id, None)


# ── App wiring ───────────────────────────────────────────────────────────────

def init_triage_queue(app, queue: TriageQueue | None = None) -> TriageQueue:
    queue = queue or TriageQueue(
        mode=app.config.get("TRIAGE_EXECUTION", "thread"),
        max_attempts=app.config.get("TRIAGE_MAX_ATTEMPTS", 3),
        lease_seconds=app.config.get("TRIAGE_JOB_LEASE", DEFAULT_LEASE_SECONDS),
    )
    app.extensions["civiclens.triage_queue"] = queue
    return queue


def get_triage_queue() -> TriageQueue:
    return current_app.extensions["civiclens.triage_queue"]
