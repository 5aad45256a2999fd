"""
CivicLens
AI domain models.

Models:
    - OracleCallLog: one row per AI oracle call (provider, latency, outcome)
    - TriageJob: queue row for the background triage worker
"""

from datetime import datetime, timezone

from civiclens.models import db

# ── Oracle purposes ──────────────────────────────────────────────────────────

PURPOSE_TRIAGE = "triage"
PURPOSE_DUPLICATE = "duplicate_check"
PURPOSE_RESOLUTION = "resolution_verify"

# ── Triage job statuses ──────────────────────────────────────────────────────

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

JOB_OPEN_STATUSES = (JOB_PENDING, JOB_RUNNING)


class OracleCallLog(db.Model):
    """Tracks every oracle call for latency and failure monitoring."""

    __tablename__ = "oracle_call_logs"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(30), nullable=False, comment="gemini / anthropic / openai / local")
    model = db.Column(db.String(80), nullable=False)
    purpose = db.Column(db.String(40), default="", comment="triage | duplicate_check | resolution_verify")
    image_count = db.Column(db.Integer, default=0)
    latency_ms = db.Column(db.Integer, default=0, comment="End-to-end latency in milliseconds")
    attempts = db.Column(db.Integer, default=1)
    success = db.Column(db.Boolean, default=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "provider": self.provider,
            "model": self.model,
            "purpose": self.purpose,
            "image_count": self.image_count,
            "latency_ms": self.latency_ms,
            "attempts": self.attempts,
            "success": self.success,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<OracleCallLog {self.id}: {self.provider}/{self.model} {self.purpose}>"


class TriageJob(db.Model):
    """
    A unit of background triage work, keyed by issue.

    At most one pending/running job exists per issue; ``TriageQueue.enqueue``
    returns the open job instead of creating another.
    """

    __tablename__ = "triage_jobs"
    __table_args__ = (
        db.Index("idx_triage_job_issue_status", "issue_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    issue_id = db.Column(db.String(36), db.ForeignKey("issues.id", ondelete="CASCADE"), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default=JOB_PENDING,
        comment="pending | running | completed | failed",
    )
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
