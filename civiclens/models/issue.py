"""
CivicLens
Issue domain model.

Models:
    - Issue: a reported civic defect tracked through its lifecycle.

The transition table lives here next to the status constants; the
``issue_lifecycle`` service is the only writer of ``Issue.status``.
"""

import uuid
from datetime import datetime, timezone

from civiclens.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


# ── Status constants ─────────────────────────────────────────────────────────

PENDING = "pending"
AI_ANALYZING = "ai_analyzing"
VALIDATED = "validated"
ASSIGNED = "assigned"
IN_PROGRESS = "in_progress"
RESOLVED = "resolved"
REJECTED = "rejected"

ISSUE_STATUSES = (PENDING, AI_ANALYZING, VALIDATED, ASSIGNED, IN_PROGRESS, RESOLVED, REJECTED)

TERMINAL_STATUSES = frozenset({RESOLVED, REJECTED})

# current status -> reachable targets
ISSUE_TRANSITIONS = {
    PENDING: {AI_ANALYZING, REJECTED},
    AI_ANALYZING: {VALIDATED, REJECTED},
    VALIDATED: {ASSIGNED, RESOLVED, REJECTED},
    ASSIGNED: {IN_PROGRESS, RESOLVED, REJECTED},
    IN_PROGRESS: {RESOLVED, REJECTED},
    RESOLVED: set(),
    REJECTED: set(),
}

# Targets only the triage pipeline (null actor) may move an issue into
SYSTEM_TARGETS = frozenset({AI_ANALYZING, VALIDATED})

ISSUE_CATEGORIES = ("roads", "waste", "water", "electricity", "safety", "other")

SEVERITIES = ("low", "medium", "high", "critical")


class Issue(db.Model):
    """A citizen report of a physical civic defect, with photo evidence."""

    __tablename__ = "issues"
    __table_args__ = (
        db.Index("idx_issue_status", "status"),
        db.Index("idx_issue_geo", "latitude", "longitude"),
        db.Index("idx_issue_reporter", "reporter_id"),
        db.CheckConstraint("report_count >= 1", name="ck_issue_report_count_positive"),
        db.CheckConstraint("latitude BETWEEN -90 AND 90", name="ck_issue_latitude_range"),
        db.CheckConstraint("longitude BETWEEN -180 AND 180", name="ck_issue_longitude_range"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    reporter_id = db.Column(
        db.String(64), db.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True,
        comment="Profile of the citizen who filed the first report",
    )

    category = db.Column(db.String(40), nullable=False, comment="roads | waste | water | …")
    subcategory = db.Column(db.String(80), nullable=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    address = db.Column(db.String(300), nullable=True)

    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)

    status = db.Column(
        db.String(20), nullable=False, default=PENDING,
        comment="pending | ai_analyzing | validated | assigned | in_progress | resolved | rejected",
    )

    before_image = db.Column(db.String(500), nullable=True, comment="Object-store reference")
    after_image = db.Column(db.String(500), nullable=True, comment="Set only when resolved")

    ai_score = db.Column(db.Integer, nullable=True, comment="0–100 triage confidence")
    report_count = db.Column(db.Integer, nullable=False, default=1, comment="Duplicate-merge counter")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    reporter = db.relationship("Profile", lazy="joined")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_ledger: bool = False):
        d = {
            "id": self.id,
            "reporter_id": self.reporter_id,
            "reporter_username": self.reporter.username if self.reporter else None,
            "category": self.category,
            "subcategory": self.subcategory,
            "title": self.title,
            "description": self.description,
            "address": self.address,
            "lat": self.latitude,
            "lng": self.longitude,
            "status": self.status,
            "before_image": self.before_image,
            "after_image": self.after_image,
            "ai_score": self.ai_score,
            "report_count": self.report_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_ledger:
            from civiclens.models.audit import ledger_for
            d["audit_ledger"] = [e.to_dict() for e in ledger_for(self.id)]
        return d

    def __repr__(self):
        return f"<Issue {self.id}: [{self.status}] {self.title[:40]}>"
