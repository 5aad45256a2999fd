"""
CivicLens
Audit ledger model.

Models:
    - AuditLedgerEntry: immutable, append-only history of one issue.

Entries are only ever inserted. Sorted by ``(timestamp, id)`` the entries of
an issue replay a valid path through the issue state machine; see
``verify_chain``.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError

from civiclens.core.exceptions import ConsistencyWarning
from civiclens.models import db
from civiclens.models.issue import ISSUE_TRANSITIONS, PENDING

logger = logging.getLogger(__name__)

# ── Action kinds ─────────────────────────────────────────────────────────────

ISSUE_CREATED = "ISSUE_CREATED"
STATUS_CHANGE = "STATUS_CHANGE"
AI_ANALYSIS = "AI_ANALYSIS"
EVIDENCE_UPLOADED = "EVIDENCE_UPLOADED"

LEDGER_ACTIONS = {ISSUE_CREATED, STATUS_CHANGE, AI_ANALYSIS, EVIDENCE_UPLOADED}


class AuditLedgerEntry(db.Model):
    """
    One immutable fact about an issue's history.

    ``actor_id`` is NULL for system / AI initiated entries.  ``details`` is
    stored in the ``metadata`` column (the attribute name is reserved by the
    declarative base).
    """

    __tablename__ = "audit_ledger"
    __table_args__ = (
        db.Index("idx_ledger_issue_ts", "issue_id", "timestamp"),
        db.Index("idx_ledger_action", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    issue_id = db.Column(
        db.String(36), db.ForeignKey("issues.id", ondelete="RESTRICT"), nullable=False,
    )
    action = db.Column(
        db.String(30), nullable=False,
        comment="ISSUE_CREATED | STATUS_CHANGE | AI_ANALYSIS | EVIDENCE_UPLOADED",
    )
    prev_status = db.Column(db.String(20), nullable=True, comment="NULL only for the first entry")
    new_status = db.Column(db.String(20), nullable=False)
    actor_id = db.Column(db.String(64), nullable=True, comment="NULL = system / AI pipeline")
    details = db.Column("metadata", db.JSON, nullable=False, default=dict)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "action": self.action,
            "prev_status": self.prev_status,
            "new_status": self.new_status,
            "actor_id": self.actor_id,
            "metadata": self.details or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLedgerEntry {self.id}: {self.action} {self.prev_status}->{self.new_status}>"


# ── Writer ───────────────────────────────────────────────────────────────────

def append_entry(
    *,
    issue_id: str,
    action: str,
    new_status: str,
    prev_status: str | None = None,
    actor_id: str | None = None,
    details: dict | None = None,
    strict: bool = False,
) -> AuditLedgerEntry:
    """
    Append a single ledger row.  Uses ``flush`` so callers keep
    transaction control.

    With ``strict=True`` any database error propagates and the caller's
    transaction fails as a whole.  Otherwise the insert runs inside a
    SAVEPOINT: a failure rolls back only the ledger row and is raised as
    ``ConsistencyWarning`` so the status update it describes survives.
    """
    if action not in LEDGER_ACTIONS:
        raise ValueError(f"Unknown ledger action: {action}")

    entry = AuditLedgerEntry(
        issue_id=issue_id,
        action=action,
        prev_status=prev_status,
        new_status=new_status,
        actor_id=actor_id,
        details=details or {},
    )
    if strict:
        db.session.add(entry)
        db.session.flush()
        return entry

    try:
        with db.session.begin_nested():
            db.session.add(entry)
            db.session.flush()
    except SQLAlchemyError as exc:
        raise ConsistencyWarning(issue_id, str(exc)) from exc
    return entry


# ── Readers ──────────────────────────────────────────────────────────────────

def ledger_for(issue_id: str) -> list[AuditLedgerEntry]:
    """All entries of an issue in replay order."""
    return (
        AuditLedgerEntry.query
        .filter_by(issue_id=issue_id)
        .order_by(AuditLedgerEntry.timestamp.asc(), AuditLedgerEntry.id.asc())
        .all()
    )


def verify_chain(entries) -> tuple[bool, list[str]]:
    """
    Replay ``entries`` (already in replay order) against the state machine.

    Returns ``(ok, problems)``.  A valid chain starts with a NULL
    ``prev_status`` landing on ``pending``; every later entry's
    ``prev_status`` equals the previous ``new_status``; and every entry
    that changes status follows a legal transition.
    """
    problems: list[str] = []
    previous = None
    for idx, entry in enumerate(entries):
        prev_status = entry.prev_status
        new_status = entry.new_status
        if idx == 0:
            if prev_status is not None:
                problems.append(f"entry {entry.id}: first entry has prev_status '{prev_status}'")
            if new_status != PENDING:
                problems.append(f"entry {entry.id}: first entry lands on '{new_status}', not 'pending'")
        else:
            if prev_status != previous:
                problems.append(
                    f"entry {entry.id}: prev_status '{prev_status}' does not follow '{previous}'"
                )
            elif prev_status != new_status and new_status not in ISSUE_TRANSITIONS.get(prev_status, ()):
                problems.append(f"entry {entry.id}: illegal transition {prev_status} -> {new_status}")
        previous = new_status
    return not problems, problems
