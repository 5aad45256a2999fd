"""
CivicLens Dashboard Service

Aggregates the public city dashboard:
  - Issue totals per status
  - Map points for every issue
  - Active fixes (assigned / in progress)
  - Civic leader board (top 5 by credits)
  - Recent ledger activity
"""

import logging

from sqlalchemy import func

from civiclens.models import db
from civiclens.models.audit import AuditLedgerEntry
from civiclens.models.issue import ASSIGNED, IN_PROGRESS, ISSUE_STATUSES, Issue
from civiclens.services.reputation import leaderboard

logger = logging.getLogger(__name__)


def get_status_counts():
    rows = (
        db.session.query(Issue.status, func.count(Issue.id))
        .group_by(Issue.status)
        .all()
    )
    counts = {s: 0 for s in ISSUE_STATUSES}
    counts.update({status: count for status, count in rows})
    counts["total"] = sum(counts[s] for s in ISSUE_STATUSES)
    return counts


def get_map_points(limit=500):
    rows = Issue.query.order_by(Issue.created_at.desc()).limit(limit).all()
    return [
        {
            "id": i.id,
            "lat": i.latitude,
            "lng": i.longitude,
            "status": i.status,
            "category": i.category,
            "title": i.title,
            "report_count": i.report_count,
        }
        for i in rows
    ]


def get_active_fixes(limit=5):
    rows = (
        Issue.query
        .filter(Issue.status.in_((ASSIGNED, IN_PROGRESS)))
        .order_by(Issue.updated_at.desc())
        .limit(limit)
        .all()
    )
    return [i.to_dict() for i in rows]


def get_recent_activity(limit=10):
    rows = (
        db.session.query(AuditLedgerEntry, Issue.title)
        .join(Issue, Issue.id == AuditLedgerEntry.issue_id)
        .order_by(AuditLedgerEntry.timestamp.desc(), AuditLedgerEntry.id.desc())
        .limit(limit)
        .all()
    )
    return [dict(entry.to_dict(), issue_title=title) for entry, title in rows]


def get_dashboard():
    """Everything the public dashboard renders, in one payload."""
    return {
        "stats": get_status_counts(),
        "map": get_map_points(),
        "active_fixes": get_active_fixes(),
        "leaders": leaderboard(limit=5),
        "activity": get_recent_activity(),
    }
