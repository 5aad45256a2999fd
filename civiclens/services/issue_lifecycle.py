"""
CivicLens
Issue Lifecycle Service — the issue state machine.

Owns every write to ``Issue.status``:
  - Transition validation (ISSUE_TRANSITIONS)
  - Capability checks (pipeline-only targets vs. officer transitions)
  - Compare-and-swap status update against the persisted status
  - One ledger entry per transition

Intake (create-or-merge) also lives here because a merge is the one
mutation of an issue that is not a status transition.

Services flush; the blueprint or worker owns the commit.

Usage:
    from civiclens.services.issue_lifecycle import transition_issue

    issue = transition_issue(issue_id, "assigned", actor, details={"reason": "crew 4"})
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import update

from civiclens.auth import Actor, ensure_profile
from civiclens.core.exceptions import (
    AuthorizationError,
    ConsistencyWarning,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from civiclens.models import db
from civiclens.models.audit import (
    EVIDENCE_UPLOADED,
    ISSUE_CREATED,
    STATUS_CHANGE,
    append_entry,
)
from civiclens.models.issue import (
    ISSUE_CATEGORIES,
    ISSUE_STATUSES,
    ISSUE_TRANSITIONS,
    PENDING,
    RESOLVED,
    SYSTEM_TARGETS,
    Issue,
)
from civiclens.services.geo import parse_coordinates

logger = logging.getLogger(__name__)

# Columns a transition may set alongside status
_CORRELATED_FIELDS = frozenset({"ai_score", "after_image"})


def get_issue_or_404(issue_id: str) -> Issue:
    issue = db.session.get(Issue, issue_id)
    if issue is None:
        raise NotFoundError("Issue", issue_id)
    return issue


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════

def validate_transition(current: str, target: str, actor: Actor | None) -> dict:
    """
    Check whether ``actor`` may move an issue from ``current`` to ``target``.

    Returns:
        {"valid": bool, "from": str, "to": str, "reason": str|None, "authorized": bool}
    """
    if target not in ISSUE_STATUSES:
        return {"valid": False, "from": current, "to": target, "authorized": True,
                "reason": f"Unknown status '{target}'"}

    if target in SYSTEM_TARGETS:
        authorized = actor is None
        auth_reason = f"'{target}' is set by the triage pipeline only"
    else:
        authorized = actor is not None and (actor.is_officer or actor.is_system)
        auth_reason = f"Moving an issue to '{target}' requires the officer role"
    if not authorized:
        return {"valid": False, "from": current, "to": target, "authorized": False,
                "reason": auth_reason}

    if target not in ISSUE_TRANSITIONS.get(current, set()):
        return {"valid": False, "from": current, "to": target, "authorized": True,
                "reason": f"'{target}' is not reachable from '{current}'"}

    return {"valid": True, "from": current, "to": target, "authorized": True, "reason": None}


def transition_issue(
    issue_id: str,
    target: str,
    actor: Actor | None,
    *,
    details: dict | None = None,
    action: str = STATUS_CHANGE,
    fields: dict | None = None,
) -> Issue:
    """
    Move an issue to ``target`` and append exactly one ledger entry.

    Args:
        issue_id: UUID of the issue
        target: New status
        actor: Caller, or None for the triage pipeline
        details: Ledger metadata for this transition
        action: Ledger action kind (STATUS_CHANGE, or AI_ANALYSIS for triage)
        fields: Correlated columns written in the same UPDATE (ai_score, after_image)

    Raises:
        NotFoundError, AuthorizationError, InvalidTransition
    """
    fields = dict(fields or {})
    unknown = set(fields) - _CORRELATED_FIELDS
    if unknown:
        raise ValueError(f"Fields not settable by a transition: {', '.join(sorted(unknown))}")
    if "after_image" in fields and target != RESOLVED:
        raise ValueError("after_image is only set when resolving")

    issue = get_issue_or_404(issue_id)
    current = issue.status

    check = validate_transition(current, target, actor)
    if not check["authorized"]:
        raise AuthorizationError(check["reason"])
    if not check["valid"]:
        raise InvalidTransition(issue_id, current, target, check["reason"])

    # Compare-and-swap: only applies if nobody moved the issue since we read it
    result = db.session.execute(
        update(Issue)
        .where(Issue.id == issue_id, Issue.status == current)
        .values(status=target, updated_at=datetime.now(timezone.utc), **fields)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.expire(issue)
        raise InvalidTransition(issue_id, current, target, "status changed concurrently")
    db.session.refresh(issue)

    try:
        append_entry(
            issue_id=issue_id,
            action=action,
            prev_status=current,
            new_status=target,
            actor_id=actor.user_id if actor else None,
            details=details,
        )
    except ConsistencyWarning as warning:
        logger.warning(
            "Ledger append failed after %s -> %s on issue %s: %s",
            current, target, issue_id, warning.detail,
            extra={"issue_id": issue_id, "event_type": "consistency_warning"},
        )

    logger.info("Issue %s: %s -> %s by %s", issue_id, current, target,
                actor.user_id if actor else "system",
                extra={"issue_id": issue_id, "event_type": "status_change"})
    return issue


# ═════════════════════════════════════════════════════════════════════════════
# Intake
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class IntakeResult:
    issue: Issue
    merged: bool = False

    def to_dict(self) -> dict:
        body = {"merged": self.merged, "issue": self.issue.to_dict()}
        if self.merged:
            body["message"] = "Your report was merged into an existing report of the same issue."
        return body


def _clean_text(value, field: str, *, required: bool, max_len: int) -> str | None:
    text = (value or "").strip() if isinstance(value, str) or value is None else str(value).strip()
    if required and not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    if len(text) > max_len:
        raise ValidationError(f"{field} exceeds {max_len} characters", details={field: "too long"})
    return text or None


def validate_report(data: dict) -> dict:
    """Normalise the report fields of a create-issue request."""
    category = _clean_text(data.get("category"), "category", required=True, max_len=40).lower()
    if category not in ISSUE_CATEGORIES:
        raise ValidationError(
            f"Unknown category '{category}'",
            details={"category": f"must be one of {', '.join(ISSUE_CATEGORIES)}"},
        )
    lat, lng = parse_coordinates(data.get("lat"), data.get("lng"))
    return {
        "category": category,
        "subcategory": _clean_text(data.get("subcategory"), "subcategory", required=False, max_len=80),
        "title": _clean_text(data.get("title"), "title", required=True, max_len=200),
        "description": _clean_text(data.get("description"), "description", required=False, max_len=5000) or "",
        "address": _clean_text(data.get("address"), "address", required=False, max_len=300),
        "lat": lat,
        "lng": lng,
    }


def create_issue(
    actor: Actor,
    data: dict,
    *,
    image_bytes: bytes | None = None,
    image_content_type: str | None = None,
    now: datetime | None = None,
) -> IntakeResult:
    """
    Intake a citizen report: provenance → duplicate check → create or merge.

    Provenance and validation failures raise before anything is written.
    A new issue and its ISSUE_CREATED entry are flushed as one unit.
    """
    from civiclens.ai.gateway import OracleImage
    from civiclens.services.duplicate_detector import detect_duplicate
    from civiclens.services.geocoding import get_geocoder
    from civiclens.services.image_store import get_image_store
    from civiclens.services.provenance import check_image_provenance

    if actor is None:
        raise AuthorizationError("Authentication required", authenticated=False)

    report = validate_report(data)
    store = get_image_store()

    mime = None
    if image_bytes is not None:
        mime = store.validate_upload(image_bytes, image_content_type)
        check_image_provenance(image_bytes, report["lat"], report["lng"], now=now)

    ensure_profile(actor)

    image_ref = None
    if image_bytes is not None:
        duplicate = detect_duplicate(
            OracleImage(image_bytes, mime), report["lat"], report["lng"], report["category"],
        )
        image_ref = store.save(image_bytes, mime, actor.user_id)
        if duplicate.is_duplicate:
            merged = merge_report(duplicate.candidate.id, actor, evidence_ref=image_ref)
            if merged is not None:
                return IntakeResult(issue=merged, merged=True)
            logger.info("Merge target %s no longer open; filing a new issue", duplicate.candidate.id)

    if not report["address"]:
        report["address"] = get_geocoder().reverse(report["lat"], report["lng"])

    issue = Issue(
        reporter_id=actor.user_id,
        category=report["category"],
        subcategory=report["subcategory"],
        title=report["title"],
        description=report["description"],
        address=report["address"],
        latitude=report["lat"],
        longitude=report["lng"],
        status=PENDING,
        before_image=image_ref,
        report_count=1,
    )
    db.session.add(issue)
    db.session.flush()

    append_entry(
        issue_id=issue.id,
        action=ISSUE_CREATED,
        prev_status=None,
        new_status=PENDING,
        actor_id=actor.user_id,
        details={
            "category": issue.category,
            "lat": issue.latitude,
            "lng": issue.longitude,
            "before_image": image_ref,
        },
        strict=True,
    )
    logger.info("Issue %s created by %s (%s)", issue.id, actor.user_id, issue.category,
                extra={"issue_id": issue.id, "event_type": "issue_created"})
    return IntakeResult(issue=issue, merged=False)


def merge_report(target_id: str, actor: Actor, *, evidence_ref: str | None = None) -> Issue | None:
    """
    Fold a new report into an open issue: bump ``report_count`` and record
    the contribution as an EVIDENCE_UPLOADED entry with no status change.

    Returns None when the target is no longer eligible (e.g. triage moved it
    on), leaving the caller to file a new issue.
    """
    eligible = tuple(current_app.config.get("DUPLICATE_CANDIDATE_STATUSES", (PENDING,)))
    result = db.session.execute(
        update(Issue)
        .where(Issue.id == target_id, Issue.status.in_(eligible))
        .values(report_count=Issue.report_count + 1, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None

    issue = get_issue_or_404(target_id)
    db.session.refresh(issue)

    try:
        append_entry(
            issue_id=issue.id,
            action=EVIDENCE_UPLOADED,
            prev_status=issue.status,
            new_status=issue.status,
            actor_id=actor.user_id,
            details={"merged": True, "report_count": issue.report_count, "evidence_image": evidence_ref},
        )
    except ConsistencyWarning as warning:
        logger.warning("Ledger append failed for merge into issue %s: %s", issue.id, warning.detail,
                       extra={"issue_id": issue.id, "event_type": "consistency_warning"})

    logger.info("Report by %s merged into issue %s (count=%d)", actor.user_id, issue.id,
                issue.report_count, extra={"issue_id": issue.id, "event_type": "duplicate_merged"})
    return issue


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def get_issue_with_trail(issue_id: str) -> dict:
    return get_issue_or_404(issue_id).to_dict(include_ledger=True)


def list_issues(*, category: str | None = None, status: str | None = None, limit: int = 50) -> list[dict]:
    if status and status not in ISSUE_STATUSES:
        raise ValidationError(f"Unknown status '{status}'", details={"status": "invalid"})
    limit = max(1, min(int(limit or 50), 200))
    q = Issue.query.order_by(Issue.created_at.desc())
    if category:
        q = q.filter(Issue.category == category.lower())
    if status:
        q = q.filter(Issue.status == status)
    return [i.to_dict() for i in q.limit(limit).all()]
