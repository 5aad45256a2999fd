"""
Issue endpoints: intake, audit trail, lifecycle, triage, resolution.

Endpoints (/api/v1):
  - POST   /issues                       create-issue (201) or merge ack (200)
  - GET    /issues                       list recent issues (?category, ?status, ?limit)
  - GET    /issues/<id>                  issue + audit ledger
  - PATCH  /issues/<id>/status           officer status change (reason required)
  - POST   /issues/<id>/triage           (re)trigger AI triage, idempotent
  - POST   /issues/<id>/resolution       submit repair evidence
  - POST   /issues/check-duplicate       pre-submission duplicate check
  - GET    /issues/<id>/ledger/verify    replay the ledger against the state machine

Service exceptions are mapped to responses by ``civiclens.utils.errors``.
"""

import logging

from flask import Blueprint, g, jsonify, request

from civiclens.ai.gateway import OracleImage
from civiclens.ai.task_runner import get_triage_queue
from civiclens.auth import OFFICER, SYSTEM, require_auth, require_role
from civiclens.models import db
from civiclens.models.audit import ledger_for, verify_chain
from civiclens.models.issue import AI_ANALYZING, PENDING, RESOLVED
from civiclens.services.duplicate_detector import detect_duplicate
from civiclens.services.geo import parse_coordinates
from civiclens.services.image_store import get_image_store
from civiclens.services.issue_lifecycle import (
    create_issue,
    get_issue_or_404,
    get_issue_with_trail,
    list_issues,
    transition_issue,
)
from civiclens.services.resolution_service import submit_resolution
from civiclens.utils.errors import E, api_error

logger = logging.getLogger(__name__)

issue_bp = Blueprint("issues", __name__, url_prefix="/api/v1")


def _request_fields() -> dict:
    """Form fields for multipart uploads, JSON body otherwise."""
    if request.form:
        return request.form.to_dict()
    return request.get_json(silent=True) or {}


def _uploaded_image(field: str = "image"):
    """Return ``(bytes, content_type)`` of an uploaded file, or ``(None, None)``."""
    file = request.files.get(field)
    if not file or not file.filename:
        return None, None
    return file.read(), file.mimetype


def _dispatch_triage(issue_id: str):
    """Hand the issue to the triage worker.  A failed handoff leaves it pending."""
    try:
        return get_triage_queue().enqueue(issue_id)
    except Exception as exc:
        db.session.rollback()
        logger.error("Triage dispatch failed for issue %s; it stays pending until retriggered: %s",
                     issue_id, exc, exc_info=True,
                     extra={"issue_id": issue_id, "event_type": "triage_dispatch_failed"})
        return None


# ═════════════════════════════════════════════════════════════════════════════
# Intake
# ═════════════════════════════════════════════════════════════════════════════

@issue_bp.route("/issues", methods=["POST"])
@require_auth
def create_issue_endpoint():
    """Create an issue from a citizen report, or merge it into a duplicate."""
    data = _request_fields()
    image_bytes, content_type = _uploaded_image()

    result = create_issue(g.actor, data, image_bytes=image_bytes, image_content_type=content_type)
    db.session.commit()

    if result.merged:
        return jsonify(result.to_dict()), 200

    job = _dispatch_triage(result.issue.id)
    body = result.to_dict()
    body["triage_job"] = job
    return jsonify(body), 201


@issue_bp.route("/issues/check-duplicate", methods=["POST"])
@require_auth
def check_duplicate_endpoint():
    """Ask whether a photo would be merged, without filing anything."""
    data = _request_fields()
    image_bytes, content_type = _uploaded_image()
    if image_bytes is None:
        return api_error(E.VALIDATION_REQUIRED, "image is required")
    lat, lng = parse_coordinates(data.get("lat"), data.get("lng"))
    mime = get_image_store().validate_upload(image_bytes, content_type)

    result = detect_duplicate(OracleImage(image_bytes, mime), lat, lng, data.get("category") or "")
    db.session.commit()
    return jsonify(result.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

@issue_bp.route("/issues", methods=["GET"])
def list_issues_endpoint():
    limit = request.args.get("limit", 50, type=int)
    items = list_issues(
        category=request.args.get("category"),
        status=request.args.get("status"),
        limit=limit,
    )
    return jsonify({"items": items, "total": len(items)})


@issue_bp.route("/issues/<issue_id>", methods=["GET"])
def get_issue_endpoint(issue_id):
    """Issue with its full audit ledger in replay order."""
    return jsonify(get_issue_with_trail(issue_id))


@issue_bp.route("/issues/<issue_id>/ledger/verify", methods=["GET"])
def verify_ledger_endpoint(issue_id):
    get_issue_or_404(issue_id)
    entries = ledger_for(issue_id)
    ok, problems = verify_chain(entries)
    return jsonify({
        "issue_id": issue_id,
        "valid": ok,
        "entries": len(entries),
        "problems": problems,
    })


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════════

@issue_bp.route("/issues/<issue_id>/status", methods=["PATCH"])
@require_role(OFFICER, SYSTEM)
def patch_status_endpoint(issue_id):
    """Officer status change.  Resolution goes through /resolution only."""
    data = request.get_json(silent=True) or {}
    target = (data.get("status") or "").strip()
    reason = (data.get("reason") or "").strip()
    metadata = data.get("metadata") or {}

    if not target:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    if not reason:
        return api_error(E.VALIDATION_REQUIRED, "reason is required")
    if not isinstance(metadata, dict):
        return api_error(E.VALIDATION_INVALID, "metadata must be an object")
    if target == RESOLVED:
        return api_error(
            E.VALIDATION_INVALID,
            "Issues are resolved by submitting repair evidence to /issues/<id>/resolution",
        )

    issue = transition_issue(issue_id, target, g.actor, details={**metadata, "reason": reason})
    db.session.commit()
    return jsonify(issue.to_dict())


@issue_bp.route("/issues/<issue_id>/triage", methods=["POST"])
@require_role(OFFICER, SYSTEM)
def trigger_triage_endpoint(issue_id):
    """(Re)trigger triage.  A no-op once the issue is past ai_analyzing."""
    issue = get_issue_or_404(issue_id)
    if issue.status not in (PENDING, AI_ANALYZING):
        return jsonify({"queued": False, "issue": issue.to_dict()}), 200

    job = get_triage_queue().enqueue(issue_id)
    issue = get_issue_or_404(issue_id)
    return jsonify({"queued": True, "job": job, "issue": issue.to_dict()}), 202


@issue_bp.route("/issues/<issue_id>/resolution", methods=["POST"])
@require_role(OFFICER)
def submit_resolution_endpoint(issue_id):
    """Submit an after photo; resolves the issue only when the oracle confirms the repair."""
    image_bytes, content_type = _uploaded_image()
    after_ref = None
    if image_bytes is None:
        after_ref = (_request_fields().get("after_image") or "").strip() or None

    outcome = submit_resolution(
        issue_id,
        g.actor,
        after_image_ref=after_ref,
        after_image_bytes=image_bytes,
        content_type=content_type,
    )
    db.session.commit()
    return jsonify(outcome.to_dict()), 200
