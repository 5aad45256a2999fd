"""
CivicLens
AI Triage Pipeline — severity / validity screening of new reports.

Two steps, each committed separately by the worker so the ``ai_analyzing``
state is visible while the oracle works:

    begin_triage(issue_id)      pending → ai_analyzing   (system actor)
    complete_triage(issue_id)   ai_analyzing → validated (AI_ANALYSIS entry)

Triage fails open: any oracle, image or parse failure still validates the
issue with ``ai_score = 0`` and a manual-review summary, so nothing stays in
``ai_analyzing`` for good.
"""

import logging

from civiclens.ai.gateway import OracleImage, get_oracle_gateway
from civiclens.ai.prompts import triage_prompt
from civiclens.ai.verdicts import TriageVerdict, parse_triage_verdict
from civiclens.core.exceptions import OracleError
from civiclens.models.ai import PURPOSE_TRIAGE
from civiclens.models.audit import AI_ANALYSIS
from civiclens.models.issue import AI_ANALYZING, PENDING, VALIDATED, Issue
from civiclens.services.image_store import get_image_store
from civiclens.services.issue_lifecycle import get_issue_or_404, transition_issue

logger = logging.getLogger(__name__)

TRIGGERED_BY = "AI_PIPELINE"

NO_IMAGE_SUMMARY = "No image provided for analysis."
FAILED_SUMMARY = "AI analysis failed; manual review required."

# Outcomes reported by begin_triage
STARTED = "started"
RESUMED = "resumed"
SKIPPED = "skipped"


def begin_triage(issue_id: str) -> str:
    """
    Move a pending issue into ``ai_analyzing``.

    Returns STARTED, RESUMED (already analysing, e.g. a retried job) or
    SKIPPED (already past triage; re-triggering is a no-op).
    """
    issue = get_issue_or_404(issue_id)
    if issue.status == PENDING:
        transition_issue(issue_id, AI_ANALYZING, None, details={"triggered_by": TRIGGERED_BY})
        return STARTED
    if issue.status == AI_ANALYZING:
        logger.info("Resuming triage of issue %s", issue_id, extra={"issue_id": issue_id})
        return RESUMED
    logger.info("Triage skipped for issue %s in status %s", issue_id, issue.status,
                extra={"issue_id": issue_id, "event_type": "triage_skipped"})
    return SKIPPED


def analyze(issue: Issue) -> tuple[TriageVerdict, bool]:
    """Ask the oracle for a verdict.  Returns ``(verdict, failed)``."""
    if not issue.before_image:
        return TriageVerdict(verified=False, confidence_score=0, summary=NO_IMAGE_SUMMARY), False

    try:
        stored = get_image_store().load(issue.before_image)
        reply = get_oracle_gateway().ask(
            triage_prompt(issue.category, issue.subcategory, issue.title),
            [OracleImage(stored.data, stored.mime_type)],
            purpose=PURPOSE_TRIAGE,
            temperature=0.2,
            json_response=True,
        )
        return parse_triage_verdict(reply), False
    except OracleError as exc:
        logger.warning("Triage oracle failure for issue %s: %s", issue.id, exc,
                       extra={"issue_id": issue.id, "event_type": "triage_failed"})
        return TriageVerdict(verified=False, confidence_score=0, summary=FAILED_SUMMARY), True


def complete_triage(issue_id: str, *, verdict: TriageVerdict | None = None, failed: bool = False) -> Issue:
    """
    Persist the verdict: ``ai_score`` plus ai_analyzing → validated with an
    AI_ANALYSIS ledger entry carrying the full verdict.

    ``verdict`` may be supplied to skip the oracle (used by the worker's
    last-resort fallback).
    """
    issue = get_issue_or_404(issue_id)
    if verdict is None:
        verdict, failed = analyze(issue)

    details = verdict.to_dict()
    details["model"] = get_oracle_gateway().model
    details["manual_review_required"] = failed
    return transition_issue(
        issue_id,
        VALIDATED,
        None,
        action=AI_ANALYSIS,
        details=details,
        fields={"ai_score": verdict.confidence_score},
    )


def fallback_verdict() -> TriageVerdict:
    return TriageVerdict(verified=False, confidence_score=0, summary=FAILED_SUMMARY)
