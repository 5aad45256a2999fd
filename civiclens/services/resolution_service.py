"""
CivicLens
Resolution Verifier — before/after repair confirmation.

Preconditions are checked before any oracle call: officer capability, the
issue exists, it has a before-image, and ``resolved`` is reachable from its
current status.  The oracle verdict fails closed: anything but a clear YES
(including an unreachable oracle) leaves the issue where it was.

On YES the issue is resolved with its after-image in one transition and the
original reporter is credited.  The credit is best-effort: a failure is
logged and never reverts the resolution.
"""

import logging
from dataclasses import dataclass

from flask import current_app

from civiclens.ai.gateway import OracleImage, get_oracle_gateway
from civiclens.ai.prompts import repair_prompt
from civiclens.ai.verdicts import parse_yes_no
from civiclens.auth import Actor
from civiclens.core.exceptions import (
    AuthorizationError,
    ConsistencyWarning,
    InvalidTransition,
    NoBeforeImage,
    OracleError,
    ValidationError,
)
from civiclens.models.ai import PURPOSE_RESOLUTION
from civiclens.models.audit import EVIDENCE_UPLOADED, append_entry
from civiclens.models.issue import ISSUE_TRANSITIONS, RESOLVED, Issue
from civiclens.services.image_store import get_image_store
from civiclens.services.issue_lifecycle import get_issue_or_404, transition_issue
from civiclens.services.reputation import credit_profile

logger = logging.getLogger(__name__)

# Verdict reasons reported to the officer
AI_CONFIRMED = "ai_confirmed"
AI_REJECTED = "ai_rejected"
ORACLE_UNAVAILABLE = "oracle_unavailable"

_REASON_MESSAGES = {
    AI_CONFIRMED: "Repair verified. The issue is resolved and the reporter has been rewarded.",
    AI_REJECTED: "The after photo does not show a completed repair. Submit new evidence or escalate manually.",
    ORACLE_UNAVAILABLE: "Repair could not be verified because the AI service is unavailable. Try again later.",
}


@dataclass
class ResolutionOutcome:
    verified: bool
    reason: str
    issue: Issue
    after_image: str
    reward_credited: bool = False

    def to_dict(self) -> dict:
        return {
            "verified": self.verified,
            "reason": self.reason,
            "message": _REASON_MESSAGES[self.reason],
            "reward_credited": self.reward_credited,
            "issue": self.issue.to_dict(),
        }


def submit_resolution(
    issue_id: str,
    actor: Actor,
    *,
    after_image_ref: str | None = None,
    after_image_bytes: bytes | None = None,
    content_type: str | None = None,
) -> ResolutionOutcome:
    """
    Verify a claimed repair and resolve the issue when the oracle agrees.

    Raises:
        AuthorizationError: caller is not an officer
        NotFoundError: unknown issue
        NoBeforeImage: nothing to compare against
        InvalidTransition: issue cannot be resolved from its status
        ValidationError: no after image supplied
    """
    if actor is None or not actor.is_officer:
        raise AuthorizationError("Submitting a resolution requires the officer role")

    issue = get_issue_or_404(issue_id)
    if not issue.before_image:
        raise NoBeforeImage(issue_id)
    if RESOLVED not in ISSUE_TRANSITIONS.get(issue.status, set()):
        raise InvalidTransition(issue_id, issue.status, RESOLVED,
                                f"'{RESOLVED}' is not reachable from '{issue.status}'")
    if after_image_bytes is None and not after_image_ref:
        raise ValidationError("after image is required", details={"image": "required"})

    store = get_image_store()
    if after_image_bytes is None and not store.is_stored_ref(after_image_ref):
        raise ValidationError("after_image must be a stored image reference", details={"after_image": "invalid"})

    if after_image_bytes is not None:
        mime = store.validate_upload(after_image_bytes, content_type)
        after_ref = store.save(after_image_bytes, mime, actor.user_id)
    else:
        after_ref = after_image_ref

    verified, reason = _ask_oracle(issue, after_ref, after_image_bytes, content_type)

    if not verified:
        prior = issue.status
        try:
            append_entry(
                issue_id=issue_id,
                action=EVIDENCE_UPLOADED,
                prev_status=prior,
                new_status=prior,
                actor_id=actor.user_id,
                details={"resolution_claim": "rejected", "reason": reason, "after_image": after_ref},
            )
        except ConsistencyWarning as warning:
            logger.warning("Ledger append failed for rejected claim on issue %s: %s",
                           issue_id, warning.detail,
                           extra={"issue_id": issue_id, "event_type": "consistency_warning"})
        logger.info("Resolution of issue %s not verified (%s)", issue_id, reason,
                    extra={"issue_id": issue_id, "event_type": "resolution_rejected"})
        return ResolutionOutcome(verified=False, reason=reason, issue=issue, after_image=after_ref)

    issue = transition_issue(
        issue_id,
        RESOLVED,
        actor,
        details={"after_image": after_ref, "verified_by": "AI_ORACLE", "model": get_oracle_gateway().model},
        fields={"after_image": after_ref},
    )
    credited = credit_profile(
        issue.reporter_id,
        current_app.config.get("RESOLUTION_REWARD_CREDITS", 50),
        issue_id=issue_id,
    )
    return ResolutionOutcome(
        verified=True, reason=AI_CONFIRMED, issue=issue, after_image=after_ref, reward_credited=credited,
    )


def _ask_oracle(issue: Issue, after_ref: str, after_bytes: bytes | None, content_type: str | None) -> tuple[bool, str]:
    store = get_image_store()
    try:
        before = store.load(issue.before_image)
        if after_bytes is not None:
            after = OracleImage(after_bytes, store.validate_upload(after_bytes, content_type))
        else:
            loaded = store.load(after_ref)
            after = OracleImage(loaded.data, loaded.mime_type)
        reply = get_oracle_gateway().ask(
            repair_prompt(issue.category, issue.title),
            [OracleImage(before.data, before.mime_type), after],
            purpose=PURPOSE_RESOLUTION,
            temperature=0.1,
        )
    except OracleError as exc:
        logger.warning("Resolution oracle failure for issue %s: %s", issue.id, exc,
                       extra={"issue_id": issue.id})
        return False, ORACLE_UNAVAILABLE

    if parse_yes_no(reply):
        return True, AI_CONFIRMED
    return False, AI_REJECTED
