"""
CivicLens
Reputation — civic credit balance changes.

Credits only move through an atomic ``civic_credits = civic_credits + :n``
UPDATE inside a SAVEPOINT, so a failed credit never disturbs the caller's
transaction (a verified resolution stays resolved).
"""

import logging

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from civiclens.models import db
from civiclens.models.profile import Profile

logger = logging.getLogger(__name__)


def credit_profile(profile_id: str | None, amount: int, *, issue_id: str | None = None) -> bool:
    """
    Add ``amount`` credits to a profile.  Returns True when applied.

    Failures are logged with ``event_type="reward_failed"`` and not retried.
    """
    extra = {"issue_id": issue_id, "event_type": "reward_failed", "user_id": profile_id}
    if not profile_id:
        logger.warning("Reward skipped for issue %s: no reporter on record", issue_id, extra=extra)
        return False

    try:
        with db.session.begin_nested():
            result = db.session.execute(
                update(Profile)
                .where(Profile.id == profile_id)
                .values(civic_credits=Profile.civic_credits + amount)
                .execution_options(synchronize_session=False)
            )
    except SQLAlchemyError as exc:
        logger.error("Reward of %d credits to %s failed for issue %s: %s",
                     amount, profile_id, issue_id, exc, extra=extra)
        return False

    if result.rowcount != 1:
        logger.warning("Reward skipped for issue %s: profile %s not found",
                       issue_id, profile_id, extra=extra)
        return False

    logger.info("Credited %d to %s for issue %s", amount, profile_id, issue_id,
                extra={"issue_id": issue_id, "event_type": "reward_credited", "user_id": profile_id})
    return True


def leaderboard(limit: int = 5) -> list[dict]:
    """Top profiles by civic credits."""
    rows = (
        Profile.query
        .filter(Profile.role == "citizen")
        .order_by(Profile.civic_credits.desc(), Profile.created_at.asc())
        .limit(limit)
        .all()
    )
    return [
        {"id": p.id, "username": p.username, "civic_credits": p.civic_credits, "avatar_url": p.avatar_url}
        for p in rows
    ]
