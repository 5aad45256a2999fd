"""
CivicLens
Capability checks for the HTTP boundary.

Provides:
    - require_auth: endpoint needs an authenticated caller
    - require_role(*roles): endpoint needs one of the given roles
    - current_actor(): the caller as an ``Actor``
    - ensure_profile(actor): provision the caller's reputation profile

Identity comes from the bearer JWT parsed by
``civiclens.middleware.jwt_auth``.  Failures raise ``AuthorizationError``
before any persistence happens.
"""

import functools
import logging
from dataclasses import dataclass

from flask import g

from civiclens.core.exceptions import AuthorizationError
from civiclens.models import db
from civiclens.models.profile import Profile

logger = logging.getLogger(__name__)

# ── Roles ────────────────────────────────────────────────────────────────────

CITIZEN = "citizen"
OFFICER = "officer"
SYSTEM = "system"

# Highest role wins when a token carries several
_ROLE_PRECEDENCE = (SYSTEM, OFFICER, CITIZEN)


@dataclass(frozen=True)
class Actor:
    """An authenticated caller."""

    user_id: str
    role: str
    username: str | None = None

    @property
    def is_officer(self) -> bool:
        return self.role == OFFICER

    @property
    def is_system(self) -> bool:
        return self.role == SYSTEM


def current_actor() -> Actor | None:
    """Return the caller, or None for anonymous requests."""
    user_id = getattr(g, "jwt_user_id", None)
    if not user_id:
        return None
    roles = getattr(g, "jwt_roles", None) or []
    role = next((r for r in _ROLE_PRECEDENCE if r in roles), CITIZEN)
    return Actor(user_id=str(user_id), role=role, username=getattr(g, "jwt_username", None))


def ensure_profile(actor: Actor) -> Profile:
    """Fetch or create the caller's profile.  Flushes; caller commits."""
    profile = db.session.get(Profile, actor.user_id)
    if profile is None:
        profile = Profile(id=actor.user_id, username=actor.username, role=actor.role)
        db.session.add(profile)
        db.session.flush()
        logger.info("Provisioned profile %s (%s)", actor.user_id, actor.role)
    elif actor.username and profile.username != actor.username:
        profile.username = actor.username
    return profile


# ── Decorators ───────────────────────────────────────────────────────────────

def require_auth(f):
    """
    Decorator: require an authenticated caller.

    Sets g.actor to the resolved ``Actor``.
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        actor = current_actor()
        if actor is None:
            reason = getattr(g, "jwt_error", None) or "Authentication required"
            raise AuthorizationError(reason, authenticated=False)
        g.actor = actor
        return f(*args, **kwargs)

    return decorated


def require_role(*roles: str):
    """
    Decorator: require one of ``roles``.

    Usage:
        @require_role("officer")
        def submit_resolution(issue_id): ...
    """
    allowed = set(roles)

    def decorator(f):
        @functools.wraps(f)
        @require_auth
        def decorated(*args, **kwargs):
            actor = g.actor
            if actor.role not in allowed:
                logger.warning(
                    "Access denied: role '%s' tried to access %s (requires %s)",
                    actor.role, f.__name__, " | ".join(sorted(allowed)),
                )
                raise AuthorizationError(f"Requires role: {' or '.join(sorted(allowed))}")
            return f(*args, **kwargs)

        return decorated

    return decorator
