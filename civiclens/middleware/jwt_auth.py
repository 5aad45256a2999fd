"""
JWT Auth Middleware — Parses JWT from Authorization header, sets g.jwt_*.

The middleware never rejects a request on its own: a missing, expired or
malformed token simply leaves the request anonymous.  Endpoints decide via
``civiclens.auth.require_auth`` / ``require_role``.

    Authorization: Bearer <token>  →  g.jwt_user_id, g.jwt_roles, g.jwt_username
"""

import logging

import jwt as pyjwt
from flask import g, request

from civiclens.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT parsing entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/media/",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        # Clear JWT context
        g.jwt_user_id = None
        g.jwt_roles = []
        g.jwt_username = None
        g.jwt_error = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return  # Anonymous

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            g.jwt_error = "Token expired"
            return
        except pyjwt.InvalidTokenError as exc:
            logger.debug("Rejected bearer token: %s", exc)
            g.jwt_error = "Invalid token"
            return

        g.jwt_user_id = payload.get("sub")
        roles = payload.get("roles") or []
        g.jwt_roles = roles if isinstance(roles, list) else [roles]
        g.jwt_username = payload.get("username")
