"""
JWT Auth Middleware — parses the Bearer token, sets ``g.jwt_user_id``
and clears the per-request actor cache.

Invalid or expired tokens are not rejected here; the request simply carries
no JWT identity and ``delivery.auth.get_current_actor`` answers 401.
"""

import logging

import jwt as pyjwt
from flask import g, request

from delivery.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_role = None
        g.actor = None
        g.actor_id = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]  # Strip "Bearer "
        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            logger.debug("Expired access token on %s", path)
            return
        except pyjwt.InvalidTokenError as exc:
            logger.debug("Invalid access token on %s: %s", path, exc)
            return

        try:
            g.jwt_user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            logger.debug("Access token with non-numeric subject on %s", path)
            return
        g.jwt_role = payload.get("role")
