"""
Actor resolution and role-based access control.

Provides:
    - get_current_actor(): the ``User`` acting on this request
    - require_roles(*roles): decorator guarding admin endpoints

Security model:
    - Every /api/v1/* endpoint except /api/v1/health needs an actor.
    - With API_AUTH_ENABLED the actor comes from the verified JWT
      (``g.jwt_user_id``, set by ``delivery.middleware.jwt_auth``).
    - With auth disabled (development / tests only) the ``X-User-Id`` header
      names the actor.
    - SUPER_ADMIN passes every role check.
"""

import functools
import logging

from flask import current_app, g, request

from delivery.core.exceptions import AuthenticationError, AuthorizationError
from delivery.models import db
from delivery.models.auth import OVERRIDE_ROLES, User

logger = logging.getLogger(__name__)


def _is_auth_enabled() -> bool:
    value = str(current_app.config.get("API_AUTH_ENABLED", "true"))
    return value.lower() not in ("false", "0", "no", "off")


def _actor_id_from_request() -> int | None:
    if _is_auth_enabled():
        return getattr(g, "jwt_user_id", None)
    jwt_user_id = getattr(g, "jwt_user_id", None)
    if jwt_user_id:
        return jwt_user_id
    raw = request.headers.get("X-User-Id", "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise AuthenticationError("X-User-Id must be a numeric user id.")


def get_current_actor() -> User:
    """Return the active ``User`` behind this request, cached on ``g``.

    Raises:
        AuthenticationError: no identity, unknown user, or deactivated user.
    """
    user_id = _actor_id_from_request()
    if user_id is None:
        raise AuthenticationError()
    cached = getattr(g, "actor", None)
    if cached is not None and getattr(g, "actor_id", None) == user_id:
        return cached

    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        logger.warning("Request with unknown or inactive actor id=%s on %s", user_id, request.path)
        raise AuthenticationError("Unknown or inactive user.")

    g.actor = user
    g.actor_id = user.id
    return user


def require_roles(*roles: str):
    """
    Decorator: require the actor to hold one of ``roles``.

    Usage:
        @workflow_bp.route("/workflows/definitions", methods=["POST"])
        @require_roles("PM")
        def create_definition(): ...

    SUPER_ADMIN always passes.
    """
    allowed = frozenset(roles) | OVERRIDE_ROLES

    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            actor = get_current_actor()
            if actor.role not in allowed:
                logger.warning(
                    "Access denied: role '%s' tried to access %s",
                    actor.role, request.path,
                    extra={"actor_id": actor.id},
                )
                raise AuthorizationError(
                    "Insufficient permissions",
                    details={"required_roles": sorted(allowed), "actor_role": actor.role},
                )
            return f(*args, **kwargs)
        return decorated
    return decorator

