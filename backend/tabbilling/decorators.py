# Overview: Request identity decorators for API routes.

from functools import wraps
from flask import current_app, g, jsonify, request


def _header(name: str) -> str | None:
    value = request.headers.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def require_actor(f):
    """
    Require an already-authenticated caller identity and establish tenant context.

    The upstream gateway authenticates the caller and forwards:
    - X-Actor-Id:   who is acting (required)
    - X-Org-Id:     tenant scope for every lookup (required)
    - X-Actor-Role: role name, used for privileged overrides (optional)

    Sets g.actor_id, g.org_id, g.actor_role. Returns 401 if either required
    header is missing.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = _header("X-Actor-Id")
        org_id = _header("X-Org-Id")

        if not actor_id or not org_id:
            return jsonify({"error": "Authentication required"}), 401

        g.actor_id = actor_id
        g.org_id = org_id
        g.actor_role = _header("X-Actor-Role")

        return f(*args, **kwargs)

    return decorated_function


def is_privileged() -> bool:
    """True when the current actor's role may force destructive operations."""
    role = getattr(g, "actor_role", None)
    if not role:
        return False
    return role.lower() in {r.lower() for r in current_app.config.get("PRIVILEGED_ROLES", ())}

