"""
Custom route decorators for access control.

- admin_required: ensures user is logged in AND has the admin role.
- roles_required: ensures user is logged in AND has one of the given roles.

Failures abort with 403; create_app() renders it as JSON.
"""

from functools import wraps

from flask import abort
from flask_login import current_user, login_required


def admin_required(f):
    """Require login + admin role."""

    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not current_user.is_admin:
            abort(403)
        return f(*args, **kwargs)

    return decorated


def roles_required(*roles):
    """Require login + one of `roles` (admins always pass)."""

    def decorator(f):
        @wraps(f)
        @login_required
        def decorated(*args, **kwargs):
            if not (current_user.is_admin or current_user.role in roles):
                abort(403)
            return f(*args, **kwargs)

        return decorated

    return decorator
