"""Auth blueprint — /auth/*

JSON login/logout for API callers. Session cookie via Flask-Login.
Registration and profile management live outside this service.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash

from marketplace.extensions import db, limiter
from marketplace.models.audit import AuditEvent
from marketplace.models.user import User

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("10 per minute")
def login():
    """Body: {email, password}. Returns the user on success."""
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""

    if not email or not password:
        return jsonify(
            ok=False, error="ValidationError", message="Email and password are required."
        ), 400

    user = User.query.filter_by(email=email).first()
    if user is None or not check_password_hash(user.password_hash, password):
        return jsonify(
            ok=False, error="Unauthorized", message="Invalid email or password."
        ), 401
    if not user.is_active:
        return jsonify(
            ok=False, error="Forbidden", message="This account has been deactivated."
        ), 403

    login_user(user)

    db.session.add(AuditEvent(actor_user_id=user.id, action="user.logged_in"))
    db.session.commit()

    return jsonify(
        ok=True,
        user={
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "role": user.role,
        },
    )


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    user_id = current_user.id
    logout_user()
    db.session.add(AuditEvent(actor_user_id=user_id, action="user.logged_out"))
    db.session.commit()
    return jsonify(ok=True)
