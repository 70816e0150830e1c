import pytz
from flask import request, jsonify
from flask_login import login_user, logout_user, login_required, current_user

from ..models import db, User
from . import bp


def _payload():
    return request.get_json(silent=True) or request.form.to_dict()


@bp.route("/login", methods=["POST"])
def login():
    if current_user.is_authenticated:
        return jsonify({"id": current_user.id, "email": current_user.email}), 200

    data = _payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = User.query.filter_by(email=email).first()
    if user and user.check_password(password):
        login_user(user)
        return jsonify({"id": user.id, "email": user.email}), 200

    return jsonify({"error": "Invalid email or password."}), 401


@bp.route("/signup", methods=["POST"])
def signup():
    data = _payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    tz_name = data.get("timezone") or "UTC"

    if not email or not password:
        return jsonify({"error": "Email and password are required."}), 400

    if len(password) < 8:
        return jsonify({"error": "Password must be at least 8 characters."}), 400

    if tz_name not in pytz.all_timezones_set:
        return jsonify({"error": f"Unknown timezone {tz_name}."}), 400

    if User.query.filter_by(email=email).first():
        return jsonify({"error": "An account with that email already exists."}), 409

    user = User(email=email, timezone=tz_name)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()

    login_user(user)
    return jsonify({"id": user.id, "email": user.email}), 201


@bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"status": "logged out"}), 200
