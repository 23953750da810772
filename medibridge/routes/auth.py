import logging
import re

from flask import Blueprint, current_app, jsonify, session
from werkzeug.security import check_password_hash, generate_password_hash

from medibridge.auth import ROLES, current_user_id, login_required
from medibridge.db import utcnow
from medibridge.errors import BadRequest, Conflict, NotFound, Unauthorized
from medibridge.routes import clean_str, json_body

logger = logging.getLogger(__name__)

bp = Blueprint("auth", __name__, url_prefix="/auth")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def public_user(user):
    out = {
        "id": user["_id"],
        "name": user["name"],
        "email": user["email"],
        "role": user["role"],
        "created_at": user.get("created_at"),
    }
    if user["role"] == "shop":
        out["shop_name"] = user.get("shop_name")
        out["shop_address"] = user.get("shop_address")
        out["phone"] = user.get("phone")
    return out


@bp.route("/register", methods=["POST"])
def register():
    data = json_body()
    name = clean_str(data.get("name"))
    email = clean_str(data.get("email")).lower()
    password = data.get("password") or ""
    role = data.get("role")

    if not name or not email or not password or not role:
        raise BadRequest("Missing required fields: name, email, password, and role are required")
    if role not in ROLES:
        raise BadRequest('Invalid role. Must be "patient" or "shop"')
    if not EMAIL_RE.match(email):
        raise BadRequest("Invalid email format")
    if not isinstance(password, str) or len(password) < 6:
        raise BadRequest("Password must be at least 6 characters")

    db = current_app.db
    if db.users.find_one({"email": email}):
        raise Conflict("Email already registered")

    now = utcnow()
    user_doc = {
        "name": name,
        "email": email,
        "password": generate_password_hash(password),
        "role": role,
        "created_at": now,
        "updated_at": now,
    }
    phone = clean_str(data.get("phone"))
    if phone:
        user_doc["phone"] = phone
    if role == "shop":
        user_doc["shop_name"] = clean_str(data.get("shop_name")) or f"{name}'s Pharmacy"
        user_doc["shop_address"] = clean_str(data.get("shop_address"))

    # the unique email index turns a racing duplicate into a 409 as well
    user_doc["_id"] = db.users.insert_one(user_doc).inserted_id
    logger.info("Registered %s account %s", role, email)
    return jsonify({"ok": True, "msg": "User registered successfully", "user": public_user(user_doc)}), 201


@bp.route("/login", methods=["POST"])
def login():
    data = json_body()
    email = clean_str(data.get("email")).lower()
    password = data.get("password") or ""
    role = data.get("role")

    if not email or not password:
        raise BadRequest("Please provide email and password")
    if not isinstance(password, str):
        raise BadRequest("Password must be a string")

    user = current_app.db.users.find_one({"email": email})
    if not user or not check_password_hash(user["password"], password):
        raise Unauthorized("Invalid email or password")
    if role and user["role"] != role:
        raise Unauthorized(f"This account is registered as a {user['role']}, not a {role}")

    # Minimal session payload
    session["user"] = {
        "_id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "role": user["role"],
    }
    return jsonify({"ok": True, "msg": "Login successful", "user": public_user(user)})


@bp.route("/logout", methods=["POST"])
def logout():
    session.pop("user", None)
    return jsonify({"ok": True, "msg": "Logged out."})


@bp.route("/me")
@login_required
def me():
    user = current_app.db.users.find_one({"_id": current_user_id()})
    if not user:
        raise NotFound("User not found")
    return jsonify({"ok": True, "user": public_user(user)})
