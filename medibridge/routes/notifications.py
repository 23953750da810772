from flask import Blueprint, current_app, jsonify
from pymongo import DESCENDING

from medibridge.auth import current_user_id, login_required
from medibridge.db import parse_oid
from medibridge.errors import BadRequest, NotFound
from medibridge.notifications import NOTIFICATION_TYPES, notify_user
from medibridge.routes import clean_str, json_body

bp = Blueprint("notifications", __name__, url_prefix="/notifications")


@bp.route("", methods=["GET"])
@login_required
def notifications_list():
    notes = list(
        current_app.db.notifications.find({"user_id": current_user_id()}).sort("created_at", DESCENDING)
    )
    unread = sum(1 for n in notes if not n.get("read"))
    return jsonify({"ok": True, "notifications": notes, "unread_count": unread})


@bp.route("", methods=["POST"])
@login_required
def notifications_create():
    data = json_body()
    title = clean_str(data.get("title"))
    message = clean_str(data.get("message"))
    ntype = data.get("type")

    if not data.get("user_id") or not ntype or not title or not message:
        raise BadRequest("user_id, type, title, and message are required")
    user_id = parse_oid(data["user_id"], "user_id")
    if ntype not in NOTIFICATION_TYPES:
        raise BadRequest("Invalid notification type")

    db = current_app.db
    if not db.users.find_one({"_id": user_id}, {"_id": 1}):
        raise NotFound("User not found")
    nid = notify_user(db, user_id, ntype, title, message)
    return jsonify({"ok": True, "msg": "Notification created", "notification": db.notifications.find_one({"_id": nid})}), 201


@bp.route("/mark-read", methods=["POST"])
@login_required
def notifications_mark_read():
    data = json_body()
    query = {"user_id": current_user_id(), "read": False}
    if data.get("ids") is not None:
        if not isinstance(data["ids"], list):
            raise BadRequest("ids must be an array")
        query["_id"] = {"$in": [parse_oid(i, "notification id") for i in data["ids"]]}

    res = current_app.db.notifications.update_many(query, {"$set": {"read": True}})
    return jsonify({"ok": True, "msg": "Notifications marked as read", "updated": res.modified_count})
