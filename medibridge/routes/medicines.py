import logging
import re

from flask import Blueprint, current_app, jsonify, request, session
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from medibridge.auth import current_user_id, login_required, roles_required
from medibridge.db import parse_oid, utcnow
from medibridge.errors import BadRequest, Conflict, NotFound
from medibridge.notifications import notify_all_shops, notify_user
from medibridge.routes import clean_str, json_body

logger = logging.getLogger(__name__)

bp = Blueprint("medicines", __name__)

REQUEST_STATUSES = ("pending", "fulfilled", "cancelled")


# ----------------------
# Medicine requests
# ----------------------
@bp.route("/medicine-requests", methods=["GET"])
@login_required
def requests_list():
    status = request.args.get("status", "pending")
    if status not in REQUEST_STATUSES:
        raise BadRequest("Invalid status")

    db = current_app.db
    reqs = list(db.medicine_requests.find({"status": status}).sort("created_at", DESCENDING))
    user_ids = {r["requested_by"] for r in reqs} | {r["fulfilled_by"] for r in reqs if r.get("fulfilled_by")}
    users = {u["_id"]: u for u in db.users.find({"_id": {"$in": list(user_ids)}}, {"name": 1, "shop_name": 1})}
    for r in reqs:
        shop = users.get(r.get("fulfilled_by"))
        r["fulfilled_by_shop"] = (shop.get("shop_name") or shop.get("name")) if shop else None

    return jsonify({"ok": True, "requests": reqs, "count": len(reqs)})


@bp.route("/medicine-requests", methods=["POST"])
@roles_required("patient")
def requests_create():
    data = json_body()
    medicine_name = clean_str(data.get("medicine_name"))
    patient_name = clean_str(data.get("patient_name")) or session["user"]["name"]
    if not medicine_name:
        raise BadRequest("medicine_name is required")

    db = current_app.db
    existing = db.medicine_requests.find_one({
        "medicine_name": {"$regex": f"^{re.escape(medicine_name)}$", "$options": "i"},
        "status": "pending",
    })
    if existing:
        return jsonify({
            "ok": False,
            "msg": "A request for this medicine is already pending",
            "existing_request": existing,
        }), 409

    now = utcnow()
    req = {
        "medicine_name": medicine_name,
        "requested_by": current_user_id(),
        "patient_name": patient_name,
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    req["_id"] = db.medicine_requests.insert_one(req).inserted_id

    notified = notify_all_shops(
        db, "medicine-request", "New Medicine Request",
        f'{patient_name} is looking for "{medicine_name}". Consider stocking this medicine.',
        related_request_id=req["_id"],
    )
    return jsonify({
        "ok": True,
        "msg": "Medicine request submitted successfully",
        "request": req,
        "notified_shops": notified,
    }), 201


@bp.route("/medicine-requests/fulfill", methods=["POST"])
@roles_required("shop")
def requests_fulfill():
    data = json_body()
    request_id = parse_oid(data.get("request_id"), "request_id")
    shop_id = current_user_id()
    db = current_app.db

    shop = db.users.find_one({"_id": shop_id, "role": "shop"}, {"name": 1, "shop_name": 1})
    if not shop:
        raise BadRequest("Invalid shop")

    now = utcnow()
    req = db.medicine_requests.find_one_and_update(
        {"_id": request_id, "status": "pending"},
        {"$set": {"status": "fulfilled", "fulfilled_by": shop_id, "fulfilled_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if req is None:
        if db.medicine_requests.find_one({"_id": request_id}, {"_id": 1}) is None:
            raise NotFound("Medicine request not found")
        raise Conflict("This request has already been fulfilled or cancelled")

    shop_label = shop.get("shop_name") or shop.get("name")
    notify_user(
        db, req["requested_by"], "medicine-request", "Medicine Now Available!",
        f'Great news! "{req["medicine_name"]}" is now available at {shop_label}. Check it out!',
        related_request_id=req["_id"],
    )
    notify_all_shops(
        db, "medicine-request", "Request Fulfilled",
        f'The request for "{req["medicine_name"]}" has been fulfilled by another shop.',
        exclude=shop_id,
        related_request_id=req["_id"],
    )
    logger.info("Medicine request %s fulfilled by shop %s", request_id, shop_id)
    return jsonify({"ok": True, "msg": "Medicine request fulfilled successfully", "request": req})


# ----------------------
# Search
# ----------------------
@bp.route("/medicines/search")
def search():
    q = (request.args.get("q") or request.args.get("query") or "").strip()

    filt = {}
    if q:
        filt["medicine_name"] = {"$regex": re.escape(q), "$options": "i"}

    db = current_app.db
    items = list(db.inventory.find(filt).sort("medicine_name", ASCENDING))
    shop_ids = list({i["shop_id"] for i in items})
    shops = {
        s["_id"]: s
        for s in db.users.find({"_id": {"$in": shop_ids}, "role": "shop"}, {"name": 1, "shop_name": 1, "shop_address": 1})
    }

    medicines = []
    for item in items:
        shop = shops.get(item["shop_id"])
        if not shop:
            continue
        medicines.append({
            "_id": item["_id"],
            "medicine_name": item["medicine_name"],
            "quantity": item.get("quantity", 0),
            "expiry_date": item.get("expiry_date"),
            "brand": item.get("brand"),
            "price": item.get("price", 0),
            "category": item.get("category"),
            "shop_id": shop["_id"],
            "shop_name": shop.get("shop_name") or shop.get("name"),
            "shop_address": shop.get("shop_address"),
        })

    return jsonify({"ok": True, "medicines": medicines, "count": len(medicines)})
