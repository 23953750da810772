import logging

from flask import Blueprint, current_app, jsonify, request
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from medibridge import claims
from medibridge.auth import current_user_id, roles_required
from medibridge.db import parse_date, parse_oid, utcnow
from medibridge.errors import BadRequest, Conflict, Forbidden, NotFound
from medibridge.geo import point_to_latlng
from medibridge.notifications import notify_user
from medibridge.routes import clean_str, is_number, json_body, parse_int_arg

logger = logging.getLogger(__name__)

bp = Blueprint("shop", __name__, url_prefix="/shop")

RESTOCK_PRIORITIES = ("urgent", "normal", "low")


def _shop_label(shop):
    return shop.get("shop_name") or shop.get("name")


def _attach_patient_names(db, orders):
    ids = list({o["patient_id"] for o in orders})
    patients = {p["_id"]: p for p in db.users.find({"_id": {"$in": ids}}, {"name": 1, "email": 1})}
    for order in orders:
        p = patients.get(order["patient_id"]) or {}
        order["patient_name"] = p.get("name", "Unknown")
        order["patient_email"] = p.get("email")
    return orders


# ----------------------
# Order claims
# ----------------------
@bp.route("/accept-order", methods=["POST"])
@roles_required("shop")
def accept_order():
    data = json_body()
    order_id = parse_oid(data.get("order_id"), "order_id")
    db = current_app.db
    shop_id = current_user_id()

    order = claims.accept_order(db, order_id, shop_id)

    shop = db.users.find_one({"_id": shop_id}, {"name": 1, "shop_name": 1}) or {}
    notify_user(
        db, order["patient_id"], "order", "Order Accepted",
        f"Your order has been accepted by {_shop_label(shop) or 'a pharmacy'}.",
    )
    return jsonify({"ok": True, "msg": "Order accepted successfully", "order": order})


@bp.route("/mark-delivered", methods=["POST"])
@roles_required("shop")
def mark_delivered():
    data = json_body()
    order_id = parse_oid(data.get("order_id"), "order_id")
    db = current_app.db

    order = claims.mark_delivered(db, order_id, current_user_id())

    notify_user(db, order["patient_id"], "order", "Order Delivered", "Your order has been delivered.")
    return jsonify({"ok": True, "msg": "Order marked as delivered", "order": order})


@bp.route("/orders/pending")
@roles_required("shop")
def orders_pending():
    db = current_app.db
    orders = list(db.orders.find({"status": "pending"}).sort("created_at", DESCENDING))
    return jsonify({"ok": True, "orders": _attach_patient_names(db, orders), "count": len(orders)})


@bp.route("/orders/accepted")
@roles_required("shop")
def orders_accepted():
    db = current_app.db
    orders = list(
        db.orders.find({"accepted_by": current_user_id(), "status": {"$in": ["accepted", "delivered"]}})
        .sort("updated_at", DESCENDING)
    )
    return jsonify({"ok": True, "orders": _attach_patient_names(db, orders), "count": len(orders)})


# ----------------------
# Prescriptions & offers
# ----------------------
@bp.route("/prescriptions")
@roles_required("shop")
def prescriptions_open():
    db = current_app.db
    shop_id = current_user_id()
    prescriptions = list(
        db.prescriptions.find({"status": {"$in": claims.OPEN_PRESCRIPTION_STATUSES}}, {"image_data": 0})
        .sort("created_at", DESCENDING)
    )
    mine = {o["prescription_id"]: o for o in db.prescription_offers.find({"shop_id": shop_id})}
    for p in prescriptions:
        p["has_submitted_offer"] = p["_id"] in mine
        p["my_offer"] = mine.get(p["_id"])
    return jsonify({"ok": True, "prescriptions": prescriptions, "count": len(prescriptions)})


def _validate_offer_lines(medicines):
    if not isinstance(medicines, list) or not medicines:
        raise BadRequest("At least one medicine is required in the offer")
    lines = []
    for m in medicines:
        if not isinstance(m, dict) or not clean_str(m.get("medicine_name")):
            raise BadRequest("Each medicine must have a medicine_name")
        qty = m.get("quantity")
        if not isinstance(qty, int) or isinstance(qty, bool) or qty < 1:
            raise BadRequest("Each medicine must have a quantity of at least 1")
        price = m.get("price")
        if not is_number(price) or price < 0:
            raise BadRequest("Each medicine must have a non-negative price")
        line = {
            "medicine_name": clean_str(m["medicine_name"]),
            "quantity": qty,
            "price": price,
            "available": m.get("available", True) is not False,
        }
        for key in ("brand", "notes"):
            if clean_str(m.get(key)):
                line[key] = clean_str(m[key])
        lines.append(line)
    return lines


@bp.route("/prescriptions/offer", methods=["POST"])
@roles_required("shop")
def submit_offer():
    data = json_body()
    prescription_id = parse_oid(data.get("prescription_id"), "prescription_id")
    lines = _validate_offer_lines(data.get("medicines"))
    delivery_fee = data.get("delivery_fee") or 0
    if not is_number(delivery_fee) or delivery_fee < 0:
        raise BadRequest("delivery_fee must be a non-negative number")

    db = current_app.db
    shop_id = current_user_id()

    prescription = db.prescriptions.find_one({"_id": prescription_id}, {"status": 1, "patient_id": 1})
    if not prescription:
        raise NotFound("Prescription not found")
    if prescription["status"] not in claims.OPEN_PRESCRIPTION_STATUSES:
        raise Conflict("This prescription has already been accepted")

    shop = db.users.find_one({"_id": shop_id})
    if not shop or shop.get("role") != "shop":
        raise BadRequest("Invalid shop")
    if db.prescription_offers.find_one({"prescription_id": prescription_id, "shop_id": shop_id}, {"_id": 1}):
        raise Conflict("You have already submitted an offer for this prescription")

    # unavailable lines are quoted but not charged
    total = round(sum(l["price"] * l["quantity"] for l in lines if l["available"]), 2)
    now = utcnow()
    offer = {
        "prescription_id": prescription_id,
        "shop_id": shop_id,
        "shop_name": _shop_label(shop),
        "medicines": lines,
        "total_amount": total,
        "delivery_fee": delivery_fee,
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    if clean_str(data.get("notes")):
        offer["notes"] = clean_str(data["notes"])
    try:
        offer["_id"] = db.prescription_offers.insert_one(offer).inserted_id
    except DuplicateKeyError:
        raise Conflict("You have already submitted an offer for this prescription")

    db.prescriptions.update_one(
        {"_id": prescription_id, "status": "pending"},
        {"$set": {"status": "offers-received", "updated_at": now}},
    )
    notify_user(
        db, prescription["patient_id"], "order", "New Offer Received",
        f"{offer['shop_name']} has sent you a medicine offer for ₹{total + delivery_fee:.2f}",
    )
    logger.info("Shop %s offered %.2f on prescription %s", shop_id, total, prescription_id)
    return jsonify({"ok": True, "msg": "Offer submitted successfully", "offer": offer}), 201


# ----------------------
# Inventory
# ----------------------
def _check_quantity(value):
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise BadRequest("Quantity must be a non-negative number")
    return value


def _check_price(value):
    if not is_number(value) or value < 0:
        raise BadRequest("Price cannot be negative")
    return value


@bp.route("/inventory", methods=["POST"])
@bp.route("/inventory/add", methods=["POST"])
@roles_required("shop")
def inventory_add():
    data = json_body()
    medicine_name = clean_str(data.get("medicine_name"))
    if not medicine_name or data.get("quantity") is None:
        raise BadRequest("Missing required fields: medicine_name and quantity are required")

    now = utcnow()
    item = {
        "shop_id": current_user_id(),
        "medicine_name": medicine_name,
        "quantity": _check_quantity(data["quantity"]),
        "expiry_date": parse_date(data.get("expiry_date"), "expiry_date"),
        "brand": clean_str(data.get("brand")) or "Generic",
        "price": _check_price(data.get("price") or 0),
        "category": clean_str(data.get("category")) or "General",
        "created_at": now,
        "updated_at": now,
    }
    item["_id"] = current_app.db.inventory.insert_one(item).inserted_id
    return jsonify({"ok": True, "msg": "Inventory item added successfully", "inventory": item}), 201


@bp.route("/inventory", methods=["GET"])
@bp.route("/inventory/get", methods=["GET"])
@roles_required("shop")
def inventory_list():
    items = list(current_app.db.inventory.find({"shop_id": current_user_id()}).sort("created_at", DESCENDING))
    return jsonify({"ok": True, "inventory": items, "count": len(items)})


@bp.route("/inventory", methods=["PUT"])
@roles_required("shop")
def inventory_update():
    data = json_body()
    oid = parse_oid(data.get("inventory_id"), "inventory_id")

    updates = {}
    if "medicine_name" in data:
        if not clean_str(data["medicine_name"]):
            raise BadRequest("medicine_name cannot be empty")
        updates["medicine_name"] = clean_str(data["medicine_name"])
    if "quantity" in data:
        updates["quantity"] = _check_quantity(data["quantity"])
    if "price" in data:
        updates["price"] = _check_price(data["price"])
    if "expiry_date" in data:
        updates["expiry_date"] = parse_date(data["expiry_date"], "expiry_date")
    for key in ("brand", "category"):
        if clean_str(data.get(key)):
            updates[key] = clean_str(data[key])

    if not updates:
        raise BadRequest("No fields to update")
    updates["updated_at"] = utcnow()

    db = current_app.db
    res = db.inventory.update_one({"_id": oid, "shop_id": current_user_id()}, {"$set": updates})
    if res.matched_count == 0:
        if db.inventory.find_one({"_id": oid}, {"_id": 1}):
            raise Forbidden("Not allowed")
        raise NotFound("Inventory item not found")
    return jsonify({"ok": True, "msg": "Inventory updated successfully", "inventory": db.inventory.find_one({"_id": oid})})


@bp.route("/inventory", methods=["DELETE"])
@roles_required("shop")
def inventory_delete():
    oid = parse_oid(request.args.get("inventory_id"), "inventory_id")
    db = current_app.db
    res = db.inventory.delete_one({"_id": oid, "shop_id": current_user_id()})
    if res.deleted_count == 0:
        if db.inventory.find_one({"_id": oid}, {"_id": 1}):
            raise Forbidden("Not allowed")
        raise NotFound("Inventory item not found")
    return jsonify({"ok": True, "msg": "Inventory item deleted successfully"})


@bp.route("/inventory/low-stock")
@roles_required("shop")
def inventory_low_stock():
    threshold = parse_int_arg("threshold", current_app.config["LOW_STOCK_THRESHOLD"])
    items = list(
        current_app.db.inventory.find({"shop_id": current_user_id(), "quantity": {"$lte": threshold}})
        .sort("quantity", ASCENDING)
    )
    return jsonify({"ok": True, "low_stock_items": items, "count": len(items), "threshold": threshold})


# ----------------------
# Location
# ----------------------
@bp.route("/location", methods=["GET"])
@roles_required("shop")
def location_get():
    shop = current_app.db.users.find_one(
        {"_id": current_user_id()}, {"location": 1, "shop_name": 1, "shop_address": 1, "phone": 1}
    )
    if not shop:
        raise NotFound("Shop not found")
    return jsonify({
        "ok": True,
        "location": point_to_latlng(shop.get("location")),
        "shop_name": shop.get("shop_name"),
        "shop_address": shop.get("shop_address"),
        "phone": shop.get("phone"),
    })


@bp.route("/location", methods=["PUT"])
@roles_required("shop")
def location_update():
    data = json_body()
    lat, lng = data.get("lat"), data.get("lng")
    if lat is None or lng is None:
        raise BadRequest("Latitude and longitude are required")
    if not is_number(lat) or not is_number(lng) or not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
        raise BadRequest("Invalid coordinates")

    updates = {
        "location": {"type": "Point", "coordinates": [lng, lat]},
        "updated_at": utcnow(),
    }
    if clean_str(data.get("shop_address")):
        updates["shop_address"] = clean_str(data["shop_address"])
    if clean_str(data.get("phone")):
        updates["phone"] = clean_str(data["phone"])

    db = current_app.db
    res = db.users.update_one({"_id": current_user_id()}, {"$set": updates})
    if res.matched_count == 0:
        raise NotFound("Shop not found")
    shop = db.users.find_one({"_id": current_user_id()}, {"shop_address": 1, "phone": 1})
    return jsonify({
        "ok": True,
        "msg": "Location updated successfully",
        "location": {"lat": lat, "lng": lng},
        "shop_address": shop.get("shop_address"),
        "phone": shop.get("phone"),
    })


# ----------------------
# Restock
# ----------------------
@bp.route("/restock", methods=["POST"])
@roles_required("shop")
def restock_create():
    data = json_body()
    medicine_name = clean_str(data.get("medicine_name"))
    quantity = data.get("quantity")
    priority = data.get("priority") or "normal"

    if not medicine_name or quantity is None:
        raise BadRequest("medicine_name and quantity are required")
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise BadRequest("Quantity must be at least 1")
    if priority not in RESTOCK_PRIORITIES:
        raise BadRequest("Invalid priority")

    now = utcnow()
    doc = {
        "shop_id": current_user_id(),
        "medicine_name": medicine_name,
        "quantity": quantity,
        "priority": priority,
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    if clean_str(data.get("notes")):
        doc["notes"] = clean_str(data["notes"])
    doc["_id"] = current_app.db.restock_requests.insert_one(doc).inserted_id
    return jsonify({"ok": True, "msg": "Restock request submitted", "restock_request": doc}), 201


@bp.route("/restock", methods=["GET"])
@roles_required("shop")
def restock_list():
    docs = list(
        current_app.db.restock_requests.find({"shop_id": current_user_id()}).sort("created_at", DESCENDING)
    )
    return jsonify({"ok": True, "restock_requests": docs, "count": len(docs)})


# ----------------------
# Dashboard
# ----------------------
@bp.route("/dashboard")
@roles_required("shop")
def dashboard():
    db = current_app.db
    shop_id = current_user_id()
    threshold = current_app.config["LOW_STOCK_THRESHOLD"]

    shop = db.users.find_one({"_id": shop_id}, {"shop_name": 1, "shop_address": 1})
    if not shop:
        raise NotFound("Shop not found")

    recent = list(db.orders.find({"accepted_by": shop_id}).sort("updated_at", DESCENDING).limit(5))
    _attach_patient_names(db, recent)
    low_stock = list(
        db.inventory.find({"shop_id": shop_id, "quantity": {"$lte": threshold}}).sort("quantity", ASCENDING).limit(5)
    )

    return jsonify({
        "ok": True,
        "shop_name": shop.get("shop_name"),
        "shop_address": shop.get("shop_address"),
        "stats": {
            "pending_orders": db.orders.count_documents({"status": "pending"}),
            "accepted_orders": db.orders.count_documents(
                {"accepted_by": shop_id, "status": {"$in": ["accepted", "delivered"]}}
            ),
            "total_inventory": db.inventory.count_documents({"shop_id": shop_id}),
            "low_stock_count": db.inventory.count_documents({"shop_id": shop_id, "quantity": {"$lte": threshold}}),
        },
        "recent_orders": [
            {
                "id": o["_id"],
                "patient_name": o["patient_name"],
                "medicines": o["medicines"],
                "status": o["status"],
                "updated_at": o.get("updated_at"),
            }
            for o in recent
        ],
        "low_stock_alerts": [
            {"id": i["_id"], "medicine_name": i["medicine_name"], "quantity": i["quantity"]}
            for i in low_stock
        ],
    })
