import logging

from flask import Blueprint, current_app, jsonify, request, session
from pymongo import ASCENDING, DESCENDING

from medibridge import claims, extract
from medibridge.auth import current_user_id, roles_required
from medibridge.db import parse_oid, utcnow
from medibridge.errors import BadRequest, NotFound
from medibridge.notifications import notify_all_shops
from medibridge.routes import clean_str, is_number, json_body

logger = logging.getLogger(__name__)

bp = Blueprint("patient", __name__, url_prefix="/patient")


# ----------------------
# Cart
# ----------------------
def _cart_payload(cart):
    items = cart.get("items", [])
    return {"id": cart["_id"], "items": items, "item_count": len(items)}


def _load_cart(db, patient_id, create=True):
    cart = db.carts.find_one({"patient_id": patient_id})
    if cart is None and create:
        now = utcnow()
        cart = {"patient_id": patient_id, "items": [], "created_at": now, "updated_at": now}
        cart["_id"] = db.carts.insert_one(cart).inserted_id
    return cart


def _save_items(db, cart, items):
    db.carts.update_one(
        {"_id": cart["_id"]},
        {"$set": {"items": items, "updated_at": utcnow()}},
    )
    cart["items"] = items
    return cart


def _find_item(items, inventory_id=None, medicine_name=None):
    for idx, item in enumerate(items):
        if inventory_id and item.get("inventory_id") == inventory_id:
            return idx
        if medicine_name and item.get("medicine_name") == medicine_name:
            return idx
    return -1


@bp.route("/cart", methods=["GET"])
@roles_required("patient")
def cart_view():
    cart = _load_cart(current_app.db, current_user_id())
    return jsonify({"ok": True, "cart": _cart_payload(cart)})


@bp.route("/cart", methods=["POST"])
@roles_required("patient")
def cart_add():
    data = json_body()
    medicine_name = clean_str(data.get("medicine_name"))
    quantity = data.get("quantity")

    if not medicine_name or quantity is None:
        raise BadRequest("medicine_name and quantity are required")
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise BadRequest("Quantity must be at least 1")

    price = data.get("price") or 0
    if not is_number(price) or price < 0:
        raise BadRequest("Price cannot be negative")

    db = current_app.db
    cart = _load_cart(db, current_user_id())
    items = list(cart.get("items", []))

    idx = _find_item(items, medicine_name=medicine_name)
    if idx > -1:
        items[idx]["quantity"] += quantity
    else:
        item = {"medicine_name": medicine_name, "quantity": quantity, "price": price}
        if data.get("shop_id"):
            item["shop_id"] = parse_oid(data["shop_id"], "shop_id")
        if data.get("inventory_id"):
            item["inventory_id"] = str(parse_oid(data["inventory_id"], "inventory_id"))
        if clean_str(data.get("brand")):
            item["brand"] = clean_str(data["brand"])
        items.append(item)

    cart = _save_items(db, cart, items)
    return jsonify({"ok": True, "msg": "Cart updated", "cart": _cart_payload(cart)})


@bp.route("/cart", methods=["PUT"])
@roles_required("patient")
def cart_update():
    data = json_body()
    inventory_id = data.get("inventory_id")
    medicine_name = clean_str(data.get("medicine_name"))
    has_delta = "delta" in data

    if not inventory_id and not medicine_name:
        raise BadRequest("inventory_id or medicine_name is required")
    value = data.get("delta") if has_delta else data.get("quantity")
    if value is None:
        raise BadRequest("quantity or delta is required")
    if not isinstance(value, int) or isinstance(value, bool):
        raise BadRequest("Quantity must be a whole number")
    if not has_delta and value < 0:
        raise BadRequest("Quantity cannot be negative")

    db = current_app.db
    cart = _load_cart(db, current_user_id(), create=False)
    if not cart:
        raise NotFound("Cart not found")

    items = list(cart.get("items", []))
    idx = _find_item(items, inventory_id=inventory_id, medicine_name=medicine_name)
    if idx == -1:
        raise NotFound("Item not found in cart")

    qty = items[idx]["quantity"] + value if has_delta else value
    if qty < 1:
        # dropping to zero removes the line rather than storing it
        removed = items.pop(idx)
        msg = f"{removed['medicine_name']} removed from cart."
    else:
        items[idx]["quantity"] = qty
        msg = f"{items[idx]['medicine_name']} quantity updated."

    cart = _save_items(db, cart, items)
    return jsonify({"ok": True, "msg": msg, "cart": _cart_payload(cart)})


@bp.route("/cart", methods=["DELETE"])
@roles_required("patient")
def cart_remove():
    data = json_body()
    inventory_id = data.get("inventory_id") or request.args.get("inventory_id")
    medicine_name = clean_str(data.get("medicine_name") or request.args.get("medicine_name"))

    if not inventory_id and not medicine_name:
        raise BadRequest("inventory_id or medicine_name is required")

    db = current_app.db
    cart = _load_cart(db, current_user_id(), create=False)
    if not cart:
        raise NotFound("Cart not found")

    items = [
        i for i in cart.get("items", [])
        if not ((inventory_id and i.get("inventory_id") == inventory_id)
                or (medicine_name and i.get("medicine_name") == medicine_name))
    ]
    cart = _save_items(db, cart, items)
    return jsonify({"ok": True, "msg": "Item removed from cart", "cart": _cart_payload(cart)})


@bp.route("/cart/clear", methods=["DELETE"])
@roles_required("patient")
def cart_clear():
    now = utcnow()
    current_app.db.carts.update_one(
        {"patient_id": current_user_id()},
        {"$set": {"items": [], "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    return jsonify({"ok": True, "msg": "Cart cleared"})


# ----------------------
# Orders
# ----------------------
def _validate_order_lines(medicines):
    if not isinstance(medicines, list) or not medicines:
        raise BadRequest("Medicines must be a non-empty array")
    lines = []
    for m in medicines:
        if not isinstance(m, dict):
            raise BadRequest("Each medicine must be an object")
        name = clean_str(m.get("medicine_name"))
        if not name:
            raise BadRequest("Each medicine must have a valid medicine_name")
        qty = m.get("quantity")
        if not isinstance(qty, int) or isinstance(qty, bool) or qty < 1:
            raise BadRequest("Each medicine must have a quantity of at least 1")
        price = m.get("price") or 0
        if not is_number(price) or price < 0:
            raise BadRequest("Each medicine must have a non-negative price")
        line = {"medicine_name": name, "quantity": qty, "price": price}
        if clean_str(m.get("brand")):
            line["brand"] = clean_str(m["brand"])
        lines.append(line)
    return lines


@bp.route("/create-order", methods=["POST"])
@roles_required("patient")
def create_order():
    data = json_body()
    if data.get("medicines") is None:
        raise BadRequest("Missing required field: medicines")
    lines = _validate_order_lines(data["medicines"])

    db = current_app.db
    patient_id = current_user_id()
    now = utcnow()
    order = {
        "patient_id": patient_id,
        "medicines": lines,
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    order["_id"] = db.orders.insert_one(order).inserted_id

    if data.get("clear_cart"):
        db.carts.update_one({"patient_id": patient_id}, {"$set": {"items": [], "updated_at": now}})

    logger.info("Order %s created by patient %s", order["_id"], patient_id)
    return jsonify({"ok": True, "msg": "Order created successfully", "order": order}), 201


@bp.route("/orders")
@roles_required("patient")
def orders_list():
    db = current_app.db
    orders = list(db.orders.find({"patient_id": current_user_id()}).sort("created_at", DESCENDING))

    shop_ids = list({o["accepted_by"] for o in orders if o.get("accepted_by")})
    shops = {
        s["_id"]: s
        for s in db.users.find({"_id": {"$in": shop_ids}}, {"name": 1, "shop_name": 1, "shop_address": 1})
    }
    for order in orders:
        shop = shops.get(order.get("accepted_by"))
        order["shop"] = {
            "name": shop.get("name"),
            "shop_name": shop.get("shop_name"),
            "shop_address": shop.get("shop_address"),
        } if shop else None

    return jsonify({"ok": True, "orders": orders, "count": len(orders)})


# ----------------------
# Prescriptions
# ----------------------
def _prescription_medicines(raw):
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise BadRequest("medicines must be an array")
    meds = []
    for m in raw:
        if not isinstance(m, dict) or not clean_str(m.get("name")):
            raise BadRequest("Each medicine must have a name")
        med = {"name": clean_str(m["name"])}
        for key in ("dosage", "frequency", "duration"):
            if clean_str(m.get(key)):
                med[key] = clean_str(m[key])
        if is_number(m.get("quantity")):
            med["quantity"] = m["quantity"]
        meds.append(med)
    return meds


@bp.route("/prescriptions", methods=["POST"])
@roles_required("patient")
def prescription_upload():
    data = json_body()
    image_url = clean_str(data.get("image_url"))
    patient_name = clean_str(data.get("patient_name")) or session["user"]["name"]

    if not image_url:
        raise BadRequest("image_url is required")

    db = current_app.db
    now = utcnow()
    prescription = {
        "patient_id": current_user_id(),
        "patient_name": patient_name,
        "image_url": image_url,
        "medicines": _prescription_medicines(data.get("medicines")),
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    if data.get("image_data"):
        prescription["image_data"] = data["image_data"]
    if clean_str(data.get("notes")):
        prescription["notes"] = clean_str(data["notes"])
    prescription["_id"] = db.prescriptions.insert_one(prescription).inserted_id

    notified = notify_all_shops(
        db, "order", "New Prescription Uploaded",
        f"{patient_name} has uploaded a prescription. Review and send your medicine offer.",
    )

    prescription.pop("image_data", None)
    return jsonify({
        "ok": True,
        "msg": "Prescription uploaded and sent to all medical shops",
        "prescription": prescription,
        "notified_shops": notified,
    }), 201


@bp.route("/prescriptions", methods=["GET"])
@roles_required("patient")
def prescription_list():
    db = current_app.db
    prescriptions = list(
        db.prescriptions.find({"patient_id": current_user_id()}, {"image_data": 0})
        .sort("created_at", DESCENDING)
    )

    offers_by_rx = {}
    ids = [p["_id"] for p in prescriptions]
    for offer in db.prescription_offers.find({"prescription_id": {"$in": ids}}).sort("total_amount", ASCENDING):
        offers_by_rx.setdefault(offer["prescription_id"], []).append(offer)

    for p in prescriptions:
        p["offers"] = offers_by_rx.get(p["_id"], [])
        p["offers_count"] = len(p["offers"])

    return jsonify({"ok": True, "prescriptions": prescriptions, "count": len(prescriptions)})


@bp.route("/prescriptions/extract", methods=["POST"])
@roles_required("patient")
def prescription_extract():
    data = json_body()
    image_base64 = data.get("image_base64")
    if not image_base64 or not isinstance(image_base64, str):
        raise BadRequest("image_base64 is required")

    medicines = []
    method = "manual"
    error = None
    cfg = current_app.config
    if cfg.get("GROQ_API_KEY"):
        try:
            medicines = extract.extract_medicines(
                image_base64,
                api_key=cfg["GROQ_API_KEY"],
                model=cfg.get("GROQ_MODEL"),
                base_url=cfg.get("GROQ_BASE_URL"),
            )
            method = "groq"
        except Exception as e:
            logger.exception("Prescription extraction failed")
            error = str(e)
    else:
        error = "GROQ_API_KEY not configured"

    if medicines:
        msg = f"Found {len(medicines)} medicine(s) in the prescription"
    else:
        msg = "No medicines could be extracted. Please add manually."
    return jsonify({
        "ok": True,
        "msg": msg,
        "medicines": medicines,
        "used_ai": method == "groq",
        "extraction_method": method,
        "error": error,
    })


@bp.route("/prescriptions/accept-offer", methods=["POST"])
@roles_required("patient")
def prescription_accept_offer():
    data = json_body()
    offer_id = parse_oid(data.get("offer_id"), "offer_id")
    order, rejected = claims.accept_offer(current_app.db, offer_id, current_user_id())
    return jsonify({
        "ok": True,
        "msg": "Offer accepted and order created successfully",
        "order": order,
        "rejected_offers": rejected,
    }), 201


# ----------------------
# Dashboard
# ----------------------
@bp.route("/dashboard")
@roles_required("patient")
def dashboard():
    db = current_app.db
    patient_id = current_user_id()

    cart = db.carts.find_one({"patient_id": patient_id}, {"items": 1})
    recent_orders = list(db.orders.find({"patient_id": patient_id}).sort("created_at", DESCENDING).limit(5))
    shop_ids = [o["accepted_by"] for o in recent_orders if o.get("accepted_by")]
    shop_names = {
        s["_id"]: s.get("shop_name")
        for s in db.users.find({"_id": {"$in": shop_ids}}, {"shop_name": 1})
    }
    notifications = list(
        db.notifications.find({"user_id": patient_id}).sort("created_at", DESCENDING).limit(5)
    )

    return jsonify({
        "ok": True,
        "active_orders": db.orders.count_documents(
            {"patient_id": patient_id, "status": {"$in": ["pending", "accepted"]}}
        ),
        "completed_orders": db.orders.count_documents({"patient_id": patient_id, "status": "delivered"}),
        "prescription_count": db.prescriptions.count_documents({"patient_id": patient_id}),
        "cart_items": len((cart or {}).get("items", [])),
        "recent_orders": [
            {
                "_id": o["_id"],
                "medicines": o["medicines"],
                "status": o["status"],
                "shop_name": shop_names.get(o.get("accepted_by")),
                "created_at": o.get("created_at"),
            }
            for o in recent_orders
        ],
        "notifications": [
            {"_id": n["_id"], "message": n["message"], "read": n["read"], "created_at": n.get("created_at")}
            for n in notifications
        ],
    })
