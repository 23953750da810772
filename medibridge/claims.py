"""Claim protocol for orders and prescription offers.

Every state transition here is a single conditional update: the filter carries
the expected current status, so when several requests race for the same
document only one of them matches. Reads that follow a failed update only pick
the error to report; they never write.
"""
import logging

from pymongo import ReturnDocument

from medibridge.db import utcnow
from medibridge.errors import BadRequest, Conflict, Forbidden, NotFound
from medibridge.notifications import notify_user, notify_users

logger = logging.getLogger(__name__)

OPEN_PRESCRIPTION_STATUSES = ["pending", "offers-received"]


# ----------------------
# Orders
# ----------------------
def accept_order(db, order_id, shop_id):
    now = utcnow()
    order = db.orders.find_one_and_update(
        {"_id": order_id, "status": "pending"},
        {"$set": {
            "status": "accepted",
            "accepted_by": shop_id,
            "accepted_at": now,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if order is not None:
        logger.info("Order %s accepted by shop %s", order_id, shop_id)
        return order

    if db.orders.find_one({"_id": order_id}, {"_id": 1}) is None:
        raise NotFound("Order not found")
    logger.info("Shop %s lost the claim on order %s", shop_id, order_id)
    raise Conflict("Order has already been accepted by another shop")


def mark_delivered(db, order_id, shop_id):
    now = utcnow()
    order = db.orders.find_one_and_update(
        {"_id": order_id, "status": "accepted", "accepted_by": shop_id},
        {"$set": {"status": "delivered", "delivered_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if order is not None:
        logger.info("Order %s delivered by shop %s", order_id, shop_id)
        if order.get("prescription_id") is not None:
            db.prescriptions.update_one(
                {"_id": order["prescription_id"], "status": "accepted"},
                {"$set": {"status": "completed", "updated_at": now}},
            )
        return order

    existing = db.orders.find_one({"_id": order_id}, {"status": 1, "accepted_by": 1})
    if existing is None:
        raise NotFound("Order not found")
    if existing["status"] == "pending":
        raise BadRequest("Order must be accepted before marking as delivered")
    if existing["status"] == "delivered":
        raise Conflict("Order has already been delivered")
    if existing.get("accepted_by") != shop_id:
        raise Forbidden("Only the shop that accepted this order can mark it as delivered")
    raise BadRequest("Unable to update order")


# ----------------------
# Prescription offers
# ----------------------
def accept_offer(db, offer_id, patient_id):
    """Accept one offer for a prescription and turn it into an order.

    The prescription's move out of pending/offers-received is the gate: only
    the request whose conditional update matches goes on to create the order,
    so one prescription never yields two orders. Returns ``(order, rejected)``
    where ``rejected`` is the number of competing offers that were closed.
    """
    offer = db.prescription_offers.find_one({"_id": offer_id})
    if not offer:
        raise NotFound("Offer not found")
    if offer["status"] != "pending":
        raise Conflict("This offer is no longer available")

    prescription = db.prescriptions.find_one({"_id": offer["prescription_id"]})
    if not prescription:
        raise NotFound("Prescription not found")
    if prescription["patient_id"] != patient_id:
        raise Forbidden("You can only accept offers for your own prescriptions")

    now = utcnow()
    gate = db.prescriptions.find_one_and_update(
        {"_id": prescription["_id"], "status": {"$in": OPEN_PRESCRIPTION_STATUSES}},
        {"$set": {"status": "accepted", "accepted_offer_id": offer_id, "updated_at": now}},
        return_document=ReturnDocument.BEFORE,
    )
    if gate is None:
        raise Conflict("This prescription has already been processed")

    won = db.prescription_offers.update_one(
        {"_id": offer_id, "status": "pending"},
        {"$set": {"status": "accepted", "updated_at": now}},
    )
    if won.matched_count == 0:
        # offer changed underneath us; hand the prescription back
        db.prescriptions.update_one(
            {"_id": prescription["_id"], "accepted_offer_id": offer_id},
            {"$set": {"status": gate["status"], "updated_at": utcnow()},
             "$unset": {"accepted_offer_id": ""}},
        )
        raise Conflict("This offer is no longer available")

    order = {
        "patient_id": patient_id,
        "medicines": [
            {
                "medicine_name": m["medicine_name"],
                "brand": m.get("brand"),
                "quantity": m["quantity"],
                "price": m.get("price", 0),
            }
            for m in offer["medicines"]
            if m.get("available", True)
        ],
        "status": "accepted",
        "accepted_by": offer["shop_id"],
        "accepted_at": now,
        "prescription_id": prescription["_id"],
        "total_amount": offer.get("total_amount", 0),
        "delivery_fee": offer.get("delivery_fee", 0),
        "created_at": now,
        "updated_at": now,
    }
    order["_id"] = db.orders.insert_one(order).inserted_id

    losers = [
        o["shop_id"]
        for o in db.prescription_offers.find(
            {"prescription_id": prescription["_id"], "_id": {"$ne": offer_id}, "status": "pending"},
            {"shop_id": 1},
        )
    ]
    rejected = _reject_pending_offers(db, prescription["_id"], offer_id)

    total = offer.get("total_amount", 0) + offer.get("delivery_fee", 0)
    notify_user(
        db, offer["shop_id"], "order", "Offer Accepted!",
        f"Your offer for prescription has been accepted. Order total: ₹{total:.2f}",
    )
    notify_users(
        db, losers, "order", "Offer Not Selected",
        f"Another shop's offer was selected for prescription #{_short_ref(prescription['_id'])}",
    )
    logger.info(
        "Offer %s accepted for prescription %s; order %s created, %d offer(s) rejected",
        offer_id, prescription["_id"], order["_id"], rejected,
    )
    return order, rejected


def _reject_pending_offers(db, prescription_id, accepted_offer_id):
    res = db.prescription_offers.update_many(
        {"prescription_id": prescription_id, "_id": {"$ne": accepted_offer_id}, "status": "pending"},
        {"$set": {"status": "rejected", "updated_at": utcnow()}},
    )
    return res.modified_count


def _short_ref(oid):
    return str(oid)[-6:].upper()


def reconcile_offers(db):
    """Reject offers still pending on prescriptions that already accepted one."""
    total = 0
    for p in db.prescriptions.find(
        {"status": {"$in": ["accepted", "completed"]}, "accepted_offer_id": {"$exists": True}},
        {"accepted_offer_id": 1},
    ):
        n = _reject_pending_offers(db, p["_id"], p["accepted_offer_id"])
        if n:
            logger.warning("Reconciled %d stale offer(s) on prescription %s", n, p["_id"])
        total += n
    return total
