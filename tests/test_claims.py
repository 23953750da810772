"""
Tests for the order and offer claim protocol.

Exercises the conditional updates directly against the database.
"""
import threading

import pytest
from bson import ObjectId

from medibridge import claims
from medibridge.db import utcnow
from medibridge.errors import BadRequest, Conflict, Forbidden, NotFound


def _order(db, status="pending", accepted_by=None):
    doc = {
        "patient_id": ObjectId(),
        "medicines": [{"medicine_name": "Dolo 650mg", "quantity": 1, "price": 32}],
        "status": status,
        "created_at": utcnow(),
    }
    if accepted_by:
        doc["accepted_by"] = accepted_by
    return db.orders.insert_one(doc).inserted_id


def _prescription(db, patient_id, status="offers-received"):
    return db.prescriptions.insert_one({
        "patient_id": patient_id,
        "patient_name": "Asha",
        "image_url": "https://img.example/rx.jpg",
        "status": status,
        "created_at": utcnow(),
    }).inserted_id


def _offer(db, prescription_id, shop_id, total=20.0, status="pending", medicines=None):
    return db.prescription_offers.insert_one({
        "prescription_id": prescription_id,
        "shop_id": shop_id,
        "shop_name": "Shop",
        "medicines": medicines or [{"medicine_name": "Amoxicillin", "quantity": 2, "price": total / 2, "available": True}],
        "total_amount": total,
        "delivery_fee": 5,
        "status": status,
    }).inserted_id


class TestAcceptOrder:
    """Tests for the pending -> accepted transition."""

    def test_first_shop_wins(self, db):
        order_id = _order(db)
        shop_a, shop_b = ObjectId(), ObjectId()

        order = claims.accept_order(db, order_id, shop_a)
        assert order["status"] == "accepted"
        assert order["accepted_by"] == shop_a

        with pytest.raises(Conflict) as exc:
            claims.accept_order(db, order_id, shop_b)
        assert "already been accepted" in exc.value.msg
        assert db.orders.find_one({"_id": order_id})["accepted_by"] == shop_a

    def test_many_attempts_only_one_succeeds(self, db):
        order_id = _order(db)
        wins, conflicts = 0, 0
        for _ in range(5):
            try:
                claims.accept_order(db, order_id, ObjectId())
                wins += 1
            except Conflict:
                conflicts += 1
        assert (wins, conflicts) == (1, 4)

    def test_missing_order(self, db):
        with pytest.raises(NotFound):
            claims.accept_order(db, ObjectId(), ObjectId())

    def test_delivered_order_cannot_be_accepted(self, db):
        order_id = _order(db, status="delivered", accepted_by=ObjectId())
        with pytest.raises(Conflict):
            claims.accept_order(db, order_id, ObjectId())


def _race(targets):
    """Start each callable on its own thread at the same moment; returns (results, errors)."""
    barrier = threading.Barrier(len(targets), timeout=10)
    results, errors = [], []

    def run(target):
        barrier.wait()
        try:
            results.append(target())
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=(t,)) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    assert not any(t.is_alive() for t in threads)
    return results, errors


class TestConcurrentClaims:
    """Competing claims issued from parallel threads."""

    def test_one_shop_wins_order(self, serialized_db):
        db = serialized_db
        order_id = _order(db)
        shops = [ObjectId() for _ in range(20)]

        results, errors = _race([lambda s=s: claims.accept_order(db, order_id, s) for s in shops])

        assert len(results) == 1
        assert len(errors) == 19
        assert all(isinstance(e, Conflict) for e in errors)
        order = db.orders.find_one({"_id": order_id})
        assert order["status"] == "accepted"
        assert order["accepted_by"] == results[0]["accepted_by"]

    def test_one_offer_wins_prescription(self, serialized_db):
        db = serialized_db
        patient = ObjectId()
        rx = _prescription(db, patient)
        offers = [_offer(db, rx, ObjectId(), total=10.0 + i) for i in range(8)]

        results, errors = _race([lambda o=o: claims.accept_offer(db, o, patient) for o in offers])

        assert len(results) == 1
        assert len(errors) == 7
        assert all(isinstance(e, Conflict) for e in errors)
        order, rejected = results[0]
        assert rejected == 7
        assert db.orders.count_documents({"prescription_id": rx}) == 1
        statuses = [o["status"] for o in db.prescription_offers.find({"prescription_id": rx})]
        assert sorted(statuses) == ["accepted"] + ["rejected"] * 7
        p = db.prescriptions.find_one({"_id": rx})
        assert p["status"] == "accepted"
        winner = db.prescription_offers.find_one({"_id": p["accepted_offer_id"]})
        assert winner["status"] == "accepted"
        assert winner["shop_id"] == order["accepted_by"]

class TestMarkDelivered:
    """Tests for the accepted -> delivered transition."""

    def test_accepting_shop_delivers(self, db):
        shop = ObjectId()
        order_id = _order(db, status="accepted", accepted_by=shop)
        order = claims.mark_delivered(db, order_id, shop)
        assert order["status"] == "delivered"
        assert "delivered_at" in order

    def test_pending_order(self, db):
        order_id = _order(db)
        with pytest.raises(BadRequest) as exc:
            claims.mark_delivered(db, order_id, ObjectId())
        assert "must be accepted" in exc.value.msg
        assert db.orders.find_one({"_id": order_id})["status"] == "pending"

    def test_wrong_shop(self, db):
        order_id = _order(db, status="accepted", accepted_by=ObjectId())
        with pytest.raises(Forbidden):
            claims.mark_delivered(db, order_id, ObjectId())
        assert db.orders.find_one({"_id": order_id})["status"] == "accepted"

    def test_already_delivered(self, db):
        shop = ObjectId()
        order_id = _order(db, status="delivered", accepted_by=shop)
        with pytest.raises(Conflict):
            claims.mark_delivered(db, order_id, shop)

    def test_missing_order(self, db):
        with pytest.raises(NotFound):
            claims.mark_delivered(db, ObjectId(), ObjectId())

    def test_completes_prescription(self, db):
        patient, shop = ObjectId(), ObjectId()
        rx = _prescription(db, patient)
        order, _ = claims.accept_offer(db, _offer(db, rx, shop), patient)
        assert db.prescriptions.find_one({"_id": rx})["status"] == "accepted"

        claims.mark_delivered(db, order["_id"], shop)
        assert db.prescriptions.find_one({"_id": rx})["status"] == "completed"

    def test_failed_delivery_leaves_prescription(self, db):
        patient = ObjectId()
        rx = _prescription(db, patient)
        order, _ = claims.accept_offer(db, _offer(db, rx, ObjectId()), patient)

        with pytest.raises(Forbidden):
            claims.mark_delivered(db, order["_id"], ObjectId())
        assert db.prescriptions.find_one({"_id": rx})["status"] == "accepted"


class TestAcceptOffer:
    """Tests for offer acceptance and the rejection cascade."""

    def test_end_state(self, db):
        patient = ObjectId()
        rx = _prescription(db, patient)
        shops = [ObjectId(), ObjectId(), ObjectId()]
        offers = [_offer(db, rx, s, total=10.0 * (i + 1)) for i, s in enumerate(shops)]

        order, rejected = claims.accept_offer(db, offers[1], patient)

        assert rejected == 2
        assert order["status"] == "accepted"
        assert order["accepted_by"] == shops[1]
        assert order["prescription_id"] == rx
        statuses = {o["_id"]: o["status"] for o in db.prescription_offers.find({"prescription_id": rx})}
        assert list(statuses.values()).count("accepted") == 1
        assert statuses[offers[1]] == "accepted"
        assert statuses[offers[0]] == statuses[offers[2]] == "rejected"
        p = db.prescriptions.find_one({"_id": rx})
        assert p["status"] == "accepted"
        assert p["accepted_offer_id"] == offers[1]
        assert db.orders.count_documents({"prescription_id": rx}) == 1

    def test_notifies_winner_and_losers(self, db):
        patient = ObjectId()
        rx = _prescription(db, patient)
        winner, loser = ObjectId(), ObjectId()
        offer_id = _offer(db, rx, winner)
        _offer(db, rx, loser)

        claims.accept_offer(db, offer_id, patient)

        assert db.notifications.find_one({"user_id": winner})["title"] == "Offer Accepted!"
        assert db.notifications.find_one({"user_id": loser})["title"] == "Offer Not Selected"

    def test_second_acceptance_conflicts(self, db):
        patient = ObjectId()
        rx = _prescription(db, patient)
        first = _offer(db, rx, ObjectId())
        second = _offer(db, rx, ObjectId())
        claims.accept_offer(db, first, patient)

        with pytest.raises(Conflict):
            claims.accept_offer(db, second, patient)
        assert db.orders.count_documents({"prescription_id": rx}) == 1

    def test_retry_of_same_offer_conflicts(self, db):
        patient = ObjectId()
        rx = _prescription(db, patient)
        offer_id = _offer(db, rx, ObjectId())
        claims.accept_offer(db, offer_id, patient)

        with pytest.raises(Conflict):
            claims.accept_offer(db, offer_id, patient)
        assert db.orders.count_documents({"prescription_id": rx}) == 1

    def test_gate_blocks_stale_pending_offer(self, db):
        # prescription already accepted but a competing offer is still pending
        patient = ObjectId()
        rx = _prescription(db, patient, status="accepted")
        offer_id = _offer(db, rx, ObjectId())

        with pytest.raises(Conflict) as exc:
            claims.accept_offer(db, offer_id, patient)
        assert "already been processed" in exc.value.msg
        assert db.orders.count_documents({}) == 0

    def test_other_patient_forbidden(self, db):
        rx = _prescription(db, ObjectId())
        offer_id = _offer(db, rx, ObjectId())
        with pytest.raises(Forbidden):
            claims.accept_offer(db, offer_id, ObjectId())
        assert db.prescriptions.find_one({"_id": rx})["status"] == "offers-received"

    def test_missing_offer(self, db):
        with pytest.raises(NotFound):
            claims.accept_offer(db, ObjectId(), ObjectId())

    def test_unavailable_lines_not_ordered(self, db):
        patient = ObjectId()
        rx = _prescription(db, patient)
        offer_id = _offer(db, rx, ObjectId(), medicines=[
            {"medicine_name": "Amoxicillin", "quantity": 2, "price": 10, "available": True},
            {"medicine_name": "Rare Drug", "quantity": 1, "price": 99, "available": False},
        ])
        order, _ = claims.accept_offer(db, offer_id, patient)
        assert [m["medicine_name"] for m in order["medicines"]] == ["Amoxicillin"]


class TestReconcileOffers:
    """Tests for the recovery pass."""

    def test_rejects_stale_pending_offers(self, db):
        rx = _prescription(db, ObjectId(), status="accepted")
        winner = _offer(db, rx, ObjectId(), status="accepted")
        stale = _offer(db, rx, ObjectId())
        db.prescriptions.update_one({"_id": rx}, {"$set": {"accepted_offer_id": winner}})

        assert claims.reconcile_offers(db) == 1
        assert db.prescription_offers.find_one({"_id": stale})["status"] == "rejected"
        assert db.prescription_offers.find_one({"_id": winner})["status"] == "accepted"

    def test_leaves_open_prescriptions_alone(self, db):
        rx = _prescription(db, ObjectId(), status="offers-received")
        offer_id = _offer(db, rx, ObjectId())
        assert claims.reconcile_offers(db) == 0
        assert db.prescription_offers.find_one({"_id": offer_id})["status"] == "pending"

    def test_covers_completed_prescriptions(self, db):
        rx = _prescription(db, ObjectId(), status="completed")
        winner = _offer(db, rx, ObjectId(), status="accepted")
        stale = _offer(db, rx, ObjectId())
        db.prescriptions.update_one({"_id": rx}, {"$set": {"accepted_offer_id": winner}})

        assert claims.reconcile_offers(db) == 1
        assert db.prescription_offers.find_one({"_id": stale})["status"] == "rejected"
