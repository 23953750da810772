"""
Pytest configuration and shared fixtures for MediBridge tests.
"""
import functools
import threading

import mongomock
import pytest
from bson import ObjectId

from medibridge import create_app

PASSWORD = "secret123"


@pytest.fixture
def db():
    return mongomock.MongoClient().medibridge_test


@pytest.fixture
def serialized_db(db, monkeypatch):
    """The db fixture with each collection call holding one shared lock.

    mongomock runs find_one_and_update as a read followed by a separate
    write, so without the lock two threads can both match the same filter.
    A MongoDB server applies each single-document update atomically.
    """
    lock = threading.RLock()

    def serialized(method):
        @functools.wraps(method)
        def wrapper(*args, **kwargs):
            with lock:
                return method(*args, **kwargs)
        return wrapper

    for name in ("find_one", "find_one_and_update", "update_one", "update_many",
                 "insert_one", "insert_many", "delete_one", "delete_many"):
        monkeypatch.setattr(mongomock.Collection, name, serialized(getattr(mongomock.Collection, name)))
    return db


@pytest.fixture
def app(db):
    return create_app(
        {"TESTING": True, "SECRET_KEY": "test-secret", "GROQ_API_KEY": None, "LOW_STOCK_THRESHOLD": 10},
        db=db,
    )


@pytest.fixture
def client(app):
    return app.test_client()


def signup(app, email, role, **extra):
    """Register and log in a user on a fresh test client; returns (client, user_id)."""
    c = app.test_client()
    body = {"name": extra.pop("name", email.split("@")[0].title()), "email": email,
            "password": PASSWORD, "role": role}
    body.update(extra)
    resp = c.post("/auth/register", json=body)
    assert resp.status_code == 201, resp.get_json()
    resp = c.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    return c, ObjectId(resp.get_json()["user"]["id"])


@pytest.fixture
def patient(app):
    return signup(app, "pat@example.com", "patient", name="Asha")


@pytest.fixture
def shop(app):
    return signup(app, "shop1@example.com", "shop", shop_name="City Meds", shop_address="1 Main St")


@pytest.fixture
def other_shop(app):
    return signup(app, "shop2@example.com", "shop", shop_name="Green Cross", shop_address="9 Side Rd")


@pytest.fixture
def pending_order(patient):
    c, _ = patient
    resp = c.post("/patient/create-order", json={
        "medicines": [{"medicine_name": "Paracetamol 500mg", "quantity": 2, "price": 25}],
    })
    assert resp.status_code == 201
    return resp.get_json()["order"]["_id"]


@pytest.fixture
def prescription(patient):
    c, _ = patient
    resp = c.post("/patient/prescriptions", json={"image_url": "https://img.example/rx1.jpg"})
    assert resp.status_code == 201
    return resp.get_json()["prescription"]["_id"]


def offer_body(prescription_id, price=10, qty=2, **extra):
    body = {
        "prescription_id": prescription_id,
        "medicines": [{"medicine_name": "Amoxicillin 500mg", "quantity": qty, "price": price}],
    }
    body.update(extra)
    return body
