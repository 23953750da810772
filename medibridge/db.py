from datetime import datetime, date

from bson import ObjectId
from flask.json.provider import DefaultJSONProvider
from pymongo import ASCENDING, DESCENDING

from medibridge.errors import BadRequest


def utcnow():
    return datetime.utcnow()


def parse_oid(value, field="id"):
    if not value:
        raise BadRequest(f"{field} is required")
    try:
        return ObjectId(str(value))
    except Exception:
        raise BadRequest(f"Invalid {field} format")


def parse_date(value, field="date"):
    if value in (None, ""):
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise BadRequest(f"Invalid {field} format")


class MongoJSONProvider(DefaultJSONProvider):
    """JSON provider that knows about ObjectId and renders dates as ISO-8601."""

    @staticmethod
    def default(o):
        if isinstance(o, ObjectId):
            return str(o)
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        return DefaultJSONProvider.default(o)


def ensure_indexes(db):
    db.users.create_index([("email", ASCENDING)], unique=True)
    db.users.create_index([("role", ASCENDING)])
    db.users.create_index([("location", "2dsphere")])
    db.orders.create_index([("patient_id", ASCENDING)])
    db.orders.create_index([("status", ASCENDING)])
    db.orders.create_index([("accepted_by", ASCENDING)])
    db.orders.create_index([("created_at", DESCENDING)])
    db.prescriptions.create_index([("patient_id", ASCENDING)])
    db.prescriptions.create_index([("status", ASCENDING)])
    db.prescription_offers.create_index(
        [("prescription_id", ASCENDING), ("shop_id", ASCENDING)], unique=True
    )
    db.prescription_offers.create_index([("shop_id", ASCENDING), ("status", ASCENDING)])
    db.inventory.create_index([("shop_id", ASCENDING)])
    db.inventory.create_index([("medicine_name", ASCENDING)])
    db.carts.create_index([("patient_id", ASCENDING)], unique=True)
    db.notifications.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db.medicine_requests.create_index([("status", ASCENDING)])
    db.restock_requests.create_index([("shop_id", ASCENDING)])
