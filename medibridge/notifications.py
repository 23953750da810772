import logging

from medibridge.db import utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {"order", "stock", "system", "restock", "medicine-request"}


def _doc(user_id, type, title, message, extra):
    doc = {
        "user_id": user_id,
        "type": type,
        "title": title,
        "message": message,
        "read": False,
        "created_at": utcnow(),
    }
    doc.update(extra)
    return doc


def notify_user(db, user_id, type, title, message, **extra):
    res = db.notifications.insert_one(_doc(user_id, type, title, message, extra))
    return res.inserted_id


def notify_users(db, user_ids, type, title, message, **extra):
    """Write one notification per recipient in a single batch; returns the count."""
    docs = [_doc(uid, type, title, message, extra) for uid in user_ids]
    if not docs:
        return 0
    db.notifications.insert_many(docs)
    logger.info("Fan-out %r to %d recipient(s)", title, len(docs))
    return len(docs)


def shop_ids(db, exclude=None):
    query = {"role": "shop"}
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    return [s["_id"] for s in db.users.find(query, {"_id": 1})]


def notify_all_shops(db, type, title, message, exclude=None, **extra):
    return notify_users(db, shop_ids(db, exclude=exclude), type, title, message, **extra)
