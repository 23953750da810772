from functools import wraps

from bson import ObjectId
from flask import session

from medibridge.errors import Forbidden, Unauthorized

ROLES = ("patient", "shop")


def login_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not session.get("user"):
            raise Unauthorized("Please log in first.")
        return f(*args, **kwargs)
    return wrapper


def roles_required(*roles):
    def deco(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            user = session.get("user")
            if not user:
                raise Unauthorized("Please log in first.")
            if user.get("role") not in roles:
                raise Forbidden("Access denied. Insufficient permissions.")
            return f(*args, **kwargs)
        return wrapper
    return deco


def current_user_id():
    return ObjectId(session["user"]["_id"])
