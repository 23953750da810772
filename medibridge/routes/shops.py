import math

from flask import Blueprint, current_app, jsonify, request

from medibridge.errors import BadRequest
from medibridge.geo import find_nearby_shops, list_shops, shop_summary

bp = Blueprint("shops", __name__)


def _float_arg(name):
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        value = float(raw)
    except ValueError:
        raise BadRequest(f"Invalid {name} value")
    if not math.isfinite(value):
        raise BadRequest(f"Invalid {name} value")
    return value


@bp.route("/shops")
def shops():
    search = (request.args.get("search") or "").strip() or None
    lat = _float_arg("lat")
    lng = _float_arg("lng")
    max_km = _float_arg("maxDistance")
    if max_km is None:
        max_km = current_app.config["DEFAULT_SHOP_RADIUS_KM"]

    db = current_app.db
    if lat is not None and lng is not None:
        if not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
            raise BadRequest("Invalid coordinates")
        if max_km <= 0:
            raise BadRequest("maxDistance must be positive")
        found = [shop_summary(s, origin=(lat, lng)) for s in find_nearby_shops(db, lat, lng, max_km, search)]
        return jsonify({"ok": True, "shops": found, "count": len(found)})

    found = [shop_summary(s) for s in list_shops(db, search)]
    return jsonify({"ok": True, "shops": found, "count": len(found)})
