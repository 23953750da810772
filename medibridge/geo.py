import re
from math import radians, sin, cos, asin, sqrt

from pymongo import ASCENDING

SHOP_FIELDS = {
    "name": 1, "email": 1, "shop_name": 1, "shop_address": 1,
    "location": 1, "phone": 1, "created_at": 1,
}


def haversine_km(lat1, lng1, lat2, lng2):
    """Great circle distance between two points on the earth (km)."""
    lng1, lat1, lng2, lat2 = map(radians, [lng1, lat1, lng2, lat2])
    dlng = lng2 - lng1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlng / 2) ** 2
    return 2 * asin(sqrt(a)) * 6371


def _shop_query(search=None):
    query = {"role": "shop"}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"shop_name": pattern}, {"shop_address": pattern}]
    return query


def find_nearby_shops(db, lat, lng, max_km, search=None):
    query = _shop_query(search)
    query["location"] = {
        "$near": {
            "$geometry": {"type": "Point", "coordinates": [lng, lat]},
            "$maxDistance": max_km * 1000,
        }
    }
    return list(db.users.find(query, SHOP_FIELDS))


def list_shops(db, search=None):
    return list(db.users.find(_shop_query(search), SHOP_FIELDS).sort("shop_name", ASCENDING))


def point_to_latlng(location):
    # GeoJSON stores [lng, lat]
    coords = (location or {}).get("coordinates")
    if not coords or len(coords) != 2:
        return None
    return {"lat": coords[1], "lng": coords[0]}


def shop_summary(shop, origin=None):
    loc = point_to_latlng(shop.get("location"))
    summary = {
        "id": shop["_id"],
        "name": shop.get("name"),
        "email": shop.get("email"),
        "shop_name": shop.get("shop_name"),
        "shop_address": shop.get("shop_address"),
        "phone": shop.get("phone"),
        "location": loc,
    }
    if origin is not None:
        distance = None
        if loc:
            distance = haversine_km(origin[0], origin[1], loc["lat"], loc["lng"])
        summary["distance"] = f"{distance:.1f} km" if distance is not None else None
        summary["distance_value"] = distance
    return summary
