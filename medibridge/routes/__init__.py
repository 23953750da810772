import math

from flask import request

from medibridge.errors import BadRequest


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadRequest("Request body must be a JSON object")
    return data


def clean_str(value):
    return value.strip() if isinstance(value, str) else ""


def is_number(value):
    # bool is an int subclass; reject it explicitly. NaN and Infinity parse as floats
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return math.isfinite(value)


def parse_int_arg(name, default):
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise BadRequest(f"Invalid {name} value")
