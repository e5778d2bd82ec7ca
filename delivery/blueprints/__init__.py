"""
Delivery Console — blueprint helpers.
"""

import re

from flask import request

from delivery.core.exceptions import ValidationError

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def _snake_keys(value):
    if isinstance(value, dict):
        return {(_snake(k) if isinstance(k, str) else k): _snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_snake_keys(v) for v in value]
    return value


def json_body() -> dict:
    """Request JSON as a dict with camelCase keys normalised to snake_case.

    The console UI posts camelCase (``targetStage``, ``approverRole``);
    services speak snake_case. An empty body yields ``{}``.
    """
    if not request.data:
        return {}
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return _snake_keys(data)


def query_flag(name: str, default: bool = False) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

