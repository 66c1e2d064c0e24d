"""
Consistent JSON Hashing

Deterministic hashing of JSON data, used to shorten oversized
key-value store keys
"""
import hashlib
import json
from datetime import date, datetime
from typing import Any


def normalize_json_for_hash(data: Any) -> Any:
    """
    Normalize JSON data for consistent hashing.

    - Sorts dictionary keys
    - Converts dates to ISO strings
    - Removes None values
    - Normalizes whitespace in strings

    Args:
        data: JSON-serializable data

    Returns:
        Normalized data structure
    """
    if data is None:
        return None

    if isinstance(data, dict):
        return {
            k: normalize_json_for_hash(v)
            for k, v in sorted(data.items())
            if v is not None
        }

    if isinstance(data, (list, tuple)):
        # Preserve order
        return [normalize_json_for_hash(item) for item in data]

    if isinstance(data, (datetime, date)):
        return data.isoformat()

    if isinstance(data, float):
        return round(data, 10)

    if isinstance(data, str):
        return " ".join(data.split())

    return data


def compute_json_hash(data: Any) -> str:
    """
    Compute SHA256 hash of JSON data.

    Args:
        data: JSON-serializable data

    Returns:
        64-character hex SHA256 hash
    """
    normalized = normalize_json_for_hash(data)
    json_str = json.dumps(normalized, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(json_str.encode("utf-8")).hexdigest()
