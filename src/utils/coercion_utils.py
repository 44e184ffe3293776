"""
Coercion helpers for model-produced JSON.

Every helper accepts an arbitrary value and returns either a value of the
target type or a neutral default. None of them raise.
"""
import math
import re
from typing import Any, Dict, List, Optional

MAX_ARRAY_ITEMS = 20

_TRUE_STRINGS = {"true", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "no", "n", "0"}

# "1.2m", "₦ 850,000", "#500k", "NGN 2.5b"
_NUMERIC_NOISE = re.compile(r"[\s,₦#]|ngn", re.IGNORECASE)
_NUMBER_WITH_SUFFIX = re.compile(r"^(-?\d+(?:\.\d+)?)([kmb]?)$", re.IGNORECASE)
_SUFFIX_MULTIPLIERS = {"": 1, "k": 1_000, "m": 1_000_000, "b": 1_000_000_000}


def coerce_string(value: Any) -> Optional[str]:
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    return None


def _normalize_number(number: float) -> int | float:
    if number.is_integer():
        return int(number)
    return number


def coerce_number(value: Any) -> Optional[int | float]:
    # bool is an int subclass but never a meaningful quantity here
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return _normalize_number(value) if math.isfinite(value) else None
    if isinstance(value, str):
        cleaned = _NUMERIC_NOISE.sub("", value)
        match = _NUMBER_WITH_SUFFIX.match(cleaned)
        if not match:
            return None
        number = float(match.group(1)) * _SUFFIX_MULTIPLIERS[match.group(2).lower()]
        if not math.isfinite(number):
            return None
        return _normalize_number(round(number, 6))
    return None


def coerce_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def coerce_string_array(value: Any, limit: int = MAX_ARRAY_ITEMS) -> List[str]:
    if not isinstance(value, list):
        return []
    items = [coerce_string(item) for item in value]
    return [item for item in items if item is not None][:limit]


def coerce_mapping(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    return {}


def coerce_number_mapping(value: Any) -> Dict[str, int | float]:
    """Keep only entries whose value coerces to a number (e.g. field confidences)."""
    result: Dict[str, int | float] = {}
    for key, item in coerce_mapping(value).items():
        number = coerce_number(item)
        if isinstance(key, str) and number is not None:
            result[key] = number
    return result


def coerce_string_mapping(value: Any) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for key, item in coerce_mapping(value).items():
        text = coerce_string(item)
        if isinstance(key, str) and text is not None:
            result[key] = text
    return result
