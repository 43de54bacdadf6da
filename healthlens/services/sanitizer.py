"""
Coerce semi-structured model output into renderable values.
Gemini's structured output is probabilistic: a field declared as a string sometimes
arrives as an object ({"name": "X", "coords": {...}}), a list can arrive wrapped in an
object, and JSON can arrive inside ```json fences. Everything here is total: it never
raises on shape problems, it falls back.
"""
import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

# Checked in order when an object shows up where a label was expected
LABEL_KEYS = (
    "name",
    "label",
    "cityName",
    "locationName",
    "area",
    "address",
    "fullAddress",
    "description",
)

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?|```")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_display_string(value: Any, fallback: str = "", _depth: int = 0) -> str:
    """
    Return a plain string for any JSON value.
    Objects resolve to their first non-empty label key (one nested level deep).
    A coordinate pair is never a label: it yields fallback.
    """
    if isinstance(value, str):
        return value
    if value is None:
        return fallback
    if isinstance(value, dict):
        if _depth < 2:
            for key in LABEL_KEYS:
                candidate = value.get(key)
                if not candidate:
                    continue
                if isinstance(candidate, (dict, list)) and _depth >= 1:
                    continue
                text = to_display_string(candidate, "", _depth + 1)
                if text:
                    return text
        if _is_number(value.get("lat")) or _is_number(value.get("lng")):
            return fallback
        try:
            return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return fallback
    if isinstance(value, list):
        try:
            return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return fallback
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def clean_json_text(text: str | None) -> str:
    """Strip ```json fences the model sometimes wraps around JSON mode output."""
    if not text:
        return ""
    return _FENCE_RE.sub("", text).strip()


def parse_json_reply(text: str | None, default: Any) -> tuple[Any, bool]:
    """
    Parse model JSON into a value shaped like `default` (dict or list).
    Returns (value, parsed). Malformed or mismatched bodies are logged and give
    (default, False) so callers can tell a real reply from the fallback.
    """
    cleaned = clean_json_text(text)
    if not cleaned:
        logger.warning("Empty model response, using default %s", type(default).__name__)
        return default, False
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning("Malformed JSON from model (%s): %.200s", e, cleaned)
        return default, False

    if isinstance(default, list):
        if isinstance(data, list):
            return data, True
        # {"alerts": [...]} instead of [...]
        if isinstance(data, dict):
            lists = [v for v in data.values() if isinstance(v, list)]
            if len(lists) == 1:
                return lists[0], True
        logger.warning("Expected JSON array from model, got %s", type(data).__name__)
        return default, False
    if isinstance(default, dict) and not isinstance(data, dict):
        logger.warning("Expected JSON object from model, got %s", type(data).__name__)
        return default, False
    return data, True


# ---- Defaulted field access ----


def text_field(data: Any, key: str, fallback: str = "") -> str:
    if not isinstance(data, dict):
        return fallback
    return to_display_string(data.get(key), fallback) or fallback


def list_field(data: Any, key: str) -> list:
    if not isinstance(data, dict):
        return []
    value = data.get(key)
    return value if isinstance(value, list) else []


def string_list(data: Any, key: str) -> list[str]:
    """List of display strings; empty items dropped."""
    out = []
    for item in list_field(data, key):
        text = to_display_string(item, "").strip()
        if text:
            out.append(text)
    return out


def object_list(data: Any, key: str) -> list[dict]:
    return [item for item in list_field(data, key) if isinstance(item, dict)]


def number_field(data: Any, key: str) -> float | None:
    """Float for numeric or numeric-string values, else None."""
    if not isinstance(data, dict):
        return None
    value = data.get(key)
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def enum_field(data: Any, key: str, allowed: tuple[str, ...], fallback: str) -> str:
    """Case-insensitive match against a closed set of values."""
    text = text_field(data, key).strip().lower()
    for option in allowed:
        if option.lower() == text:
            return option
    return fallback
