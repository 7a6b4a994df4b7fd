"""
Best-effort parsing of JSON embedded in free-form model output.

Models often wrap JSON in prose or markdown fences. extract_json_object pulls
out the first top-level ``{...}`` block by brace matching (string literals and
escapes respected); the tool-specific parsers then apply documented fallbacks
so a malformed reply never raises.
"""

import json
import logging
from typing import Optional

logger = logging.getLogger(__name__)

GENERIC_CLARIFYING_QUESTION = "Could you provide more details about this topic?"

ENTITY_KEYS = ("people", "dates", "topics", "locations", "organizations", "keywords")


def _find_object_end(text: str, start: int) -> int:
    """Index of the brace closing the object opened at ``start``, or -1."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


def extract_json_object(text: Optional[str]) -> Optional[dict]:
    """
    Extract the first top-level JSON object from ``text``.

    Returns:
        The parsed dict, or None when there is no balanced block or it is
        not a valid JSON object.
    """
    if not text:
        return None

    start = text.find("{")
    if start == -1:
        return None

    end = _find_object_end(text, start)
    if end == -1:
        return None

    try:
        parsed = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        logger.debug(f"JSON block did not parse: {e}")
        return None
    return parsed if isinstance(parsed, dict) else None


def _string_list(value) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


def parse_gap_analysis(raw: str) -> dict:
    """
    Parse a findGaps reply into suggestion and question lists.

    Fallback when no JSON object is found: the whole reply becomes the single
    content suggestion and one generic clarifying question is supplied.
    """
    data = extract_json_object(raw)
    if data is None:
        text = (raw or "").strip()
        return {
            "contentSuggestions": [text] if text else [],
            "clarifyingQuestions": [GENERIC_CLARIFYING_QUESTION],
        }
    return {
        "contentSuggestions": _string_list(data.get("contentSuggestions")),
        "clarifyingQuestions": _string_list(data.get("clarifyingQuestions")),
    }


def parse_entities(raw: str) -> dict:
    """
    Parse an extractEntities reply.

    All six keys are always present; anything unparseable yields empty lists.
    """
    data = extract_json_object(raw) or {}
    return {key: _string_list(data.get(key)) for key in ENTITY_KEYS}
