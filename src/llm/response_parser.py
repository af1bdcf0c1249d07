"""Parse JSON out of LLM responses."""
import json
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.I)


def parse_json_response(text: Optional[str]) -> Optional[dict]:
    """
    Parse a JSON object from model output.

    Strips markdown code fences; falls back to the outermost ``{...}`` span
    when the model wrapped the JSON in prose.

    Returns:
        Parsed dict, or None when no JSON object can be read
    """
    if not text or not text.strip():
        return None

    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    for candidate in (cleaned, _outer_object(cleaned)):
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    logger.debug("Could not parse JSON from LLM response: %.200s", text)
    return None


def _outer_object(text: str) -> Optional[str]:
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]
