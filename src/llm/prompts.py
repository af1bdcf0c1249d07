"""Prompt templates loaded from config/prompts.yaml."""
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml

from config.settings import settings
from src.llm.exceptions import LlmError

logger = logging.getLogger(__name__)

# {name} with a lowercase identifier; JSON examples like {"a": 1} never match
PLACEHOLDER_RE = re.compile(r"\{([a-z_][a-z0-9_]*)\}")


@lru_cache(maxsize=4)
def load_prompts(path: Optional[str] = None) -> dict:
    """Load and cache the prompt file."""
    prompts_path = Path(path) if path else settings.prompts_path
    with open(prompts_path) as f:
        data = yaml.safe_load(f) or {}
    logger.debug("Loaded %d prompt templates from %s", len(data), prompts_path)
    return data


def render(operation: str, **values) -> tuple[Optional[str], str]:
    """
    Fill in the template for an operation.

    Only placeholders named in ``values`` are substituted; any other
    ``{name}`` is left as written.

    Args:
        operation: Top-level key in prompts.yaml
        **values: Placeholder values

    Returns:
        (system_message, prompt)

    Raises:
        LlmError: Unknown operation
    """
    entry = load_prompts().get(operation)
    if not entry:
        raise LlmError(f"No prompt template for operation '{operation}'")

    def _fill(match: re.Match) -> str:
        name = match.group(1)
        if name not in values:
            return match.group(0)
        return _as_text(values[name])

    prompt = PLACEHOLDER_RE.sub(_fill, entry["template"])
    return entry.get("system"), prompt


def _as_text(value) -> str:
    if value is None:
        return "Unknown"
    return str(value)
