import json
import re
from typing import Any, Dict, List, Optional, Union

from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.+?)\s*```", re.DOTALL)


def parse_json_safely(text: str) -> Union[Dict[str, Any], List[Any], None]:
    """Parse JSON from LLM output, tolerating common formatting issues.

    Handles:
    - Markdown code blocks (```json ... ```), also when surrounded by prose
    - Leading/trailing whitespace
    - Trailing text after the first complete object

    Args:
        text: The text containing JSON

    Returns:
        Parsed JSON value or None if parsing fails
    """
    if not text:
        return None

    cleaned_text = text.strip()
    fenced = _FENCE_RE.search(cleaned_text)
    if fenced:
        cleaned_text = fenced.group(1).strip()

    try:
        return json.loads(cleaned_text)
    except json.JSONDecodeError as e:
        LOGGER.debug(f"Initial JSON parse failed: {e}, attempting repairs...")

    start = _first_container_start(cleaned_text)
    if start is None:
        LOGGER.warning("No JSON object found in LLM output")
        return None

    try:
        value, _ = json.JSONDecoder().raw_decode(cleaned_text[start:])
        return value
    except json.JSONDecodeError as e:
        LOGGER.warning(f"Failed to parse JSON: {e}")
        return None


def _first_container_start(text: str) -> Optional[int]:
    positions = [pos for pos in (text.find("{"), text.find("[")) if pos >= 0]
    return min(positions) if positions else None
