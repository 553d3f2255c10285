"""Response parsing utilities for collaborator output.

Extracts JSON documents from raw collaborator text, which may be bare JSON,
a fenced block, or JSON embedded in surrounding prose.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from src.core.exceptions import ResponseParseError


def extract_code_blocks(text: str, language: Optional[str] = None) -> list[str]:
    """Extract fenced code blocks from collaborator output.

    Args:
        text: Raw output.
        language: If specified, only return blocks with this language tag.

    Returns:
        List of code block contents (without fences).
    """
    if language:
        pattern = rf"```{re.escape(language)}\s*\n(.*?)```"
    else:
        pattern = r"```(?:\w+)?\s*\n(.*?)```"

    matches = re.findall(pattern, text, re.DOTALL)
    return [m.strip() for m in matches]


def extract_json_block(text: str) -> Optional[Any]:
    """Parse the first JSON block, or the whole text; None when neither parses."""
    for block in extract_code_blocks(text, "json"):
        try:
            return json.loads(block)
        except json.JSONDecodeError:
            continue

    try:
        return json.loads(text.strip())
    except json.JSONDecodeError:
        return None


def extract_json_payload(text: str) -> Any:
    """Best-effort JSON extraction; raises ResponseParseError on failure.

    Order: whole text or fenced json block, then the outermost {...} span,
    then the outermost [...] span.
    """
    if not text or not text.strip():
        raise ResponseParseError("Collaborator returned empty output")

    parsed = extract_json_block(text)
    if parsed is not None:
        return parsed

    for pattern in (r"\{.*\}", r"\[.*\]"):
        match = re.search(pattern, text, re.DOTALL)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                continue

    raise ResponseParseError("Unable to parse collaborator output as JSON")
