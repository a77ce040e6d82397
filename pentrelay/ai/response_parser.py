"""
Extract the proposed command from a reasoning-service reply.

Models rarely return bare JSON. The reply is tried, in order, as:
  1. the whole text parsed as JSON,
  2. the first fenced ```json (or bare ```) block,
  3. whatever follows a reasoning delimiter such as </think>, itself tried
     as JSON and then as a fenced block.
The first candidate that yields an object with a "command" key wins.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterator, Optional

from pentrelay.errors import AIResponseMalformed, ErrorCode

logger = logging.getLogger(__name__)

FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)
THINKING_DELIMITERS = ("</think>", "</thinking>", "</reasoning>")


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text.strip())
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def _fenced(text: str) -> Iterator[str]:
    for match in FENCED_BLOCK.finditer(text):
        yield match.group(1)


def _candidates(text: str) -> Iterator[str]:
    yield text
    yield from _fenced(text)
    for delimiter in THINKING_DELIMITERS:
        if delimiter in text:
            tail = text.rsplit(delimiter, 1)[1]
            yield tail
            yield from _fenced(tail)


def parse_agent_reply(text: Optional[str]) -> Dict[str, Any]:
    """
    Return the first JSON object in `text` that carries a "command" key.

    Raises:
        AIResponseMalformed: no candidate parsed into such an object
    """
    if not text or not text.strip():
        raise AIResponseMalformed("Reasoning service returned an empty reply", code=ErrorCode.AI_JSON_PARSE_ERROR)

    for candidate in _candidates(text):
        parsed = _loads_object(candidate)
        if parsed is not None and "command" in parsed:
            return parsed

    preview = text.strip()[:200]
    logger.warning(f"[Parser] No command object in reasoning reply: {preview!r}")
    raise AIResponseMalformed(
        "Could not find a JSON object with a 'command' field in the AI response",
        code=ErrorCode.AI_JSON_PARSE_ERROR,
        details={"preview": preview},
    )

