"""Lenient JSON extraction from model answers."""

from __future__ import annotations

import json
import re
from typing import Any

from ..errors import AIParsingError

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n(.*?)```", re.DOTALL)
_DECODER = json.JSONDecoder()


def parse_json_object(content: str) -> dict[str, Any]:
    """Parse a JSON object from a model answer.

    Accepts bare JSON, a fenced ```json block, or prose wrapped around a
    single object. The first decodable object wins.

    Raises:
        AIParsingError: if no JSON object can be recovered
    """
    if not content or not content.strip():
        raise AIParsingError("Empty model response", raw=content)
    text = content.strip()
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as exc:
        obj = _first_object(text)
        if obj is None:
            raise AIParsingError(f"Invalid JSON in model response: {exc.msg}", raw=content) from exc
    if not isinstance(obj, dict):
        raise AIParsingError(f"Expected a JSON object, got {type(obj).__name__}", raw=content)
    return obj


def _first_object(text: str) -> dict[str, Any] | None:
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)
    # raw_decode stops at the end of the first complete value
    for match in re.finditer(r"\{", text):
        try:
            obj, _ = _DECODER.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    return None
