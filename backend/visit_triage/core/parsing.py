"""
Visit Triage - Loose JSON Parsing

Generative models asked for "JSON only" still wrap answers in markdown
code fences or add a sentence of preamble. These helpers recover the JSON
object from such output and are the only place the pipeline does so.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def unwrap_fenced_json(raw: str) -> str:
    """
    Strip a surrounding markdown code fence, if any.

    "```json\\n{...}\\n```" and "```\\n{...}\\n```" both become "{...}".
    Text without a surrounding fence is returned stripped of outer whitespace.
    """
    if raw is None:
        return ""
    match = _FENCE_RE.match(raw)
    if match:
        return match.group(1).strip()
    return raw.strip()


def parse_json_object(raw: str) -> Dict[str, Any]:
    """
    Parse model output into a JSON object.

    Tries the unwrapped text first, then the first balanced {...} block in it.

    Raises:
        ValueError: If no JSON object can be recovered.
    """
    text = unwrap_fenced_json(raw)
    if not text:
        raise ValueError("empty model output")

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        candidate = _extract_first_json_object(text)
        if not candidate:
            raise ValueError("model output is not valid JSON")
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as exc:
            raise ValueError(f"model output is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _extract_first_json_object(text: str) -> str:
    start = text.find("{")
    if start < 0:
        return ""
    depth = 0
    in_str = False
    escape = False
    for i, ch in enumerate(text[start:], start=start):
        if in_str:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return ""
