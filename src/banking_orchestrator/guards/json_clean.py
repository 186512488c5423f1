"""
guards/json_clean.py

Extraction of a JSON object from raw model text.

Model replies arrive as pure JSON, as a fenced ```json block, or as prose
with a JSON object somewhere inside. This module pulls the first parseable
object out of any of those shapes, tolerating trailing commas.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional, Tuple

_CODE_FENCE_RE = re.compile(r"```(\w+)?\s*([\s\S]*?)```", re.MULTILINE)


def _remove_trailing_commas(s: str) -> str:
    """
    Remove trailing commas before ']' or '}' outside of strings.
    Conservative single pass.
    """
    out = []
    in_string = False
    escape = False
    n = len(s)
    for i, ch in enumerate(s):
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            continue
        if ch == ",":
            j = i + 1
            while j < n and s[j] in " \r\n\t":
                j += 1
            if j < n and s[j] in ("]", "}"):
                continue
        out.append(ch)
    return "".join(out)


def _extract_first_balanced_block(text: str) -> Tuple[Optional[str], bool]:
    """
    Return the first balanced {...} block and whether the text ended before
    the block closed (likely truncation).
    """
    start_idx = text.find("{")
    if start_idx < 0:
        return None, False

    depth = 0
    in_string = False
    escape = False
    for i in range(start_idx, len(text)):
        c = text[i]
        if in_string:
            if escape:
                escape = False
            elif c == "\\":
                escape = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return text[start_idx:i + 1], False

    return text[start_idx:], True


def _loads_object(candidate: str) -> Optional[Dict[str, Any]]:
    for payload in (candidate, _remove_trailing_commas(candidate)):
        try:
            data = json.loads(payload)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def extract_json_object(text: Any) -> Optional[Dict[str, Any]]:
    """
    Return the first JSON object found in ``text`` or None.

    Lookup order: the whole text, fenced code blocks (json-tagged first),
    then the first balanced {...} block.
    """
    if isinstance(text, dict):
        return text
    if not isinstance(text, str) or not text.strip():
        return None

    direct = _loads_object(text.strip())
    if direct is not None:
        return direct

    fences = list(_CODE_FENCE_RE.finditer(text))
    ordered = [m for m in fences if (m.group(1) or "").lower() == "json"]
    ordered += [m for m in fences if (m.group(1) or "").lower() != "json"]
    for match in ordered:
        body = (match.group(2) or "").strip()
        if body:
            data = _loads_object(body)
            if data is not None:
                return data

    block, truncated = _extract_first_balanced_block(text)
    if block is None or truncated:
        return None
    return _loads_object(block)
