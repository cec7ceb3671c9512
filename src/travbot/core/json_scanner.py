"""Balanced-bracket scanning for JSON literals embedded in HTML/JS.

Regexes cannot safely find the end of a nested array inside a page script, so
these helpers walk the text counting bracket depth while skipping string
literals.
"""

from __future__ import annotations

import json
from typing import Any

_PAIRS = {"[": "]", "{": "}"}


def find_balanced(text: str, start: int, open_char: str = "[", close_char: str | None = None) -> str | None:
    """Return the balanced literal beginning at ``text[start]``.

    ``text[start]`` must be ``open_char``. Brackets inside quoted strings are
    ignored. Returns None when the literal never closes.
    """
    if start < 0 or start >= len(text) or text[start] != open_char:
        return None
    close_char = close_char or _PAIRS[open_char]
    depth = 0
    in_string: str | None = None
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == in_string:
                in_string = None
            continue
        if char in ('"', "'"):
            in_string = char
        elif char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def extract_array_after(text: str, key: str, start: int = 0, end: int | None = None) -> str | None:
    """Raw ``[...]`` following ``"key":`` between ``start`` and ``end``."""
    needle = f'"{key}"'
    pos = text.find(needle, start, end if end is not None else len(text))
    if pos < 0:
        return None
    bracket = text.find("[", pos + len(needle))
    if bracket < 0 or (end is not None and bracket >= end):
        return None
    # only whitespace and a colon may sit between the key and the bracket
    if text[pos + len(needle) : bracket].strip() != ":":
        return None
    return find_balanced(text, bracket, "[")


def extract_json_array(text: str, key: str, start: int = 0, end: int | None = None) -> list[Any] | None:
    """Parsed JSON array following ``"key":``, or None."""
    raw = extract_array_after(text, key, start, end)
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, list) else None
