"""Declarative field extraction from raw game pages.

A page is described by a ``PageSpec``: a URL plus a map of field name to
``FieldSpec``. Each field is a regular expression with one of three kinds:

* ``single`` - first capture group of the first match
* ``list``   - every non-overlapping match, groups 1..N bound to ``fields``
* ``object`` - a map assembled from named sub-selectors

Missing data is ``None`` (or an empty list), never a default value, and a
broken pattern only ever yields zero matches.
"""

from __future__ import annotations

import json
import re
from enum import StrEnum
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from travbot.core.json_scanner import find_balanced
from travbot.core.logging import get_logger

log = get_logger("extractor")


class FieldKind(StrEnum):
    SINGLE = "single"
    LIST = "list"
    OBJECT = "object"


class ChildSelector(BaseModel):
    key: str
    selector: str


class FieldSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    selector: str = ""
    kind: FieldKind = Field(default=FieldKind.SINGLE, alias="type")
    fields: list[str] = Field(default_factory=list)
    children: list[ChildSelector] = Field(default_factory=list)


class PageSpec(BaseModel):
    url: str
    description: str = ""
    fields: dict[str, FieldSpec] = Field(default_factory=dict)


@lru_cache(maxsize=512)
def _compile(pattern: str, flags: int) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        log.warning("invalid_selector", pattern=pattern[:80], error=str(e))
        return None


def extract_single(text: str, selector: str) -> str | None:
    """First capture group of the first match, stripped; None when absent."""
    regex = _compile(selector, 0)
    if regex is None or regex.groups < 1:
        return None
    match = regex.search(text)
    if not match or match.group(1) is None:
        return None
    return match.group(1).strip()


def extract_list(text: str, selector: str, names: list[str]) -> list[dict[str, str]]:
    """Every match as a dict of ``names`` bound to groups 1..N in order."""
    regex = _compile(selector, re.DOTALL)
    if regex is None:
        return []
    items: list[dict[str, str]] = []
    for match in regex.finditer(text):
        item: dict[str, str] = {}
        for index, name in enumerate(names, start=1):
            if index > regex.groups:
                break
            value = match.group(index)
            if value is not None:
                item[name] = value.strip()
        if item:
            items.append(item)
    return items


def extract_object(text: str, children: list[ChildSelector]) -> dict[str, str | None]:
    return {child.key: extract_single(text, child.selector) for child in children}


def extract_field(text: str, spec: FieldSpec) -> Any:
    if spec.kind == FieldKind.LIST:
        return extract_list(text, spec.selector, spec.fields)
    if spec.kind == FieldKind.OBJECT:
        return extract_object(text, spec.children)
    return extract_single(text, spec.selector)


def extract_page(text: str, spec: PageSpec) -> dict[str, Any]:
    """Apply every field of ``spec`` to ``text``. Pure function."""
    return {name: extract_field(text, field) for name, field in spec.fields.items()}


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

_NON_DIGIT = re.compile(r"[^\d-]")


def to_int(value: Any, default: int | None = None) -> int | None:
    """Parse a game number like ``1.234`` / ``1,234`` / ``-5``."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    cleaned = _NON_DIGIT.sub("", str(value).replace("−", "-"))
    if cleaned in ("", "-"):
        return default
    try:
        return int(cleaned)
    except ValueError:
        return default


def parse_duration(value: str | None) -> int:
    """``HH:MM:SS`` (or ``MM:SS``) to seconds, 0 when unparseable."""
    if not value:
        return 0
    parts = value.strip().split(":")
    try:
        numbers = [int(p) for p in parts]
    except ValueError:
        return 0
    seconds = 0
    for number in numbers:
        seconds = seconds * 60 + number
    return seconds


def extract_embedded_json(text: str, marker: str) -> dict[str, Any] | None:
    """Parse the ``{...}`` literal passed to a JS call such as ``Foo.initialize(``."""
    start = text.find(marker)
    if start < 0:
        return None
    brace = text.find("{", start + len(marker))
    if brace < 0:
        return None
    block = find_balanced(text, brace, "{", "}")
    if block is None:
        return None
    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        log.debug("embedded_json_invalid", marker=marker)
        return None
    return data if isinstance(data, dict) else None


def decode_js_string(value: str) -> str:
    """Decode ``\\uXXXX`` and other JS escapes of a string captured raw."""
    try:
        return json.loads(f'"{value}"')
    except json.JSONDecodeError:
        return value
