"""Default pattern table for the pages the engine scrapes.

The table is plain data consumed by ``travbot.core.extractors``. Markup
drifts independently of engine logic, so a TOML file can override any page or
field without touching code::

    [pages.dorf1.fields.lumber]
    selector = 'id="l1"[^>]*>([\\d.,]+)<'
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from travbot.core.exceptions import ConfigError
from travbot.core.extractors import PageSpec
from travbot.core.logging import get_logger

log = get_logger("selectors")

_NUM = r"&#x202d;([\d.,]+)&#x202c;"
_LEVEL_WORD = r"(?:Level|Seviye|Stufe|Niveau|Nivel)"
_PRODUCTION_WORD = r"(?:roduction|retim|roduktion)"

_TRAINING_FIELDS: dict[str, Any] = {
    "trainable_troops": {
        "selector": r'innerTroopWrapper\s+troopt(\d+)[^"]*"[^>]*data-troop(?:id|ID)="(t\d+)"[\s\S]*?alt="([^"]+)"',
        "type": "list",
        "fields": ["troop_num", "troop_id", "name"],
    },
    "locked_troops": {
        "selector": r"action troop troopt(\d+) empty",
        "type": "list",
        "fields": ["troop_num"],
    },
}

DEFAULT_PAGES: dict[str, dict[str, Any]] = {
    "dorf1": {
        "url": "/dorf1.php",
        "description": "Resource fields and production",
        "fields": {
            "tribe": {"selector": r'resourceFieldContainer"[^>]*class="[^"]*tribe(\d+)'},
            "village_name": {"selector": r'villageName"[^>]*value="([^"]+)"'},
            "lumber": {"selector": r'id="l1"[^>]*>' + _NUM},
            "clay": {"selector": r'id="l2"[^>]*>' + _NUM},
            "iron": {"selector": r'id="l3"[^>]*>' + _NUM},
            "crop": {"selector": r'id="l4"[^>]*>' + _NUM},
            "warehouse_capacity": {
                "selector": r'class="warehouse"[^>]*>[\s\S]*?class="value">' + _NUM
            },
            "granary_capacity": {
                "selector": r'class="granary"[^>]*>[\s\S]*?class="value">' + _NUM
            },
            "production_lumber": {
                "selector": r'resource1[^>]*title="[^|]*\|\|[^:]*' + _PRODUCTION_WORD + r": (\d+)"
            },
            "production_clay": {
                "selector": r'resource2[^>]*title="[^|]*\|\|[^:]*' + _PRODUCTION_WORD + r": (\d+)"
            },
            "production_iron": {
                "selector": r'resource3[^>]*title="[^|]*\|\|[^:]*' + _PRODUCTION_WORD + r": (\d+)"
            },
            "production_crop": {
                "selector": r'resource4[^>]*title="[^|]*\|\|[^:]*'
                + _PRODUCTION_WORD
                + r"[^:]*: (-?\d+)"
            },
            "resource_fields": {
                "selector": r'resourceField\s+gid(\d+)\s+buildingSlot(\d+)[^"]*level(\d+)"[^>]*'
                r'data-aid="(\d+)"\s+data-gid="\d+"[^>]*title="([^&<]+)',
                "type": "list",
                "fields": ["gid", "slot_id", "level", "aid", "name"],
            },
            "construction_queue": {
                "selector": r'<div class="name">\s*([^<]+?)\s*<span class="lvl">'
                + _LEVEL_WORD
                + r'\s*(\d+)</span>[\s\S]*?<span\s+class="timer"[^>]*>(\d+:\d+:\d+)</span>',
                "type": "list",
                "fields": ["building_name", "level", "remaining_time"],
            },
            "troops": {
                "selector": r'unit (u\w+)[^>]*alt="([^"]+)"[\s\S]*?<td class="num">(\d+)</td>'
                r'[\s\S]*?<td class="un">([^<]+)</td>',
                "type": "list",
                "fields": ["unit_class", "unit_name", "count", "display_name"],
            },
        },
    },
    "dorf2": {
        "url": "/dorf2.php",
        "description": "Village center buildings",
        "fields": {
            "buildings": {
                "selector": r'buildingSlot\s+a(\d+)\s+g(\d+)[^"]*"[^>]*data-aid="(\d+)"\s+'
                r'data-gid="(\d+)"[^>]*data-name="([^"]*)"[^>]*>[^<]*<a[^>]*data-level="(\d+)"',
                "type": "list",
                "fields": ["slot_id", "gid_class", "aid", "gid", "name", "level"],
            },
            "building_levels": {
                "selector": r'data-level="(\d+)"[^>]*><div class="labelLayer">(\d+)</div>',
                "type": "list",
                "fields": ["level", "label"],
            },
        },
    },
    "barracks": {
        "url": "/build.php",
        "description": "Barracks - infantry training",
        "fields": _TRAINING_FIELDS,
    },
    "stable": {
        "url": "/build.php",
        "description": "Stable - cavalry training",
        "fields": _TRAINING_FIELDS,
    },
    "workshop": {
        "url": "/build.php",
        "description": "Workshop - siege training",
        "fields": _TRAINING_FIELDS,
    },
}


class SelectorTable:
    """Page name to ``PageSpec`` lookup, optionally overridden from TOML."""

    def __init__(self, pages: dict[str, PageSpec]) -> None:
        self.pages = pages

    def __contains__(self, page: str) -> bool:
        return page in self.pages

    def page(self, name: str) -> PageSpec:
        try:
            return self.pages[name]
        except KeyError:
            raise ConfigError(f"no selector table entry for page '{name}'") from None

    @classmethod
    def from_dict(cls, raw: dict[str, dict[str, Any]]) -> SelectorTable:
        try:
            return cls({name: PageSpec.model_validate(spec) for name, spec in raw.items()})
        except ValidationError as e:
            raise ConfigError(f"invalid selector table: {e}") from e


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_selector_table(path: Path | None = None) -> SelectorTable:
    """Default table, with ``[pages.*]`` from ``path`` merged on top."""
    raw: dict[str, Any] = DEFAULT_PAGES
    if path is not None and path.exists():
        with open(path, "rb") as f:
            data = tomllib.load(f)
        raw = _merge(DEFAULT_PAGES, data.get("pages", {}))
        log.info("selector_overrides_loaded", path=str(path), pages=len(data.get("pages", {})))
    return SelectorTable.from_dict(raw)
