"""Turning extracted page maps into village models."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from travbot.core.extractors import decode_js_string, parse_duration, to_int
from travbot.core.json_scanner import extract_json_array
from travbot.core.logging import get_logger
from travbot.models import (
    AttackSummary,
    BuildingRecord,
    ConstructionItem,
    Resources,
    VillageInfo,
    VillageSnapshot,
)

log = get_logger("snapshot")

VILLAGE_PAIR_PATTERN = re.compile(r'"id"\s*:\s*(\d+)\s*,\s*"name"\s*:\s*"((?:[^"\\]|\\.)*)"')

_ATTACK_KEYS = ("incomingAttacks", "incomingAttacksSymbols", "attacks")


def _attack_summary(entry: dict[str, Any]) -> AttackSummary | None:
    for key in _ATTACK_KEYS:
        value = entry.get(key)
        if isinstance(value, dict):
            lowered = {str(k).lower(): v for k, v in value.items()}
            return AttackSummary(
                red=to_int(lowered.get("red"), 0),
                yellow=to_int(lowered.get("yellow"), 0),
                green=to_int(lowered.get("green"), 0),
            )
    amount = to_int(entry.get("incomingAttacksAmount"))
    if amount:
        return AttackSummary(red=amount)
    return None


def parse_village_list(html: str) -> list[VillageInfo]:
    """Villages from the embedded ``villageList`` JSON, or id/name pairs as a fallback."""
    villages: list[VillageInfo] = []
    seen: set[int] = set()

    entries = extract_json_array(html, "villageList")
    for entry in entries or []:
        if not isinstance(entry, dict):
            continue
        village_id = to_int(entry.get("id", entry.get("villageId")))
        if not village_id or village_id in seen:
            continue
        seen.add(village_id)
        villages.append(
            VillageInfo(
                village_id=village_id,
                name=str(entry.get("name", "")),
                attacks=_attack_summary(entry),
            )
        )
    if villages:
        return villages

    for match in VILLAGE_PAIR_PATTERN.finditer(html):
        village_id = int(match.group(1))
        if village_id in seen:
            continue
        seen.add(village_id)
        villages.append(VillageInfo(village_id=village_id, name=decode_js_string(match.group(2))))
    if villages:
        log.debug("village_list_fallback_used", villages=len(villages))
    return villages


def _buildings(dorf1: dict[str, Any], dorf2: dict[str, Any]) -> dict[int, BuildingRecord]:
    records: dict[int, BuildingRecord] = {}
    for field in dorf1.get("resource_fields") or []:
        slot = to_int(field.get("slot_id"))
        if slot is None:
            continue
        records[slot] = BuildingRecord(
            slot_id=slot,
            gid=to_int(field.get("gid"), 0),
            name=field.get("name", "").strip(),
            level=to_int(field.get("level"), 0),
        )
    for building in dorf2.get("buildings") or []:
        slot = to_int(building.get("slot_id"))
        if slot is None:
            continue
        records[slot] = BuildingRecord(
            slot_id=slot,
            gid=to_int(building.get("gid"), 0),
            name=building.get("name", ""),
            level=to_int(building.get("level"), 0),
        )
    return records


def _mark_in_progress(
    records: dict[int, BuildingRecord], queue: list[ConstructionItem]
) -> None:
    for item in queue:
        for slot, record in records.items():
            if record.in_progress or record.name != item.building_name:
                continue
            if item.level and record.level != item.level - 1:
                continue
            records[slot] = record.model_copy(
                update={"in_progress": True, "remaining_seconds": item.remaining_seconds}
            )
            break


def build_snapshot(
    village_id: int,
    name: str,
    pages: dict[str, dict[str, Any]],
    attacks: AttackSummary | None = None,
) -> VillageSnapshot:
    """Assemble a ``VillageSnapshot`` from the raw page maps of one village."""
    dorf1 = pages.get("dorf1", {})
    dorf2 = pages.get("dorf2", {})

    queue = [
        ConstructionItem(
            building_name=item.get("building_name", ""),
            level=to_int(item.get("level"), 0),
            remaining_seconds=parse_duration(item.get("remaining_time")),
        )
        for item in dorf1.get("construction_queue") or []
    ]
    records = _buildings(dorf1, dorf2)
    _mark_in_progress(records, queue)

    troops: dict[str, int] = {}
    for troop in dorf1.get("troops") or []:
        unit = troop.get("unit_class")
        if unit:
            troops[unit] = to_int(troop.get("count"), 0)

    return VillageSnapshot(
        village_id=village_id,
        name=dorf1.get("village_name") or name,
        tribe=to_int(dorf1.get("tribe")),
        resources=Resources(
            lumber=to_int(dorf1.get("lumber"), 0),
            clay=to_int(dorf1.get("clay"), 0),
            iron=to_int(dorf1.get("iron"), 0),
            crop=to_int(dorf1.get("crop"), 0),
        ),
        warehouse_capacity=to_int(dorf1.get("warehouse_capacity"), 0),
        granary_capacity=to_int(dorf1.get("granary_capacity"), 0),
        production=Resources(
            lumber=to_int(dorf1.get("production_lumber"), 0),
            clay=to_int(dorf1.get("production_clay"), 0),
            iron=to_int(dorf1.get("production_iron"), 0),
            crop=to_int(dorf1.get("production_crop"), 0),
        ),
        buildings=[records[slot] for slot in sorted(records)],
        construction_queue=queue,
        troops=troops,
        attacks=attacks,
        pages=pages,
        fetched_at=datetime.now(timezone.utc),
    )
