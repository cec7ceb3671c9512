"""Village state, resources, and snapshot models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from travbot.models.buildings import GID_RALLY_POINT, BuildingRecord, ConstructionItem


class Resources(BaseModel):
    model_config = ConfigDict(frozen=True)

    lumber: int = 0
    clay: int = 0
    iron: int = 0
    crop: int = 0

    @property
    def total(self) -> int:
        return self.lumber + self.clay + self.iron + self.crop

    def all_at_least(self, floor: int) -> bool:
        return min(self.lumber, self.clay, self.iron, self.crop) >= floor


class AttackSummary(BaseModel):
    """Incoming attack counts by symbol colour, as shown in the village list."""

    model_config = ConfigDict(frozen=True)

    red: int = 0
    yellow: int = 0
    green: int = 0

    @property
    def total(self) -> int:
        return self.red + self.yellow + self.green


class VillageInfo(BaseModel):
    """Village identity as listed in the account's village list."""

    model_config = ConfigDict(frozen=True)

    village_id: int
    name: str = ""
    attacks: AttackSummary | None = None


class VillageSnapshot(BaseModel):
    """Everything learnt about one village during a fetch cycle."""

    model_config = ConfigDict(frozen=True)

    village_id: int
    name: str = ""
    tribe: int | None = None
    resources: Resources = Field(default_factory=Resources)
    warehouse_capacity: int = 0
    granary_capacity: int = 0
    production: Resources = Field(default_factory=Resources)  # per hour
    buildings: list[BuildingRecord] = Field(default_factory=list)
    construction_queue: list[ConstructionItem] = Field(default_factory=list)
    troops: dict[str, int] = Field(default_factory=dict)
    attacks: AttackSummary | None = None
    pages: dict[str, dict[str, Any]] = Field(default_factory=dict)
    fetched_at: datetime | None = None

    @property
    def builder_busy(self) -> bool:
        return bool(self.construction_queue)

    def building(self, slot_id: int) -> BuildingRecord | None:
        for record in self.buildings:
            if record.slot_id == slot_id:
                return record
        return None

    def level_of(self, slot_id: int) -> int | None:
        record = self.building(slot_id)
        return record.level if record else None

    def slot_for_gid(self, gid: int) -> int | None:
        for record in self.buildings:
            if record.gid == gid:
                return record.slot_id
        return None

    @property
    def rally_point_slot(self) -> int | None:
        return self.slot_for_gid(GID_RALLY_POINT)
