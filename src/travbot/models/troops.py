"""Military buildings, trainable units and troop-training rules."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from travbot.models.buildings import GID_BARRACKS, GID_STABLE, GID_WORKSHOP


class MilitaryBuilding(StrEnum):
    BARRACKS = "barracks"
    STABLE = "stable"
    WORKSHOP = "workshop"

    @property
    def gid(self) -> int:
        return MILITARY_GIDS[self]

    @classmethod
    def from_gid(cls, gid: int) -> MilitaryBuilding | None:
        for building, building_gid in MILITARY_GIDS.items():
            if building_gid == gid:
                return building
        return None


MILITARY_GIDS: dict[MilitaryBuilding, int] = {
    MilitaryBuilding.BARRACKS: GID_BARRACKS,
    MilitaryBuilding.STABLE: GID_STABLE,
    MilitaryBuilding.WORKSHOP: GID_WORKSHOP,
}


class TrainableTroop(BaseModel):
    model_config = ConfigDict(frozen=True)

    troop_id: str  # form input name, e.g. "t1"
    name: str = ""
    locked: bool = False


class TroopTrainingRule(BaseModel):
    """At most one rule per (village, building)."""

    model_config = ConfigDict(populate_by_name=True)

    village_id: int = Field(alias="villageId")
    building: MilitaryBuilding
    troop_id: str = Field(alias="troopId")
    troop_name: str = Field(default="", alias="troopName")
    interval_minutes: int = Field(default=5, alias="intervalMinutes")
    enabled: bool = True

    @property
    def key(self) -> tuple[int, MilitaryBuilding]:
        return (self.village_id, self.building)
