"""Building records, construction queue entries and build tasks."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

# Game type ids (gid) the engine cares about
GID_RALLY_POINT = 16
GID_BARRACKS = 19
GID_STABLE = 20
GID_WORKSHOP = 21

DEFAULT_RALLY_POINT_SLOT = 39


class BuildingRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    slot_id: int
    gid: int = 0
    name: str = ""
    level: int = 0
    in_progress: bool = False
    remaining_seconds: int = 0


class ConstructionItem(BaseModel):
    """An upgrade currently being executed by the builder."""

    model_config = ConfigDict(frozen=True)

    building_name: str
    level: int = 0
    remaining_seconds: int = 0


class BuildTask(BaseModel):
    """Queued upgrade for one slot, persisted in camelCase."""

    model_config = ConfigDict(populate_by_name=True)

    village_id: int = Field(alias="villageId")
    slot_id: int = Field(alias="slotId")
    current_level: int = Field(default=0, alias="currentLevel")
    target_level: int = Field(alias="targetLevel")
    building_name: str = Field(default="", alias="buildingName")
    priority: int = 0
