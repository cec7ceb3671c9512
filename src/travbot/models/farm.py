"""Farm lists discovered on the rally point and their dispatch rules."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class FarmListInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    list_id: int
    name: str = ""
    slots_amount: int = 0
    owner_village_id: int | None = None


class FarmListRule(BaseModel):
    """Dispatch schedule for one server-side farm list."""

    model_config = ConfigDict(populate_by_name=True)

    list_id: int = Field(alias="listId")
    village_id: int = Field(alias="villageId")
    list_name: str = Field(default="", alias="listName")
    interval_minutes: int = Field(default=30, alias="intervalMinutes")
    enabled: bool = False
