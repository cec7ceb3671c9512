"""Incoming troop movements."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Confidence(StrEnum):
    # derived from the village-list colour counts, no arrival times
    LOW = "low"
    # parsed from the rally point incoming movements table
    HIGH = "high"


class IncomingAttack(BaseModel):
    model_config = ConfigDict(frozen=True)

    village_id: int
    kind: str = "attack"  # attack | raid | reinforcement | unknown
    origin: str = ""
    arrival_seconds: int | None = None


class AttackReport(BaseModel):
    village_id: int
    confidence: Confidence
    attacks: list[IncomingAttack] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        if self.attacks:
            return len(self.attacks)
        return sum(self.counts.values())
