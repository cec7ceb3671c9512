"""Pydantic data models for game state."""

from travbot.models.attacks import AttackReport, Confidence, IncomingAttack
from travbot.models.buildings import BuildingRecord, BuildTask, ConstructionItem
from travbot.models.farm import FarmListInfo, FarmListRule
from travbot.models.troops import MilitaryBuilding, TrainableTroop, TroopTrainingRule
from travbot.models.village import AttackSummary, Resources, VillageInfo, VillageSnapshot

__all__ = [
    "AttackReport",
    "AttackSummary",
    "BuildingRecord",
    "BuildTask",
    "Confidence",
    "ConstructionItem",
    "FarmListInfo",
    "FarmListRule",
    "IncomingAttack",
    "MilitaryBuilding",
    "Resources",
    "TrainableTroop",
    "TroopTrainingRule",
    "VillageInfo",
    "VillageSnapshot",
]
