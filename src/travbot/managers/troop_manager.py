"""Troop training manager: one repeating rule per (village, military building)."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

from travbot.core.config import TroopsConfig
from travbot.core.events import EventBus, TrainingResult
from travbot.core.humanizer import Humanizer
from travbot.core.logging import get_logger
from travbot.managers.scheduler import IntervalScheduler
from travbot.models import MilitaryBuilding, TroopTrainingRule, VillageSnapshot

log = get_logger("manager.troops")

RuleKey = tuple[int, MilitaryBuilding]


class TroopRuleCodec:
    """``{"villages": {"<villageId>": {"<building>": rule}}}``.

    Older files stored a single rule per village directly under the village
    id; those are moved under the rule's own building on load.
    """

    def decode(self, data: dict[str, Any]) -> tuple[dict[RuleKey, TroopTrainingRule], bool]:
        rules: dict[RuleKey, TroopTrainingRule] = {}
        migrated = False
        for village_id, entry in (data.get("villages") or {}).items():
            if "troopId" in entry:
                entry = {entry.get("building", MilitaryBuilding.BARRACKS): entry}
                migrated = True
            for building, raw in entry.items():
                rule = TroopTrainingRule.model_validate(
                    {**raw, "villageId": int(village_id), "building": building}
                )
                rules[rule.key] = rule
        return rules, migrated

    def encode(self, rules: dict[RuleKey, TroopTrainingRule]) -> dict[str, Any]:
        villages: dict[str, dict[str, Any]] = {}
        for (village_id, building), rule in rules.items():
            villages.setdefault(str(village_id), {})[str(building)] = rule.model_dump(
                by_alias=True, exclude={"village_id", "building"}, mode="json"
            )
        return {"villages": villages}


class TroopTrainingManager:
    """Fires TrainTroops for every enabled rule on a jittered interval."""

    def __init__(
        self,
        config: TroopsConfig,
        path: Path | None,
        bus: EventBus,
        train: Callable[[TroopTrainingRule, int], None],
        humanizer: Humanizer,
    ) -> None:
        self.config = config
        self.bus = bus
        self.train = train
        self.humanizer = humanizer
        self.snapshots: dict[int, VillageSnapshot] = {}
        self.scheduler: IntervalScheduler[RuleKey, TroopTrainingRule] = IntervalScheduler(
            "troops",
            TroopRuleCodec(),
            self._fire,
            self._interval,
            path=path,
            bus=bus,
        )

    def load(self) -> None:
        self.scheduler.load()
        for key in self.scheduler:
            rule = self.scheduler.get(key)
            if rule is not None and rule.enabled:
                self.scheduler.start(key)

    def update_snapshots(self, snapshots: dict[int, VillageSnapshot]) -> None:
        self.snapshots = dict(snapshots)

    # ------------------------------------------------------------------
    # Rule editing
    # ------------------------------------------------------------------

    def set_rule(self, rule: TroopTrainingRule) -> None:
        """Add or replace the rule for its (village, building)."""
        self.scheduler.set_rule(rule.key, rule)
        log.info(
            "troop_rule_set",
            village=rule.village_id,
            building=str(rule.building),
            troop=rule.troop_id,
            interval=rule.interval_minutes,
        )
        if rule.enabled:
            self.scheduler.start(rule.key)
        else:
            self.scheduler.stop(rule.key)

    def remove_rule(self, village_id: int, building: MilitaryBuilding) -> None:
        if self.scheduler.remove_rule((village_id, building)) is not None:
            log.info("troop_rule_removed", village=village_id, building=str(building))

    def set_enabled(self, village_id: int, building: MilitaryBuilding, enabled: bool) -> None:
        key = (village_id, building)
        rule = self.scheduler.get(key)
        if rule is None:
            return
        rule.enabled = enabled
        self.scheduler.set_rule(key, rule)
        if enabled:
            self.scheduler.start(key)
        else:
            self.scheduler.stop(key)

    def rules_for(self, village_id: int) -> list[TroopTrainingRule]:
        return [
            rule
            for (vid, _), rule in self.scheduler.rules.items()
            if vid == village_id
        ]

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _interval(self, key: RuleKey, rule: TroopTrainingRule) -> float | None:
        if not rule.enabled:
            return None
        return self.humanizer.jittered_interval(
            rule.interval_minutes,
            jitter=self.config.jitter,
            floor=self.config.min_interval_seconds,
        )

    def _fire(self, key: RuleKey, rule: TroopTrainingRule) -> None:
        if not rule.enabled:
            return
        snapshot = self.snapshots.get(rule.village_id)
        slot = snapshot.slot_for_gid(rule.building.gid) if snapshot else None
        if slot is None:
            log.warning("training_building_missing", village=rule.village_id, building=str(rule.building))
            self.bus.emit(
                TrainingResult(
                    village_id=rule.village_id,
                    building=str(rule.building),
                    troop_id=rule.troop_id,
                    success=False,
                    message="building not found",
                )
            )
            return
        self.train(rule, slot)
