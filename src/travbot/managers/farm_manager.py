"""Farm list manager: periodic dispatch of server-side farm lists."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

from travbot.core.config import FarmingConfig
from travbot.core.events import EventBus
from travbot.core.logging import get_logger
from travbot.managers.scheduler import IntervalScheduler
from travbot.models import FarmListInfo, FarmListRule

log = get_logger("manager.farm")


class FarmRuleCodec:
    def decode(self, data: dict[str, Any]) -> tuple[dict[int, FarmListRule], bool]:
        rules = {
            int(list_id): FarmListRule.model_validate({**raw, "listId": int(list_id)})
            for list_id, raw in (data.get("lists") or {}).items()
        }
        return rules, False

    def encode(self, rules: dict[int, FarmListRule]) -> dict[str, Any]:
        return {
            "lists": {
                str(list_id): rule.model_dump(by_alias=True, mode="json")
                for list_id, rule in rules.items()
            }
        }


class FarmListManager:
    def __init__(
        self,
        config: FarmingConfig,
        path: Path | None,
        bus: EventBus,
        dispatch: Callable[[int, int], None],
    ) -> None:
        self.config = config
        self.bus = bus
        self.dispatch = dispatch
        self.scheduler: IntervalScheduler[int, FarmListRule] = IntervalScheduler(
            "farm",
            FarmRuleCodec(),
            self._fire,
            self._interval,
            path=path,
            bus=bus,
        )

    def load(self) -> None:
        self.scheduler.load()
        for list_id in self.scheduler:
            rule = self.scheduler.get(list_id)
            if rule is not None and rule.enabled:
                self.scheduler.start(list_id)

    def rules(self) -> list[FarmListRule]:
        return list(self.scheduler.rules.values())

    def add_list(
        self,
        list_id: int,
        village_id: int,
        name: str = "",
        interval_minutes: int | None = None,
        enabled: bool = False,
    ) -> FarmListRule:
        rule = FarmListRule(
            list_id=list_id,
            village_id=village_id,
            list_name=name,
            interval_minutes=interval_minutes or self.config.default_interval_minutes,
            enabled=enabled,
        )
        self.scheduler.set_rule(list_id, rule)
        log.info("farm_list_added", list_id=list_id, village=village_id, enabled=enabled)
        if enabled:
            self.scheduler.start(list_id)
        return rule

    def sync_discovered(self, lists: list[FarmListInfo], village_id: int) -> int:
        """Register newly discovered lists as disabled rules. Returns how many were added."""
        added = 0
        for info in lists:
            if info.list_id in self.scheduler:
                continue
            self.add_list(info.list_id, info.owner_village_id or village_id, info.name)
            added += 1
        return added

    def remove_list(self, list_id: int) -> None:
        if self.scheduler.remove_rule(list_id) is not None:
            log.info("farm_list_removed", list_id=list_id)

    def set_enabled(self, list_id: int, enabled: bool) -> None:
        rule = self.scheduler.get(list_id)
        if rule is None:
            return
        rule.enabled = enabled
        self.scheduler.set_rule(list_id, rule)
        if enabled:
            self.scheduler.start(list_id)
        else:
            self.scheduler.stop(list_id)
        log.info("farm_list_toggled", list_id=list_id, enabled=enabled)

    def set_interval(self, list_id: int, interval_minutes: int) -> None:
        rule = self.scheduler.get(list_id)
        if rule is None:
            return
        rule.interval_minutes = max(1, interval_minutes)
        self.scheduler.set_rule(list_id, rule)
        if rule.enabled:
            self.scheduler.start(list_id)

    def execute_now(self, list_id: int) -> bool:
        """Dispatch immediately without touching the countdown."""
        rule = self.scheduler.get(list_id)
        if rule is None:
            return False
        log.info("farm_list_manual_dispatch", list_id=list_id)
        self.dispatch(rule.village_id, rule.list_id)
        return True

    def _interval(self, list_id: int, rule: FarmListRule) -> float | None:
        if not rule.enabled:
            return None
        return rule.interval_minutes * 60

    def _fire(self, list_id: int, rule: FarmListRule) -> None:
        if rule.enabled:
            self.dispatch(rule.village_id, rule.list_id)
