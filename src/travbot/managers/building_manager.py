"""Construction manager: per-village ordered upgrade queues.

Each village holds a list of ``BuildTask`` entries sorted by priority. Every
fresh snapshot is evaluated once per village:

* builder busy -> skip and re-check when the current upgrade finishes
* task reached its target level -> drop it
* resources below the floor -> wait and re-check later
* otherwise start the first pending task (one per village per evaluation)

The per-village countdown is a one-shot re-check that asks for a new
snapshot; the next evaluation happens when that snapshot arrives.
"""

from __future__ import annotations

from collections import defaultdict
from pathlib import Path
from typing import Any, Callable

from travbot.core.config import BuildingConfig
from travbot.core.events import (
    BuilderBusy,
    BuildTaskCompleted,
    BuildTaskStarted,
    EventBus,
    InsufficientResources,
)
from travbot.core.logging import get_logger
from travbot.managers.scheduler import IntervalScheduler
from travbot.models import BuildTask, VillageSnapshot

log = get_logger("manager.building")


class BuildQueueCodec:
    """``{"queues": {"<villageId>": [task, ...]}}``, camelCase tasks."""

    def decode(self, data: dict[str, Any]) -> tuple[dict[int, list[BuildTask]], bool]:
        migrated = False
        queues: dict[int, list[BuildTask]] = defaultdict(list)

        if "queues" in data:
            for village_id, tasks in data["queues"].items():
                queues[int(village_id)] = [
                    BuildTask.model_validate({"villageId": int(village_id), **task})
                    for task in tasks
                ]
        elif "queue" in data:
            # flat list of tasks from older versions
            for task in data["queue"]:
                parsed = BuildTask.model_validate(task)
                queues[parsed.village_id].append(parsed)
            migrated = True

        result = {
            village_id: sorted(tasks, key=lambda t: t.priority)
            for village_id, tasks in queues.items()
            if tasks
        }
        return result, migrated

    def encode(self, rules: dict[int, list[BuildTask]]) -> dict[str, Any]:
        return {
            "queues": {
                str(village_id): [task.model_dump(by_alias=True) for task in tasks]
                for village_id, tasks in rules.items()
                if tasks
            }
        }


class BuildingManager:
    """Keeps build queues and starts at most one upgrade per village per snapshot."""

    def __init__(
        self,
        config: BuildingConfig,
        path: Path | None,
        bus: EventBus,
        upgrade: Callable[[int, int], None],
        request_refresh: Callable[[], None],
    ) -> None:
        self.config = config
        self.bus = bus
        self.upgrade = upgrade
        self.request_refresh = request_refresh
        self.scheduler: IntervalScheduler[int, list[BuildTask]] = IntervalScheduler(
            "construction",
            BuildQueueCodec(),
            self._recheck,
            lambda village_id, tasks: None,
            path=path,
            bus=bus,
        )

    def load(self) -> None:
        self.scheduler.load()

    # ------------------------------------------------------------------
    # Queue editing
    # ------------------------------------------------------------------

    def queue(self, village_id: int) -> list[BuildTask]:
        return list(self.scheduler.get(village_id) or [])

    def add_task(self, task: BuildTask) -> None:
        tasks = self.queue(task.village_id)
        if not task.priority:
            task.priority = max((t.priority for t in tasks), default=0) + 1
        tasks.append(task)
        tasks.sort(key=lambda t: t.priority)
        self.scheduler.set_rule(task.village_id, tasks)
        log.info(
            "build_task_added",
            village=task.village_id,
            slot=task.slot_id,
            target=task.target_level,
        )

    def remove_task(self, village_id: int, index: int) -> BuildTask | None:
        tasks = self.queue(village_id)
        if not 0 <= index < len(tasks):
            return None
        removed = tasks.pop(index)
        self._store(village_id, tasks)
        log.info("build_task_removed", village=village_id, slot=removed.slot_id)
        return removed

    def clear(self, village_id: int) -> None:
        self.scheduler.remove_rule(village_id)

    def _store(self, village_id: int, tasks: list[BuildTask]) -> None:
        if tasks:
            self.scheduler.set_rule(village_id, tasks)
        else:
            self.scheduler.remove_rule(village_id)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def process_snapshot(self, snapshots: dict[int, VillageSnapshot]) -> None:
        for village_id in self.scheduler:
            snapshot = snapshots.get(village_id)
            if snapshot is None:
                continue
            self._evaluate(snapshot)

    def _evaluate(self, snapshot: VillageSnapshot) -> None:
        village_id = snapshot.village_id

        if snapshot.builder_busy:
            remaining = snapshot.construction_queue[0].remaining_seconds
            log.debug("builder_busy", village=village_id, remaining=remaining)
            self.bus.emit(BuilderBusy(village_id=village_id, remaining_seconds=remaining))
            self.scheduler.start(village_id, remaining + self.config.busy_margin)
            return

        tasks = self.queue(village_id)
        pending: list[BuildTask] = []
        changed = False
        for task in tasks:
            level = snapshot.level_of(task.slot_id)
            if level is not None and level >= task.target_level:
                log.info("build_task_completed", village=village_id, slot=task.slot_id, level=level)
                self.bus.emit(BuildTaskCompleted(task=task, level=level))
                changed = True
                continue
            if level is not None and level != task.current_level:
                task.current_level = level
                changed = True
            pending.append(task)

        if changed:
            self._store(village_id, pending)
        if not pending:
            return

        task = pending[0]
        if not snapshot.resources.all_at_least(self.config.resource_floor):
            log.info("insufficient_resources", village=village_id, slot=task.slot_id)
            self.bus.emit(InsufficientResources(village_id=village_id, task=task))
            self.scheduler.start(village_id, self.config.insufficient_recheck)
            return

        log.info(
            "build_task_starting",
            village=village_id,
            slot=task.slot_id,
            building=task.building_name,
            level=task.current_level + 1,
        )
        self.upgrade(village_id, task.slot_id)
        self.bus.emit(BuildTaskStarted(task=task))

    def _recheck(self, village_id: int, tasks: list[BuildTask]) -> None:
        log.debug("build_recheck", village=village_id, tasks=len(tasks))
        self.request_refresh()
