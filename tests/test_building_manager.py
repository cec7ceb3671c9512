from __future__ import annotations

import json

from travbot.core.config import BuildingConfig
from travbot.core.events import (
    BuilderBusy,
    BuildTaskCompleted,
    BuildTaskStarted,
    EventBus,
    EventRecorder,
    InsufficientResources,
)
from travbot.managers.building_manager import BuildingManager
from travbot.models import BuildingRecord, BuildTask, ConstructionItem, Resources, VillageSnapshot

RICH = Resources(lumber=500, clay=500, iron=500, crop=500)


def _snapshot(village_id=1, levels=None, resources=RICH, queue=()) -> VillageSnapshot:
    levels = levels or {}
    return VillageSnapshot(
        village_id=village_id,
        resources=resources,
        buildings=[BuildingRecord(slot_id=slot, level=level) for slot, level in levels.items()],
        construction_queue=[
            ConstructionItem(building_name="Main Building", level=2, remaining_seconds=remaining)
            for remaining in queue
        ],
    )


def _task(village_id=1, slot=26, target=3, current=0, priority=0) -> BuildTask:
    return BuildTask(
        village_id=village_id,
        slot_id=slot,
        target_level=target,
        current_level=current,
        priority=priority,
    )


class TestBuildingManager:
    def setup_method(self):
        self.bus = EventBus()
        self.recorder = EventRecorder(self.bus)
        self.upgrades: list[tuple[int, int]] = []
        self.refreshes = 0

    def _manager(self, path=None) -> BuildingManager:
        def refresh():
            self.refreshes += 1

        return BuildingManager(
            BuildingConfig(),
            path,
            self.bus,
            upgrade=lambda village, slot: self.upgrades.append((village, slot)),
            request_refresh=refresh,
        )

    def test_priority_assigned_in_order(self):
        manager = self._manager()
        manager.add_task(_task(slot=26))
        manager.add_task(_task(slot=27))
        manager.add_task(_task(slot=1, priority=0))

        assert [t.priority for t in manager.queue(1)] == [1, 2, 3]
        assert [t.slot_id for t in manager.queue(1)] == [26, 27, 1]

    def test_starts_first_pending_task_only(self):
        manager = self._manager()
        manager.add_task(_task(slot=26))
        manager.add_task(_task(slot=27))
        manager.add_task(_task(village_id=2, slot=5))

        manager.process_snapshot(
            {1: _snapshot(1, {26: 1, 27: 0}), 2: _snapshot(2, {5: 0})}
        )

        assert self.upgrades == [(1, 26), (2, 5)]
        assert len(self.recorder.of(BuildTaskStarted)) == 2
        assert manager.queue(1)[0].current_level == 1

    def test_completed_tasks_are_removed(self):
        manager = self._manager()
        manager.add_task(_task(slot=26, target=3))
        manager.add_task(_task(slot=27, target=2))

        manager.process_snapshot({1: _snapshot(1, {26: 3, 27: 1})})

        [completed] = self.recorder.of(BuildTaskCompleted)
        assert (completed.task.slot_id, completed.level) == (26, 3)
        assert [t.slot_id for t in manager.queue(1)] == [27]
        assert self.upgrades == [(1, 27)]

    def test_queue_row_dropped_when_all_done(self):
        manager = self._manager()
        manager.add_task(_task(slot=26, target=3))

        manager.process_snapshot({1: _snapshot(1, {26: 4})})

        assert 1 not in manager.scheduler
        assert self.upgrades == []

    def test_busy_builder_waits_for_current_upgrade(self):
        manager = self._manager()
        manager.add_task(_task(slot=26))

        manager.process_snapshot({1: _snapshot(1, {26: 1}, queue=[120])})

        assert self.upgrades == []
        assert self.recorder.of(BuilderBusy)[0].remaining_seconds == 120
        assert manager.scheduler.remaining(1) == 125

    def test_insufficient_resources_rechecks_later(self):
        manager = self._manager()
        manager.add_task(_task(slot=26))

        poor = Resources(lumber=500, clay=50, iron=500, crop=500)
        manager.process_snapshot({1: _snapshot(1, {26: 1}, resources=poor)})

        assert self.upgrades == []
        assert self.recorder.of(InsufficientResources)[0].task.slot_id == 26
        assert manager.scheduler.remaining(1) == 300

    def test_recheck_requests_refresh_once(self):
        manager = self._manager()
        manager.add_task(_task(slot=26))
        manager.scheduler.start(1, 1)

        manager.scheduler.tick()
        manager.scheduler.tick()

        assert self.refreshes == 1
        assert not manager.scheduler.is_running(1)

    def test_villages_without_snapshot_are_skipped(self):
        manager = self._manager()
        manager.add_task(_task(village_id=3, slot=26))
        manager.process_snapshot({1: _snapshot(1)})
        assert self.upgrades == []

    def test_remove_last_task_drops_village(self):
        manager = self._manager()
        manager.add_task(_task(slot=26))

        assert manager.remove_task(1, 5) is None
        assert manager.remove_task(1, 0).slot_id == 26
        assert manager.queue(1) == []
        assert 1 not in manager.scheduler

    def test_persisted_in_camel_case(self, tmp_path):
        path = tmp_path / "build_queue.json"
        manager = self._manager(path)
        manager.add_task(_task(slot=26, target=5))

        data = json.loads(path.read_text(encoding="utf-8"))
        [task] = data["queues"]["1"]
        assert task["slotId"] == 26
        assert task["targetLevel"] == 5

        reloaded = self._manager(path)
        reloaded.load()
        assert reloaded.queue(1)[0].target_level == 5

    def test_flat_legacy_queue_migrated(self, tmp_path):
        path = tmp_path / "build_queue.json"
        path.write_text(
            json.dumps(
                {
                    "queue": [
                        {"villageId": 2, "slotId": 3, "targetLevel": 4, "priority": 2},
                        {"villageId": 1, "slotId": 26, "targetLevel": 10, "priority": 1},
                        {"villageId": 2, "slotId": 1, "targetLevel": 4, "priority": 1},
                    ]
                }
            ),
            encoding="utf-8",
        )

        manager = self._manager(path)
        manager.load()

        assert [t.slot_id for t in manager.queue(2)] == [1, 3]
        assert [t.slot_id for t in manager.queue(1)] == [26]
        assert set(json.loads(path.read_text(encoding="utf-8"))["queues"]) == {"1", "2"}
