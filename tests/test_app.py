from __future__ import annotations

import asyncio

import httpx

from travbot.app import Application
from travbot.core.config import AppConfig, PipelineConfig, RefreshConfig, ServerConfig
from travbot.core.events import FetchCycleCompleted
from travbot.game.operations import ActionOutcome
from travbot.models import (
    BuildingRecord,
    ConstructionItem,
    MilitaryBuilding,
    Resources,
    VillageSnapshot,
)

from helpers import BASE_URL, FAST, LOGIN_PAGE, Router, farm_tab_page, html, json_response


def _config(**refresh) -> AppConfig:
    return AppConfig(
        server=ServerConfig(base_url=BASE_URL),
        pipeline=FAST,
        refresh=RefreshConfig(**refresh),
    )


def _run(tmp_path, scenario, router: Router | None = None, config: AppConfig | None = None):
    router = router or Router()
    app = Application(root=tmp_path, transport=router.transport())

    async def go():
        app.build(config or _config())
        app.pipeline.start()
        try:
            return await scenario(app)
        finally:
            await app._shutdown()

    return asyncio.run(go()), app


def _busy(village_id: int, remaining: int) -> VillageSnapshot:
    return VillageSnapshot(
        village_id=village_id,
        construction_queue=[ConstructionItem(building_name="Main Building", remaining_seconds=remaining)],
    )


class TestRefreshDelay:
    def test_disabled(self, tmp_path):
        async def scenario(app):
            return app.refresh_delay()

        delay, _ = _run(tmp_path, scenario, config=_config(enabled=False))
        assert delay is None

    def test_short_mode(self, tmp_path):
        async def scenario(app):
            return [app.refresh_delay() for _ in range(50)]

        delays, _ = _run(tmp_path, scenario, config=_config(mode="short"))
        assert all(60 <= d <= 180 for d in delays)

    def test_smart_follows_soonest_construction(self, tmp_path):
        async def scenario(app):
            app.snapshots = {1: _busy(1, 400), 2: _busy(2, 100), 3: VillageSnapshot(village_id=3)}
            return app.refresh_delay()

        delay, _ = _run(tmp_path, scenario)
        assert delay == 110

    def test_smart_capped_by_long_range(self, tmp_path):
        async def scenario(app):
            app.snapshots = {1: _busy(1, 5000)}
            return app.refresh_delay()

        delay, _ = _run(tmp_path, scenario)
        assert 600 <= delay <= 1200


class TestOrchestration:
    def test_cycle_completion_feeds_managers(self, tmp_path):
        upgrades: list[tuple[int, int]] = []

        async def fake_upgrade(village_id, slot_id):
            upgrades.append((village_id, slot_id))
            return ActionOutcome.ok()

        async def scenario(app):
            app.upgrade_building = fake_upgrade
            app.request_refresh = lambda: None
            app.farm_discovery_delay = 0.0
            app.building.load()
            app.snapshots = {}
            app.add_build_task(1, 26, target_level=3)
            snapshot = VillageSnapshot(
                village_id=1,
                resources=Resources(lumber=500, clay=500, iron=500, crop=500),
                buildings=[
                    BuildingRecord(slot_id=26, gid=15, name="Main Building", level=1),
                    BuildingRecord(slot_id=33, gid=16, name="Rally Point", level=1),
                ],
            )
            app.bus.emit(FetchCycleCompleted(snapshots={1: snapshot}))
            await asyncio.gather(*app._tasks)
            return app

        app, _ = _run(tmp_path, scenario, config=_config(enabled=False))
        assert upgrades == [(1, 26)]
        assert app.rally_point.rally_slots == {1: 33}
        assert app.troops.snapshots[1].village_id == 1
        assert (tmp_path / "profiles" / "default" / "data" / "build_queue.json").exists()

    def test_farm_dispatch_retried_after_reauthentication(self, tmp_path):
        router = (
            Router()
            .get(
                "tt=99",
                html("<html><div>no data</div></html>"),
                html(farm_tab_page([{"id": 5, "name": "Raid", "slotsStates": [{"id": 11, "isActive": True}]}])),
            )
            .post("/api/v1/farm-list/send", json_response({"lists": []}))
        )
        relogins = []

        async def fake_refresh():
            relogins.append(True)
            return True

        async def scenario(app):
            app.session.refresh_session = fake_refresh
            app.request_refresh = lambda: None
            return await app.dispatch_farm_list(101, 5)

        outcome, _ = _run(tmp_path, scenario, router=router)
        assert outcome.success
        assert len(router.urls("GET")) == 2
        assert len(router.urls("POST")) == 1
        assert relogins

    def test_failed_village_list_still_schedules_refresh(self, tmp_path):
        router = Router().get("/dorf1.php", httpx.ConnectError("connection refused"))
        config = AppConfig(
            server=ServerConfig(base_url=BASE_URL),
            pipeline=PipelineConfig(delay_range_ms=(0, 0), backoff_base=0.0, max_retries=1),
            refresh=RefreshConfig(mode="short"),
        )

        async def scenario(app):
            snapshots = await app.fetch_all()
            handle = app._refresh_handle
            return snapshots, handle is not None and not handle.cancelled()

        (snapshots, scheduled), app = _run(tmp_path, scenario, router=router, config=config)
        assert snapshots == {}
        assert scheduled
        assert not app.fetcher.last_cycle_ok

    def test_refresh_scheduled_when_relogin_fails(self, tmp_path):
        router = Router().get("/dorf1.php", html(LOGIN_PAGE))
        relogins = []

        async def fake_refresh():
            relogins.append(True)
            return False

        async def scenario(app):
            app.session.refresh_session = fake_refresh
            await app.fetch_all()
            await app.bus.drain()
            return app._refresh_handle is not None

        scheduled, _ = _run(tmp_path, scenario, router=router, config=_config(mode="long"))
        assert scheduled
        assert relogins == [True]

    def test_first_cycle_discovers_farm_lists(self, tmp_path):
        router = (
            Router()
            .get("tt=99&newdid=1", html(farm_tab_page([{"id": 5, "name": "Raid", "ownerVillage": {"id": 1}}])))
            .get("tt=99&newdid=2", html(farm_tab_page([{"id": 8, "name": "Oases"}])))
        )

        async def scenario(app):
            app.farm_discovery_delay = 0.0
            app.farm_discovery_spacing = 0.0
            app.request_refresh = lambda: None
            snapshots = {1: VillageSnapshot(village_id=1), 2: VillageSnapshot(village_id=2)}
            app.bus.emit(FetchCycleCompleted(snapshots=snapshots))
            await asyncio.gather(*app._tasks)
            app.bus.emit(FetchCycleCompleted(snapshots=snapshots))
            await asyncio.gather(*app._tasks)
            return {(r.list_id, r.village_id, r.list_name, r.enabled) for r in app.farms.rules()}

        rules, _ = _run(tmp_path, scenario, router=router, config=_config(enabled=False))
        assert rules == {(5, 1, "Raid", False), (8, 2, "Oases", False)}
        assert len(router.urls("GET")) == 2

    def test_train_troops_without_building(self, tmp_path):
        async def scenario(app):
            return await app.train_troops(1, MilitaryBuilding.STABLE, "t4")

        outcome, _ = _run(tmp_path, scenario)
        assert not outcome.success
        assert outcome.message == "building not found"


class TestRuleCommands:
    def test_rule_editing_commands(self, tmp_path):
        async def scenario(app):
            app.request_refresh = lambda: None

            app.add_build_task(1, 26, target_level=3)
            app.add_build_task(1, 27, target_level=2)
            assert app.remove_build_task(1, 0).slot_id == 26
            app.clear_build_queue(1)
            assert app.building.queue(1) == []

            rule = app.set_troop_rule(1, MilitaryBuilding.BARRACKS, "t1")
            assert rule.interval_minutes == 5
            app.set_troop_rule_enabled(1, MilitaryBuilding.BARRACKS, False)
            assert not app.troops.scheduler.is_running(rule.key)
            app.remove_troop_rule(1, MilitaryBuilding.BARRACKS)
            assert app.troops.rules_for(1) == []

            app.add_farm_list(7, 101, "Oases")
            app.set_farm_list_interval(7, 10)
            app.set_farm_list_enabled(7, True)
            assert app.farms.scheduler.remaining(7) == 600
            app.remove_farm_list(7)
            assert not app.execute_farm_list_now(7)

        _run(tmp_path, scenario)
