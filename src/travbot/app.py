"""Application orchestrator: wires the engine together and exposes commands."""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from typing import Any, Coroutine

import httpx

from travbot.core.config import AppConfig, load_config
from travbot.core.events import (
    EventBus,
    FarmListsFetched,
    FetchCycleCompleted,
    SessionExpired,
    UpgradeResult,
)
from travbot.core.exceptions import NetworkError, SessionExpiredError, TravbotError
from travbot.core.humanizer import Humanizer
from travbot.core.logging import get_logger, setup_logging
from travbot.core.notifier import TelegramNotifier
from travbot.core.request_pipeline import RequestPipeline
from travbot.core.selectors import load_selector_table
from travbot.core.session_manager import SessionManager
from travbot.core.session_store import SessionStore
from travbot.game.fetcher import DataFetcher
from travbot.game.operations import ActionOutcome
from travbot.game.screens.barracks import BarracksScreen
from travbot.game.screens.build import BuildScreen
from travbot.game.screens.login import LoginScreen
from travbot.game.screens.rally_point import RallyPointScreen
from travbot.managers.building_manager import BuildingManager
from travbot.managers.farm_manager import FarmListManager
from travbot.managers.troop_manager import TroopTrainingManager
from travbot.models import (
    AttackReport,
    BuildTask,
    FarmListInfo,
    MilitaryBuilding,
    TroopTrainingRule,
    VillageSnapshot,
)
from travbot.models.buildings import DEFAULT_RALLY_POINT_SLOT

log = get_logger("app")

PROJECT_ROOT = Path(os.environ.get("TRAVBOT_ROOT", Path.cwd()))


class Application:
    """Owns every service and turns scheduler intent into running operations.

    Profile layout::

        profiles/<profile>/config/config.toml
        profiles/<profile>/data/{cookies,build_queue,troop_config,farm_config}.json
        profiles/<profile>/logs/travbot.log
    """

    # first-cycle farm list discovery: initial wait, then spacing per village
    farm_discovery_delay = 1.0
    farm_discovery_spacing = 2.0

    def __init__(
        self,
        profile: str = "default",
        config_file: Path | None = None,
        root: Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        log_level: str = "INFO",
    ) -> None:
        self.profile = profile
        self.log_level = log_level
        self.profile_dir = (root or PROJECT_ROOT) / "profiles" / profile
        self.config_file = config_file or self.profile_dir / "config" / "config.toml"
        self.data_dir = self.profile_dir / "data"
        self.log_dir = self.profile_dir / "logs"
        self._transport = transport

        self.config: AppConfig | None = None
        self.bus = EventBus()
        self.snapshots: dict[int, VillageSnapshot] = {}
        self._tasks: set[asyncio.Task] = set()
        self._refresh_handle: asyncio.TimerHandle | None = None
        self._farm_lists_discovered = False
        self._stop = asyncio.Event()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def build(self, config: AppConfig | None = None) -> None:
        """Create every service from ``config`` (loaded from disk when omitted)."""
        self.config = config or load_config(self.config_file)
        cfg = self.config
        log.info("config_loaded", base_url=cfg.server.base_url, profile=self.profile)

        selector_path = None
        if cfg.selector_file:
            selector_path = Path(cfg.selector_file)
            if not selector_path.is_absolute():
                selector_path = self.config_file.parent / selector_path
        self.selectors = load_selector_table(selector_path)

        self.humanizer = Humanizer(cfg.pipeline)
        self.store = SessionStore(self.data_dir / "cookies.json", cfg.server.host, cfg.session)
        self.pipeline = RequestPipeline(
            cfg.server.base_url,
            cfg.pipeline,
            session_store=self.store,
            humanizer=self.humanizer,
            transport=self._transport,
            timeout=cfg.server.timeout,
        )

        self.login_screen = LoginScreen(self.pipeline, self.bus, self.store)
        self.session = SessionManager(self.pipeline, self.store, self.login_screen, cfg.account, self.bus)
        self.build_screen = BuildScreen(self.pipeline, self.bus)
        self.barracks = BarracksScreen(self.pipeline, self.bus)
        self.rally_point = RallyPointScreen(self.pipeline, self.bus, cfg.farming)
        self.fetcher = DataFetcher(self.pipeline, self.bus, self.selectors)

        self.building = BuildingManager(
            cfg.building,
            self.data_dir / "build_queue.json",
            self.bus,
            upgrade=self._dispatch_upgrade,
            request_refresh=self.request_refresh,
        )
        self.troops = TroopTrainingManager(
            cfg.troops,
            self.data_dir / "troop_config.json",
            self.bus,
            train=self._dispatch_training,
            humanizer=self.humanizer,
        )
        self.farms = FarmListManager(
            cfg.farming,
            self.data_dir / "farm_config.json",
            self.bus,
            dispatch=self._dispatch_farm,
        )

        self.notifier = TelegramNotifier(cfg.telegram, profile=self.profile)
        self.notifier.subscribe(self.bus)

        self.bus.subscribe(FetchCycleCompleted, self._on_cycle_completed)
        self.bus.subscribe(SessionExpired, self._on_session_expired)
        self.bus.subscribe(UpgradeResult, self._on_upgrade_result)
        self.bus.subscribe(FarmListsFetched, self._on_farm_lists_fetched)

    def _load_rules(self) -> None:
        self.building.load()
        self.troops.load()
        self.farms.load()

    def _schedulers(self) -> list[Any]:
        return [self.building.scheduler, self.troops.scheduler, self.farms.scheduler]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self, once: bool = False) -> int:
        setup_logging(self.log_dir, profile=self.profile, console_level=self.log_level)
        log.info("application_starting", profile=self.profile)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal)
            except NotImplementedError:
                pass

        try:
            self.build()
            await self.start()
            if not await self.session.ensure_session():
                log.error("no_session_stopping")
                return 1
            await self.fetch_all()
            if once:
                self._log_summary()
                return 0
            await self._stop.wait()
        except TravbotError as e:
            log.error("fatal_error", error=str(e))
            return 1
        finally:
            await self._shutdown()
        return 0

    async def start(self) -> None:
        self.pipeline.start()
        self._load_rules()
        for scheduler in self._schedulers():
            scheduler.start_ticking()

    def stop(self) -> None:
        self._stop.set()

    def _handle_signal(self) -> None:
        log.info("signal_received_shutting_down")
        self.stop()

    async def _shutdown(self) -> None:
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
        if self.config is None:
            return
        for scheduler in self._schedulers():
            await scheduler.stop_ticking()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.bus.drain()
        await self.pipeline.stop()
        log.info("application_shutdown")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("background_task_failed", task=task.get_name(), error=str(task.exception()))

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_cycle_completed(self, event: FetchCycleCompleted) -> None:
        self.snapshots = dict(event.snapshots)
        for village_id, snapshot in self.snapshots.items():
            self.rally_point.rally_slots[village_id] = snapshot.rally_point_slot or DEFAULT_RALLY_POINT_SLOT
        self.troops.update_snapshots(self.snapshots)
        self.building.process_snapshot(self.snapshots)
        if not self._farm_lists_discovered and self.snapshots:
            self._farm_lists_discovered = True
            self._spawn(self._discover_farm_lists(list(self.snapshots)), "farm-list-discovery")
        self._schedule_refresh()

    async def _on_session_expired(self, event: SessionExpired) -> None:
        log.warning("session_expired", reason=event.reason)
        if await self.session.refresh_session():
            self.request_refresh()

    def _on_upgrade_result(self, event: UpgradeResult) -> None:
        if event.success:
            self.request_refresh()

    def _on_farm_lists_fetched(self, event: FarmListsFetched) -> None:
        added = self.farms.sync_discovered(event.lists, event.village_id)
        if added:
            log.info("farm_lists_registered", village=event.village_id, added=added)

    async def _discover_farm_lists(self, village_ids: list[int]) -> None:
        await asyncio.sleep(self.farm_discovery_delay)
        for index, village_id in enumerate(village_ids):
            if index:
                await asyncio.sleep(self.farm_discovery_spacing)
            await self.fetch_farm_lists(village_id)

    # ------------------------------------------------------------------
    # Auto refresh
    # ------------------------------------------------------------------

    def refresh_delay(self) -> float | None:
        cfg = self.config.refresh
        if not cfg.enabled:
            return None
        if cfg.mode == "short":
            return self.humanizer.random_cycle_delay(cfg.short_range)
        long_delay = self.humanizer.random_cycle_delay(cfg.long_range)
        if cfg.mode == "long":
            return long_delay
        finishes = [
            snapshot.construction_queue[0].remaining_seconds
            for snapshot in self.snapshots.values()
            if snapshot.construction_queue
        ]
        if not finishes:
            return long_delay
        return min(min(finishes) + cfg.smart_margin, long_delay)

    def _schedule_refresh(self) -> None:
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
            self._refresh_handle = None
        delay = self.refresh_delay()
        if delay is None:
            return
        log.info("next_refresh_scheduled", seconds=round(delay), mode=self.config.refresh.mode)
        self._refresh_handle = asyncio.get_running_loop().call_later(delay, self.request_refresh)

    def request_refresh(self) -> None:
        """Start a fetch cycle in the background unless one is running."""
        if self.fetcher.running:
            return
        self._spawn(self.fetch_all(), "fetch-cycle")

    # ------------------------------------------------------------------
    # Scheduler dispatch (enqueue only, never awaited by the schedulers)
    # ------------------------------------------------------------------

    def _dispatch_upgrade(self, village_id: int, slot_id: int) -> None:
        self._spawn(self.upgrade_building(village_id, slot_id), f"upgrade-{village_id}-{slot_id}")

    def _dispatch_training(self, rule: TroopTrainingRule, slot_id: int) -> None:
        self._spawn(
            self.barracks.train(rule.village_id, slot_id, rule.troop_id, rule.troop_name, rule.building),
            f"train-{rule.village_id}-{rule.building}",
        )

    def _dispatch_farm(self, village_id: int, list_id: int) -> None:
        self._spawn(self.dispatch_farm_list(village_id, list_id), f"farm-{list_id}")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def login(self) -> bool:
        return await self.session.login()

    async def check_session_health(self) -> bool:
        return await self.session.validate_session()

    async def fetch_all(self) -> dict[int, VillageSnapshot]:
        self.fetcher.fetch_all()
        snapshots = await self.fetcher.wait()
        if not self.fetcher.last_cycle_ok:
            # a completed cycle reschedules itself; failed ones retry on the timer
            self._schedule_refresh()
        return snapshots

    async def upgrade_building(self, village_id: int, slot_id: int) -> ActionOutcome:
        return await self.build_screen.upgrade(village_id, slot_id)

    async def train_troops(
        self, village_id: int, building: MilitaryBuilding, troop_id: str, troop_name: str = ""
    ) -> ActionOutcome:
        snapshot = self.snapshots.get(village_id)
        slot = snapshot.slot_for_gid(building.gid) if snapshot else None
        if slot is None:
            return ActionOutcome.failed("building not found")
        return await self.barracks.train(village_id, slot, troop_id, troop_name, building)

    async def dispatch_farm_list(self, village_id: int, list_id: int) -> ActionOutcome:
        outcome = await self.rally_point.dispatch_farm_list(village_id, list_id)
        if outcome.session_expired and await self.session.refresh_session():
            log.info("farm_dispatch_retry_after_login", list_id=list_id)
            outcome = await self.rally_point.dispatch_farm_list(village_id, list_id)
        return outcome

    def execute_farm_list_now(self, list_id: int) -> bool:
        return self.farms.execute_now(list_id)

    async def fetch_farm_lists(self, village_id: int) -> list[FarmListInfo]:
        try:
            return await self.rally_point.fetch_farm_lists(village_id)
        except SessionExpiredError as e:
            self.bus.emit(SessionExpired(reason=str(e)))
        except NetworkError as e:
            log.error("farm_lists_fetch_failed", village=village_id, error=str(e))
        return []

    async def fetch_incoming_attacks(self, village_id: int) -> AttackReport | None:
        summary = None
        for village in self.fetcher.villages:
            if village.village_id == village_id:
                summary = village.attacks
        try:
            return await self.rally_point.fetch_incoming_attacks(village_id, summary)
        except SessionExpiredError as e:
            self.bus.emit(SessionExpired(reason=str(e)))
        except NetworkError as e:
            log.error("incoming_attacks_fetch_failed", village=village_id, error=str(e))
        return None

    # construction rules

    def add_build_task(
        self, village_id: int, slot_id: int, target_level: int, priority: int = 0
    ) -> BuildTask:
        snapshot = self.snapshots.get(village_id)
        record = snapshot.building(slot_id) if snapshot else None
        task = BuildTask(
            village_id=village_id,
            slot_id=slot_id,
            current_level=record.level if record else 0,
            target_level=target_level,
            building_name=record.name if record else "",
            priority=priority,
        )
        self.building.add_task(task)
        self.request_refresh()
        return task

    def remove_build_task(self, village_id: int, index: int) -> BuildTask | None:
        return self.building.remove_task(village_id, index)

    def clear_build_queue(self, village_id: int) -> None:
        self.building.clear(village_id)

    # troop rules

    def set_troop_rule(
        self,
        village_id: int,
        building: MilitaryBuilding,
        troop_id: str,
        troop_name: str = "",
        interval_minutes: int | None = None,
        enabled: bool = True,
    ) -> TroopTrainingRule:
        rule = TroopTrainingRule(
            village_id=village_id,
            building=building,
            troop_id=troop_id,
            troop_name=troop_name,
            interval_minutes=interval_minutes or self.config.troops.default_interval_minutes,
            enabled=enabled,
        )
        self.troops.set_rule(rule)
        return rule

    def remove_troop_rule(self, village_id: int, building: MilitaryBuilding) -> None:
        self.troops.remove_rule(village_id, building)

    def set_troop_rule_enabled(self, village_id: int, building: MilitaryBuilding, enabled: bool) -> None:
        self.troops.set_enabled(village_id, building, enabled)

    # farm rules

    def add_farm_list(
        self,
        list_id: int,
        village_id: int,
        name: str = "",
        interval_minutes: int | None = None,
        enabled: bool = False,
    ) -> None:
        self.farms.add_list(list_id, village_id, name, interval_minutes, enabled)

    def remove_farm_list(self, list_id: int) -> None:
        self.farms.remove_list(list_id)

    def set_farm_list_enabled(self, list_id: int, enabled: bool) -> None:
        self.farms.set_enabled(list_id, enabled)

    def set_farm_list_interval(self, list_id: int, interval_minutes: int) -> None:
        self.farms.set_interval(list_id, interval_minutes)

    # ------------------------------------------------------------------

    def _log_summary(self) -> None:
        for snapshot in self.snapshots.values():
            res = snapshot.resources
            log.info(
                "village_summary",
                village=snapshot.village_id,
                name=snapshot.name,
                lumber=res.lumber,
                clay=res.clay,
                iron=res.iron,
                crop=res.crop,
                queue=len(snapshot.construction_queue),
                buildings=len(snapshot.buildings),
            )
