"""Full fetch cycle: village list, then every page of every village.

The cycle is driven entirely by pipeline completions. The village list
request (plain dorf1) yields the villages and the first village's dorf1; each
dorf2 response reveals which military buildings exist and queues their
pages; once a village has no outstanding requests its snapshot is built and
the next village is queued.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any

from travbot.core.events import (
    EventBus,
    FetchCycleCompleted,
    FetchFailed,
    FetchProgress,
    PageDataUpdated,
    SessionExpired,
    VillageDataUpdated,
    VillagesDiscovered,
)
from travbot.core.extractors import PageSpec, extract_embedded_json, extract_page, to_int
from travbot.core.logging import get_logger
from travbot.core.request_pipeline import PendingRequest, PipelineResponse, RequestPipeline
from travbot.core.selectors import SelectorTable
from travbot.core.session_store import is_login_page
from travbot.game.snapshot import build_snapshot, parse_village_list
from travbot.models import MilitaryBuilding, VillageInfo, VillageSnapshot

log = get_logger("fetcher")

VILLAGE_LIST_PAGE = "_villageList"
PREFERENCES_MARKER = "Travian.Game.Preferences.initialize("


class DataFetcher:
    """Runs fetch cycles through the pipeline and builds village snapshots."""

    def __init__(self, pipeline: RequestPipeline, bus: EventBus, selectors: SelectorTable) -> None:
        self.pipeline = pipeline
        self.bus = bus
        self.selectors = selectors
        pipeline.on_fetch_response = self._on_response
        pipeline.on_fetch_error = self._on_error
        pipeline.on_progress = self._on_progress

        self.villages: list[VillageInfo] = []
        self.snapshots: dict[int, VillageSnapshot] = {}
        self.running = False
        self.last_cycle_ok = False
        self._raw: dict[int, dict[str, dict[str, Any]]] = {}
        self._pending: deque[VillageInfo] = deque()
        self._current: VillageInfo | None = None
        self._outstanding = 0
        self._done = asyncio.Event()

    # ------------------------------------------------------------------
    # Cycle control
    # ------------------------------------------------------------------

    def fetch_all(self) -> bool:
        """Start a cycle. False if one is already running."""
        if self.running:
            log.debug("fetch_cycle_already_running")
            return False
        self.running = True
        self.last_cycle_ok = False
        self._done.clear()
        self.pipeline.clear_fetch_requests()
        self.pipeline.reset_progress()
        self._raw = {}
        self._pending.clear()
        self._current = None
        self._outstanding = 0
        log.info("fetch_cycle_starting")
        self._enqueue(
            PendingRequest(
                page_name=VILLAGE_LIST_PAGE,
                url=self.pipeline.url_for("/dorf1.php"),
                page_spec=self.selectors.page("dorf1"),
                is_village_list=True,
            )
        )
        return True

    async def wait(self) -> dict[int, VillageSnapshot]:
        await self._done.wait()
        return self.snapshots

    def _enqueue(self, request: PendingRequest) -> None:
        self._outstanding += 1
        self.pipeline.enqueue(request)

    def _page_request(self, page: str, village: VillageInfo, path: str | None = None) -> PendingRequest:
        spec = self.selectors.page(page)
        return PendingRequest(
            page_name=page,
            url=self.pipeline.url_for(path or spec.url, village.village_id),
            village_id=village.village_id,
            village_name=village.name,
            page_spec=spec,
        )

    def _start_village(self, village: VillageInfo, with_dorf1: bool = True) -> None:
        self._current = village
        self._raw.setdefault(village.village_id, {})
        if with_dorf1:
            self._enqueue(self._page_request("dorf1", village))
        self._enqueue(self._page_request("dorf2", village))

    def _finish_village(self, village: VillageInfo) -> None:
        pages = self._raw.get(village.village_id, {})
        if not pages:
            return
        snapshot = build_snapshot(village.village_id, village.name, pages, village.attacks)
        self.snapshots[village.village_id] = snapshot
        log.info(
            "village_updated",
            village=village.village_id,
            name=snapshot.name,
            pages=sorted(pages),
        )
        self.bus.emit(VillageDataUpdated(snapshot=snapshot))

    def _advance(self) -> None:
        if self._outstanding > 0 or not self.running:
            return
        if self._current is not None:
            self._finish_village(self._current)
            self._current = None
        if self._pending:
            self._start_village(self._pending.popleft())
            return
        self._complete()

    def _complete(self) -> None:
        self.running = False
        self.last_cycle_ok = True
        known = {v.village_id for v in self.villages}
        for village_id in list(self.snapshots):
            if village_id not in known:
                del self.snapshots[village_id]
        log.info("fetch_cycle_completed", villages=len(self.snapshots))
        self.bus.emit(FetchCycleCompleted(snapshots=dict(self.snapshots)))
        self._done.set()

    def _abort(self, page: str, reason: str) -> None:
        self.running = False
        self.pipeline.clear_fetch_requests()
        self._outstanding = 0
        self._pending.clear()
        self._current = None
        log.warning("fetch_cycle_aborted", page=page, reason=reason)
        self.bus.emit(FetchFailed(page=page, error=reason))
        self.bus.emit(SessionExpired(reason=reason))
        self._done.set()

    # ------------------------------------------------------------------
    # Pipeline callbacks
    # ------------------------------------------------------------------

    def _on_progress(self, completed: int, total: int, page: str) -> None:
        self.bus.emit(FetchProgress(completed=completed, total=total, page=page))

    def _on_error(self, request: PendingRequest, error: Exception) -> None:
        self._outstanding -= 1
        if not self.running:
            return
        self.bus.emit(FetchFailed(page=request.page_name, error=str(error)))
        if request.is_village_list:
            # nothing else to fetch without the village list
            self.running = False
            self._done.set()
            return
        self._advance()

    def _on_response(self, response: PipelineResponse) -> None:
        self._outstanding -= 1
        if not self.running:
            return
        request = response.request

        if is_login_page(response.text):
            self._abort(request.page_name, "Session expired - login page returned (401)")
            return
        if not response.ok:
            self.bus.emit(FetchFailed(page=request.page_name, error=f"HTTP {response.status_code}"))
        elif request.is_village_list:
            if not self._handle_village_list(response):
                return
        else:
            self._handle_page(request, response.text)
        self._advance()

    def _handle_village_list(self, response: PipelineResponse) -> bool:
        villages = parse_village_list(response.text)
        if not villages:
            self._abort(VILLAGE_LIST_PAGE, "Session expired - no villages found (401)")
            return False

        self.villages = villages
        log.info("villages_discovered", count=len(villages))
        self.bus.emit(VillagesDiscovered(villages=list(villages)))

        first, *rest = villages
        self._pending = deque(rest)
        # plain dorf1 shows the active village; reuse it when that is the first one
        data = self._extract("dorf1", response.text, response.request.page_spec)
        reuse = data.get("village_name") in (None, first.name)
        if reuse:
            self._store(first.village_id, "dorf1", data)
        self._start_village(first, with_dorf1=not reuse)
        return True

    def _handle_page(self, request: PendingRequest, text: str) -> None:
        data = self._extract(request.page_name, text, request.page_spec)
        self._store(request.village_id, request.page_name, data)
        if request.page_name == "dorf2" and self._current is not None:
            self._queue_military(self._current, data)

    def _extract(self, page: str, text: str, spec: PageSpec | None = None) -> dict[str, Any]:
        if spec is None:
            if page not in self.selectors:
                return {}
            spec = self.selectors.page(page)
        data = extract_page(text, spec)
        if page == "dorf1":
            preferences = extract_embedded_json(text, PREFERENCES_MARKER)
            if preferences is not None:
                data["preferences"] = preferences
        return data

    def _store(self, village_id: int, page: str, data: dict[str, Any]) -> None:
        self._raw.setdefault(village_id, {})[page] = data
        self.bus.emit(PageDataUpdated(village_id=village_id, page=page, data=data))

    def _queue_military(self, village: VillageInfo, dorf2: dict[str, Any]) -> None:
        for building in dorf2.get("buildings") or []:
            kind = MilitaryBuilding.from_gid(to_int(building.get("gid"), 0))
            slot = to_int(building.get("slot_id"))
            if kind is None or slot is None or kind not in self.selectors:
                continue
            self._enqueue(self._page_request(str(kind), village, f"/build.php?id={slot}"))
