"""Rally point - farm lists and incoming troop movements.

The farm tab (``tt=99``) is a React view whose state is embedded as JSON in
the page; farm lists and their slot states are read from it with the
balanced-bracket scanner. The incoming tab (``tt=1``) is a classic HTML table
per movement.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from selectolax.lexbor import LexborHTMLParser

from travbot.core.config import FarmingConfig
from travbot.core.events import (
    EventBus,
    FarmDispatchResult,
    FarmListsFetched,
    IncomingAttacksReported,
)
from travbot.core.exceptions import SessionExpiredError
from travbot.core.extractors import parse_duration, to_int
from travbot.core.json_scanner import extract_json_array, find_balanced
from travbot.core.logging import get_logger
from travbot.core.request_pipeline import (
    PendingRequest,
    PipelineResponse,
    RequestKind,
    RequestPipeline,
    RetryTracker,
)
from travbot.game.operations import ActionMachine, ActionOutcome, OperationState, Transition
from travbot.models import AttackReport, AttackSummary, Confidence, FarmListInfo, IncomingAttack
from travbot.models.buildings import DEFAULT_RALLY_POINT_SLOT

log = get_logger("screen.rally_point")

FARM_SEND_PATH = "/api/v1/farm-list/send"
FARM_TAB = 99
INCOMING_TAB = 1

LIST_ITEM_PATTERN = re.compile(r'\{"id"\s*:\s*(\d+)\s*,\s*"name"\s*:\s*"([^"]*)"')
SLOTS_AMOUNT_PATTERN = re.compile(r'"slotsAmount"\s*:\s*(\d+)')
OWNER_VILLAGE_PATTERN = re.compile(r'"ownerVillage"\s*:\s*\{\s*"id"\s*:\s*(\d+)')

MOVEMENT_KINDS = {
    "inAttack": "attack",
    "inRaid": "raid",
    "inSupply": "reinforcement",
}
# village-list symbol colours, best guess at their meaning
SYMBOL_KINDS = {"red": "attack", "yellow": "raid", "green": "reinforcement"}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_farm_lists(html: str) -> list[FarmListInfo]:
    """Farm lists from the embedded ``"farmLists":[...]`` block."""
    lists: list[FarmListInfo] = []
    entries = extract_json_array(html, "farmLists")
    if entries is not None:
        for entry in entries:
            if not isinstance(entry, dict) or "id" not in entry:
                continue
            owner = entry.get("ownerVillage")
            lists.append(
                FarmListInfo(
                    list_id=int(entry["id"]),
                    name=str(entry.get("name", "")),
                    slots_amount=to_int(entry.get("slotsAmount"), 0),
                    owner_village_id=to_int(owner.get("id")) if isinstance(owner, dict) else None,
                )
            )
        return lists

    # block present but not valid JSON: scan entry by entry
    start = html.find('"farmLists"')
    bracket = html.find("[", start) if start >= 0 else -1
    block = find_balanced(html, bracket, "[") if bracket >= 0 else None
    if block is None:
        return lists
    for match in LIST_ITEM_PATTERN.finditer(block):
        context = block[match.end() : match.end() + 500]
        slots = SLOTS_AMOUNT_PATTERN.search(context)
        owner = OWNER_VILLAGE_PATTERN.search(context)
        lists.append(
            FarmListInfo(
                list_id=int(match.group(1)),
                name=match.group(2),
                slots_amount=int(slots.group(1)) if slots else 0,
                owner_village_id=int(owner.group(1)) if owner else None,
            )
        )
    return lists


def _active_ids(slots: Any) -> list[int]:
    if not isinstance(slots, list):
        return []
    return [
        int(slot["id"])
        for slot in slots
        if isinstance(slot, dict) and slot.get("isActive") is True and "id" in slot
    ]


def parse_active_targets(html: str, list_id: int) -> list[int]:
    """Ids of the active raid slots of ``list_id``."""
    entries = extract_json_array(html, "farmLists")
    if entries is not None:
        for entry in entries:
            if isinstance(entry, dict) and to_int(entry.get("id")) == list_id:
                return _active_ids(entry.get("slotsStates"))

    # fall back to locating the list by position
    match = re.search(rf'"id"\s*:\s*{list_id}\b', html)
    if not match:
        return []
    end = html.find('"farmLists"', match.end())
    slots_pos = html.find('"slotsStates"', match.end(), end if end >= 0 else len(html))
    if slots_pos < 0:
        return []
    bracket = html.find("[", slots_pos)
    block = find_balanced(html, bracket, "[")
    if block is None:
        return []
    try:
        return _active_ids(json.loads(block))
    except json.JSONDecodeError:
        return []


def extract_incoming_movements(html: str, village_id: int) -> list[IncomingAttack]:
    parser = LexborHTMLParser(html)
    movements: list[IncomingAttack] = []
    for table in parser.css("table.troop_details"):
        classes = (table.attributes.get("class") or "").split()
        kind = next((MOVEMENT_KINDS[c] for c in classes if c in MOVEMENT_KINDS), None)
        if kind is None:
            continue
        origin_node = table.css_first("thead .troopHeadline a") or table.css_first("thead a")
        timer = table.css_first("span.timer")
        arrival = None
        if timer is not None:
            value = timer.attributes.get("value")
            arrival = to_int(value) if value else parse_duration(timer.text(strip=True))
        movements.append(
            IncomingAttack(
                village_id=village_id,
                kind=kind,
                origin=origin_node.text(strip=True) if origin_node else "",
                arrival_seconds=arrival,
            )
        )
    return movements


def summary_report(village_id: int, summary: AttackSummary) -> AttackReport:
    counts = {
        SYMBOL_KINDS[colour]: getattr(summary, colour)
        for colour in SYMBOL_KINDS
        if getattr(summary, colour)
    }
    return AttackReport(village_id=village_id, confidence=Confidence.LOW, counts=counts)


def classify_send_response(response: PipelineResponse) -> tuple[bool, str]:
    payload = response.json()
    if isinstance(payload, dict) and payload.get("errors") is not None:
        errors = payload["errors"]
        if isinstance(errors, list) and errors:
            first = errors[0]
            message = first.get("message", str(first)) if isinstance(first, dict) else str(first)
        else:
            message = str(errors)
        return False, f"error: {message}"
    if response.status_code == 200:
        return True, "farm list sent"
    return False, f"HTTP {response.status_code}: {response.text[:200]}"


# ---------------------------------------------------------------------------
# Farm list dispatch
# ---------------------------------------------------------------------------


class FarmStep(StrEnum):
    FETCH_SLOTS = "fetch_slots"
    SEND = "send"


@dataclass
class FarmContext:
    village_id: int
    list_id: int
    farm_url: str
    targets: list[int] = field(default_factory=list)
    attempt: int = 0

    @property
    def retry_key(self) -> str:
        return f"{self.village_id}_{self.list_id}"


class RallyPointScreen(ActionMachine[FarmStep, FarmContext]):
    """Farm-list dispatch plus the read-only rally point views."""

    kind = RequestKind.FARM

    def __init__(
        self,
        pipeline: RequestPipeline,
        bus: EventBus,
        config: FarmingConfig | None = None,
    ) -> None:
        super().__init__(pipeline, bus)
        self.config = config or FarmingConfig()
        self.retries = RetryTracker()
        self.rally_slots: dict[int, int] = {}

    def tab_url(self, village_id: int, tab: int) -> str:
        slot = self.rally_slots.get(village_id, DEFAULT_RALLY_POINT_SLOT)
        return self.pipeline.url_for(f"/build.php?id={slot}&tt={tab}", village_id)

    async def dispatch_farm_list(self, village_id: int, list_id: int) -> ActionOutcome:
        """Send every active slot of a farm list."""
        ctx = FarmContext(village_id, list_id, self.tab_url(village_id, FARM_TAB))
        state = OperationState(FarmStep.FETCH_SLOTS, ctx)
        log.info("farm_dispatch_starting", village=village_id, list=list_id)
        outcome = await self._drive(state, self._fetch_request(state))
        self.retries.reset(ctx.retry_key)

        if outcome.success:
            log.info("farm_list_sent", village=village_id, list=list_id, targets=len(ctx.targets))
        else:
            log.warning("farm_dispatch_failed", village=village_id, list=list_id, reason=outcome.message)
        self.bus.emit(
            FarmDispatchResult(
                village_id=village_id,
                list_id=list_id,
                success=outcome.success,
                message=outcome.message,
                targets=len(ctx.targets) if outcome.success else 0,
            )
        )
        return outcome

    def _fetch_request(self, state: OperationState[FarmStep, FarmContext], backoff: float = 0.0) -> PendingRequest:
        request = self._request(
            state, "farm_list", state.context.farm_url, village_id=state.context.village_id
        )
        request.backoff = backoff
        return request

    def _advance(self, state: OperationState[FarmStep, FarmContext], response: PipelineResponse) -> Transition:
        ctx = state.context
        step = FarmStep(response.request.step)

        if step is FarmStep.FETCH_SLOTS:
            self.ensure_logged_in(response)
            if '"farmLists"' not in response.text:
                raise SessionExpiredError("farm list data missing from rally point page")

            ctx.attempt += 1
            ctx.targets = parse_active_targets(response.text, ctx.list_id)
            if not ctx.targets:
                attempts = self.retries.increment(ctx.retry_key)
                if attempts < self.config.max_retries:
                    log.info("farm_targets_empty_retrying", list=ctx.list_id, attempt=attempts)
                    return state, self._fetch_request(state, backoff=self.config.retry_delay)
                return ActionOutcome.failed("no active slots in farm list")

            self.retries.reset(ctx.retry_key)
            base = self.pipeline.base_url
            next_state = OperationState(FarmStep.SEND, ctx)
            return next_state, self._request(
                next_state,
                "farm_send",
                f"{base}{FARM_SEND_PATH}",
                village_id=ctx.village_id,
                method="POST",
                json_body={
                    "action": "farmList",
                    "lists": [{"id": ctx.list_id, "targets": ctx.targets}],
                },
                headers={
                    "Accept": "application/json",
                    "X-Requested-With": "XMLHttpRequest",
                    "Origin": base,
                },
                referer=ctx.farm_url,
            )

        success, message = classify_send_response(response)
        if success:
            return ActionOutcome.ok(message, targets=len(ctx.targets))
        return ActionOutcome.failed(message)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    async def fetch_farm_lists(self, village_id: int) -> list[FarmListInfo]:
        request = PendingRequest(
            page_name="farm_lists",
            url=self.tab_url(village_id, FARM_TAB),
            village_id=village_id,
            kind=RequestKind.FARM,
        )
        response = await self.pipeline.submit(request)
        self.ensure_logged_in(response)
        lists = parse_farm_lists(response.text)
        log.info("farm_lists_fetched", village=village_id, lists=len(lists))
        self.bus.emit(FarmListsFetched(village_id=village_id, lists=lists))
        return lists

    async def fetch_incoming_attacks(
        self, village_id: int, summary: AttackSummary | None = None
    ) -> AttackReport:
        """Coarse report from the cached summary first, then the detailed one."""
        if summary is not None and summary.total > 0:
            coarse = summary_report(village_id, summary)
            log.warning("incoming_attacks_summary", village=village_id, counts=coarse.counts)
            self.bus.emit(IncomingAttacksReported(report=coarse))

        request = PendingRequest(
            page_name="rally_incoming",
            url=self.tab_url(village_id, INCOMING_TAB) + "&filter=1",
            village_id=village_id,
            kind=RequestKind.ATTACKS,
        )
        response = await self.pipeline.submit(request)
        self.ensure_logged_in(response)
        movements = extract_incoming_movements(response.text, village_id)
        counts: dict[str, int] = {}
        for movement in movements:
            counts[movement.kind] = counts.get(movement.kind, 0) + 1
        report = AttackReport(
            village_id=village_id,
            confidence=Confidence.HIGH,
            attacks=movements,
            counts=counts,
        )
        log.info("incoming_movements", village=village_id, counts=counts)
        self.bus.emit(IncomingAttacksReported(report=report))
        return report
