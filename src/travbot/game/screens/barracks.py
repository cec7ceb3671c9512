"""Military buildings (barracks, stable, workshop) - troop training."""

from __future__ import annotations

import html as html_lib
import re
from dataclasses import dataclass, field
from enum import StrEnum

from travbot.core.events import TrainingResult
from travbot.core.exceptions import ExtractionError
from travbot.core.logging import get_logger
from travbot.core.request_pipeline import PipelineResponse, RequestKind
from travbot.game.operations import ActionMachine, ActionOutcome, OperationState, Transition
from travbot.models.troops import MilitaryBuilding

log = get_logger("screen.barracks")

FORM_ACTION_PATTERN = re.compile(r'<form[^>]*action="([^"]+)"[^>]*>')
HIDDEN_NAME_FIRST = re.compile(r'<input[^>]*type="hidden"[^>]*name="([^"]+)"[^>]*value="([^"]*)"')
HIDDEN_VALUE_FIRST = re.compile(r'<input[^>]*type="hidden"[^>]*value="([^"]*)"[^>]*name="([^"]+)"')

SUCCESS_MARKERS = ("buildingList", "under_progress", "timer", "dur_r")
FAILURE_MARKERS = ("notEnough", "enough resources")


def _max_count_patterns(troop_id: str) -> tuple[re.Pattern[str], ...]:
    name = re.escape(troop_id)
    # the max link follows the unit's input within the same "cta" block
    neighbourhood = rf'<input[^>]*name="{name}"[^>]*/?>(?:(?!<input)[\s\S]){{0,300}}'
    return (
        re.compile(neighbourhood + r"\.val\((\d+)\)"),
        re.compile(neighbourhood + r"<a[^>]*>(\d+)</a>"),
    )


def extract_max_trainable(html: str, troop_id: str) -> int:
    for pattern in _max_count_patterns(troop_id):
        match = pattern.search(html)
        if match and int(match.group(1)) > 0:
            return int(match.group(1))
    return 0


def extract_hidden_fields(html: str) -> dict[str, str]:
    """Hidden inputs in either attribute order; first occurrence of a name wins."""
    fields: dict[str, str] = {}
    for match in HIDDEN_NAME_FIRST.finditer(html):
        fields.setdefault(match.group(1), html_lib.unescape(match.group(2)))
    for match in HIDDEN_VALUE_FIRST.finditer(html):
        fields.setdefault(match.group(2), html_lib.unescape(match.group(1)))
    return fields


def classify_training_response(html: str) -> bool:
    if any(marker in html for marker in SUCCESS_MARKERS):
        return True
    if any(marker in html for marker in FAILURE_MARKERS):
        return False
    # the server redirects back to the building after a successful order
    return True


class TrainStep(StrEnum):
    GET_PAGE = "get_page"
    SUBMIT_ORDER = "submit_order"


@dataclass
class TrainContext:
    village_id: int
    slot_id: int
    building: MilitaryBuilding
    troop_id: str
    troop_name: str
    count: int = 0
    form: dict[str, str] = field(default_factory=dict)


class BarracksScreen(ActionMachine[TrainStep, TrainContext]):
    """Trains the maximum affordable amount of one unit type."""

    kind = RequestKind.TRAIN

    def page_url(self, village_id: int, slot_id: int) -> str:
        return self.pipeline.url_for(f"/build.php?id={slot_id}", village_id)

    async def train(
        self,
        village_id: int,
        slot_id: int,
        troop_id: str,
        troop_name: str = "",
        building: MilitaryBuilding = MilitaryBuilding.BARRACKS,
    ) -> ActionOutcome:
        ctx = TrainContext(village_id, slot_id, building, troop_id, troop_name or troop_id)
        state = OperationState(TrainStep.GET_PAGE, ctx)
        request = self._request(
            state,
            str(building),
            self.page_url(village_id, slot_id),
            village_id=village_id,
        )
        outcome = await self._drive(state, request)

        if outcome.skipped:
            log.debug("nothing_trainable", village=village_id, troop=troop_id, building=building)
            return outcome
        if outcome.success:
            log.info("troops_training", village=village_id, troop=ctx.troop_name, count=ctx.count)
        else:
            log.warning("training_failed", village=village_id, troop=ctx.troop_name, reason=outcome.message)
        self.bus.emit(
            TrainingResult(
                village_id=village_id,
                building=str(building),
                troop_id=troop_id,
                success=outcome.success,
                message=outcome.message,
                count=ctx.count if outcome.success else 0,
            )
        )
        return outcome

    def _advance(self, state: OperationState[TrainStep, TrainContext], response: PipelineResponse) -> Transition:
        ctx = state.context
        self.ensure_logged_in(response)
        step = TrainStep(response.request.step)

        if step is TrainStep.GET_PAGE:
            ctx.count = extract_max_trainable(response.text, ctx.troop_id)
            if ctx.count <= 0:
                return ActionOutcome(False, "nothing trainable", skipped=True)

            match = FORM_ACTION_PATTERN.search(response.text)
            if match is None:
                raise ExtractionError(f"training form not found on slot {ctx.slot_id}")
            action = html_lib.unescape(match.group(1))
            if not action.startswith(("/", "http")):
                action = "/" + action
            ctx.form = extract_hidden_fields(response.text)
            ctx.form[ctx.troop_id] = str(ctx.count)
            ctx.form["s1"] = "ok"

            next_state = OperationState(TrainStep.SUBMIT_ORDER, ctx)
            return next_state, self._request(
                next_state,
                f"{ctx.building}_train",
                self.pipeline.url_for(action, ctx.village_id),
                village_id=ctx.village_id,
                method="POST",
                data=ctx.form,
                referer=self.page_url(ctx.village_id, ctx.slot_id),
            )

        if classify_training_response(response.text):
            return ActionOutcome.ok(f"{ctx.count}x {ctx.troop_name} training started", count=ctx.count)
        return ActionOutcome.failed("insufficient resources")
