"""Building page - upgrade a slot by replaying the green build button."""

from __future__ import annotations

import html as html_lib
import re
from dataclasses import dataclass
from enum import StrEnum

from selectolax.lexbor import LexborHTMLParser

from travbot.core.events import UpgradeResult
from travbot.core.logging import get_logger
from travbot.core.request_pipeline import PipelineResponse, RequestKind
from travbot.game.operations import ActionMachine, ActionOutcome, OperationState, Transition

log = get_logger("screen.build")

DEFAULT_BUILDING_NAME = "Building"

TITLE_PATTERN = re.compile(r'<h1[^>]*class="titleInHeader"[^>]*>([^<]+)</h1>')

# Tried in order: current green button, legacy checksum link, any build link
UPGRADE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r'class="[^"]*green[^"]*build[^"]*"[^>]*onclick="[^"]*'
        r"window\.location\.href\s*=\s*'([^']+)'"
    ),
    re.compile(r'(build\.php\?id=\d+[^"]*&amp;a=\d+[^"]*&amp;c=[a-f0-9]+)'),
    re.compile(r'href="(/build\.php\?id=\d+[^"]*a=\d+[^"]*c=[a-f0-9]+)"'),
)

STARTED_MARKERS = ("buildingList", "constructionQueue", "buildDuration", 'class="timer"')
INSUFFICIENT_MARKERS = ("notEnough", "enough resources")


class UpgradeStep(StrEnum):
    GET_BUILD_PAGE = "get_build_page"
    DO_UPGRADE = "do_upgrade"


@dataclass
class UpgradeContext:
    village_id: int
    slot_id: int
    building_name: str = DEFAULT_BUILDING_NAME
    upgrade_url: str = ""


def extract_building_name(html: str) -> str:
    node = LexborHTMLParser(html).css_first("h1.titleInHeader")
    if node is not None:
        # the level badge sits in a child span
        for badge in node.css("span"):
            badge.decompose()
        text = node.text(strip=True)
        if text:
            return text
    match = TITLE_PATTERN.search(html)
    return match.group(1).strip() if match else DEFAULT_BUILDING_NAME


def extract_upgrade_path(html: str) -> str | None:
    """Relative upgrade URL (``&amp;`` unescaped) or None when not offered."""
    for pattern in UPGRADE_PATTERNS:
        match = pattern.search(html)
        if match:
            return html_lib.unescape(match.group(1))
    return None


def classify_upgrade_response(html: str) -> tuple[bool, str]:
    if any(marker in html for marker in STARTED_MARKERS):
        return True, "upgrade started"
    if any(marker in html for marker in INSUFFICIENT_MARKERS):
        return False, "insufficient resources"
    # the server usually redirects to dorf1/dorf2 after a successful order
    return True, "upgrade likely started"


class BuildScreen(ActionMachine[UpgradeStep, UpgradeContext]):
    kind = RequestKind.UPGRADE

    def build_page_url(self, village_id: int, slot_id: int) -> str:
        return self.pipeline.url_for(f"/build.php?id={slot_id}", village_id)

    async def upgrade(self, village_id: int, slot_id: int) -> ActionOutcome:
        """Upgrade the building in ``slot_id``. The server decides affordability."""
        state = OperationState(UpgradeStep.GET_BUILD_PAGE, UpgradeContext(village_id, slot_id))
        request = self._request(
            state,
            f"build_{slot_id}",
            self.build_page_url(village_id, slot_id),
            village_id=village_id,
        )
        outcome = await self._drive(state, request)

        name = outcome.data.get("building_name", state.context.building_name)
        if outcome.success:
            log.info("upgrade_started", village=village_id, slot=slot_id, building=name, detail=outcome.message)
        else:
            log.warning("upgrade_failed", village=village_id, slot=slot_id, reason=outcome.message)
        self.bus.emit(
            UpgradeResult(
                village_id=village_id,
                slot_id=slot_id,
                success=outcome.success,
                message=outcome.message,
                building_name=name,
            )
        )
        return outcome

    def _advance(self, state: OperationState[UpgradeStep, UpgradeContext], response: PipelineResponse) -> Transition:
        ctx = state.context
        self.ensure_logged_in(response)
        step = UpgradeStep(response.request.step)

        if step is UpgradeStep.GET_BUILD_PAGE:
            ctx.building_name = extract_building_name(response.text)
            path = extract_upgrade_path(response.text)
            if path is None:
                return ActionOutcome.failed(
                    "upgrade link not found - possibly insufficient resources",
                    building_name=ctx.building_name,
                )
            if not path.startswith(("/", "http")):
                path = "/" + path
            ctx.upgrade_url = self.pipeline.url_for(path, ctx.village_id)
            log.debug("upgrade_url_found", slot=ctx.slot_id, url=ctx.upgrade_url)
            next_state = OperationState(UpgradeStep.DO_UPGRADE, ctx)
            return next_state, self._request(
                next_state,
                f"upgrade_{ctx.slot_id}",
                ctx.upgrade_url,
                village_id=ctx.village_id,
                referer=self.build_page_url(ctx.village_id, ctx.slot_id),
            )

        success, message = classify_upgrade_response(response.text)
        if success:
            return ActionOutcome.ok(message, building_name=ctx.building_name)
        return ActionOutcome.failed(message, building_name=ctx.building_name)
