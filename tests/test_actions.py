"""Tests for the upgrade and troop-training operations."""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qsl

from travbot.core.events import EventBus, EventRecorder, SessionExpired, TrainingResult, UpgradeResult
from travbot.game.screens.barracks import (
    BarracksScreen,
    extract_hidden_fields,
    extract_max_trainable,
)
from travbot.game.screens.build import BuildScreen, extract_building_name, extract_upgrade_path
from travbot.models import MilitaryBuilding

from helpers import BASE_URL, LOGIN_PAGE, Router, html, make_pipeline

BUILD_PAGE = (
    '<html><h1 class="titleInHeader">Main Building <span class="level">Level 5</span></h1>'
    '<div class="upgradeButtonsContainer">'
    '<button class="textButtonV1 green build" onclick="window.location.href = '
    "'/dorf2.php?id=26&amp;gid=15&amp;action=build&amp;checksum=ab12'; return false;\">"
    "Upgrade to level 6</button></div></html>"
)

BUILD_PAGE_NO_BUTTON = (
    '<html><h1 class="titleInHeader">Main Building</h1>'
    '<div class="upgradeBlocked">Not enough resources</div></html>'
)

BARRACKS_PAGE = (
    '<html><form method="POST" name="snd" action="/build.php?id=30&amp;gid=19">'
    '<input type="hidden" name="z" value="abc123">'
    '<input type="hidden" value="19" name="gid">'
    '<div class="cta"><input type="text" class="text" name="t1" value="0" />'
    "<a href=\"#\" onclick=\"jQuery(this).closest('.cta').find('input').val(12); return false;\">12</a>"
    "</div>"
    '<div class="cta"><input type="text" class="text" name="t2" value="0" />'
    '<a href="#">0</a></div>'
    "</form></html>"
)


def _run(router: Router, scenario):
    bus = EventBus()
    recorder = EventRecorder(bus)

    async def go():
        pipeline = make_pipeline(router)
        pipeline.start()
        try:
            return await scenario(pipeline, bus)
        finally:
            await pipeline.stop()

    return asyncio.run(go()), recorder


class TestUpgradeParsing:
    def test_building_name_without_level_badge(self):
        assert extract_building_name(BUILD_PAGE) == "Main Building"
        assert extract_building_name("<html></html>") == "Building"

    def test_green_button_url_unescaped(self):
        assert extract_upgrade_path(BUILD_PAGE) == "/dorf2.php?id=26&gid=15&action=build&checksum=ab12"

    def test_legacy_checksum_link(self):
        page = '<a class="build" href="build.php?id=26&amp;a=15&amp;c=abc123">x</a>'
        assert extract_upgrade_path(page) == "build.php?id=26&a=15&c=abc123"

    def test_absent(self):
        assert extract_upgrade_path(BUILD_PAGE_NO_BUTTON) is None


class TestUpgradeBuilding:
    def test_replays_upgrade_link(self):
        router = (
            Router()
            .get("/build.php?id=26", html(BUILD_PAGE))
            .get("/dorf2.php", html('<html><div class="buildingList">queued</div></html>'))
        )
        outcome, recorder = _run(router, lambda p, bus: BuildScreen(p, bus).upgrade(101, 26))

        assert outcome.success
        assert router.urls() == [
            f"{BASE_URL}/build.php?id=26&newdid=101",
            f"{BASE_URL}/dorf2.php?id=26&gid=15&action=build&checksum=ab12&newdid=101",
        ]
        assert router.requests[1].headers["Referer"] == f"{BASE_URL}/build.php?id=26&newdid=101"
        [event] = recorder.of(UpgradeResult)
        assert (event.village_id, event.slot_id, event.success) == (101, 26, True)
        assert event.building_name == "Main Building"

    def test_missing_link_fails_without_second_request(self):
        router = Router().get("/build.php", html(BUILD_PAGE_NO_BUTTON))
        outcome, recorder = _run(router, lambda p, bus: BuildScreen(p, bus).upgrade(101, 26))

        assert not outcome.success
        assert "upgrade link not found" in outcome.message
        assert len(router.requests) == 1
        assert recorder.of(UpgradeResult)[0].success is False

    def test_insufficient_resources_after_click(self):
        router = (
            Router()
            .get("/build.php", html(BUILD_PAGE))
            .get("/dorf2.php", html("<html><span class='notEnough'>x</span></html>"))
        )
        outcome, _ = _run(router, lambda p, bus: BuildScreen(p, bus).upgrade(101, 26))
        assert not outcome.success
        assert outcome.message == "insufficient resources"

    def test_login_page_signals_session_expiry(self):
        router = Router().get("/build.php", html(LOGIN_PAGE))
        outcome, recorder = _run(router, lambda p, bus: BuildScreen(p, bus).upgrade(101, 26))

        assert outcome.session_expired
        assert recorder.of(SessionExpired)
        assert recorder.of(UpgradeResult)[0].success is False


class TestTrainingParsing:
    def test_max_count(self):
        assert extract_max_trainable(BARRACKS_PAGE, "t1") == 12
        assert extract_max_trainable(BARRACKS_PAGE, "t2") == 0
        assert extract_max_trainable(BARRACKS_PAGE, "t9") == 0

    def test_max_count_from_link_text(self):
        page = '<input type="text" name="t3" value="0" /><a href="#" class="max">7</a>'
        assert extract_max_trainable(page, "t3") == 7

    def test_hidden_fields_both_orders(self):
        assert extract_hidden_fields(BARRACKS_PAGE) == {"z": "abc123", "gid": "19"}


class TestTrainTroops:
    def test_posts_max_amount(self):
        router = (
            Router()
            .get("/build.php?id=30", html(BARRACKS_PAGE))
            .post("/build.php", html('<html><table class="under_progress"></table></html>'))
        )
        outcome, recorder = _run(
            router,
            lambda p, bus: BarracksScreen(p, bus).train(101, 30, "t1", "Legionnaire", MilitaryBuilding.BARRACKS),
        )

        assert outcome.success
        post = router.requests[1]
        assert str(post.url) == f"{BASE_URL}/build.php?id=30&gid=19&newdid=101"
        assert dict(parse_qsl(post.content.decode())) == {
            "z": "abc123",
            "gid": "19",
            "t1": "12",
            "s1": "ok",
        }
        [event] = recorder.of(TrainingResult)
        assert (event.building, event.troop_id, event.count, event.success) == ("barracks", "t1", 12, True)

    def test_nothing_trainable_is_silent(self):
        router = Router().get("/build.php", html(BARRACKS_PAGE))
        outcome, recorder = _run(router, lambda p, bus: BarracksScreen(p, bus).train(101, 30, "t2"))

        assert outcome.skipped
        assert not outcome.success
        assert len(router.requests) == 1
        assert recorder.of(TrainingResult) == []

    def test_insufficient_resources(self):
        router = (
            Router()
            .get("/build.php", html(BARRACKS_PAGE))
            .post("/build.php", html("<html><div class='notEnough'></div></html>"))
        )
        outcome, recorder = _run(router, lambda p, bus: BarracksScreen(p, bus).train(101, 30, "t1"))
        assert not outcome.success
        assert recorder.of(TrainingResult)[0].count == 0

    def test_missing_training_form_fails_without_post(self):
        page = BARRACKS_PAGE.replace('<form method="POST" name="snd" action="/build.php?id=30&amp;gid=19">', "<div>")
        router = Router().get("/build.php", html(page))
        outcome, recorder = _run(router, lambda p, bus: BarracksScreen(p, bus).train(101, 30, "t1"))

        assert not outcome.success
        assert not outcome.skipped
        assert outcome.message == "training form not found on slot 30"
        assert len(router.requests) == 1
        [event] = recorder.of(TrainingResult)
        assert (event.success, event.count) == (False, 0)
