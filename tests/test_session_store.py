"""Tests for cookie persistence and session health classification."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from travbot.core.config import SessionConfig
from travbot.core.request_pipeline import RequestPipeline
from travbot.core.session_store import SessionStore, classify_health, is_login_page

from helpers import BASE_URL, FAST, LOGIN_PAGE, Router, dorf1_page, html

HOST = "game.test"


class Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _jar(**cookies: str) -> httpx.Cookies:
    jar = httpx.Cookies()
    for name, value in cookies.items():
        jar.set(name, value, domain=HOST, path="/")
    return jar


class TestPersistence:
    def setup_method(self):
        self.clock = Clock()

    def _store(self, tmp_path, **kwargs) -> SessionStore:
        return SessionStore(tmp_path / "cookies.json", HOST, SessionConfig(**kwargs), clock=self.clock)

    def test_persist_writes_expiry_and_cookies(self, tmp_path):
        store = self._store(tmp_path)
        assert store.persist(_jar(JWT="tok", lang="en"))

        data = json.loads((tmp_path / "cookies.json").read_text())
        assert {c["name"] for c in data["cookies"]} == {"JWT", "lang"}
        assert data["expiry"] == int(self.clock.now + 20 * 3600)
        assert "savedAt" in data

    def test_no_expiry_without_auth_cookie(self, tmp_path):
        store = self._store(tmp_path)
        store.persist(_jar(lang="en"))
        data = json.loads((tmp_path / "cookies.json").read_text())
        assert data["expiry"] == 0

    def test_load_round_trip(self, tmp_path):
        self._store(tmp_path).persist(_jar(JWT="tok"))
        store = self._store(tmp_path)
        assert store.load()
        jar = httpx.Cookies()
        store.apply(jar)
        assert jar.get("JWT") == "tok"

    def test_load_rejects_missing_auth_cookie(self, tmp_path):
        self._store(tmp_path).persist(_jar(lang="en"))
        assert not self._store(tmp_path).load()

    def test_load_rejects_expired(self, tmp_path):
        self._store(tmp_path).persist(_jar(JWT="tok"))
        self.clock.now += 21 * 3600
        assert not self._store(tmp_path).load()

    def test_load_missing_or_corrupt_file(self, tmp_path):
        store = self._store(tmp_path)
        assert not store.load()
        (tmp_path / "cookies.json").write_text("{not json")
        assert not store.load()

    @pytest.mark.parametrize(
        "content",
        [
            [{"name": "JWT", "value": "tok"}],
            {"cookies": None},
            {"cookies": [{"name": "JWT", "value": "tok"}], "expiry": "tomorrow"},
            {"cookies": ["JWT=tok"]},
        ],
    )
    def test_load_rejects_malformed_shapes(self, tmp_path, content):
        (tmp_path / "cookies.json").write_text(json.dumps(content))
        store = self._store(tmp_path)
        assert not store.load()
        assert store.state.auth_token is None

    def test_foreign_domain_rehomed(self, tmp_path):
        (tmp_path / "cookies.json").write_text(
            json.dumps(
                {
                    "cookies": [
                        {"name": "JWT", "value": "tok", "domain": "ts9.other.example", "path": "/"},
                        {"name": "lang", "value": "en", "domain": ".test", "path": "/"},
                    ],
                    "expiry": int(self.clock.now + 60),
                }
            )
        )
        store = self._store(tmp_path)
        assert store.load()
        domains = {c["name"]: c["domain"] for c in store.state.cookies}
        assert domains == {"JWT": HOST, "lang": ".test"}

    def test_maybe_persist_only_on_change_or_interval(self, tmp_path):
        store = self._store(tmp_path, persist_interval=300)
        assert store.persist(_jar(JWT="tok"))
        assert not store.maybe_persist(_jar(JWT="tok"))
        assert store.maybe_persist(_jar(JWT="rotated"))
        self.clock.now += 301
        assert store.maybe_persist(_jar(JWT="rotated"))

    def test_clear_removes_file(self, tmp_path):
        store = self._store(tmp_path)
        store.persist(_jar(JWT="tok"))
        store.clear()
        assert not (tmp_path / "cookies.json").exists()
        assert store.state.auth_token is None


class TestHealth:
    def test_classification(self):
        assert is_login_page(LOGIN_PAGE)
        assert not classify_health(LOGIN_PAGE)
        assert classify_health(dorf1_page([(1, "A")], "A"))
        assert not classify_health("<html>maintenance</html>")

    def test_health_check_request(self, tmp_path):
        router = Router().get("/dorf1.php", html(dorf1_page([(1, "A")], "A")), html(LOGIN_PAGE))
        store = SessionStore(tmp_path / "cookies.json", HOST)

        async def go():
            pipeline = RequestPipeline(BASE_URL, FAST, session_store=store, transport=router.transport())
            pipeline.start()
            try:
                return [await store.check_health(pipeline), await store.check_health(pipeline)]
            finally:
                await pipeline.stop()

        assert asyncio.run(go()) == [True, False]
        assert all("dorf1.php" in url for url in router.urls())
