"""Shared fakes for the test suites: a routed mock transport and page builders."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx

from travbot.core.config import PipelineConfig
from travbot.core.request_pipeline import RequestPipeline

BASE_URL = "https://game.test"

FAST = PipelineConfig(delay_range_ms=(0, 0), backoff_base=0.0)

Responder = httpx.Response | Exception | Callable[[httpx.Request], httpx.Response]


class Router:
    """Mock server: the first route whose method matches and whose fragment
    occurs in the URL answers. Each route replays its responses in order and
    repeats the last one."""

    def __init__(self) -> None:
        self.routes: list[tuple[str, str, list[Responder]]] = []
        self.requests: list[httpx.Request] = []

    def add(self, method: str, fragment: str, *responses: Responder) -> Router:
        self.routes.append((method, fragment, list(responses)))
        return self

    def get(self, fragment: str, *responses: Responder) -> Router:
        return self.add("GET", fragment, *responses)

    def post(self, fragment: str, *responses: Responder) -> Router:
        return self.add("POST", fragment, *responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        for method, fragment, responses in self.routes:
            if method != request.method or fragment not in url:
                continue
            responder = responses.pop(0) if len(responses) > 1 else responses[0]
            if isinstance(responder, Exception):
                raise responder
            if callable(responder) and not isinstance(responder, httpx.Response):
                return responder(request)
            return responder
        return httpx.Response(404, text="not found")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def urls(self, method: str | None = None) -> list[str]:
        return [str(r.url) for r in self.requests if method is None or r.method == method]


def html(body: str, status: int = 200, **kwargs: Any) -> httpx.Response:
    return httpx.Response(status, text=body, headers={"content-type": "text/html; charset=utf-8"}, **kwargs)


def json_response(data: Any, status: int = 200, **kwargs: Any) -> httpx.Response:
    return httpx.Response(status, json=data, **kwargs)


def make_pipeline(router: Router, config: PipelineConfig = FAST, **kwargs: Any) -> RequestPipeline:
    return RequestPipeline(BASE_URL, config, transport=router.transport(), **kwargs)


async def no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Page builders
# ---------------------------------------------------------------------------


def _num(value: int) -> str:
    return f"&#x202d;{value:,}&#x202c;".replace(",", ".")


def dorf1_page(
    villages: list[tuple[int, str]],
    active: str,
    resources: tuple[int, int, int, int] = (1000, 1000, 1000, 1000),
    fields: list[tuple[int, int, int]] = ((1, 1, 3), (2, 4, 2)),
    queue: list[tuple[str, int, str]] = (),
) -> str:
    """dorf1 with an embedded village list, resources, fields (slot, gid, level)
    and construction queue entries (name, level, HH:MM:SS)."""
    village_list = json.dumps({"villageList": [{"id": vid, "name": name} for vid, name in villages]})
    lumber, clay, iron, crop = resources
    field_html = "".join(
        f'<a href="/build.php?id={slot}" class="resourceField gid{gid} buildingSlot{slot} level{level}" '
        f'data-aid="{slot}" data-gid="{gid}" title="Field {slot}&lt;span"></a>'
        for slot, gid, level in fields
    )
    queue_html = "".join(
        f'<li><div class="name">{name} <span class="lvl">Level {level}</span></div>'
        f'<div class="buildDuration"><span class="timer" value="1">{remaining}</span></div></li>'
        for name, level, remaining in queue
    )
    return (
        f"<html><script>var data = {village_list};</script>"
        f'<input class="villageName" value="{active}">'
        f'<div id="l1" class="value">{_num(lumber)}</div>'
        f'<div id="l2" class="value">{_num(clay)}</div>'
        f'<div id="l3" class="value">{_num(iron)}</div>'
        f'<div id="l4" class="value">{_num(crop)}</div>'
        f"{field_html}<ul>{queue_html}</ul>"
        '<a href="/dorf2.php">Village</a></html>'
    )


def dorf2_page(buildings: list[tuple[int, int, str, int]]) -> str:
    """Village center with (slot, gid, name, level) entries."""
    slots = "".join(
        f'<div class="buildingSlot a{slot} g{gid} roman" data-aid="{slot}" data-gid="{gid}" '
        f'data-name="{name}"><a href="/build.php?id={slot}" class="level" data-level="{level}">'
        f'<div class="labelLayer">{level}</div></a></div>'
        for slot, gid, name, level in buildings
    )
    return f'<html><div id="villageContent">{slots}</div><a href="/dorf1.php">x</a></html>'


def farm_tab_page(lists: list[dict[str, Any]]) -> str:
    state = json.dumps({"farmLists": lists})
    return f"<html><script>window.farmListState = {state};</script></html>"


LOGIN_PAGE = '<html><form id="loginForm" name="login"><input name="name"></form></html>'
