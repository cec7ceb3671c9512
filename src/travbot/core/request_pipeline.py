"""Single-flight, paced HTTP request queue.

Every request to the game server goes through one ``RequestPipeline``. Items
are processed strictly one at a time: each waits a jittered delay, is sent with
the session's browser identity and the previous URL as referer, and its result
is either handed to an awaiting action (``submit``) or to the fetch-cycle
handler (``enqueue``).

Per item: QUEUED -> DELAYED -> IN_FLIGHT -> SUCCEEDED | RETRY_SCHEDULED | FAILED
"""

from __future__ import annotations

import asyncio
import gzip
import json
import re
import zlib
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx

from travbot.core.config import PipelineConfig
from travbot.core.exceptions import NetworkError
from travbot.core.extractors import PageSpec
from travbot.core.humanizer import Humanizer
from travbot.core.logging import get_logger

if TYPE_CHECKING:
    from travbot.core.session_store import SessionStore

log = get_logger("pipeline")

_NEWDID = re.compile(r"newdid=\d*")

RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,  # connect refused, read/write errors, connection reset
    httpx.RemoteProtocolError,
)


class RequestKind(StrEnum):
    FETCH = "fetch"
    LOGIN = "login"
    HEALTH = "health"
    UPGRADE = "upgrade"
    TRAIN = "train"
    FARM = "farm"
    ATTACKS = "attacks"

    @property
    def is_action(self) -> bool:
        return self is not RequestKind.FETCH


class ItemState(StrEnum):
    QUEUED = "queued"
    DELAYED = "delayed"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


@dataclass(eq=False)
class PendingRequest:
    page_name: str
    url: str
    village_id: int = -1
    village_name: str = ""
    page_spec: PageSpec | None = None
    is_village_list: bool = False
    kind: RequestKind = RequestKind.FETCH
    step: str = ""
    method: str = "GET"
    data: dict[str, str] | None = None
    json_body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    referer: str | None = None
    retry_key: str = ""
    state: ItemState = ItemState.QUEUED
    attempt: int = 0
    backoff: float = 0.0
    future: asyncio.Future | None = field(default=None, repr=False)

    @property
    def operation_key(self) -> str:
        return self.retry_key or f"{self.method} {self.url}"


@dataclass
class PipelineResponse:
    request: PendingRequest
    status_code: int
    text: str
    url: str
    headers: httpx.Headers = field(default_factory=httpx.Headers)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any | None:
        try:
            return json.loads(self.text)
        except (json.JSONDecodeError, ValueError):
            return None


class RetryTracker:
    """Attempt counters per logical operation key."""

    def __init__(self) -> None:
        self._attempts: dict[str, int] = {}

    def get(self, key: str) -> int:
        return self._attempts.get(key, 0)

    def increment(self, key: str) -> int:
        self._attempts[key] = self._attempts.get(key, 0) + 1
        return self._attempts[key]

    def reset(self, key: str) -> None:
        self._attempts.pop(key, None)

    def __len__(self) -> int:
        return len(self._attempts)


def decode_body(response: httpx.Response) -> str:
    """Response text, inflating bodies the server compressed without saying so."""
    content = response.content
    if content[:2] == b"\x1f\x8b":
        try:
            content = gzip.decompress(content)
        except (OSError, EOFError, zlib.error):
            log.debug("gzip_decode_failed", url=str(response.url))
    encoding = response.encoding or "utf-8"
    try:
        return content.decode(encoding, errors="replace")
    except LookupError:
        return content.decode("utf-8", errors="replace")


FetchHandler = Callable[[PipelineResponse], None]
FetchErrorHandler = Callable[[PendingRequest, Exception], None]
ProgressHandler = Callable[[int, int, str], None]


class RequestPipeline:
    """Owns the HTTP client, the request queue and the retry counters."""

    def __init__(
        self,
        base_url: str,
        config: PipelineConfig | None = None,
        session_store: SessionStore | None = None,
        humanizer: Humanizer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.config = config or PipelineConfig()
        self.session_store = session_store
        self.humanizer = humanizer or Humanizer(self.config)
        self._transport = transport
        self._timeout = timeout
        self._sleep = sleep

        self._queue: deque[PendingRequest] = deque()
        self._wakeup = asyncio.Event()
        self._worker: asyncio.Task | None = None

        self.retries = RetryTracker()
        self.consecutive_errors = 0
        self.resets = 0
        self.completed = 0
        self.total = 0
        self.in_flight: PendingRequest | None = None
        self.last_url: str | None = None

        self.on_fetch_response: FetchHandler | None = None
        self.on_fetch_error: FetchErrorHandler | None = None
        self.on_progress: ProgressHandler | None = None

        self.client = self._new_client()

    # ------------------------------------------------------------------
    # Client lifecycle
    # ------------------------------------------------------------------

    def _new_client(self, cookies: httpx.Cookies | None = None) -> httpx.AsyncClient:
        client = httpx.AsyncClient(
            headers=self.humanizer.headers(),
            cookies=cookies,
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
        )
        if cookies is None and self.session_store is not None:
            self.session_store.apply(client.cookies)
        return client

    @property
    def cookies(self) -> httpx.Cookies:
        return self.client.cookies

    def reload_cookies(self) -> None:
        """Re-apply the session store's cookies to the live client."""
        if self.session_store is not None:
            self.client.cookies.clear()
            self.session_store.apply(self.client.cookies)

    async def reset_connection(self) -> None:
        """Replace the client (fresh connection pool), keeping cookies."""
        old = self.client
        cookies = httpx.Cookies(old.cookies)
        self.humanizer.rotate_identity()
        self.client = self._new_client(cookies=cookies)
        self.resets += 1
        self.consecutive_errors = 0
        log.warning("connection_reset", resets=self.resets)
        await old.aclose()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="request-pipeline")

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        for request in self._queue:
            if request.future is not None and not request.future.done():
                request.future.cancel()
        self._queue.clear()
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def url_for(self, path: str, village_id: int | None = None) -> str:
        """Absolute URL for ``path``, qualified with the village selector."""
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        if village_id is None or village_id <= 0:
            return url
        if "newdid=" in url:
            return _NEWDID.sub(f"newdid={village_id}", url)
        return url + ("&" if "?" in url else "?") + f"newdid={village_id}"

    def enqueue(self, request: PendingRequest) -> None:
        """Queue a fetch-cycle request; its result goes to ``on_fetch_response``."""
        request.state = ItemState.QUEUED
        self._queue.append(request)
        if not request.kind.is_action:
            self.total += 1
            self._report_progress(request.page_name)
        self._wakeup.set()

    async def submit(self, request: PendingRequest) -> PipelineResponse:
        """Queue an action request and wait for its response.

        Raises ``NetworkError`` once the retry ceiling is exceeded.
        """
        if not request.kind.is_action:
            raise ValueError("submit() is for action requests; use enqueue() for fetch pages")
        request.future = asyncio.get_running_loop().create_future()
        self.enqueue(request)
        return await request.future

    def pending(self, kind: RequestKind | None = None) -> int:
        if kind is None:
            return len(self._queue)
        return sum(1 for r in self._queue if r.kind is kind)

    def clear_fetch_requests(self) -> int:
        """Drop queued fetch-cycle items; action requests stay."""
        kept = deque(r for r in self._queue if r.kind.is_action)
        dropped = len(self._queue) - len(kept)
        self._queue = kept
        return dropped

    def reset_progress(self) -> None:
        self.completed = 0
        self.total = 0

    @property
    def idle(self) -> bool:
        return not self._queue and self.in_flight is None

    async def _run(self) -> None:
        while True:
            if not self._queue:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            await self.process_next()

    async def run_until_idle(self) -> None:
        """Drain the queue in the current task (no background worker)."""
        while self._queue:
            await self.process_next()

    async def process_next(self) -> None:
        if not self._queue:
            return
        request = self._queue.popleft()
        await self._execute(request)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, request: PendingRequest) -> None:
        request.state = ItemState.DELAYED
        delay = self.humanizer.request_delay() + request.backoff
        request.backoff = 0.0
        if delay > 0:
            await self._sleep(delay)

        if self.in_flight is not None:
            raise RuntimeError("pipeline already has a request in flight")
        request.state = ItemState.IN_FLIGHT
        self.in_flight = request
        try:
            response = await self._send(request)
        except RETRYABLE_ERRORS as e:
            self.in_flight = None
            await self._on_transient(request, f"{type(e).__name__}: {e}")
            return
        except httpx.HTTPError as e:
            self.in_flight = None
            self.retries.reset(request.operation_key)
            self._fail(request, NetworkError(f"{request.page_name}: {e}", request.page_name, request.attempt))
            return
        finally:
            self.in_flight = None

        if response.status_code >= 500:
            await self._on_transient(request, f"HTTP {response.status_code}")
            return
        self._on_success(request, response)

    async def _send(self, request: PendingRequest) -> httpx.Response:
        headers: dict[str, str] = {}
        referer = request.referer if request.referer is not None else self.last_url
        if referer:
            headers["Referer"] = referer
        headers.update(request.headers)
        log.debug(
            "request_sent",
            page=request.page_name,
            method=request.method,
            url=request.url,
            attempt=request.attempt,
        )
        return await self.client.request(
            request.method,
            request.url,
            headers=headers,
            data=request.data,
            json=request.json_body,
        )

    async def _on_transient(self, request: PendingRequest, error: str) -> None:
        self.consecutive_errors += 1
        attempt = self.retries.increment(request.operation_key)
        request.attempt = attempt
        log.warning(
            "request_transient_error",
            page=request.page_name,
            error=error,
            attempt=attempt,
            consecutive=self.consecutive_errors,
        )

        if self.consecutive_errors >= self.config.max_consecutive_errors:
            await self.reset_connection()

        if attempt <= self.config.max_retries:
            request.state = ItemState.RETRY_SCHEDULED
            request.backoff = self.humanizer.backoff_delay(attempt)
            self._queue.appendleft(request)
            return

        self.retries.reset(request.operation_key)
        self._fail(
            request,
            NetworkError(f"{request.page_name}: {error}", request.page_name, attempt),
        )

    def _on_success(self, request: PendingRequest, response: httpx.Response) -> None:
        self.consecutive_errors = 0
        self.retries.reset(request.operation_key)
        self.last_url = str(response.url)
        request.state = ItemState.SUCCEEDED
        if self.session_store is not None:
            self.session_store.maybe_persist(self.client.cookies)

        result = PipelineResponse(
            request=request,
            status_code=response.status_code,
            text=decode_body(response),
            url=str(response.url),
            headers=response.headers,
        )
        log.debug("request_completed", page=request.page_name, status=response.status_code)

        if request.future is not None:
            if not request.future.done():
                request.future.set_result(result)
            return
        if request.kind.is_action:
            log.warning("action_response_without_waiter", page=request.page_name)
            return
        self.completed += 1
        self._report_progress(request.page_name)
        if self.on_fetch_response is not None:
            try:
                self.on_fetch_response(result)
            except Exception as e:
                log.error("fetch_handler_failed", page=request.page_name, error=str(e))

    def _fail(self, request: PendingRequest, error: NetworkError) -> None:
        request.state = ItemState.FAILED
        log.error("request_failed", page=request.page_name, error=str(error), attempts=error.attempts)
        if request.future is not None:
            if not request.future.done():
                request.future.set_exception(error)
            return
        if request.kind.is_action:
            return
        self.completed += 1
        self._report_progress(request.page_name)
        if self.on_fetch_error is not None:
            try:
                self.on_fetch_error(request, error)
            except Exception as e:
                log.error("fetch_error_handler_failed", page=request.page_name, error=str(e))

    def _report_progress(self, page: str) -> None:
        if self.on_progress is not None:
            self.on_progress(self.completed, self.total, page)
