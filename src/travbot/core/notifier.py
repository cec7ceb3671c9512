"""Telegram alerts for events that need a human."""

from __future__ import annotations

import time
from typing import Callable

import httpx

from travbot.core.config import TelegramConfig
from travbot.core.events import (
    EventBus,
    FarmDispatchResult,
    IncomingAttacksReported,
    LoginFailed,
    SessionExpired,
)
from travbot.core.logging import get_logger

log = get_logger("notifier")

TELEGRAM_API = "https://api.telegram.org"


class TelegramNotifier:
    """Sends one message per alert category at most every ``alert_cooldown`` seconds.

    Delivery failures are logged and dropped; alerts never interrupt the bot.
    """

    def __init__(
        self,
        config: TelegramConfig,
        profile: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.profile = profile
        self._transport = transport
        self._clock = clock
        self._last_sent: dict[str, float] = {}

    @property
    def enabled(self) -> bool:
        return bool(self.config.bot_token and self.config.chat_id)

    def subscribe(self, bus: EventBus) -> None:
        bus.subscribe(LoginFailed, self.on_login_failed)
        bus.subscribe(SessionExpired, self.on_session_expired)
        bus.subscribe(FarmDispatchResult, self.on_farm_result)
        bus.subscribe(IncomingAttacksReported, self.on_attacks)

    async def on_login_failed(self, event: LoginFailed) -> None:
        await self.alert("login", f"Login failed\nReason: {event.reason}")

    async def on_session_expired(self, event: SessionExpired) -> None:
        await self.alert("session", f"Session expired\n{event.reason}")

    async def on_farm_result(self, event: FarmDispatchResult) -> None:
        if event.success:
            return
        await self.alert(
            f"farm:{event.list_id}",
            f"Farm list {event.list_id} failed\nVillage: {event.village_id}\n{event.message}",
        )

    async def on_attacks(self, event: IncomingAttacksReported) -> None:
        report = event.report
        if not report.total:
            return
        lines = [f"Incoming attacks: {report.total} ({report.confidence})", f"Village: {report.village_id}"]
        for attack in report.attacks[:10]:
            lines.append(f"- {attack.kind} from {attack.origin or '?'} in {attack.arrival_seconds}s")
        await self.alert(f"attacks:{report.village_id}:{report.confidence}", "\n".join(lines))

    async def alert(self, category: str, message: str) -> bool:
        now = self._clock()
        last = self._last_sent.get(category, 0.0)
        if last and now - last < self.config.alert_cooldown:
            log.debug(
                "telegram_cooldown",
                category=category,
                remaining=round(self.config.alert_cooldown - (now - last)),
            )
            return False
        self._last_sent[category] = now
        if self.profile:
            message = f"[{self.profile}] {message}"
        return await self.send(message)

    async def send(self, message: str) -> bool:
        """Send a Telegram message via the Bot API. Fails silently."""
        if not self.enabled:
            log.debug("telegram_disabled", reason="no token or chat_id")
            return False

        url = f"{TELEGRAM_API}/bot{self.config.bot_token}/sendMessage"
        payload = {"chat_id": self.config.chat_id, "text": message}
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            log.warning("telegram_send_failed", error=str(e))
            return False
        log.info("telegram_sent")
        return True
