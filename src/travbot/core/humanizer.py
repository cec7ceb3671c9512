"""Human-like pacing and client identity for outgoing requests."""

from __future__ import annotations

import random

from travbot.core.config import PipelineConfig
from travbot.core.logging import get_logger

log = get_logger("humanizer")

USER_AGENTS: tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

BROWSER_HEADERS: dict[str, str] = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "DNT": "1",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}


class Humanizer:
    """Generates request delays and keeps a session-sticky browser identity."""

    def __init__(self, config: PipelineConfig, rng: random.Random | None = None) -> None:
        self.config = config
        self._rng = rng or random.Random()
        self.user_agent = self._rng.choice(USER_AGENTS)

    def request_delay(self) -> float:
        """Seconds to wait before sending the next request."""
        low, high = self.config.delay_range_ms
        return self._rng.uniform(low, high) / 1000.0

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff for the given retry attempt (1-based)."""
        return self.config.backoff_base * (2 ** max(attempt - 1, 0))

    def rotate_identity(self) -> str:
        """Pick a different user agent, used after a connection reset."""
        choices = [ua for ua in USER_AGENTS if ua != self.user_agent]
        self.user_agent = self._rng.choice(choices)
        log.debug("identity_rotated", user_agent=self.user_agent[:40])
        return self.user_agent

    def headers(self) -> dict[str, str]:
        return {"User-Agent": self.user_agent, **BROWSER_HEADERS}

    def jittered_interval(
        self, interval_minutes: float, jitter: float = 0.2, floor: float = 30.0
    ) -> int:
        """Interval in seconds with uniform +-jitter, never below floor."""
        base = interval_minutes * 60
        factor = self._rng.uniform(1 - jitter, 1 + jitter)
        return int(max(floor, base * factor))

    def random_cycle_delay(self, delay_range: tuple[int, int]) -> float:
        """Generate a random cycle delay within bounds."""
        low, high = delay_range
        return self._rng.uniform(low, high)
