"""Cookie persistence, expiry tracking and session-health probing."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import httpx
from pydantic import BaseModel, Field, ValidationError

from travbot.core.config import SessionConfig
from travbot.core.logging import get_logger
from travbot.core.request_pipeline import PendingRequest, RequestKind, RequestPipeline

log = get_logger("session_store")

LOGIN_MARKERS = ("loginForm", 'name="login"', 'id="loginScene"')
AUTHENTICATED_MARKERS = ("villageList", 'id="l1"', "dorf1.php", "dorf2.php")


def is_login_page(html: str) -> bool:
    return any(marker in html for marker in LOGIN_MARKERS)


def classify_health(html: str) -> bool:
    """True when ``html`` is authenticated game content, False for login pages."""
    if is_login_page(html):
        return False
    return any(marker in html for marker in AUTHENTICATED_MARKERS)


class SavedCookie(BaseModel):
    name: str = ""
    value: str | None = ""
    domain: str = ""
    path: str | None = "/"


class CookieFile(BaseModel):
    """On-disk shape: ``{"cookies": [...], "expiry": epoch, "savedAt": iso}``."""

    cookies: list[SavedCookie] = Field(default_factory=list)
    expiry: float | None = None
    saved_at: str | None = Field(default=None, alias="savedAt")


@dataclass
class SessionState:
    cookies: list[dict[str, str]] = field(default_factory=list)
    auth_token: str | None = None
    last_persisted: float = 0.0
    expiry: float = 0.0


class SessionStore:
    """Owns the on-disk cookie file and decides when it is worth rewriting."""

    def __init__(
        self,
        path: Path,
        host: str,
        config: SessionConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = path
        self.host = host
        self.config = config or SessionConfig()
        self._clock = clock
        self.state = SessionState()

    @property
    def auth_cookie(self) -> str:
        return self.config.auth_cookie

    def _domain_for(self, domain: str) -> str:
        bare = domain.lstrip(".")
        if not bare or not self.host or self.host == bare or self.host.endswith("." + bare):
            return domain
        # cookies saved against another game server are re-homed to ours
        return self.host

    def load(self) -> bool:
        """Load saved cookies. True only if the auth cookie is present and fresh."""
        if not self.path.exists():
            return False
        try:
            saved = CookieFile.model_validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as e:
            log.warning("cookie_file_unreadable", path=str(self.path), error=str(e))
            return False

        cookies = []
        for item in saved.cookies:
            if not item.name:
                continue
            cookies.append({
                "name": item.name,
                "value": item.value or "",
                "domain": self._domain_for(item.domain),
                "path": item.path or "/",
            })
        token = next((c["value"] for c in cookies if c["name"] == self.auth_cookie), None)
        expiry = saved.expiry or 0.0

        if not token:
            log.info("saved_session_without_auth_cookie", path=str(self.path))
            return False
        if expiry and expiry <= self._clock():
            log.info("saved_session_expired", expired_at=expiry)
            return False

        self.state = SessionState(
            cookies=cookies,
            auth_token=token,
            last_persisted=self._clock(),
            expiry=expiry,
        )
        log.info("session_loaded", cookies=len(cookies))
        return True

    def apply(self, jar: httpx.Cookies) -> None:
        """Copy the loaded cookie set into a client's jar."""
        for cookie in self.state.cookies:
            jar.set(cookie["name"], cookie["value"], domain=cookie["domain"], path=cookie["path"])

    def token_from(self, jar: httpx.Cookies) -> str | None:
        for cookie in jar.jar:
            if cookie.name == self.auth_cookie and cookie.value:
                return cookie.value
        return None

    def has_auth_cookie(self, jar: httpx.Cookies) -> bool:
        return self.token_from(jar) is not None

    def capture(self, jar: httpx.Cookies) -> None:
        self.state.cookies = [
            {
                "name": cookie.name,
                "value": cookie.value or "",
                "domain": cookie.domain,
                "path": cookie.path or "/",
            }
            for cookie in jar.jar
        ]

    def maybe_persist(self, jar: httpx.Cookies) -> bool:
        """Persist only when the auth token changed or the interval elapsed."""
        token = self.token_from(jar)
        elapsed = self._clock() - self.state.last_persisted
        if token == self.state.auth_token and elapsed < self.config.persist_interval:
            return False
        return self.persist(jar)

    def persist(self, jar: httpx.Cookies) -> bool:
        self.capture(jar)
        now = self._clock()
        token = self.token_from(jar)
        expiry = now + self.config.token_lifetime_hours * 3600 if token else 0.0
        data = {
            "cookies": self.state.cookies,
            "expiry": int(expiry),
            "savedAt": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            log.warning("cookie_save_failed", path=str(self.path), error=str(e))
            return False
        self.state.auth_token = token
        self.state.last_persisted = now
        self.state.expiry = expiry
        log.debug("session_persisted", cookies=len(self.state.cookies), has_token=bool(token))
        return True

    def clear(self) -> None:
        self.state = SessionState()
        if self.path.exists():
            self.path.unlink()

    async def check_health(self, pipeline: RequestPipeline) -> bool:
        """One out-of-band request for an authenticated page."""
        request = PendingRequest(
            page_name="_health",
            url=f"{pipeline.base_url}/dorf1.php",
            kind=RequestKind.HEALTH,
        )
        response = await pipeline.submit(request)
        valid = response.ok and classify_health(response.text)
        log.info("session_health", valid=valid, status=response.status_code)
        return valid
