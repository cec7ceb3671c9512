"""Authentication lifecycle: saved cookies, login, session validation."""

from __future__ import annotations

import asyncio
import time
from typing import Callable

from travbot.core.config import AccountConfig
from travbot.core.events import EventBus, SessionHealthChecked
from travbot.core.exceptions import AuthenticationError, NetworkError
from travbot.core.logging import get_logger
from travbot.core.request_pipeline import RequestPipeline
from travbot.core.session_store import SessionStore
from travbot.game.screens.login import LoginScreen

log = get_logger("session")


class SessionManager:
    """Owns the question "are we logged in?" for the whole application.

    Saved cookies are tried first; a login is only performed when there is
    no usable session. Re-authentication requests that arrive while a login
    is already running share that login instead of starting another one.
    """

    def __init__(
        self,
        pipeline: RequestPipeline,
        store: SessionStore,
        login_screen: LoginScreen,
        account: AccountConfig,
        bus: EventBus,
        relogin_debounce: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pipeline = pipeline
        self.store = store
        self.login_screen = login_screen
        self.account = account
        self.bus = bus
        self.relogin_debounce = relogin_debounce
        self._clock = clock
        self._last_login = 0.0
        self._login_task: asyncio.Task[bool] | None = None

    def restore(self) -> bool:
        """Load saved cookies into the live client. True if a session was restored."""
        if not self.store.load():
            return False
        self.pipeline.reload_cookies()
        log.info("session_restored")
        return True

    async def login(self) -> bool:
        if not self.account.username or not self.account.password:
            raise AuthenticationError("no credentials configured")
        outcome = await self.login_screen.login(self.account.username, self.account.password)
        if outcome.success:
            self._last_login = self._clock()
            log.info("session_established")
        return outcome.success

    async def validate_session(self) -> bool:
        """Request an authenticated page out of band."""
        try:
            valid = await self.store.check_health(self.pipeline)
        except NetworkError as e:
            log.error("session_validation_failed", error=str(e))
            valid = False
        self.bus.emit(SessionHealthChecked(valid=valid))
        return valid

    async def refresh_session(self) -> bool:
        """Re-login after expiry; concurrent callers await the same attempt."""
        if self._last_login and self._clock() - self._last_login < self.relogin_debounce:
            log.debug("session_refresh_debounced")
            return True
        if self._login_task is None or self._login_task.done():
            log.info("session_refresh_starting")
            self.store.clear()
            self._login_task = asyncio.ensure_future(self.login())
        try:
            return await asyncio.shield(self._login_task)
        except (AuthenticationError, NetworkError) as e:
            log.error("session_refresh_failed", error=str(e))
            return False

    async def ensure_session(self) -> bool:
        """Restore saved cookies, falling back to a fresh login."""
        if self.restore():
            return True
        try:
            return await self.login()
        except AuthenticationError as e:
            log.error("login_impossible", error=str(e))
            return False
