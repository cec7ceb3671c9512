"""Login via the JSON auth endpoint."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from travbot.core.events import EventBus, LoginFailed, LoginSucceeded
from travbot.core.logging import get_logger
from travbot.core.request_pipeline import PipelineResponse, RequestKind, RequestPipeline
from travbot.core.session_store import SessionStore, is_login_page
from travbot.game.operations import ActionMachine, ActionOutcome, OperationState, Transition

log = get_logger("screen.login")

LOGIN_PATH = "/api/v1/auth/login"
VERIFY_PATH = "/dorf1.php"


class LoginStep(StrEnum):
    SUBMIT_CREDENTIALS = "submit_credentials"
    FOLLOW_REDIRECT = "follow_redirect"
    CHECK_SERVER = "check_server"


@dataclass
class LoginContext:
    username: str
    redirect_to: str = ""


class LoginScreen(ActionMachine[LoginStep, LoginContext]):
    """POST credentials, follow the redirect, confirm the auth cookie."""

    kind = RequestKind.LOGIN

    def __init__(self, pipeline: RequestPipeline, bus: EventBus, session_store: SessionStore) -> None:
        super().__init__(pipeline, bus)
        self.session_store = session_store

    async def login(self, username: str, password: str) -> ActionOutcome:
        state = OperationState(LoginStep.SUBMIT_CREDENTIALS, LoginContext(username=username))
        base = self.pipeline.base_url
        request = self._request(
            state,
            "_login",
            f"{base}{LOGIN_PATH}",
            method="POST",
            json_body={
                "name": username,
                "password": password,
                "w": "1440:900",
                "mobileOptimizations": False,
            },
            headers={
                "Accept": "application/json, text/javascript, */*; q=0.01",
                "X-Requested-With": "XMLHttpRequest",
                "Origin": base,
            },
            referer=f"{base}/",
        )
        log.info("login_starting", username=username)
        outcome = await self._drive(state, request)

        if outcome.success:
            self.session_store.persist(self.pipeline.cookies)
            log.info("login_succeeded", username=username, via=outcome.message)
            self.bus.emit(LoginSucceeded())
        else:
            log.error("login_failed", username=username, reason=outcome.message)
            self.bus.emit(LoginFailed(reason=outcome.message))
        return outcome

    def _has_auth_cookie(self) -> bool:
        return self.session_store.has_auth_cookie(self.pipeline.cookies)

    def _advance(self, state: OperationState[LoginStep, LoginContext], response: PipelineResponse) -> Transition:
        step = LoginStep(response.request.step)

        if step is LoginStep.SUBMIT_CREDENTIALS:
            payload = response.json()
            if isinstance(payload, dict) and payload.get("error"):
                error = payload["error"]
                reason = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                return ActionOutcome.failed(reason)
            if response.status_code != 200:
                return ActionOutcome.failed(f"Login failed with status code {response.status_code}")

            redirect = payload.get("redirectTo") if isinstance(payload, dict) else None
            if redirect:
                state.context.redirect_to = redirect
                next_state = OperationState(LoginStep.FOLLOW_REDIRECT, state.context)
                return next_state, self._request(
                    next_state, "_login_redirect", self.pipeline.url_for(_absolute(redirect))
                )
            if self._has_auth_cookie():
                return ActionOutcome.ok("auth_cookie")
            return self._verify(state)

        if step is LoginStep.FOLLOW_REDIRECT:
            if self._has_auth_cookie():
                return ActionOutcome.ok("redirect")
            return self._verify(state)

        # CHECK_SERVER
        if is_login_page(response.text):
            return ActionOutcome.failed("Login failed - server returned the login form")
        if "villageList" in response.text or "dorf1" in response.text:
            return ActionOutcome.ok("server_check")
        if self._has_auth_cookie():
            return ActionOutcome.ok("auth_cookie")
        return ActionOutcome.failed("Could not verify login status")

    def _verify(self, state: OperationState[LoginStep, LoginContext]) -> Transition:
        next_state = OperationState(LoginStep.CHECK_SERVER, state.context)
        return next_state, self._request(
            next_state, "_login_check", f"{self.pipeline.base_url}{VERIFY_PATH}"
        )


def _absolute(path: str) -> str:
    if path.startswith("http") or path.startswith("/"):
        return path
    return "/" + path
