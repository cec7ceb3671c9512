"""Shared machinery for multi-step game actions.

An action is a short chain of pipeline round-trips. Each machine defines a
``StrEnum`` of steps and a typed context dataclass; the step travels with the
request (``PendingRequest.step``) and one ``_advance`` method turns a response
into either the next ``(state, request)`` or a final ``ActionOutcome``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, TypeVar

from travbot.core.events import EventBus, SessionExpired
from travbot.core.exceptions import ExtractionError, NetworkError, SessionExpiredError
from travbot.core.logging import get_logger
from travbot.core.request_pipeline import (
    PendingRequest,
    PipelineResponse,
    RequestKind,
    RequestPipeline,
)
from travbot.core.session_store import is_login_page

log = get_logger("operations")

S = TypeVar("S", bound=StrEnum)
C = TypeVar("C")


@dataclass
class OperationState(Generic[S, C]):
    step: S
    context: C


@dataclass(frozen=True)
class ActionOutcome:
    success: bool
    message: str = ""
    skipped: bool = False
    session_expired: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "", **data: Any) -> ActionOutcome:
        return cls(True, message, data=data)

    @classmethod
    def failed(cls, message: str, **data: Any) -> ActionOutcome:
        return cls(False, message, data=data)


Transition = ActionOutcome | tuple[OperationState, PendingRequest]


class ActionMachine(Generic[S, C]):
    """Runs one operation to completion through the pipeline."""

    kind: RequestKind = RequestKind.FETCH

    def __init__(self, pipeline: RequestPipeline, bus: EventBus) -> None:
        self.pipeline = pipeline
        self.bus = bus

    def _request(self, state: OperationState[S, C], page_name: str, url: str, **kwargs: Any) -> PendingRequest:
        return PendingRequest(
            page_name=page_name,
            url=url,
            kind=self.kind,
            step=str(state.step),
            **kwargs,
        )

    async def _drive(self, state: OperationState[S, C], request: PendingRequest) -> ActionOutcome:
        try:
            while True:
                response = await self.pipeline.submit(request)
                transition = self._advance(state, response)
                if isinstance(transition, ActionOutcome):
                    return transition
                state, request = transition
        except SessionExpiredError as e:
            log.warning("session_expired_during_action", action=self.kind, step=state.step)
            self.bus.emit(SessionExpired(reason=str(e)))
            return ActionOutcome(False, str(e), session_expired=True)
        except NetworkError as e:
            return ActionOutcome.failed(f"network error: {e}")
        except ExtractionError as e:
            return ActionOutcome.failed(str(e))

    def _advance(self, state: OperationState[S, C], response: PipelineResponse) -> Transition:
        raise NotImplementedError

    @staticmethod
    def ensure_logged_in(response: PipelineResponse) -> None:
        if is_login_page(response.text):
            raise SessionExpiredError(f"login page returned for {response.request.page_name}")
