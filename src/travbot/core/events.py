"""Engine events and a small in-process event bus.

Components never call into the shell directly; they emit one of the event
dataclasses below and whoever is interested subscribes by type.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

from travbot.core.logging import get_logger
from travbot.models import (
    AttackReport,
    BuildTask,
    FarmListInfo,
    VillageInfo,
    VillageSnapshot,
)

log = get_logger("events")


@dataclass(frozen=True)
class Event:
    pass


# --- fetch cycle -----------------------------------------------------------


@dataclass(frozen=True)
class VillagesDiscovered(Event):
    villages: list[VillageInfo]


@dataclass(frozen=True)
class PageDataUpdated(Event):
    village_id: int
    page: str
    data: dict[str, Any]


@dataclass(frozen=True)
class VillageDataUpdated(Event):
    snapshot: VillageSnapshot


@dataclass(frozen=True)
class FetchCycleCompleted(Event):
    snapshots: dict[int, VillageSnapshot]


@dataclass(frozen=True)
class FetchProgress(Event):
    completed: int
    total: int
    page: str = ""


@dataclass(frozen=True)
class FetchFailed(Event):
    page: str
    error: str


# --- session ---------------------------------------------------------------


@dataclass(frozen=True)
class LoginSucceeded(Event):
    pass


@dataclass(frozen=True)
class LoginFailed(Event):
    reason: str


@dataclass(frozen=True)
class SessionHealthChecked(Event):
    valid: bool


@dataclass(frozen=True)
class SessionExpired(Event):
    reason: str


# --- action outcomes -------------------------------------------------------


@dataclass(frozen=True)
class UpgradeResult(Event):
    village_id: int
    slot_id: int
    success: bool
    message: str
    building_name: str = ""


@dataclass(frozen=True)
class TrainingResult(Event):
    village_id: int
    building: str
    troop_id: str
    success: bool
    message: str
    count: int = 0


@dataclass(frozen=True)
class FarmListsFetched(Event):
    village_id: int
    lists: list[FarmListInfo]


@dataclass(frozen=True)
class FarmDispatchResult(Event):
    village_id: int
    list_id: int
    success: bool
    message: str
    targets: int = 0


@dataclass(frozen=True)
class IncomingAttacksReported(Event):
    report: AttackReport


# --- managers --------------------------------------------------------------


@dataclass(frozen=True)
class BuildTaskStarted(Event):
    task: BuildTask


@dataclass(frozen=True)
class BuildTaskCompleted(Event):
    task: BuildTask
    level: int


@dataclass(frozen=True)
class BuilderBusy(Event):
    village_id: int
    remaining_seconds: int


@dataclass(frozen=True)
class InsufficientResources(Event):
    village_id: int
    task: BuildTask


@dataclass(frozen=True)
class RuleCountdown(Event):
    scheduler: str
    key: Any
    remaining: int


@dataclass(frozen=True)
class RulesChanged(Event):
    scheduler: str


Handler = Callable[[Any], Any]


@dataclass
class EventBus:
    """Synchronous fan-out; coroutine handlers are scheduled as tasks."""

    _handlers: dict[type[Event], list[Handler]] = field(default_factory=lambda: defaultdict(list))
    _tasks: set[asyncio.Task] = field(default_factory=set)

    def subscribe(self, event_type: type[Event], handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def emit(self, event: Event) -> None:
        for event_type in type(event).__mro__:
            for handler in list(self._handlers.get(event_type, ())):
                try:
                    result = handler(event)
                except Exception as e:
                    log.error(
                        "event_handler_failed",
                        event=type(event).__name__,
                        handler=getattr(handler, "__qualname__", repr(handler)),
                        error=str(e),
                    )
                    continue
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for coroutine handlers scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class EventRecorder:
    """Collects emitted events by type."""

    def __init__(self, bus: EventBus, *types: type[Event]) -> None:
        self.events: list[Event] = []
        for event_type in types or (Event,):
            bus.subscribe(event_type, self.events.append)

    def of(self, event_type: type[Event]) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_type)]
