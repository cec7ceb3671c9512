"""Generic per-entity interval scheduler with a persisted rule set.

Every scheduling manager is one ``IntervalScheduler`` parameterised by

* a rule type and its key (village id, ``(village, building)``, list id...)
* a ``RuleCodec`` that turns the rule map into the on-disk JSON and back
* an action callback invoked when a countdown reaches zero
* an interval policy returning the next countdown (None = one-shot)

The scheduler never awaits the action; callbacks only enqueue intent.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, Protocol, TypeVar

from travbot.core.events import EventBus, RuleCountdown, RulesChanged
from travbot.core.logging import get_logger

log = get_logger("scheduler")

K = TypeVar("K")
R = TypeVar("R")


class RuleCodec(Protocol[K, R]):
    def decode(self, data: dict[str, Any]) -> tuple[dict[K, R], bool]:
        """Rules from file data, plus whether a legacy shape was migrated."""

    def encode(self, rules: dict[K, R]) -> dict[str, Any]: ...


class IntervalScheduler(Generic[K, R]):
    def __init__(
        self,
        name: str,
        codec: RuleCodec[K, R],
        action: Callable[[K, R], None],
        interval: Callable[[K, R], float | None],
        path: Path | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.name = name
        self.codec = codec
        self.action = action
        self.interval = interval
        self.path = path
        self.bus = bus
        self.rules: dict[K, R] = {}
        self.countdowns: dict[K, int] = {}
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Rules and persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self.rules, migrated = self.codec.decode(raw)
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning("rules_load_failed", scheduler=self.name, path=str(self.path), error=str(e))
            return
        log.info("rules_loaded", scheduler=self.name, rules=len(self.rules), migrated=migrated)
        if migrated:
            self.save()

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = self.codec.encode(self.rules)
        self.path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    def get(self, key: K) -> R | None:
        return self.rules.get(key)

    def set_rule(self, key: K, rule: R) -> None:
        self.rules[key] = rule
        self._changed()

    def remove_rule(self, key: K) -> R | None:
        self.stop(key)
        rule = self.rules.pop(key, None)
        if rule is not None:
            self._changed()
        return rule

    def _changed(self) -> None:
        self.save()
        if self.bus is not None:
            self.bus.emit(RulesChanged(scheduler=self.name))

    def __contains__(self, key: object) -> bool:
        return key in self.rules

    def __iter__(self) -> Iterator[K]:
        return iter(list(self.rules))

    def __len__(self) -> int:
        return len(self.rules)

    # ------------------------------------------------------------------
    # Countdowns
    # ------------------------------------------------------------------

    def start(self, key: K, seconds: float | None = None) -> None:
        rule = self.rules.get(key)
        if rule is None:
            return
        if seconds is None:
            seconds = self.interval(key, rule)
        if seconds is None:
            return
        self.countdowns[key] = max(int(seconds), 1)
        self._report(key, self.countdowns[key])

    def stop(self, key: K) -> None:
        self.countdowns.pop(key, None)
        self._report(key, 0)

    def remaining(self, key: K) -> int:
        return self.countdowns.get(key, 0)

    def is_running(self, key: K) -> bool:
        return key in self.countdowns

    def tick(self) -> list[K]:
        """Advance every countdown by one second; returns the keys that fired."""
        fired: list[K] = []
        for key in list(self.countdowns):
            if key not in self.countdowns:
                continue
            self.countdowns[key] -= 1
            if self.countdowns[key] > 0:
                self._report(key, self.countdowns[key])
                continue

            rule = self.rules.get(key)
            self.countdowns.pop(key)
            if rule is None:
                continue
            fired.append(key)
            try:
                self.action(key, rule)
            except Exception as e:
                log.error("scheduled_action_failed", scheduler=self.name, key=key, error=str(e))
            # the action may have stopped or replaced this timer
            if key in self.countdowns or key not in self.rules:
                continue
            next_seconds = self.interval(key, self.rules[key])
            if next_seconds is None:
                self._report(key, 0)
            else:
                self.start(key, next_seconds)
        return fired

    def _report(self, key: K, remaining: int) -> None:
        if self.bus is not None:
            self.bus.emit(RuleCountdown(scheduler=self.name, key=key, remaining=remaining))

    async def run(self) -> None:
        while True:
            await asyncio.sleep(1)
            self.tick()

    def start_ticking(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"scheduler-{self.name}")

    async def stop_ticking(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
