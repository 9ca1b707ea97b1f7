"""Single-slot, generation-guarded response timers for the SLA ladder.

Each conversation owns at most one pending timer. Arming draws a fresh value
from a monotonic counter and cancelling forgets the conversation's entry, so a
timer that already woke up but lost the race against a newer arm/cancel sees a
stale generation and does nothing. A handler that has started is never
cancelled mid-flight; it checks the generation before re-arming.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from .models import TimerMode

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TimerSlot:
    conversation_id: str
    generation: int
    mode: TimerMode
    stage: int
    anchor: datetime
    delay_seconds: float


TimerHandler = Callable[[TimerSlot], Awaitable[None]]


class ResponseTimers:
    def __init__(
        self,
        *,
        timeout_seconds: float,
        redirect_multiplier: float,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._redirect_multiplier = redirect_multiplier
        self._clock = clock
        self._handler: TimerHandler | None = None
        self._counter = itertools.count(1)
        self._generations: dict[str, int] = {}
        self._firing: set[asyncio.Task[None]] = set()
        self._slots: dict[str, TimerSlot] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    @property
    def redirect_seconds(self) -> float:
        return self._timeout_seconds * self._redirect_multiplier

    def bind(self, handler: TimerHandler) -> None:
        self._handler = handler

    def delay_for(self, *, stage: int, anchor: datetime) -> float:
        if stage >= 2:
            return self.redirect_seconds
        elapsed = (self._clock() - anchor).total_seconds()
        return max(0.0, self._timeout_seconds - elapsed)

    def arm(self, conversation_id: str, mode: TimerMode, anchor: datetime, stage: int = 1) -> TimerSlot:
        self._stop_task(conversation_id)
        generation = next(self._counter)
        self._generations[conversation_id] = generation
        slot = TimerSlot(
            conversation_id=conversation_id,
            generation=generation,
            mode=mode,
            stage=stage,
            anchor=anchor,
            delay_seconds=self.delay_for(stage=stage, anchor=anchor),
        )
        self._slots[conversation_id] = slot
        self._tasks[conversation_id] = asyncio.get_running_loop().create_task(self._run(slot))
        logger.debug(
            "armed %s timer stage %s for %s in %.3fs", mode, stage, conversation_id, slot.delay_seconds
        )
        return slot

    def cancel(self, conversation_id: str) -> bool:
        had_slot = self._slots.pop(conversation_id, None) is not None
        self._generations.pop(conversation_id, None)
        self._stop_task(conversation_id)
        return had_slot

    def cancel_all(self) -> None:
        for conversation_id in list(self._slots):
            self.cancel(conversation_id)
        for task in list(self._firing):
            task.cancel()

    def slot(self, conversation_id: str) -> TimerSlot | None:
        return self._slots.get(conversation_id)

    def active_count(self) -> int:
        return len(self._slots)

    def is_current(self, slot: TimerSlot) -> bool:
        return self._generations.get(slot.conversation_id) == slot.generation

    def _stop_task(self, conversation_id: str) -> None:
        task = self._tasks.pop(conversation_id, None)
        if task is None or task.done():
            return
        # Handlers already running finish; the generation check keeps them from re-arming.
        if task is asyncio.current_task() or task in self._firing:
            return
        task.cancel()

    async def _run(self, slot: TimerSlot) -> None:
        await asyncio.sleep(slot.delay_seconds)
        if not self.is_current(slot):
            return
        handler = self._handler
        task = asyncio.current_task()
        if task is not None:
            self._firing.add(task)
        try:
            if handler is not None:
                await handler(slot)
        except Exception:
            logger.exception(
                "response timer handler failed for %s (%s stage %s)", slot.conversation_id, slot.mode, slot.stage
            )
        finally:
            if task is not None:
                self._firing.discard(task)
            if self.is_current(slot):
                self._slots.pop(slot.conversation_id, None)
                self._tasks.pop(slot.conversation_id, None)
                self._generations.pop(slot.conversation_id, None)
