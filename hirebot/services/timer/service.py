from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Callable, Dict, Optional, Protocol

logger = logging.getLogger("hirebot.timer")

TickFn = Callable[[int], None]
ExpireFn = Callable[[], None]

TIME_LIMITS_MS: Dict[str, int] = {
    "EASY": 30_000,
    "MEDIUM": 60_000,
    "HARD": 120_000,
}
DEFAULT_TICK_MS = 1000


def time_limit_for(difficulty: Optional[str]) -> int:
    """Countdown length in milliseconds for a difficulty label.

    Labels are matched case-insensitively; anything unknown gets the MEDIUM length.
    """
    key = (difficulty or "").strip().upper()
    return TIME_LIMITS_MS.get(key, TIME_LIMITS_MS["MEDIUM"])


def format_remaining(remaining_ms: int) -> str:
    total_seconds = math.ceil(max(0, remaining_ms) / 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes:02d}:{seconds:02d}"


class _Cancellable(Protocol):
    def cancel(self) -> Any: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> _Cancellable: ...


class TimerHandle:
    __slots__ = ("duration_ms", "remaining_ms", "_on_tick", "_on_expire", "_pending", "_done", "_expired")

    def __init__(self, duration_ms: int, on_tick: TickFn, on_expire: ExpireFn) -> None:
        self.duration_ms = duration_ms
        self.remaining_ms = duration_ms
        self._on_tick = on_tick
        self._on_expire = on_expire
        self._pending: Optional[_Cancellable] = None
        self._done = False
        self._expired = False

    @property
    def active(self) -> bool:
        return not self._done

    @property
    def expired(self) -> bool:
        return self._expired


class TimerEngine:
    """Single-threaded countdown clock driven by a scheduler's ``call_later``.

    The scheduler defaults to the running asyncio loop. Remaining time is kept
    in exact milliseconds and decremented by one tick per callback.
    """

    def __init__(self, *, tick_ms: int = DEFAULT_TICK_MS, scheduler: Optional[Scheduler] = None) -> None:
        if tick_ms <= 0:
            raise ValueError("tick_ms must be positive")
        self.tick_ms = tick_ms
        self._scheduler = scheduler

    def start(self, duration_ms: int, on_tick: TickFn, on_expire: ExpireFn) -> TimerHandle:
        handle = TimerHandle(max(0, int(duration_ms)), on_tick, on_expire)
        if handle.remaining_ms == 0:
            self._schedule(handle, 0)
        else:
            self._schedule(handle, min(self.tick_ms, handle.remaining_ms))
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is None or handle._done:
            return
        handle._done = True
        if handle._pending is not None:
            handle._pending.cancel()
            handle._pending = None

    def _schedule(self, handle: TimerHandle, delay_ms: int) -> None:
        scheduler = self._scheduler or asyncio.get_running_loop()
        handle._pending = scheduler.call_later(delay_ms / 1000.0, self._fire, handle, delay_ms)

    def _fire(self, handle: TimerHandle, step_ms: int) -> None:
        handle._pending = None
        if handle._done:
            return
        handle.remaining_ms = max(0, handle.remaining_ms - step_ms)
        try:
            handle._on_tick(handle.remaining_ms)
        except Exception:
            logger.exception("Timer tick callback failed")
        # The tick callback may have cancelled this handle.
        if handle._done:
            return
        if handle.remaining_ms > 0:
            self._schedule(handle, min(self.tick_ms, handle.remaining_ms))
            return
        handle._done = True
        handle._expired = True
        try:
            handle._on_expire()
        except Exception:
            logger.exception("Timer expiry callback failed")
