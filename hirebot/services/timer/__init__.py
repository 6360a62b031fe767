"""Per-question countdown clock."""

from .service import TIME_LIMITS_MS, TimerEngine, TimerHandle, format_remaining, time_limit_for

__all__ = ["TIME_LIMITS_MS", "TimerEngine", "TimerHandle", "format_remaining", "time_limit_for"]
