"""Per-session event timeline."""

from .schema import TimelinePage, TimelineSummary
from .service import TIMELINE_KINDS, SessionTimeline

__all__ = ["TIMELINE_KINDS", "SessionTimeline", "TimelinePage", "TimelineSummary"]
