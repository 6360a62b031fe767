"""Timed interview session state machine."""

from .schema import SessionSnapshot, SessionStatus
from .service import (
    DEFAULT_PLACEHOLDER,
    InterviewSession,
    InvalidTransitionError,
    QuestionResolutionError,
    SessionCallbacks,
)

__all__ = [
    "DEFAULT_PLACEHOLDER",
    "InterviewSession",
    "InvalidTransitionError",
    "QuestionResolutionError",
    "SessionCallbacks",
    "SessionSnapshot",
    "SessionStatus",
]
