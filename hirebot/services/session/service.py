from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from hirebot.services.answers.schema import AnswerRecord
from hirebot.services.answers.service import AnswerStore, StorageError
from hirebot.services.questions.schema import Question
from hirebot.services.timer.service import TimerEngine, TimerHandle, format_remaining, time_limit_for

from .schema import SessionSnapshot, SessionStatus

logger = logging.getLogger("hirebot.session")

DEFAULT_PLACEHOLDER = "// Write your code here\n"

QuestionFetcher = Callable[[], Awaitable[Sequence[Question]]]


class QuestionResolutionError(RuntimeError):
    """The question list failed to load or came back empty."""


class InvalidTransitionError(RuntimeError):
    """An operation was invoked in a state that does not accept it."""


@dataclass
class SessionCallbacks:
    on_tick: Optional[Callable[[int], None]] = None
    on_advance: Optional[Callable[[int, AnswerRecord], None]] = None
    on_complete: Optional[Callable[[List[AnswerRecord]], None]] = None
    on_error: Optional[Callable[[str], None]] = None
    on_storage_error: Optional[Callable[[AnswerRecord, str], None]] = None


@dataclass
class SessionState:
    questions: Tuple[Question, ...] = ()
    current_index: int = 0
    time_remaining_ms: int = 0
    draft_answer: str = ""
    completed_answers: List[AnswerRecord] = field(default_factory=list)


class InterviewSession:
    """Timed walk through an ordered question list.

    States run ``loading -> in_progress -> completed``, with ``error`` reachable
    from ``loading`` only. Each question gets its own countdown from the timer
    engine; a manual submit or an expiry finalizes the current draft into an
    ``AnswerRecord`` and advances the index. There is no way back to an earlier
    question.

    Answer persistence is fire-and-forget: the index advances immediately and a
    failed append is reported through ``on_storage_error`` without rolling back.
    """

    def __init__(
        self,
        session_id: str,
        *,
        timer: TimerEngine,
        store: AnswerStore,
        callbacks: Optional[SessionCallbacks] = None,
        strict: bool = False,
        placeholder: str = DEFAULT_PLACEHOLDER,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_id = session_id
        self._timer = timer
        self._store = store
        self._callbacks = callbacks or SessionCallbacks()
        self._strict = strict
        self._placeholder = placeholder
        self._clock = clock
        self._state = SessionState()
        self._status: SessionStatus = "loading"
        self._handle: Optional[TimerHandle] = None
        self._error: Optional[str] = None
        self._storage_errors: List[str] = []
        self._pending: Set[asyncio.Task[None]] = set()
        self._abandoned = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def current_index(self) -> int:
        return self._state.current_index

    @property
    def time_remaining_ms(self) -> int:
        return self._state.time_remaining_ms

    @property
    def draft(self) -> str:
        return self._state.draft_answer

    @property
    def completed_answers(self) -> List[AnswerRecord]:
        return list(self._state.completed_answers)

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    def current_question(self) -> Optional[Question]:
        if self._status != "in_progress":
            return None
        return self._state.questions[self._state.current_index]

    def snapshot(self) -> SessionSnapshot:
        remaining = self._state.time_remaining_ms
        return SessionSnapshot(
            session_id=self.session_id,
            status=self._status,
            current_index=self._state.current_index,
            total_questions=len(self._state.questions),
            question=self.current_question(),
            time_remaining_ms=remaining,
            time_remaining_display=format_remaining(remaining),
            draft=self._state.draft_answer,
            completed_answers=list(self._state.completed_answers),
            error=self._error,
            storage_errors=list(self._storage_errors),
            abandoned=self._abandoned,
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def load(self, questions: Optional[Sequence[Question]]) -> SessionSnapshot:
        if self._status != "loading" or self._abandoned:
            return self._reject("load")
        items = tuple(questions or ())
        if not items:
            return self.fail("No questions found for this test")
        ids = [question.id for question in items]
        if len(set(ids)) != len(ids):
            return self.fail("Question ids must be unique within a session")
        self._state.questions = items
        self._state.current_index = 0
        self._status = "in_progress"
        logger.info("Session %s started with %d questions", self.session_id, len(items))
        self._enter_question()
        return self.snapshot()

    async def resolve(self, fetch: QuestionFetcher) -> SessionSnapshot:
        if self._status != "loading" or self._abandoned:
            return self._reject("resolve")
        try:
            questions = await fetch()
        except Exception as exc:
            logger.exception("Question resolution failed for session %s", self.session_id)
            return self.fail(str(exc) or "Failed to load interview questions")
        return self.load(questions)

    def fail(self, message: str) -> SessionSnapshot:
        if self._status != "loading":
            return self._reject("fail")
        self._status = "error"
        self._error = message
        logger.warning("Session %s failed to start: %s", self.session_id, message)
        self._emit("on_error", message)
        return self.snapshot()

    # ------------------------------------------------------------------
    # In-progress transitions
    # ------------------------------------------------------------------
    def update_draft(self, content: str) -> SessionSnapshot:
        if not self._accepting():
            return self._reject("update_draft")
        self._state.draft_answer = content
        return self.snapshot()

    def submit_current(self, content: str) -> SessionSnapshot:
        if not self._accepting():
            return self._reject("submit_current")
        remaining = self._handle.remaining_ms if self._handle is not None else self._state.time_remaining_ms
        self._finalize(content, remaining)
        return self.snapshot()

    def on_timer_expire(self) -> SessionSnapshot:
        if not self._accepting():
            return self._reject("on_timer_expire")
        self._finalize(self._state.draft_answer, 0)
        return self.snapshot()

    def abandon(self) -> None:
        """Stop the live timer when the host navigates away."""
        self._timer.cancel(self._handle)
        self._handle = None
        if not self._abandoned:
            self._abandoned = True
            logger.info("Session %s abandoned at index %d", self.session_id, self._state.current_index)

    async def flush(self) -> None:
        while self._pending:
            pending = list(self._pending)
            await asyncio.gather(*pending, return_exceptions=True)
            self._pending.difference_update(pending)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _accepting(self) -> bool:
        return self._status == "in_progress" and not self._abandoned

    def _enter_question(self) -> None:
        index = self._state.current_index
        question = self._state.questions[index]
        duration = time_limit_for(question.difficulty)
        self._state.time_remaining_ms = duration
        self._state.draft_answer = question.starter_code or self._placeholder
        self._timer.cancel(self._handle)
        self._handle = self._timer.start(
            duration,
            lambda remaining: self._handle_tick(index, remaining),
            lambda: self._handle_expiry(index),
        )

    def _handle_tick(self, index: int, remaining_ms: int) -> None:
        if index != self._state.current_index or not self._accepting():
            return
        self._state.time_remaining_ms = remaining_ms
        self._emit("on_tick", remaining_ms)

    def _handle_expiry(self, index: int) -> None:
        # A manual submit that got here first already advanced past this index.
        if index != self._state.current_index or not self._accepting():
            logger.debug("Ignoring stale expiry for session %s index %d", self.session_id, index)
            return
        logger.info("Time up on question %d of session %s", index, self.session_id)
        self.on_timer_expire()

    def _finalize(self, content: str, remaining_ms: int) -> None:
        self._timer.cancel(self._handle)
        self._handle = None
        question = self._state.questions[self._state.current_index]
        record = AnswerRecord(
            session_id=self.session_id,
            question_id=question.id,
            content=content,
            submitted_at=self._clock(),
            time_remaining_ms=max(0, int(remaining_ms)),
        )
        self._state.completed_answers.append(record)
        self._state.time_remaining_ms = record.time_remaining_ms
        self._persist(record)
        self._state.current_index += 1
        if self._state.current_index >= len(self._state.questions):
            self._status = "completed"
            self._state.time_remaining_ms = 0
            self._state.draft_answer = ""
            logger.info("Session %s completed with %d answers", self.session_id, len(self._state.completed_answers))
            self._emit("on_complete", list(self._state.completed_answers))
            return
        self._enter_question()
        self._emit("on_advance", self._state.current_index, record)

    def _persist(self, record: AnswerRecord) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._storage_failed(record, "No running event loop to persist the answer")
            return
        task = loop.create_task(self._store.append(record))
        self._pending.add(task)
        task.add_done_callback(lambda done: self._on_persisted(record, done))

    def _on_persisted(self, record: AnswerRecord, task: "asyncio.Task[None]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            self._storage_failed(record, "Answer write was cancelled")
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, StorageError):
            message = str(exc)
        else:
            message = f"{type(exc).__name__}: {exc}"
        self._storage_failed(record, message)

    def _storage_failed(self, record: AnswerRecord, message: str) -> None:
        logger.warning(
            "Answer for question %s in session %s was not stored: %s",
            record.question_id,
            self.session_id,
            message,
        )
        self._storage_errors.append(message)
        self._emit("on_storage_error", record, message)

    def _reject(self, operation: str) -> SessionSnapshot:
        state = "abandoned" if self._abandoned else self._status
        message = f"{operation} is not allowed while the session is {state}"
        if self._strict:
            raise InvalidTransitionError(message)
        logger.warning("Session %s: %s", self.session_id, message)
        return self.snapshot()

    def _emit(self, name: str, *args: Any) -> None:
        fn = getattr(self._callbacks, name)
        if fn is None:
            return
        try:
            fn(*args)
        except Exception:
            logger.exception("Session %s callback %s failed", self.session_id, name)
