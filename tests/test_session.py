from __future__ import annotations

import pytest

from hirebot.services.answers.service import AnswerStore, MemoryAnswerStore, StorageError
from hirebot.services.session.service import (
    DEFAULT_PLACEHOLDER,
    InterviewSession,
    InvalidTransitionError,
    SessionCallbacks,
)
from hirebot.services.timer.service import TimerEngine, time_limit_for


class FailingStore(AnswerStore):
    async def append(self, record):
        raise StorageError("disk full")

    async def all(self):
        return []


class Recorder:
    def __init__(self):
        self.ticks = []
        self.advances = []
        self.completed = []
        self.errors = []
        self.storage_errors = []

    def callbacks(self):
        return SessionCallbacks(
            on_tick=self.ticks.append,
            on_advance=lambda index, record: self.advances.append((index, record.question_id)),
            on_complete=self.completed.append,
            on_error=self.errors.append,
            on_storage_error=lambda record, message: self.storage_errors.append((record.question_id, message)),
        )


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def build(scheduler, recorder):
    def _build(store=None, **kwargs):
        return InterviewSession(
            "s-1",
            timer=TimerEngine(tick_ms=1000, scheduler=scheduler),
            store=store if store is not None else MemoryAnswerStore(),
            callbacks=recorder.callbacks(),
            clock=lambda: 1_700_000_000.0,
            **kwargs,
        )

    return _build


async def test_scenario_submit_then_expire(build, scheduler, make_question, recorder):
    store = MemoryAnswerStore()
    session = build(store)
    session.load([make_question("q1", "EASY"), make_question("q2", "HARD")])
    assert session.status == "in_progress"
    assert session.time_remaining_ms == time_limit_for("EASY")

    scheduler.advance(5000)
    session.submit_current("ans1")

    first = session.completed_answers[0]
    assert (first.question_id, first.content, first.time_remaining_ms) == ("q1", "ans1", 25_000)
    assert session.current_index == 1
    assert session.time_remaining_ms == time_limit_for("HARD")

    session.update_draft("partial work")
    scheduler.advance(time_limit_for("HARD"))

    assert session.status == "completed"
    second = session.completed_answers[1]
    assert (second.question_id, second.content, second.time_remaining_ms) == ("q2", "partial work", 0)
    assert recorder.advances == [(1, "q1")]
    assert len(recorder.completed) == 1

    await session.flush()
    assert [record.question_id for record in await store.all()] == ["q1", "q2"]


async def test_empty_question_list_moves_to_error(build, recorder):
    session = build()
    snapshot = session.load([])

    assert snapshot.status == "error"
    assert snapshot.error
    assert recorder.errors == [snapshot.error]
    assert session.current_question() is None


async def test_duplicate_question_ids_are_rejected(build, make_question):
    session = build()
    session.load([make_question("q1"), make_question("q1")])
    assert session.status == "error"


async def test_storage_failure_does_not_block_progress(build, make_question, recorder):
    session = build(FailingStore())
    session.load([make_question("q1"), make_question("q2")])

    session.submit_current("ans1")
    await session.flush()

    assert session.current_index == 1
    assert len(session.completed_answers) == 1
    assert session.status == "in_progress"
    assert recorder.storage_errors == [("q1", "disk full")]
    assert session.snapshot().storage_errors == ["disk full"]


@pytest.mark.parametrize("pattern", [["submit"] * 3, ["expire"] * 3, ["submit", "expire", "submit"]])
async def test_n_finalizations_complete_the_session(build, scheduler, make_question, pattern):
    session = build()
    session.load([make_question(f"q{i}", "EASY") for i in range(3)])
    indices = [session.current_index]

    for step in pattern:
        if step == "submit":
            session.submit_current("answer")
        else:
            scheduler.advance(time_limit_for("EASY"))
        indices.append(session.current_index)

    assert session.status == "completed"
    assert len(session.completed_answers) == 3
    assert indices == sorted(indices)
    assert session.current_index == 3


async def test_calls_after_completion_change_nothing(build, make_question):
    session = build()
    session.load([make_question("q1")])
    session.submit_current("done")
    before = session.snapshot()

    after_submit = session.submit_current("again")
    after_expire = session.on_timer_expire()
    session.update_draft("late edit")

    assert after_submit == before
    assert after_expire == before
    assert session.snapshot() == before


async def test_strict_mode_raises_on_invalid_transition(build, make_question):
    session = build(strict=True)
    session.load([make_question("q1")])
    session.submit_current("done")

    with pytest.raises(InvalidTransitionError):
        session.submit_current("again")


async def test_update_draft_leaves_time_and_index_alone(build, scheduler, make_question):
    session = build()
    session.load([make_question("q1", "MEDIUM"), make_question("q2")])
    scheduler.advance(3000)
    remaining, index = session.time_remaining_ms, session.current_index

    session.update_draft("print('hi')")

    assert session.time_remaining_ms == remaining
    assert session.current_index == index
    assert session.draft == "print('hi')"


async def test_draft_starts_from_starter_code_or_placeholder(build, make_question):
    session = build()
    session.load([make_question("q1", starter_code="def solve():\n    pass\n"), make_question("q2")])
    assert session.draft == "def solve():\n    pass\n"

    session.submit_current(session.draft)
    assert session.draft == DEFAULT_PLACEHOLDER


async def test_submit_just_before_expiry_cancels_the_old_countdown(build, scheduler, make_question):
    session = build()
    session.load([make_question("q1", "EASY"), make_question("q2", "HARD")])

    scheduler.advance(29_500)
    session.submit_current("close call")
    scheduler.advance(1000)

    assert len(session.completed_answers) == 1
    assert session.current_index == 1
    assert session.time_remaining_ms == time_limit_for("HARD") - 1000


async def test_ticks_update_remaining_time(build, scheduler, make_question, recorder):
    session = build()
    session.load([make_question("q1", "EASY")])

    scheduler.advance(3000)

    assert recorder.ticks == [29_000, 28_000, 27_000]
    assert session.snapshot().time_remaining_display == "00:27"


async def test_resolve_failure_moves_to_error(build):
    session = build()

    async def fetch():
        raise RuntimeError("Test not found")

    snapshot = await session.resolve(fetch)

    assert snapshot.status == "error"
    assert snapshot.error == "Test not found"


async def test_resolve_loads_fetched_questions(build, make_question):
    session = build()

    async def fetch():
        return [make_question("q1"), make_question("q2")]

    snapshot = await session.resolve(fetch)

    assert snapshot.status == "in_progress"
    assert snapshot.total_questions == 2
    assert snapshot.question.id == "q1"


async def test_abandon_cancels_timer_and_blocks_transitions(build, scheduler, make_question):
    session = build()
    session.load([make_question("q1"), make_question("q2")])

    session.abandon()
    scheduler.advance(60_000)
    session.submit_current("ignored")

    assert scheduler.pending == 0
    assert session.abandoned
    assert session.completed_answers == []
    assert session.current_index == 0


async def test_failing_callback_does_not_break_the_session(scheduler, make_question):
    def explode(*_):
        raise RuntimeError("listener crashed")

    session = InterviewSession(
        "s-2",
        timer=TimerEngine(scheduler=scheduler),
        store=MemoryAnswerStore(),
        callbacks=SessionCallbacks(on_advance=explode, on_complete=explode),
    )
    session.load([make_question("q1"), make_question("q2")])
    session.submit_current("a")
    session.submit_current("b")

    assert session.status == "completed"


def test_persist_without_event_loop_reports_storage_error(build, make_question, recorder):
    session = build()
    session.load([make_question("q1"), make_question("q2")])

    session.submit_current("offline")

    assert session.current_index == 1
    assert recorder.storage_errors and recorder.storage_errors[0][0] == "q1"
