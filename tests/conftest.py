from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Callable, List, Optional

import pytest

_DATA_DIR = Path(tempfile.mkdtemp(prefix="hirebot-tests-"))
os.environ["DATA_DIR"] = str(_DATA_DIR)
os.environ["DATABASE_URL"] = f"sqlite:///{_DATA_DIR / 'hirebot.db'}"
os.environ["USE_GENERATOR_MOCK"] = "true"
os.environ["STRICT_TRANSITIONS"] = "false"
os.environ["WS_ENABLED"] = "true"

from hirebot.services.questions.schema import Question  # noqa: E402


class FakeTimerHandle:
    def __init__(self, when: float, seq: int, callback: Callable[..., Any], args: tuple) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Manual clock with the ``call_later`` shape of an asyncio loop."""

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = 0
        self._queue: List[FakeTimerHandle] = []

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> FakeTimerHandle:
        self._seq += 1
        handle = FakeTimerHandle(self.now + delay, self._seq, callback, args)
        self._queue.append(handle)
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for handle in self._queue if not handle.cancelled)

    def advance(self, ms: int) -> None:
        target = self.now + ms / 1000.0
        while True:
            due = [h for h in self._queue if not h.cancelled and h.when <= target + 1e-9]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.seq))
            self._queue.remove(handle)
            self.now = max(self.now, handle.when)
            handle.callback(*handle.args)
        self.now = target


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def make_question() -> Callable[..., Question]:
    def _make(qid: str, difficulty: str = "EASY", starter_code: Optional[str] = None) -> Question:
        return Question(id=qid, prompt=f"Prompt for {qid}", difficulty=difficulty, starter_code=starter_code)

    return _make


@pytest.fixture
def data_dir() -> Path:
    return _DATA_DIR
