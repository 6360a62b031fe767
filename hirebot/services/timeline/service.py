from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .schema import TimelinePage, TimelineSummary

logger = logging.getLogger("hirebot.timeline")

TIMELINE_KINDS = {
    "any",
    "session.started",
    "session.error",
    "question.presented",
    "answer.finalized",
    "answer.storage_failed",
    "session.completed",
    "session.abandoned",
}


class SessionTimeline:
    """Append-only JSONL event log, one file per interview session."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, session_id: str) -> Path:
        if not session_id or Path(session_id).name != session_id or session_id in {".", ".."}:
            raise ValueError(f"Invalid session id {session_id!r}")
        return self.directory / f"{session_id}.jsonl"

    def owner(self, session_id: str) -> Optional[str]:
        """User recorded on the session's ``session.started`` event, if any."""

        for event in self.read(session_id):
            if event.get("type") == "session.started":
                return event.get("user_id")
        return None

    def append(self, session_id: str, event: Dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("ts", time.time())
        line = json.dumps(payload, ensure_ascii=False)
        try:
            with self.path_for(session_id).open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError:
            logger.exception("Could not write timeline event %s for %s", payload.get("type"), session_id)

    def read(self, session_id: str) -> List[Dict[str, Any]]:
        path = self.path_for(session_id)
        if not path.exists():
            return []
        events: List[Dict[str, Any]] = []
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return events

    def page(self, session_id: str, *, kind: str = "any", offset: int = 0, limit: int = 100) -> TimelinePage:
        if kind not in TIMELINE_KINDS:
            raise ValueError("Unsupported timeline kind filter")
        events = self.read(session_id)
        if kind == "any":
            filtered = events
        else:
            filtered = [event for event in events if event.get("type") == kind]
        total = len(filtered)
        slice_end = min(offset + limit, total)
        items = filtered[offset:slice_end]
        next_offset = slice_end if slice_end < total else None
        return TimelinePage(session_id=session_id, total=total, items=items, next_offset=next_offset)

    def summary(self, session_id: str) -> TimelineSummary:
        counts: Dict[str, int] = {}
        answered = expired = 0
        last_question_id: Optional[str] = None
        for event in self.read(session_id):
            event_type = event.get("type")
            if not event_type:
                continue
            counts[event_type] = counts.get(event_type, 0) + 1
            if event_type == "answer.finalized":
                answered += 1
                if event.get("time_remaining_ms") == 0:
                    expired += 1
                last_question_id = event.get("question_id") or last_question_id
        return TimelineSummary(
            session_id=session_id,
            counts=counts,
            answered=answered,
            expired=expired,
            storage_failures=counts.get("answer.storage_failed", 0),
            completed=counts.get("session.completed", 0) > 0,
            last_question_id=last_question_id,
        )
