from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from hirebot.services.answers.schema import AnswerRecord
from hirebot.services.questions.schema import Question

SessionStatus = Literal["loading", "in_progress", "completed", "error"]


class SessionSnapshot(BaseModel):
    session_id: str
    status: SessionStatus
    current_index: int
    total_questions: int
    question: Optional[Question] = None
    time_remaining_ms: int = 0
    time_remaining_display: str = "00:00"
    draft: str = ""
    completed_answers: List[AnswerRecord] = Field(default_factory=list)
    error: Optional[str] = None
    storage_errors: List[str] = Field(default_factory=list)
    abandoned: bool = False
