from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class AnswerRecord(BaseModel):
    """One finalized answer. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    question_id: str
    content: str
    submitted_at: float
    time_remaining_ms: int = Field(..., ge=0)
