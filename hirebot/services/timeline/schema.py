from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class TimelinePage(BaseModel):
    session_id: str
    total: int
    items: List[Dict[str, Any]]
    next_offset: Optional[int]


class TimelineSummary(BaseModel):
    session_id: str
    counts: Dict[str, int]
    answered: int
    expired: int
    storage_failures: int
    completed: bool
    last_question_id: Optional[str] = None
