from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel

from hirebot.services.questions.schema import Question


class GenerateRequest(BaseModel):
    position: Optional[str] = None
    description: Optional[str] = None


class GenerateResponse(BaseModel):
    position: str
    questions: List[Question]
    mock: bool = False
