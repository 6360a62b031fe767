from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

QuestionType = Literal["CODING", "THEORY", "SYSTEM_DESIGN"]
Difficulty = Literal["EASY", "MEDIUM", "HARD"]

QUESTION_TYPES = ("CODING", "THEORY", "SYSTEM_DESIGN")
DIFFICULTIES = ("EASY", "MEDIUM", "HARD")


class Example(BaseModel):
    input: str
    output: str
    explanation: Optional[str] = None


class Question(BaseModel):
    id: str
    prompt: str
    type: QuestionType = "CODING"
    difficulty: Difficulty = "MEDIUM"
    starter_code: Optional[str] = None
    examples: List[Example] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)


class QuestionIn(BaseModel):
    question: str
    type: Optional[str] = None
    difficulty: Optional[str] = None
    starter_code: Optional[str] = None
    examples: List[Example] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)


class QuestionSetIn(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    questions: List[QuestionIn] = Field(default_factory=list)


class QuestionSetOut(BaseModel):
    id: str
    title: str
    description: str
    user_id: str
    created_at: float
    questions: List[Question]


class QuestionSetSummary(BaseModel):
    id: str
    title: str
    description: str
    created_at: float
    question_count: int


class ReportSummary(QuestionSetSummary):
    difficulty_count: Dict[str, int]


class ReportQuestion(BaseModel):
    id: str
    question: str
    type: QuestionType
    difficulty: Difficulty
    answer: Optional[str] = None
    time_remaining_ms: Optional[int] = None


class ReportDetail(BaseModel):
    id: str
    title: str
    description: str
    created_at: float
    questions: List[ReportQuestion]
