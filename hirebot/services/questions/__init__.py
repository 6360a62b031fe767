"""Question sets, questions and recorded answers."""

from .schema import Question, QuestionIn, QuestionSetIn, QuestionSetOut
from .service import QuestionSetService

__all__ = ["Question", "QuestionIn", "QuestionSetIn", "QuestionSetOut", "QuestionSetService"]
