"""AI question generation client."""

from .schema import GenerateRequest, GenerateResponse
from .service import QuestionGeneratorService

__all__ = ["GenerateRequest", "GenerateResponse", "QuestionGeneratorService"]
