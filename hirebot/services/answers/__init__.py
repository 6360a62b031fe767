"""Client-local answer log."""

from .schema import AnswerRecord
from .service import AnswerStore, JsonlAnswerStore, MemoryAnswerStore, StorageError

__all__ = ["AnswerRecord", "AnswerStore", "JsonlAnswerStore", "MemoryAnswerStore", "StorageError"]
