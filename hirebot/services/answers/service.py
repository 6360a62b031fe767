from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Union

from pydantic import ValidationError

from .schema import AnswerRecord

logger = logging.getLogger("hirebot.answers")


class StorageError(RuntimeError):
    """An answer record could not be written to or read from the store."""


class AnswerStore:
    """Append-only log of finalized answers.

    Implementations expose no update or delete. ``all`` returns records in
    write order so a reloaded session can be replayed.
    """

    async def append(self, record: AnswerRecord) -> None:
        raise NotImplementedError

    async def all(self) -> List[AnswerRecord]:
        raise NotImplementedError


class MemoryAnswerStore(AnswerStore):
    def __init__(self) -> None:
        self._records: List[AnswerRecord] = []

    async def append(self, record: AnswerRecord) -> None:
        self._records.append(record)

    async def all(self) -> List[AnswerRecord]:
        return list(self._records)


class JsonlAnswerStore(AnswerStore):
    """File-backed answer log, one JSON object per line."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._open()

    def _open(self) -> None:
        # Never truncates: reopening the same path keeps earlier records.
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot open answer log {self.path}: {exc}") from exc

    async def append(self, record: AnswerRecord) -> None:
        line = json.dumps(record.model_dump(), ensure_ascii=False)
        async with self._lock:
            try:
                await asyncio.to_thread(self._write_line, line)
            except OSError as exc:
                raise StorageError(f"Failed to append answer for {record.question_id}: {exc}") from exc

    async def all(self) -> List[AnswerRecord]:
        async with self._lock:
            try:
                lines = await asyncio.to_thread(self._read_lines)
            except OSError as exc:
                raise StorageError(f"Failed to read answer log {self.path}: {exc}") from exc
        records: List[AnswerRecord] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                records.append(AnswerRecord.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError):
                logger.warning("Skipping corrupt answer line in %s", self.path)
                continue
        return records

    def _write_line(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
            fh.flush()

    def _read_lines(self) -> List[str]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as handle:
            return handle.readlines()
