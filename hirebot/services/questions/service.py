from __future__ import annotations

import logging
import os
import time
import uuid
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import JSON, Column, Float, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session, declarative_base, joinedload, relationship, sessionmaker

from hirebot.services.answers.schema import AnswerRecord

from .schema import (
    DIFFICULTIES,
    QUESTION_TYPES,
    Example,
    Question,
    QuestionIn,
    QuestionSetOut,
    QuestionSetSummary,
    ReportDetail,
    ReportQuestion,
    ReportSummary,
)

logger = logging.getLogger("hirebot.questions")

Base = declarative_base()


class QuestionSetRow(Base):
    __tablename__ = "question_sets"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), index=True, nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False, default="")
    created_at = Column(Float, nullable=False, default=lambda: time.time())

    questions = relationship(
        "QuestionRow",
        back_populates="question_set",
        cascade="all, delete-orphan",
        order_by="QuestionRow.position",
    )


class QuestionRow(Base):
    __tablename__ = "questions"

    id = Column(String(36), primary_key=True)
    question_set_id = Column(String(36), ForeignKey("question_sets.id", ondelete="CASCADE"), index=True, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    prompt = Column(Text, nullable=False)
    type = Column(String(32), nullable=False, default="CODING")
    difficulty = Column(String(16), nullable=False, default="MEDIUM")
    starter_code = Column(Text, nullable=True)
    examples = Column(JSON, nullable=True)
    constraints = Column(JSON, nullable=True)

    question_set = relationship("QuestionSetRow", back_populates="questions")
    answers = relationship("AnswerRow", back_populates="question", cascade="all, delete-orphan")


class AnswerRow(Base):
    __tablename__ = "answers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    question_id = Column(String(36), ForeignKey("questions.id", ondelete="CASCADE"), index=True, nullable=False)
    session_id = Column(String(64), index=True, nullable=False)
    user_id = Column(String(64), index=True, nullable=False)
    content = Column(Text, nullable=False)
    submitted_at = Column(Float, nullable=False)
    time_remaining_ms = Column(Integer, nullable=False, default=0)

    question = relationship("QuestionRow", back_populates="answers")


def _load_database_url(database_url: Optional[str] = None) -> str:
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not configured")
    return url


def normalize_type(value: Optional[str]) -> str:
    key = (value or "").strip().upper().replace(" ", "_")
    return key if key in QUESTION_TYPES else "CODING"


def normalize_difficulty(value: Optional[str]) -> str:
    key = (value or "").strip().upper()
    return key if key in DIFFICULTIES else "MEDIUM"


class QuestionSetService:
    """Data access layer for question sets, their questions, and recorded answers."""

    def __init__(self, database_url: Optional[str] = None, *, create_tables: bool = True) -> None:
        url = _load_database_url(database_url)
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self._engine: Engine = create_engine(url, connect_args=connect_args)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False, future=True)
        if create_tables:
            Base.metadata.create_all(self._engine)

    @contextmanager
    def session(self) -> Iterator[Session]:  # type: ignore[override]
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_question_set(
        self,
        user_id: str,
        title: Optional[str],
        description: Optional[str],
        questions: Sequence[QuestionIn],
    ) -> QuestionSetOut:
        if not title or not isinstance(title, str) or not title.strip():
            raise ValueError("Title is required")
        if not questions:
            raise ValueError("Questions must be a non-empty array")
        for idx, item in enumerate(questions):
            if not item.question or not item.question.strip():
                raise ValueError(f'Question at index {idx} must include a valid "question" string')

        now = time.time()
        row = QuestionSetRow(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title.strip(),
            description=description or "",
            created_at=now,
        )
        row.questions = [
            QuestionRow(
                id=str(uuid.uuid4()),
                position=idx,
                prompt=item.question,
                type=normalize_type(item.type),
                difficulty=normalize_difficulty(item.difficulty),
                starter_code=item.starter_code,
                examples=[example.model_dump() for example in item.examples] or None,
                constraints=list(item.constraints) or None,
            )
            for idx, item in enumerate(questions)
        ]
        with self.session() as sess:
            sess.add(row)
            sess.flush()
            logger.info("Created question set %s with %d questions for %s", row.id, len(row.questions), user_id)
            return _to_set_dto(row)

    def get_question_set(self, set_id: str, user_id: Optional[str] = None) -> QuestionSetOut:
        with self.session() as sess:
            instance = self._load_set(sess, set_id, user_id)
            return _to_set_dto(instance)

    def list_question_sets(self, user_id: str) -> List[QuestionSetSummary]:
        with self.session() as sess:
            rows = (
                sess.query(QuestionSetRow)
                .options(joinedload(QuestionSetRow.questions))
                .filter(QuestionSetRow.user_id == user_id)
                .order_by(QuestionSetRow.created_at.desc())
                .all()
            )
            return [
                QuestionSetSummary(
                    id=row.id,
                    title=row.title,
                    description=row.description or "",
                    created_at=row.created_at,
                    question_count=len(row.questions),
                )
                for row in rows
            ]

    def latest_question_set(self, user_id: str) -> QuestionSetSummary:
        sets = self.list_question_sets(user_id)
        if not sets:
            raise NoResultFound("No interviews found")
        return sets[0]

    def resolve_questions(self, test_id: str) -> List[Question]:
        with self.session() as sess:
            instance = self._load_set(sess, test_id, None)
            return [_to_question_dto(row) for row in instance.questions]

    def record_answers(self, user_id: str, records: Iterable[AnswerRecord]) -> int:
        """Persist finished answers; records already stored for the same session and question are skipped."""

        items = list(records)
        if not items:
            return 0
        question_ids = {record.question_id for record in items}
        session_ids = {record.session_id for record in items}
        with self.session() as sess:
            known = set(
                sess.execute(select(QuestionRow.id).where(QuestionRow.id.in_(question_ids))).scalars().all()
            )
            existing = {
                (session_id, question_id)
                for session_id, question_id in sess.execute(
                    select(AnswerRow.session_id, AnswerRow.question_id).where(AnswerRow.session_id.in_(session_ids))
                ).all()
            }
            inserted = 0
            for record in items:
                if record.question_id not in known:
                    logger.warning("Dropping answer for unknown question %s", record.question_id)
                    continue
                if (record.session_id, record.question_id) in existing:
                    continue
                sess.add(
                    AnswerRow(
                        question_id=record.question_id,
                        session_id=record.session_id,
                        user_id=user_id,
                        content=record.content,
                        submitted_at=record.submitted_at,
                        time_remaining_ms=record.time_remaining_ms,
                    )
                )
                existing.add((record.session_id, record.question_id))
                inserted += 1
        return inserted

    def list_reports(self, user_id: str) -> List[ReportSummary]:
        with self.session() as sess:
            rows = (
                sess.query(QuestionSetRow)
                .options(joinedload(QuestionSetRow.questions))
                .filter(QuestionSetRow.user_id == user_id)
                .order_by(QuestionSetRow.created_at.desc())
                .all()
            )
            reports: List[ReportSummary] = []
            for row in rows:
                counts = {"easy": 0, "medium": 0, "hard": 0}
                for question in row.questions:
                    key = (question.difficulty or "").lower()
                    if key in counts:
                        counts[key] += 1
                reports.append(
                    ReportSummary(
                        id=row.id,
                        title=row.title,
                        description=row.description or "",
                        created_at=row.created_at,
                        question_count=len(row.questions),
                        difficulty_count=counts,
                    )
                )
            return reports

    def get_report(self, set_id: str, user_id: str) -> ReportDetail:
        with self.session() as sess:
            instance = self._load_set(sess, set_id, user_id)
            question_ids = [row.id for row in instance.questions]
            latest: Dict[str, AnswerRow] = {}
            if question_ids:
                answers = (
                    sess.query(AnswerRow)
                    .filter(AnswerRow.question_id.in_(question_ids))
                    .order_by(AnswerRow.submitted_at.desc(), AnswerRow.id.desc())
                    .all()
                )
                for answer in answers:
                    latest.setdefault(answer.question_id, answer)
            return ReportDetail(
                id=instance.id,
                title=instance.title,
                description=instance.description or "",
                created_at=instance.created_at,
                questions=[
                    ReportQuestion(
                        id=row.id,
                        question=row.prompt,
                        type=normalize_type(row.type),
                        difficulty=normalize_difficulty(row.difficulty),
                        answer=latest[row.id].content if row.id in latest else None,
                        time_remaining_ms=latest[row.id].time_remaining_ms if row.id in latest else None,
                    )
                    for row in instance.questions
                ],
            )

    def _load_set(self, sess: Session, set_id: str, user_id: Optional[str]) -> QuestionSetRow:
        query = (
            sess.query(QuestionSetRow)
            .options(joinedload(QuestionSetRow.questions))
            .filter(QuestionSetRow.id == set_id)
        )
        if user_id is not None:
            query = query.filter(QuestionSetRow.user_id == user_id)
        instance = query.one_or_none()
        if instance is None:
            raise NoResultFound(f"Question set {set_id} not found")
        return instance


def _to_question_dto(row: QuestionRow) -> Question:
    return Question(
        id=row.id,
        prompt=row.prompt,
        type=normalize_type(row.type),
        difficulty=normalize_difficulty(row.difficulty),
        starter_code=row.starter_code,
        examples=[Example.model_validate(item) for item in row.examples or []],
        constraints=[str(item) for item in row.constraints or []],
    )


def _to_set_dto(row: QuestionSetRow) -> QuestionSetOut:
    return QuestionSetOut(
        id=row.id,
        title=row.title,
        description=row.description or "",
        user_id=row.user_id,
        created_at=row.created_at,
        questions=[_to_question_dto(question) for question in row.questions],
    )
