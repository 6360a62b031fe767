from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections import OrderedDict, defaultdict
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple
from urllib.parse import unquote

import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.exc import NoResultFound

from hirebot.services.answers.schema import AnswerRecord
from hirebot.services.answers.service import AnswerStore, JsonlAnswerStore, StorageError
from hirebot.services.generator.schema import GenerateRequest, GenerateResponse
from hirebot.services.generator.service import QuestionGeneratorService
from hirebot.services.questions.schema import (
    Question,
    QuestionSetIn,
    QuestionSetOut,
    QuestionSetSummary,
    ReportDetail,
    ReportSummary,
)
from hirebot.services.questions.service import QuestionSetService
from hirebot.services.session.schema import SessionSnapshot
from hirebot.services.session.service import (
    InterviewSession,
    InvalidTransitionError,
    QuestionResolutionError,
    SessionCallbacks,
)
from hirebot.services.timeline.schema import TimelinePage, TimelineSummary
from hirebot.services.timeline.service import SessionTimeline
from hirebot.services.timer.service import DEFAULT_TICK_MS, Scheduler, TimerEngine, format_remaining


load_dotenv()
logger = logging.getLogger("hirebot.api")


class Settings(BaseSettings):
    DATABASE_URL: Optional[str] = None
    DATA_DIR: str = "data"
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    GENERATOR_MODEL_ID: str = "gpt-4.1"
    GENERATOR_TEMPERATURE: float = 0.7
    USE_GENERATOR_MOCK: bool = True
    TICK_INTERVAL_MS: int = DEFAULT_TICK_MS
    STRICT_TRANSITIONS: bool = False
    WS_ENABLED: bool = True
    FINISHED_SESSION_LIMIT: int = 1000
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


settings = Settings()
logging.basicConfig(level=settings.LOG_LEVEL.upper())

DATA_DIR = Path(settings.DATA_DIR).resolve()
DATA_DIR.mkdir(parents=True, exist_ok=True)
DATABASE_URL = settings.DATABASE_URL or f"sqlite:///{DATA_DIR / 'hirebot.db'}"

app = FastAPI(title="HireBot Interview Service")
question_service = QuestionSetService(database_url=DATABASE_URL)
generator_service = QuestionGeneratorService(
    api_key=settings.OPENAI_API_KEY,
    base_url=settings.OPENAI_BASE_URL,
    model_id=settings.GENERATOR_MODEL_ID,
    temperature=settings.GENERATOR_TEMPERATURE,
    use_mock=settings.USE_GENERATOR_MOCK,
)
timeline = SessionTimeline(DATA_DIR / "sessions")


class StartSessionRequest(BaseModel):
    test_id: Optional[str] = None
    fallback_test_ids: List[str] = Field(default_factory=list)


class DraftRequest(BaseModel):
    content: str


class SubmitRequest(BaseModel):
    content: Optional[str] = None


class AnswerLog(BaseModel):
    session_id: str
    answers: List[AnswerRecord]


class WebSocketHub:
    def __init__(self) -> None:
        self._connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def register(self, session_id: str, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections[session_id].add(ws)

    async def unregister(self, session_id: str, ws: WebSocket) -> None:
        async with self._lock:
            self._connections[session_id].discard(ws)
            if not self._connections[session_id]:
                self._connections.pop(session_id, None)

    async def broadcast(self, session_id: str, payload: Dict[str, Any]) -> None:
        async with self._lock:
            receivers = list(self._connections.get(session_id, set()))
        if not receivers:
            return
        message = json.dumps(payload)
        await asyncio.gather(
            *(ws.send_text(message) for ws in receivers),
            return_exceptions=True,
        )


ws_hub = WebSocketHub()


def resolve_test_id(candidates: Sequence[Optional[str]]) -> Optional[str]:
    """First usable test id from a prioritized list (path, query, cached)."""

    for candidate in candidates:
        if not candidate:
            continue
        cleaned = unquote(candidate).strip()
        if cleaned:
            return cleaned
    return None


StoreFactory = Callable[[Path], AnswerStore]


class SessionHost:
    """Owns live interview sessions and relays their events to storage and sockets.

    A session leaves the live table once it is finished: completed and persisted,
    failed to start, or abandoned. Final snapshots stay readable from a bounded
    cache; ownership of sessions evicted from it is read back from the timeline.
    """

    def __init__(
        self,
        questions: QuestionSetService,
        events: SessionTimeline,
        hub: WebSocketHub,
        *,
        answers_dir: Path,
        tick_ms: int,
        strict: bool,
        ws_enabled: bool,
        finished_limit: int = 1000,
        scheduler: Optional[Scheduler] = None,
        store_factory: StoreFactory = JsonlAnswerStore,
    ) -> None:
        self._questions = questions
        self._timeline = events
        self._hub = hub
        self._answers_dir = answers_dir
        self._tick_ms = tick_ms
        self._strict = strict
        self._ws_enabled = ws_enabled
        self._finished_limit = max(0, finished_limit)
        self._scheduler = scheduler
        self._store_factory = store_factory
        self._sessions: Dict[str, InterviewSession] = {}
        self._owners: Dict[str, str] = {}
        self._stores: Dict[str, AnswerStore] = {}
        self._finished: "OrderedDict[str, Tuple[str, SessionSnapshot]]" = OrderedDict()
        self._completions: Dict[str, asyncio.Task[None]] = {}
        self._tasks: Set[asyncio.Task[Any]] = set()

    @property
    def live_count(self) -> int:
        return len(self._sessions)

    @property
    def pending_completions(self) -> int:
        return len(self._completions)

    def live(self, session_id: str) -> Optional[InterviewSession]:
        return self._sessions.get(session_id)

    def get(self, session_id: str, user_id: str) -> Optional[InterviewSession]:
        """Live session for its owner, or ``None`` once it has finished.

        Raises ``KeyError`` for unknown ids and for sessions owned by someone else.
        """
        session = self._sessions.get(session_id)
        if session is not None:
            if self._owners.get(session_id) == user_id:
                return session
            raise KeyError(session_id)
        finished = self._finished.get(session_id)
        if finished is not None and finished[0] == user_id:
            return None
        raise KeyError(session_id)

    def final_snapshot(self, session_id: str) -> SessionSnapshot:
        return self._finished[session_id][1]

    def reject_finished(self, session_id: str, operation: str) -> SessionSnapshot:
        if self._strict:
            raise InvalidTransitionError(f"{operation} is not allowed once the session has finished")
        logger.warning("Session %s: %s after the session finished", session_id, operation)
        return self.final_snapshot(session_id)

    def owns(self, session_id: str, user_id: str) -> bool:
        if session_id in self._owners:
            return self._owners[session_id] == user_id
        if session_id in self._finished:
            return self._finished[session_id][0] == user_id
        try:
            return self._timeline.owner(session_id) == user_id
        except ValueError:
            return False

    def store_for(self, session_id: str) -> AnswerStore:
        store = self._stores.get(session_id)
        if store is None:
            # Reopening never truncates, so retired sessions stay readable.
            store = self._store_factory(self._answers_dir / f"{session_id}.jsonl")
        return store

    async def start(self, user_id: str, test_id: Optional[str]) -> InterviewSession:
        session_id = uuid.uuid4().hex
        store = self._store_factory(self._answers_dir / f"{session_id}.jsonl")
        session = InterviewSession(
            session_id,
            timer=TimerEngine(tick_ms=self._tick_ms, scheduler=self._scheduler),
            store=store,
            callbacks=self._callbacks(session_id),
            strict=self._strict,
        )
        self._sessions[session_id] = session
        self._owners[session_id] = user_id
        self._stores[session_id] = store
        self._timeline.append(session_id, {"type": "session.started", "test_id": test_id, "user_id": user_id})
        if not test_id:
            session.fail("Test ID not found. Please go back and try again.")
        else:
            await session.resolve(lambda: self._fetch_questions(test_id))
            question = session.current_question()
            if question is not None:
                self._log_presented(session_id, 0, question)
        if session.status == "error":
            self._retire(session_id)
        return session

    async def wait_completed(self, session_id: str) -> None:
        task = self._completions.get(session_id)
        if task is not None:
            await task

    async def abandon(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.abandon()
        self._timeline.append(
            session_id,
            {"type": "session.abandoned", "index": session.current_index, "status": session.status},
        )
        await session.flush()
        self._retire(session_id)

    async def shutdown(self) -> None:
        completions = list(self._completions.values())
        if completions:
            await asyncio.gather(*completions, return_exceptions=True)
        for session_id in list(self._sessions):
            await self.abandon(session_id)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _fetch_questions(self, test_id: str) -> List[Question]:
        try:
            return await asyncio.to_thread(self._questions.resolve_questions, test_id)
        except NoResultFound as exc:
            raise QuestionResolutionError("Test not found") from exc

    def _retire(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        owner = self._owners.pop(session_id)
        self._stores.pop(session_id, None)
        self._finished[session_id] = (owner, session.snapshot())
        while len(self._finished) > self._finished_limit:
            self._finished.popitem(last=False)
        logger.debug("Session %s retired as %s", session_id, session.status)

    def _callbacks(self, session_id: str) -> SessionCallbacks:
        def on_tick(remaining_ms: int) -> None:
            self._broadcast(
                session_id,
                {"type": "session.tick", "remaining_ms": remaining_ms, "display": format_remaining(remaining_ms)},
            )

        def on_advance(new_index: int, record: AnswerRecord) -> None:
            self._log_finalized(session_id, record)
            session = self._sessions[session_id]
            question = session.current_question()
            if question is not None:
                self._log_presented(session_id, new_index, question)
            self._broadcast(
                session_id,
                {"type": "session.advanced", "index": new_index, "snapshot": session.snapshot().model_dump()},
            )

        def on_complete(records: List[AnswerRecord]) -> None:
            if records:
                self._log_finalized(session_id, records[-1])
            session = self._sessions[session_id]
            owner = self._owners[session_id]
            task = asyncio.get_running_loop().create_task(self._complete(session, owner, records))
            self._completions[session_id] = task
            task.add_done_callback(lambda _: self._completions.pop(session_id, None))

        def on_error(message: str) -> None:
            self._timeline.append(session_id, {"type": "session.error", "message": message})
            self._broadcast(session_id, {"type": "session.error", "message": message})

        def on_storage_error(record: AnswerRecord, message: str) -> None:
            self._timeline.append(
                session_id,
                {"type": "answer.storage_failed", "question_id": record.question_id, "message": message},
            )
            self._broadcast(
                session_id,
                {"type": "session.storage_error", "question_id": record.question_id, "message": message},
            )

        return SessionCallbacks(
            on_tick=on_tick,
            on_advance=on_advance,
            on_complete=on_complete,
            on_error=on_error,
            on_storage_error=on_storage_error,
        )

    async def _complete(self, session: InterviewSession, owner: str, records: List[AnswerRecord]) -> None:
        session_id = session.session_id
        await session.flush()
        persisted = 0
        try:
            persisted = await asyncio.to_thread(self._questions.record_answers, owner, records)
        except Exception:
            logger.exception("Bulk answer flush failed for session %s", session_id)
        self._timeline.append(
            session_id,
            {"type": "session.completed", "answers": len(records), "persisted": persisted},
        )
        self._retire(session_id)
        await self._send(
            session_id,
            {"type": "session.completed", "answers": [record.model_dump() for record in records]},
        )

    def _log_presented(self, session_id: str, index: int, question: Question) -> None:
        self._timeline.append(
            session_id,
            {
                "type": "question.presented",
                "index": index,
                "question_id": question.id,
                "difficulty": question.difficulty,
            },
        )

    def _log_finalized(self, session_id: str, record: AnswerRecord) -> None:
        self._timeline.append(
            session_id,
            {
                "type": "answer.finalized",
                "question_id": record.question_id,
                "time_remaining_ms": record.time_remaining_ms,
                "submitted_at": record.submitted_at,
            },
        )

    def _broadcast(self, session_id: str, payload: Dict[str, Any]) -> None:
        if not self._ws_enabled:
            return
        self._spawn(self._send(session_id, payload))

    async def _send(self, session_id: str, payload: Dict[str, Any]) -> None:
        if not self._ws_enabled:
            return
        await self._hub.broadcast(session_id, {**payload, "session_id": session_id})

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._reap)

    def _reap(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())


session_host = SessionHost(
    question_service,
    timeline,
    ws_hub,
    answers_dir=DATA_DIR / "answers",
    tick_ms=settings.TICK_INTERVAL_MS,
    strict=settings.STRICT_TRANSITIONS,
    ws_enabled=settings.WS_ENABLED,
    finished_limit=settings.FINISHED_SESSION_LIMIT,
)


def get_settings() -> Settings:
    return settings


async def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id.strip()


def _owned_session(session_id: str, user_id: str) -> Optional[InterviewSession]:
    try:
        return session_host.get(session_id, user_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc


def _require_owner(session_id: str, user_id: str) -> None:
    if not session_host.owns(session_id, user_id):
        raise HTTPException(status_code=404, detail="Session not found")


@app.on_event("startup")
async def _startup() -> None:
    await generator_service.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await session_host.shutdown()
    await generator_service.close()


@app.get("/healthz", response_class=JSONResponse)
async def healthz() -> Dict[str, str]:
    return {"status": "ok"}


# ------------------------ Question Endpoints -------------------------


@app.post("/questions/generate", response_model=GenerateResponse)
async def generate_questions(body: GenerateRequest, user_id: str = Depends(current_user)) -> GenerateResponse:
    try:
        return await generator_service.generate(body.position, body.description)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (httpx.HTTPError, RuntimeError) as exc:
        logger.exception("Question generation failed for %s", user_id)
        raise HTTPException(status_code=502, detail="Failed to generate questions") from exc


@app.post("/question-sets", status_code=201)
async def create_question_set(body: QuestionSetIn, user_id: str = Depends(current_user)) -> Dict[str, Any]:
    try:
        question_set = await asyncio.to_thread(
            question_service.create_question_set, user_id, body.title, body.description, body.questions
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "question_set": question_set.model_dump()}


@app.get("/question-sets", response_model=List[QuestionSetSummary])
async def list_question_sets(user_id: str = Depends(current_user)) -> List[QuestionSetSummary]:
    return await asyncio.to_thread(question_service.list_question_sets, user_id)


@app.get("/question-sets/latest")
async def latest_question_set(user_id: str = Depends(current_user)) -> Dict[str, str]:
    try:
        latest = await asyncio.to_thread(question_service.latest_question_set, user_id)
    except NoResultFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"interview_id": latest.id}


@app.get("/question-sets/{set_id}", response_model=QuestionSetOut)
async def get_question_set(set_id: str, user_id: str = Depends(current_user)) -> QuestionSetOut:
    try:
        return await asyncio.to_thread(question_service.get_question_set, set_id, user_id)
    except NoResultFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/tests/{test_id}/questions")
async def test_questions(test_id: str, user_id: str = Depends(current_user)) -> Dict[str, List[Question]]:
    cleaned = resolve_test_id([test_id])
    if not cleaned:
        raise HTTPException(status_code=400, detail="Test ID is required")
    try:
        questions = await asyncio.to_thread(question_service.resolve_questions, cleaned)
    except NoResultFound as exc:
        raise HTTPException(status_code=404, detail="Test not found") from exc
    return {"questions": questions}


@app.get("/reports", response_model=List[ReportSummary])
async def list_reports(user_id: str = Depends(current_user)) -> List[ReportSummary]:
    return await asyncio.to_thread(question_service.list_reports, user_id)


@app.get("/reports/{set_id}", response_model=ReportDetail)
async def get_report(set_id: str, user_id: str = Depends(current_user)) -> ReportDetail:
    try:
        return await asyncio.to_thread(question_service.get_report, set_id, user_id)
    except NoResultFound as exc:
        raise HTTPException(status_code=404, detail="Question set not found") from exc


# ------------------------ Session Endpoints -------------------------


@app.post("/sessions", response_model=SessionSnapshot, status_code=201)
async def start_session(body: StartSessionRequest, user_id: str = Depends(current_user)) -> SessionSnapshot:
    test_id = resolve_test_id([body.test_id, *body.fallback_test_ids])
    session = await session_host.start(user_id, test_id)
    return session.snapshot()


@app.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def get_session(session_id: str, user_id: str = Depends(current_user)) -> SessionSnapshot:
    session = _owned_session(session_id, user_id)
    if session is None:
        return session_host.final_snapshot(session_id)
    return session.snapshot()


@app.put("/sessions/{session_id}/draft", response_model=SessionSnapshot)
async def update_draft(session_id: str, body: DraftRequest, user_id: str = Depends(current_user)) -> SessionSnapshot:
    session = _owned_session(session_id, user_id)
    try:
        if session is None:
            return session_host.reject_finished(session_id, "update_draft")
        return session.update_draft(body.content)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.post("/sessions/{session_id}/submit", response_model=SessionSnapshot)
async def submit_answer(session_id: str, body: SubmitRequest, user_id: str = Depends(current_user)) -> SessionSnapshot:
    session = _owned_session(session_id, user_id)
    try:
        if session is None:
            return session_host.reject_finished(session_id, "submit_current")
        content = body.content if body.content is not None else session.draft
        snapshot = session.submit_current(content)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if snapshot.status == "completed":
        await session_host.wait_completed(session_id)
    return snapshot


@app.delete("/sessions/{session_id}", response_model=SessionSnapshot)
async def abandon_session(session_id: str, user_id: str = Depends(current_user)) -> SessionSnapshot:
    session = _owned_session(session_id, user_id)
    if session is None:
        return session_host.final_snapshot(session_id)
    await session_host.abandon(session_id)
    return session.snapshot()


@app.get("/sessions/{session_id}/answers", response_model=AnswerLog)
async def session_answers(session_id: str, user_id: str = Depends(current_user)) -> AnswerLog:
    _require_owner(session_id, user_id)
    session = session_host.live(session_id)
    if session is not None:
        await session.flush()
    try:
        answers = await session_host.store_for(session_id).all()
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return AnswerLog(session_id=session_id, answers=answers)


@app.websocket("/ws/{session_id}")
async def websocket_endpoint(session_id: str, ws: WebSocket, cfg: Settings = Depends(get_settings)) -> None:
    if not cfg.WS_ENABLED:
        await ws.close(code=1008)
        return
    await ws_hub.register(session_id, ws)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await ws_hub.unregister(session_id, ws)


# ------------------------ Timeline Endpoints -------------------------


@app.get("/timeline", response_model=TimelinePage)
async def get_timeline(
    session_id: str = Query(...),
    kind: str = Query("any"),
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(current_user),
) -> TimelinePage:
    _require_owner(session_id, user_id)
    try:
        return await asyncio.to_thread(timeline.page, session_id, kind=kind, offset=offset, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/timeline/summary", response_model=TimelineSummary)
async def timeline_summary(session_id: str = Query(...), user_id: str = Depends(current_user)) -> TimelineSummary:
    _require_owner(session_id, user_id)
    return await asyncio.to_thread(timeline.summary, session_id)
