"""Session supervisor.

Keeps one live session per (student, book) in memory, serializes turns and
summarization passes of a session behind its lock, owns the auto-save
timers and unloads sessions that stayed idle. Independent sessions run
concurrently.

Usage:
    supervisor = get_supervisor()
    result = await supervisor.send_message(student_id, book_id, "Hi!")
    await supervisor.close(student_id, book_id)
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

import structlog

from book_teacher.config.app_config import TutorConfig, load_app_config
from book_teacher.core.context import estimate_tokens
from book_teacher.core.errors import SessionNotFoundError, TutorError
from book_teacher.core.memory import build_instruction
from book_teacher.core.summarizer import SummaryResult, SummaryScheduler, SummaryTrigger
from book_teacher.core.turn import TurnController, TurnResult
from book_teacher.db import books_repository, sessions_repository, students_repository
from book_teacher.db.books_repository import BookRecord
from book_teacher.db.sessions_repository import AgentSettings, HistoryMessage
from book_teacher.llm.client import LLMClient, LLMConfig

logger = structlog.get_logger(__name__)

SessionKey = tuple[int, int]


@dataclass
class LiveSession:
    """In-memory state of a loaded (student, book) session."""

    student_id: int
    book_id: int
    student_name: str
    book: BookRecord
    settings: AgentSettings
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_activity: float = field(default_factory=time.monotonic)
    summary_in_flight: bool = False
    timer_task: asyncio.Task | None = None
    turns: int = 0
    closed: bool = False

    @property
    def key(self) -> SessionKey:
        return (self.student_id, self.book_id)

    @property
    def busy(self) -> bool:
        """Whether a turn or summarization pass is running."""
        return self.lock.locked() or self.summary_in_flight

    def touch(self) -> None:
        self.last_activity = time.monotonic()


class SessionSupervisor:
    """Owns every live session of the process."""

    def __init__(self, llm: LLMClient | None = None, tutor_config: TutorConfig | None = None):
        self._llm = llm
        self.tutor_config = tutor_config or load_app_config().tutor
        self._sessions: dict[SessionKey, LiveSession] = {}
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()
        self._reaper: asyncio.Task | None = None
        self._scheduler: SummaryScheduler | None = None

    @property
    def llm(self) -> LLMClient:
        """Model client, created from the app config on first use."""
        if self._llm is None:
            self._llm = LLMClient(LLMConfig.from_app_config())
        return self._llm

    @property
    def scheduler(self) -> SummaryScheduler:
        if self._scheduler is None:
            self._scheduler = SummaryScheduler(self.llm, self.tutor_config)
        return self._scheduler

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def open(self, student_id: int, book_id: int) -> LiveSession:
        """Return the live session, loading it from the store if needed.

        Loading takes the settings snapshot the session keeps until it is
        unloaded.

        Raises:
            SessionNotFoundError: If the student or the book does not exist
        """
        async with self._lock:
            session = self._sessions.get((student_id, book_id))
            if session is not None:
                session.touch()
                return session

            session = self._load(student_id, book_id)
            self._sessions[session.key] = session

        self.scheduler.start_timer(session)
        logger.info(
            "session.loaded",
            student_id=student_id,
            book_id=book_id,
            ai_model=session.settings.ai_model,
            token_budget=session.settings.token_budget,
        )
        return session

    def _load(self, student_id: int, book_id: int) -> LiveSession:
        student = students_repository.get_student_by_id(student_id)
        if student is None:
            raise SessionNotFoundError(student_id, book_id, "unknown student")
        book = books_repository.get_book_by_id(book_id)
        if book is None:
            raise SessionNotFoundError(student_id, book_id, "unknown book")

        try:
            sessions_repository.ensure_session(student_id, book_id)
        except (sqlite3.IntegrityError, LookupError) as e:
            raise SessionNotFoundError(student_id, book_id, str(e)) from e

        session = LiveSession(
            student_id=student_id,
            book_id=book_id,
            student_name=student.name,
            book=book,
            settings=sessions_repository.get_agent_settings(),
        )

        instruction = build_instruction(self.tutor_config.tutor_name, student.name, book)
        instruction_tokens = estimate_tokens(instruction)
        if instruction_tokens > session.settings.token_budget // 4:
            logger.warning(
                "context.instruction_too_large",
                student_id=student_id,
                book_id=book_id,
                instruction_tokens=instruction_tokens,
                token_budget=session.settings.token_budget,
            )
        return session

    @asynccontextmanager
    async def _locked(self, student_id: int, book_id: int) -> AsyncIterator[LiveSession]:
        """Hold the lock of the live session for (student, book).

        A session closed while we waited for its lock is already unloaded;
        the next open loads a fresh one from the store.
        """
        while True:
            session = await self.open(student_id, book_id)
            await session.lock.acquire()
            if not session.closed:
                break
            session.lock.release()
        try:
            yield session
        finally:
            session.lock.release()

    async def close(self, student_id: int, book_id: int) -> SummaryResult | None:
        """Summarize and unload a session.

        The session stays registered, with its lock held, until the closing
        pass is over; requests arriving meanwhile queue on that lock and then
        reload the session.

        Returns:
            Result of the closing pass, or None if the session was not loaded
        """
        async with self._lock:
            session = self._sessions.get((student_id, book_id))
        if session is None:
            return None

        await self.scheduler.stop_timer(session)
        async with session.lock:
            if session.closed:
                return None
            try:
                result = await self.scheduler.run_locked(session, SummaryTrigger.CLOSE)
            finally:
                session.closed = True
                async with self._lock:
                    if self._sessions.get(session.key) is session:
                        del self._sessions[session.key]
        logger.info(
            "session.closed",
            student_id=student_id,
            book_id=book_id,
            summary=result.status.value,
        )
        return result

    async def discard(
        self, student_id: int | None = None, book_id: int | None = None
    ) -> list[SessionKey]:
        """Unload matching sessions without summarizing them.

        Used before a student or book is deleted; their rows are about to go.
        """
        async with self._lock:
            keys = [
                key
                for key in self._sessions
                if (student_id is None or key[0] == student_id)
                and (book_id is None or key[1] == book_id)
            ]
            dropped = [self._sessions.pop(key) for key in keys]

        for session in dropped:
            session.closed = True
            await self.scheduler.stop_timer(session)
        if keys:
            logger.info("session.discarded", count=len(keys))
        return keys

    async def evict_idle(self, now: float | None = None) -> list[SessionKey]:
        """Close sessions idle past the timeout; busy sessions are skipped.

        A failed closing pass is logged; the session is unloaded anyway and
        its unsummarized history waits for the next load.
        """
        now = time.monotonic() if now is None else now
        timeout = self.tutor_config.idle_timeout_seconds
        async with self._lock:
            idle = [
                key
                for key, s in self._sessions.items()
                if not s.busy and now - s.last_activity > timeout
            ]

        for student_id, book_id in idle:
            try:
                await self.close(student_id, book_id)
            except TutorError as e:
                logger.error(
                    "session.evict_summary_failed",
                    student_id=student_id,
                    book_id=book_id,
                    error=str(e),
                )
        if idle:
            logger.info("session.evicted_idle", count=len(idle))
        return idle

    def start_reaper(self, interval: float = 60.0) -> None:
        """Periodically evict idle sessions."""
        if self._reaper is None:
            self._reaper = asyncio.create_task(self._reap_loop(interval))

    async def _reap_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.evict_idle()

    async def shutdown(self) -> None:
        """Stop the reaper, close every live session and wait for background passes."""
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

        for student_id, book_id in list(self._sessions):
            try:
                await self.close(student_id, book_id)
            except TutorError as e:
                logger.error(
                    "session.shutdown_summary_failed",
                    student_id=student_id,
                    book_id=book_id,
                    error=str(e),
                )

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("supervisor.shutdown")

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def send_message(
        self,
        student_id: int,
        book_id: int,
        text: str,
        message_id: str | None = None,
    ) -> TurnResult:
        """Run one conversation turn.

        Turns of the same session run one at a time in arrival order.
        A turn whose context overflowed the budget schedules a summarization
        pass once it is done.

        Raises:
            SessionNotFoundError: Unknown student or book
            TransientServiceError: Model unavailable after retries
            ToolLoopExceededError: Model kept requesting tools
            StoreTransactionError: The turn could not be committed
        """
        async with self._locked(student_id, book_id) as session:
            result = await TurnController(self.llm, session, self.tutor_config).run(
                text, message_id=message_id
            )
            if not result.replayed:
                session.turns += 1
            session.touch()

        if result.over_budget:
            self._spawn_summary(session, SummaryTrigger.BUDGET)
        return result

    async def save(self, student_id: int, book_id: int) -> SummaryResult:
        """Run an explicit summarization pass."""
        session = await self.open(student_id, book_id)
        result = await self.scheduler.trigger(session, SummaryTrigger.EXPLICIT)
        session.touch()
        return result

    async def get_conversation(self, student_id: int, book_id: int) -> list[HistoryMessage]:
        """Return the session's persisted history in order."""
        async with self._locked(student_id, book_id):
            return sessions_repository.get_history(student_id, book_id)

    def live_sessions(self) -> list[LiveSession]:
        """Currently loaded sessions."""
        return list(self._sessions.values())

    def _spawn_summary(self, session: LiveSession, trigger: SummaryTrigger) -> None:
        task = asyncio.create_task(self._background_summary(session, trigger))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_summary(self, session: LiveSession, trigger: SummaryTrigger) -> None:
        try:
            await self.scheduler.trigger(session, trigger)
        except TutorError as e:
            logger.error(
                "summary.background_failed",
                student_id=session.student_id,
                book_id=session.book_id,
                trigger=trigger.value,
                error=str(e),
            )


# Global supervisor instance
_supervisor: SessionSupervisor | None = None


def get_supervisor() -> SessionSupervisor:
    """Get the global session supervisor."""
    global _supervisor
    if _supervisor is None:
        _supervisor = SessionSupervisor()
    return _supervisor


def reset_supervisor(supervisor: SessionSupervisor | None = None) -> None:
    """Replace the global supervisor (for testing)."""
    global _supervisor
    _supervisor = supervisor
