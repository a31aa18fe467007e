"""Summarization of conversation into long-term memory.

A pass reads the history newer than the session's summary marker, asks the
model to distill it through the write capabilities, and advances the marker
only once every summary target was written or explicitly skipped.

Passes are triggered by the auto-save timer, by closing a session, by an
explicit save request, or by a turn whose context overflowed the budget.
At most one pass per session runs at a time; a trigger arriving while one
is in flight is dropped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from book_teacher.config.app_config import TutorConfig
from book_teacher.core.capabilities import SUMMARY_TARGETS, CapabilityRegistry
from book_teacher.core.context import estimate_tokens
from book_teacher.core.errors import SummaryIncompleteError, TutorError
from book_teacher.core.memory import LongTermMemory, build_distill_prompt
from book_teacher.core.model_calls import call_model
from book_teacher.db import sessions_repository
from book_teacher.db.sessions_repository import HistoryMessage
from book_teacher.llm.client import FinalReply, LLMClient, Message

if TYPE_CHECKING:
    from book_teacher.core.supervisor import LiveSession

logger = structlog.get_logger(__name__)


class SummaryTrigger(str, Enum):
    """What started a summarization pass."""

    TIMER = "timer"
    CLOSE = "close"
    EXPLICIT = "explicit"
    BUDGET = "budget"


class SummaryStatus(str, Enum):
    """How a summarization request ended."""

    COMPLETED = "completed"
    NOTHING_NEW = "nothing_new"
    COALESCED = "coalesced"


@dataclass
class SummaryResult:
    """Outcome of a summarization request."""

    trigger: SummaryTrigger
    status: SummaryStatus
    messages_summarized: int = 0
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    rounds: int = 0
    through_id: int | None = None


TRANSCRIPT_HEADER = "## Conversation since the last summary"


def transcript_line(message: HistoryMessage, student_name: str, tutor_name: str) -> str:
    speakers = {"student": student_name, "agent": tutor_name}
    return f"{speakers.get(message.role, message.role)}: {message.content}"


def render_transcript(messages: list[HistoryMessage], student_name: str, tutor_name: str) -> str:
    """Render history as a plain transcript for the distill prompt."""
    lines = [TRANSCRIPT_HEADER]
    lines.extend(transcript_line(m, student_name, tutor_name) for m in messages)
    return "\n".join(lines)


class SummaryPass:
    """One summarization pass over a live session.

    New history that does not fit the budget in one go is distilled in
    chunks, oldest first; the marker advances after every completed chunk.
    The caller must hold the session lock for the whole run.
    """

    def __init__(self, llm: LLMClient, session: LiveSession, tutor_config: TutorConfig):
        self.llm = llm
        self.session = session
        self.tutor_config = tutor_config
        self.registry = CapabilityRegistry(session.student_id, session.book_id, summarizing=True)

    async def run(self, trigger: SummaryTrigger) -> SummaryResult:
        """Distill new history into long-term memory.

        Raises:
            TransientServiceError: Model kept failing
            SummaryIncompleteError: Some targets were neither written nor skipped
            StoreTransactionError: A memory write failed
        """
        session = self.session
        log = logger.bind(
            student_id=session.student_id, book_id=session.book_id, trigger=trigger.value
        )

        record = sessions_repository.ensure_session(session.student_id, session.book_id)
        window = sessions_repository.get_history(
            session.student_id, session.book_id, after_id=record.last_summary_message_id
        )
        if not window:
            log.debug("summary.nothing_new")
            return SummaryResult(trigger=trigger, status=SummaryStatus.NOTHING_NEW)

        result = SummaryResult(trigger=trigger, status=SummaryStatus.COMPLETED)
        while window:
            # Rebuilt per chunk: the previous chunk rewrote the memory.
            memory = LongTermMemory.load(session.student_id, session.book_id)
            system_prompt = build_distill_prompt(
                self.tutor_config.tutor_name, session.student_name, session.book, memory
            )
            chunk = self._next_chunk(window, system_prompt)
            window = window[len(chunk):]

            rounds, applied, skipped = await self._distill(chunk, system_prompt, log)

            through_id = chunk[-1].id
            sessions_repository.advance_summary_marker(
                session.student_id, session.book_id, through_id
            )
            result.messages_summarized += len(chunk)
            result.applied.extend(applied)
            result.skipped.extend(skipped)
            result.rounds += rounds
            result.through_id = through_id
            if window:
                log.debug("summary.chunk_completed", messages=len(chunk), through_id=through_id)

        log.info(
            "summary.completed",
            messages=result.messages_summarized,
            applied=len(result.applied),
            skipped=result.skipped,
            rounds=result.rounds,
            through_id=result.through_id,
        )
        return result

    def _next_chunk(
        self, window: list[HistoryMessage], system_prompt: str
    ) -> list[HistoryMessage]:
        """Oldest messages whose transcript fits next to the prompt.

        The oldest message is always taken, so every chunk makes progress.
        """
        budget = self.session.settings.token_budget
        running = estimate_tokens(system_prompt) + estimate_tokens(TRANSCRIPT_HEADER)
        chunk: list[HistoryMessage] = []
        for message in window:
            line = transcript_line(message, self.session.student_name, self.tutor_config.tutor_name)
            cost = estimate_tokens(line)
            if chunk and running + cost > budget:
                break
            chunk.append(message)
            running += cost
        return chunk

    async def _distill(
        self, chunk: list[HistoryMessage], system_prompt: str, log
    ) -> tuple[int, list[str], list[str]]:
        """Run model rounds until every summary target is covered for one chunk."""
        session = self.session
        transcript = render_transcript(chunk, session.student_name, self.tutor_config.tutor_name)
        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=transcript),
        ]
        tools = self.registry.schemas()
        covered: set[str] = set()
        applied: list[str] = []
        skipped: list[str] = []
        max_rounds = self.tutor_config.max_summary_rounds

        rounds = 0
        while rounds < max_rounds and not covered.issuperset(SUMMARY_TARGETS):
            rounds += 1
            step = await call_model(
                self.llm, messages, tools, session.settings.ai_model, self.tutor_config
            )

            if isinstance(step, FinalReply):
                missing = [t for t in SUMMARY_TARGETS if t not in covered]
                messages.append(Message(role="assistant", content=step.content))
                messages.append(
                    Message(
                        role="user",
                        content=(
                            "Not done yet. Update or skip these targets: "
                            + ", ".join(missing)
                        ),
                    )
                )
                continue

            messages.append(Message(role="assistant", content=step.content, tool_calls=step.calls))
            for call in step.calls:
                result = self.registry.invoke(call)
                if result.ok and result.summary_target:
                    covered.add(result.summary_target)
                    if call.name == "skip_update":
                        skipped.append(result.summary_target)
                    else:
                        applied.append(call.name)
                messages.append(
                    Message(role="tool", content=result.to_tool_content(), tool_call_id=call.id)
                )

        missing = [t for t in SUMMARY_TARGETS if t not in covered]
        if missing:
            log.error("summary.incomplete", missing=missing, rounds=rounds)
            raise SummaryIncompleteError(missing, rounds)
        return rounds, applied, skipped


class SummaryScheduler:
    """Runs summarization passes with per-session coalescing and auto-save timers."""

    def __init__(self, llm: LLMClient, tutor_config: TutorConfig):
        self.llm = llm
        self.tutor_config = tutor_config

    async def trigger(self, session: LiveSession, trigger: SummaryTrigger) -> SummaryResult:
        """Run a pass unless one is already in flight for this session.

        Waits for the session lock, so a pass never overlaps a turn. A session
        closed while waiting was summarized by its closing pass.
        """
        if session.summary_in_flight:
            logger.info(
                "summary.coalesced",
                student_id=session.student_id,
                book_id=session.book_id,
                trigger=trigger.value,
            )
            return SummaryResult(trigger=trigger, status=SummaryStatus.COALESCED)

        session.summary_in_flight = True
        try:
            async with session.lock:
                if session.closed:
                    return SummaryResult(trigger=trigger, status=SummaryStatus.COALESCED)
                return await SummaryPass(self.llm, session, self.tutor_config).run(trigger)
        finally:
            session.summary_in_flight = False

    async def run_locked(self, session: LiveSession, trigger: SummaryTrigger) -> SummaryResult:
        """Run a pass for a caller that already holds the session lock."""
        previous = session.summary_in_flight
        session.summary_in_flight = True
        try:
            return await SummaryPass(self.llm, session, self.tutor_config).run(trigger)
        finally:
            session.summary_in_flight = previous

    def start_timer(self, session: LiveSession) -> None:
        """Start the session's auto-save loop if its settings enable one."""
        interval = session.settings.auto_save_seconds
        if not interval or session.timer_task is not None:
            return
        session.timer_task = asyncio.create_task(self._auto_save_loop(session, interval))

    async def stop_timer(self, session: LiveSession) -> None:
        """Cancel the session's auto-save loop and wait for it to finish."""
        task = session.timer_task
        session.timer_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _auto_save_loop(self, session: LiveSession, interval: int) -> None:
        while True:
            await asyncio.sleep(interval)
            if not has_unsummarized(session):
                continue
            try:
                await self.trigger(session, SummaryTrigger.TIMER)
            except TutorError as e:
                logger.error(
                    "summary.auto_save_failed",
                    student_id=session.student_id,
                    book_id=session.book_id,
                    error=str(e),
                )


def has_unsummarized(session: LiveSession) -> bool:
    """Whether the session has history newer than its summary marker."""
    record = sessions_repository.get_session(session.student_id, session.book_id)
    if record is None:
        return False
    return bool(
        sessions_repository.get_history(
            session.student_id, session.book_id, after_id=record.last_summary_message_id
        )
    )
