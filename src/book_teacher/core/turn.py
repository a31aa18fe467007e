"""Conversation turn controller.

Drives one student message through the model and back:

    IDLE -> CONTEXT_ASSEMBLED -> MODEL_INVOKED -> TOOL_CALLS_PENDING
         -> TOOLS_APPLIED -> MODEL_INVOKED ... -> PERSISTED -> IDLE

Model calls and capability calls of one turn are sequential. The student
message and the final reply are committed together with the eviction of
the oldest history in a single store transaction; a turn that fails before
that point leaves nothing behind except capability writes it already made.
"""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

import structlog

from book_teacher.config.app_config import TutorConfig
from book_teacher.core.capabilities import CapabilityRegistry
from book_teacher.core.context import ContextAccountant, ContextPlan
from book_teacher.core.errors import StoreTransactionError, ToolLoopExceededError
from book_teacher.core.memory import LongTermMemory, build_instruction
from book_teacher.core.model_calls import call_model
from book_teacher.db import sessions_repository
from book_teacher.db.sessions_repository import HistoryMessage
from book_teacher.llm.client import FinalReply, LLMClient, Message

if TYPE_CHECKING:
    from book_teacher.core.supervisor import LiveSession

logger = structlog.get_logger(__name__)

_ROLE_TO_CHAT = {"student": "user", "agent": "assistant"}


class TurnState(Enum):
    """Lifecycle of one conversation turn."""

    IDLE = auto()
    CONTEXT_ASSEMBLED = auto()
    MODEL_INVOKED = auto()
    TOOL_CALLS_PENDING = auto()
    TOOLS_APPLIED = auto()
    PERSISTED = auto()


@dataclass
class TurnResult:
    """Outcome of a turn as returned to the caller."""

    message_id: str
    reply: str
    tool_calls: list[str] = field(default_factory=list)
    evicted: int = 0
    context_tokens: int = 0
    over_budget: bool = False
    replayed: bool = False


def history_to_messages(history: list[HistoryMessage]) -> list[Message]:
    """Convert persisted history to chat messages."""
    return [Message(role=_ROLE_TO_CHAT[m.role], content=m.content) for m in history]


def _pinned_texts(turn_messages: list[Message]) -> list[str]:
    texts = []
    for message in turn_messages:
        texts.append(message.content)
        texts.extend(call.arguments for call in message.tool_calls)
    return texts


class TurnController:
    """Runs turns for one live session.

    The caller must hold the session lock for the whole run.
    """

    def __init__(self, llm: LLMClient, session: LiveSession, tutor_config: TutorConfig):
        self.llm = llm
        self.session = session
        self.tutor_config = tutor_config
        self.state = TurnState.IDLE
        self.accountant = ContextAccountant(session.settings.token_budget)
        self.registry = CapabilityRegistry(session.student_id, session.book_id)

    async def run(self, text: str, message_id: str | None = None) -> TurnResult:
        """Answer one student message.

        Args:
            text: Student message
            message_id: Client id; a retry with an already committed id
                returns the stored reply without calling the model again

        Raises:
            TransientServiceError: Model kept failing; nothing was persisted
            ToolLoopExceededError: Model kept requesting tools
            StoreTransactionError: The turn could not be committed
        """
        session = self.session
        log = logger.bind(student_id=session.student_id, book_id=session.book_id)

        if message_id:
            replay = self._replay(message_id)
            if replay is not None:
                log.info("turn.replayed", message_id=message_id)
                return replay
        else:
            message_id = uuid.uuid4().hex

        history = sessions_repository.get_history(session.student_id, session.book_id)
        instruction = build_instruction(
            self.tutor_config.tutor_name, session.student_name, session.book
        )
        tools = self.registry.schemas()
        turn_messages = [Message(role="user", content=text)]
        used: list[str] = []
        over_budget = False
        context_tokens = 0
        reply: str | None = None

        max_rounds = self.tutor_config.max_tool_rounds
        for round_number in range(max_rounds):
            # Memory is re-read every round; capabilities may have changed it.
            memory = LongTermMemory.load(session.student_id, session.book_id).render()
            plan = self.accountant.plan(
                history,
                system_prompt=instruction,
                memory=memory,
                pinned=_pinned_texts(turn_messages),
            )
            over_budget = over_budget or plan.over_budget
            context_tokens = plan.total_tokens
            self.state = TurnState.CONTEXT_ASSEMBLED

            messages = [
                Message(role="system", content=instruction),
                Message(role="system", content=memory),
                *history_to_messages(plan.selected),
                *turn_messages,
            ]
            step = await call_model(
                self.llm, messages, tools, session.settings.ai_model, self.tutor_config
            )
            self.state = TurnState.MODEL_INVOKED

            if isinstance(step, FinalReply):
                reply = step.content
                break

            if round_number == max_rounds - 1:
                break

            self.state = TurnState.TOOL_CALLS_PENDING
            turn_messages.append(
                Message(role="assistant", content=step.content, tool_calls=step.calls)
            )
            for call in step.calls:
                result = self.registry.invoke(call)
                used.append(call.name)
                turn_messages.append(
                    Message(role="tool", content=result.to_tool_content(), tool_call_id=call.id)
                )
            self.state = TurnState.TOOLS_APPLIED

        if reply is None:
            log.error("turn.tool_loop_exceeded", rounds=max_rounds)
            self.state = TurnState.IDLE
            raise ToolLoopExceededError(max_rounds)

        # Tool traffic is not stored, so eviction only makes room for the
        # student message that is.
        if len(turn_messages) > 1:
            memory = LongTermMemory.load(session.student_id, session.book_id).render()
            plan = self.accountant.plan(
                history, system_prompt=instruction, memory=memory, pinned=[text]
            )
            over_budget = over_budget or plan.over_budget

        self._commit(message_id, text, reply, used, plan)
        self.state = TurnState.PERSISTED

        log.info(
            "turn.completed",
            message_id=message_id,
            tool_calls=len(used),
            evicted=len(plan.evicted),
            context_tokens=context_tokens,
            over_budget=over_budget,
        )
        self.state = TurnState.IDLE
        return TurnResult(
            message_id=message_id,
            reply=reply,
            tool_calls=used,
            evicted=len(plan.evicted),
            context_tokens=context_tokens,
            over_budget=over_budget,
        )

    def _replay(self, message_id: str) -> TurnResult | None:
        found = sessions_repository.find_turn(
            self.session.student_id, self.session.book_id, message_id
        )
        if found is None:
            return None
        _, reply = found
        return TurnResult(
            message_id=message_id,
            reply=reply.content,
            tool_calls=reply.tool_calls,
            replayed=True,
        )

    def _commit(
        self,
        message_id: str,
        text: str,
        reply: str,
        used: list[str],
        plan: ContextPlan,
    ) -> None:
        try:
            sessions_repository.commit_turn(
                self.session.student_id,
                self.session.book_id,
                message_id,
                text,
                reply,
                tool_calls=used,
                evict_through_id=plan.evict_through_id,
            )
        except sqlite3.Error as e:
            logger.error(
                "turn.commit_failed",
                student_id=self.session.student_id,
                book_id=self.session.book_id,
                error=str(e),
            )
            self.state = TurnState.IDLE
            raise StoreTransactionError(f"Could not persist turn {message_id}: {e}") from e
