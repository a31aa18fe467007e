"""Context accountant.

Decides which part of a session's history fits into the model's context
window under the token budget, and which oldest prefix must be evicted.

The window is accumulated from the newest message backward. Messages of the
turn in flight are pinned: always sent, never evicted. Once the next older
history message would overflow the budget, it and everything older are
marked for eviction.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Sequence

import structlog

from book_teacher.core.errors import BudgetExceededWarning
from book_teacher.db.sessions_repository import HistoryMessage

logger = structlog.get_logger(__name__)


def estimate_tokens(text: str) -> int:
    """Estimate the token cost of a text.

    Roughly four characters per token. Deterministic and monotonic in the
    text length, so the same window always costs the same.
    """
    return (len(text) + 2) // 4


@dataclass
class ContextPlan:
    """Result of planning one context window."""

    selected: list[HistoryMessage]
    evicted: list[HistoryMessage]
    base_tokens: int
    pinned_tokens: int
    history_tokens: int
    token_budget: int
    over_budget: bool = False

    @property
    def total_tokens(self) -> int:
        """Estimated cost of everything sent to the model."""
        return self.base_tokens + self.pinned_tokens + self.history_tokens

    @property
    def evict_through_id(self) -> int | None:
        """Id of the newest evicted message, or None when nothing is evicted."""
        if not self.evicted:
            return None
        return self.evicted[-1].id


@dataclass
class ContextAccountant:
    """Plans context windows against a fixed token budget.

    Built from the session's settings snapshot; budget changes reach only
    sessions loaded after the change.
    """

    token_budget: int

    def message_cost(self, message: HistoryMessage) -> int:
        """Token cost of one persisted message."""
        return estimate_tokens(message.content)

    def plan(
        self,
        history: Sequence[HistoryMessage],
        system_prompt: str = "",
        memory: str = "",
        pinned: Sequence[str] = (),
    ) -> ContextPlan:
        """Select the newest history suffix that fits the budget.

        Args:
            history: Session history in insertion order
            system_prompt: Instruction text sent first
            memory: Long-term memory block (notes, plan, progress)
            pinned: Texts of the turn in flight; always included

        Returns:
            ContextPlan. When pinned texts are absent the newest history
            message is treated as the active one and always selected.
            If the mandatory part alone overflows the budget the plan is
            flagged over_budget, nothing else is selected and nothing is
            evicted, so the caller can summarize before anything is lost.
        """
        base_tokens = estimate_tokens(system_prompt) + estimate_tokens(memory)
        pinned_tokens = sum(estimate_tokens(text) for text in pinned)
        candidates = list(history)

        forced: list[HistoryMessage] = []
        if not pinned and candidates:
            forced = [candidates.pop()]
        forced_tokens = sum(self.message_cost(m) for m in forced)

        mandatory = base_tokens + pinned_tokens + forced_tokens
        if mandatory > self.token_budget:
            plan = ContextPlan(
                selected=forced,
                evicted=[],
                base_tokens=base_tokens,
                pinned_tokens=pinned_tokens,
                history_tokens=forced_tokens,
                token_budget=self.token_budget,
                over_budget=True,
            )
            logger.warning(
                "context.over_budget",
                mandatory_tokens=mandatory,
                token_budget=self.token_budget,
            )
            warnings.warn(
                f"Active message needs {mandatory} tokens, budget is {self.token_budget}",
                BudgetExceededWarning,
                stacklevel=2,
            )
            return plan

        running = mandatory
        cut = 0  # index of the oldest selected candidate
        for index in range(len(candidates) - 1, -1, -1):
            cost = self.message_cost(candidates[index])
            if running + cost > self.token_budget:
                cut = index + 1
                break
            running += cost

        selected = candidates[cut:] + forced
        evicted = candidates[:cut]

        plan = ContextPlan(
            selected=selected,
            evicted=evicted,
            base_tokens=base_tokens,
            pinned_tokens=pinned_tokens,
            history_tokens=running - base_tokens - pinned_tokens,
            token_budget=self.token_budget,
        )
        if evicted:
            logger.debug(
                "context.evicting",
                evicted=len(evicted),
                through_id=plan.evict_through_id,
                total_tokens=plan.total_tokens,
            )
        return plan
