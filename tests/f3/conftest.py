"""Fixtures for F3 tests - turns, summarization and supervision."""

import json

import pytest

from book_teacher.core.supervisor import LiveSession
from book_teacher.db.sessions_repository import AgentSettings, ensure_session
from book_teacher.llm.client import ToolCall, ToolCallBatch


def _tool_batch(*calls: tuple[str, dict]) -> ToolCallBatch:
    """Build a ToolCallBatch from (name, arguments) pairs."""
    return ToolCallBatch(
        calls=[
            ToolCall(id=f"call-{i}", name=name, arguments=json.dumps(arguments))
            for i, (name, arguments) in enumerate(calls)
        ]
    )


def _full_summary_batch() -> ToolCallBatch:
    """A summarization step that writes every target."""
    return _tool_batch(
        ("set_chapter_progress", {"chapter_number": "1.", "status": 1, "objectives": "Hello world done"}),
        ("update_overall_progress", {"summary_text": "Started the book"}),
        ("update_study_plan", {"plan_text": "Finish chapter 1, then ownership"}),
        ("update_agent_memory", {"notes_text": "Ana likes short examples"}),
    )


@pytest.fixture
def make_session(student_id, book_id, book):
    """Factory for a loaded LiveSession with a chosen budget."""

    def _make(token_budget: int = 100000, auto_save_seconds: int | None = None) -> LiveSession:
        ensure_session(student_id, book_id)
        return LiveSession(
            student_id=student_id,
            book_id=book_id,
            student_name="Ana",
            book=book,
            settings=AgentSettings("test-model", token_budget, auto_save_seconds),
        )

    return _make


@pytest.fixture
def live_session(make_session):
    return make_session()


@pytest.fixture
def tool_batch():
    """Builder for ToolCallBatch steps from (name, arguments) pairs."""
    return _tool_batch


@pytest.fixture
def full_summary_batch():
    """Builder for a summarization step that writes every target."""
    return _full_summary_batch
