"""Pydantic schemas for the Web API.

Serialization models for students, books, sessions, turns and settings.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


# =============================================================================
# STUDENT SCHEMAS
# =============================================================================


class StudentCreate(BaseModel):
    """Request body for creating a student."""

    name: str = Field(..., min_length=1, max_length=100)


class StudentResponse(BaseModel):
    """Response for a student."""

    id: int
    name: str

    model_config = {"from_attributes": True}


class StudentListResponse(BaseModel):
    """Response for list of students."""

    students: list[StudentResponse]
    count: int


# =============================================================================
# BOOK SCHEMAS
# =============================================================================


class ChapterPayload(BaseModel):
    """One chapter of an imported book."""

    chapter_number: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1)
    summary: str = ""
    key_points: list[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class BookCreate(BaseModel):
    """Request body for importing an already-processed book."""

    title: str = Field(..., min_length=1, max_length=300)
    author: str = ""
    path: str | None = None
    description: str | None = None
    summary: str | None = None
    chapters: list[ChapterPayload] = Field(default_factory=list)


class BookUpdate(BaseModel):
    """Request body for updating book metadata. Omitted fields stay unchanged."""

    title: str | None = Field(default=None, min_length=1, max_length=300)
    author: str | None = None
    description: str | None = None
    summary: str | None = None


class BookSummary(BaseModel):
    """Book as listed in the library."""

    id: int
    title: str
    author: str
    description: str | None = None

    model_config = {"from_attributes": True}


class BookDetail(BookSummary):
    """Book with its table of contents."""

    path: str | None = None
    summary: str | None = None
    chapters: list[ChapterPayload] = Field(default_factory=list)


class BookListResponse(BaseModel):
    """Response for list of books."""

    books: list[BookSummary]
    count: int


# =============================================================================
# SESSION SCHEMAS
# =============================================================================


class SessionResponse(BaseModel):
    """State of a (student, book) tutoring session."""

    student_id: int
    book_id: int
    current_chapter_number: str | None
    ai_model: str
    token_budget: int
    live: bool = True


class EnrolmentResponse(BaseModel):
    """A book the student has a session on."""

    book_id: int
    current_chapter_number: str | None
    last_summary_message_id: int
    update_time: str

    model_config = {"from_attributes": True}


class EnrolmentListResponse(BaseModel):
    """Sessions of one student."""

    sessions: list[EnrolmentResponse]
    count: int


class MessageRequest(BaseModel):
    """A student message. Reuse message_id when retrying a lost response."""

    text: str = Field(..., min_length=1, max_length=8000)
    message_id: str | None = Field(default=None, max_length=100)


class TurnResponse(BaseModel):
    """The tutor's answer to one message."""

    message_id: str
    reply: str
    tool_calls: list[str] = Field(default_factory=list)
    evicted: int = 0
    over_budget: bool = False
    replayed: bool = False


class ConversationItem(BaseModel):
    """One persisted message of the conversation."""

    id: int
    role: str
    content: str
    tool_calls: list[str] = Field(default_factory=list)
    update_time: str = ""

    model_config = {"from_attributes": True}


class ConversationResponse(BaseModel):
    """The persisted conversation window."""

    messages: list[ConversationItem]
    count: int


class SummaryResponse(BaseModel):
    """Outcome of a summarization request."""

    trigger: str
    status: str
    messages_summarized: int = 0
    applied: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


class ProgressResponse(BaseModel):
    """Long-term memory of a session."""

    current_chapter_number: str | None
    notes: str
    plan: str
    progress_summary: str
    chapter_progress: list[dict[str, Any]]


class ProgressResetResponse(BaseModel):
    """Number of chapter progress rows removed."""

    reset: int


# =============================================================================
# SETTINGS SCHEMAS
# =============================================================================


class SettingsResponse(BaseModel):
    """Agent settings row."""

    ai_model: str
    token_budget: int
    auto_save_seconds: int | None = None

    model_config = {"from_attributes": True}


class SettingsUpdate(BaseModel):
    """Partial settings update; applies to sessions loaded afterwards."""

    ai_model: str | None = Field(default=None, min_length=1)
    token_budget: int | None = Field(default=None, gt=0)
    auto_save_seconds: int | None = Field(default=None, gt=0)
    disable_auto_save: bool = False


# =============================================================================
# HEALTH SCHEMAS
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    live_sessions: int = 0
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
