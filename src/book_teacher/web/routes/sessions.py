"""Tutoring session endpoints.

A session is addressed by its (student, book) pair; the first request
loads it and creates its store row if needed.
"""

from fastapi import APIRouter, HTTPException, status

from book_teacher.core.capabilities import get_book_progress
from book_teacher.core.summarizer import SummaryResult
from book_teacher.core.supervisor import get_supervisor
from book_teacher.db import books_repository, sessions_repository
from book_teacher.web.schemas import (
    ConversationItem,
    ConversationResponse,
    MessageRequest,
    ProgressResetResponse,
    ProgressResponse,
    SessionResponse,
    SummaryResponse,
    TurnResponse,
)

router = APIRouter(prefix="/api/sessions/{student_id}/{book_id}", tags=["sessions"])


def _summary_response(result: SummaryResult) -> SummaryResponse:
    return SummaryResponse(
        trigger=result.trigger.value,
        status=result.status.value,
        messages_summarized=result.messages_summarized,
        applied=result.applied,
        skipped=result.skipped,
    )


@router.post("", response_model=SessionResponse)
async def open_session(student_id: int, book_id: int) -> SessionResponse:
    """Open (or resume) a tutoring session."""
    session = await get_supervisor().open(student_id, book_id)
    record = sessions_repository.get_session(student_id, book_id)

    return SessionResponse(
        student_id=student_id,
        book_id=book_id,
        current_chapter_number=record.current_chapter_number if record else None,
        ai_model=session.settings.ai_model,
        token_budget=session.settings.token_budget,
    )


@router.delete("", response_model=SummaryResponse | None)
async def close_session(student_id: int, book_id: int) -> SummaryResponse | None:
    """Close a live session, summarizing what happened since the last save."""
    result = await get_supervisor().close(student_id, book_id)
    if result is None:
        return None
    return _summary_response(result)


@router.delete("/enrolment", status_code=status.HTTP_204_NO_CONTENT)
async def unenrol(student_id: int, book_id: int) -> None:
    """Delete the session; its history, progress and plan go with it."""
    await get_supervisor().discard(student_id=student_id, book_id=book_id)

    if not sessions_repository.delete_session(student_id, book_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Student {student_id} has no session on book {book_id}",
        )


@router.post("/messages", response_model=TurnResponse)
async def send_message(student_id: int, book_id: int, request: MessageRequest) -> TurnResponse:
    """Send a student message and get the tutor's reply."""
    result = await get_supervisor().send_message(
        student_id, book_id, request.text, message_id=request.message_id
    )
    return TurnResponse(
        message_id=result.message_id,
        reply=result.reply,
        tool_calls=result.tool_calls,
        evicted=result.evicted,
        over_budget=result.over_budget,
        replayed=result.replayed,
    )


@router.get("/messages", response_model=ConversationResponse)
async def get_conversation(student_id: int, book_id: int) -> ConversationResponse:
    """Get the persisted conversation window."""
    history = await get_supervisor().get_conversation(student_id, book_id)
    items = [ConversationItem.model_validate(m) for m in history]
    return ConversationResponse(messages=items, count=len(items))


@router.post("/save", response_model=SummaryResponse)
async def save_session(student_id: int, book_id: int) -> SummaryResponse:
    """Summarize the conversation into long-term memory now."""
    return _summary_response(await get_supervisor().save(student_id, book_id))


@router.get("/progress", response_model=ProgressResponse)
async def get_progress(student_id: int, book_id: int) -> ProgressResponse:
    """Get the session's long-term memory."""
    await get_supervisor().open(student_id, book_id)
    return ProgressResponse(**get_book_progress(student_id, book_id))


@router.delete("/progress", response_model=ProgressResetResponse)
async def reset_progress(
    student_id: int, book_id: int, chapter_number: str | None = None
) -> ProgressResetResponse:
    """Reset chapter progress so statuses can start over.

    Without chapter_number every chapter of the book is reset.
    """
    if chapter_number is not None:
        chapter = books_repository.get_chapter(book_id, chapter_number)
        if chapter is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Chapter {chapter_number} not found in book {book_id}",
            )
        chapter_number = chapter.chapter_number

    removed = sessions_repository.reset_chapter_progress(student_id, book_id, chapter_number)
    return ProgressResetResponse(reset=removed)
