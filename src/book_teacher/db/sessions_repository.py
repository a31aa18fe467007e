"""Repository functions for tutoring sessions.

Covers the per-(student, book) tables: teacher_agent (long-term memory),
history_message (short-term window), chapter_progress and study_plan, plus
the agent_setting singleton.

Functions take ``student_id`` before ``book_id`` throughout.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

import structlog

from book_teacher.db.books_repository import get_first_chapter_number
from book_teacher.db.database import get_db
from book_teacher.utils.chapter_numbers import chapter_sort_key

logger = structlog.get_logger(__name__)


# =============================================================================
# AGENT SETTINGS
# =============================================================================


@dataclass(frozen=True)
class AgentSettings:
    """Snapshot of the agent_setting row, taken when a session loads."""

    ai_model: str
    token_budget: int
    auto_save_seconds: int | None = None


def get_agent_settings() -> AgentSettings:
    """Read the agent_setting singleton.

    Raises:
        LookupError: If the settings row was never seeded (init_db not run)
    """
    with get_db() as conn:
        row = conn.execute(
            "SELECT ai_model, token_budget, auto_save_seconds FROM agent_setting WHERE id = 1"
        ).fetchone()

    if row is None:
        raise LookupError("agent_setting row missing; run init_db first")

    return AgentSettings(
        ai_model=row["ai_model"],
        token_budget=row["token_budget"],
        auto_save_seconds=row["auto_save_seconds"],
    )


def update_agent_settings(
    ai_model: str | None = None,
    token_budget: int | None = None,
    auto_save_seconds: int | None = None,
    clear_auto_save: bool = False,
) -> AgentSettings:
    """Update the settings row. None leaves a field unchanged.

    Already-loaded sessions keep their snapshot; the change applies to
    sessions loaded afterwards.

    Raises:
        ValueError: If token_budget is not positive
    """
    if token_budget is not None and token_budget <= 0:
        raise ValueError(f"token_budget must be positive, got {token_budget}")

    with get_db() as conn:
        conn.execute(
            """
            UPDATE agent_setting SET
                ai_model = COALESCE(?, ai_model),
                token_budget = COALESCE(?, token_budget)
            WHERE id = 1
            """,
            (ai_model, token_budget),
        )
        if clear_auto_save:
            conn.execute("UPDATE agent_setting SET auto_save_seconds = NULL WHERE id = 1")
        elif auto_save_seconds is not None:
            conn.execute(
                "UPDATE agent_setting SET auto_save_seconds = ? WHERE id = 1",
                (auto_save_seconds,),
            )

    settings = get_agent_settings()
    logger.info(
        "settings.updated",
        ai_model=settings.ai_model,
        token_budget=settings.token_budget,
        auto_save_seconds=settings.auto_save_seconds,
    )
    return settings


# =============================================================================
# SESSIONS (teacher_agent)
# =============================================================================


@dataclass
class SessionRecord:
    """Long-term memory of one (student, book) tutoring session."""

    student_id: int
    book_id: int
    current_chapter_number: str | None
    notes: str
    last_summary_message_id: int
    update_time: str


def ensure_session(student_id: int, book_id: int) -> SessionRecord:
    """Create the session row on first access and return it.

    The current chapter starts at the book's first chapter.

    Raises:
        sqlite3.IntegrityError: If the book or student does not exist
        LookupError: If the row is gone right after the insert (concurrent delete)
    """
    first_chapter = get_first_chapter_number(book_id)
    with get_db() as conn:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO teacher_agent (book_id, student_id, current_chapter_number, notes)
            VALUES (?, ?, ?, '')
            """,
            (book_id, student_id, first_chapter),
        )

    if cursor.rowcount > 0:
        logger.info("sessions.created", student_id=student_id, book_id=book_id)

    record = get_session(student_id, book_id)
    if record is None:
        raise LookupError(f"Session not found: student {student_id}, book {book_id}")
    return record


def get_session(student_id: int, book_id: int) -> SessionRecord | None:
    """Get a session row, or None if the student never opened this book."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM teacher_agent WHERE student_id = ? AND book_id = ?",
            (student_id, book_id),
        ).fetchone()

    if row is None:
        return None

    return SessionRecord(
        student_id=row["student_id"],
        book_id=row["book_id"],
        current_chapter_number=row["current_chapter_number"],
        notes=row["notes"],
        last_summary_message_id=row["last_summary_message_id"],
        update_time=row["update_time"],
    )


def list_student_sessions(student_id: int) -> list[SessionRecord]:
    """List all sessions of a student."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT book_id FROM teacher_agent WHERE student_id = ? ORDER BY book_id",
            (student_id,),
        ).fetchall()

    sessions = [get_session(student_id, row["book_id"]) for row in rows]
    return [s for s in sessions if s is not None]


def delete_session(student_id: int, book_id: int) -> bool:
    """Delete a session; its history, progress and plan cascade."""
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM teacher_agent WHERE student_id = ? AND book_id = ?",
            (student_id, book_id),
        )

    deleted = cursor.rowcount > 0
    if deleted:
        logger.info("sessions.deleted", student_id=student_id, book_id=book_id)
    return deleted


def update_notes(student_id: int, book_id: int, notes: str) -> bool:
    """Replace the session's durable notes."""
    with get_db() as conn:
        cursor = conn.execute(
            """
            UPDATE teacher_agent SET notes = ?, update_time = datetime('now')
            WHERE student_id = ? AND book_id = ?
            """,
            (notes, student_id, book_id),
        )
    return cursor.rowcount > 0


def set_current_chapter(student_id: int, book_id: int, chapter_number: str) -> bool:
    """Move the session's current chapter.

    Raises:
        sqlite3.IntegrityError: If the chapter does not belong to the book
    """
    with get_db() as conn:
        cursor = conn.execute(
            """
            UPDATE teacher_agent SET current_chapter_number = ?, update_time = datetime('now')
            WHERE student_id = ? AND book_id = ?
            """,
            (chapter_number, student_id, book_id),
        )
    return cursor.rowcount > 0


def advance_summary_marker(student_id: int, book_id: int, message_id: int) -> None:
    """Record that history up to message_id has been summarized. Never moves back."""
    with get_db() as conn:
        conn.execute(
            """
            UPDATE teacher_agent SET
                last_summary_message_id = MAX(last_summary_message_id, ?),
                update_time = datetime('now')
            WHERE student_id = ? AND book_id = ?
            """,
            (message_id, student_id, book_id),
        )


# =============================================================================
# HISTORY
# =============================================================================


@dataclass
class HistoryMessage:
    """One persisted conversation message."""

    id: int
    role: str  # student | agent
    content: str
    tool_calls: list[str] = field(default_factory=list)
    message_id: str | None = None
    update_time: str = ""


def get_history(student_id: int, book_id: int, after_id: int = 0) -> list[HistoryMessage]:
    """Get a session's history in insertion order.

    Args:
        after_id: Only return messages with a greater id
    """
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT * FROM history_message
            WHERE student_id = ? AND book_id = ? AND id > ?
            ORDER BY id ASC
            """,
            (student_id, book_id, after_id),
        ).fetchall()

    return [_row_to_message(row) for row in rows]


def find_turn(
    student_id: int, book_id: int, message_id: str
) -> tuple[HistoryMessage, HistoryMessage] | None:
    """Find an already committed turn by the student's message id.

    Returns:
        (student_message, agent_reply) or None if that turn never committed
    """
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT * FROM history_message
            WHERE student_id = ? AND book_id = ? AND message_id IN (?, ?)
            ORDER BY id ASC
            """,
            (student_id, book_id, message_id, _reply_id(message_id)),
        ).fetchall()

    if len(rows) != 2:
        return None
    return _row_to_message(rows[0]), _row_to_message(rows[1])


def commit_turn(
    student_id: int,
    book_id: int,
    message_id: str,
    student_text: str,
    reply_text: str,
    tool_calls: list[str] | None = None,
    evict_through_id: int | None = None,
) -> tuple[int, int]:
    """Persist one turn atomically.

    Appends the student message and the agent reply, deletes the evicted
    oldest prefix and touches the session timestamp in a single transaction.

    Args:
        message_id: Client id of the student message (idempotency key)
        tool_calls: Capability names used while producing the reply
        evict_through_id: Delete every message of the session with id <= this

    Returns:
        (student_row_id, reply_row_id)

    Raises:
        sqlite3.IntegrityError: If the session vanished or message_id repeats
    """
    with get_db() as conn:
        evicted = 0
        if evict_through_id is not None:
            evicted = conn.execute(
                """
                DELETE FROM history_message
                WHERE student_id = ? AND book_id = ? AND id <= ?
                """,
                (student_id, book_id, evict_through_id),
            ).rowcount
        student_row = conn.execute(
            """
            INSERT INTO history_message (book_id, student_id, role, content, message_id)
            VALUES (?, ?, 'student', ?, ?)
            """,
            (book_id, student_id, student_text, message_id),
        ).lastrowid
        reply_row = conn.execute(
            """
            INSERT INTO history_message (book_id, student_id, role, content, tool_calls, message_id)
            VALUES (?, ?, 'agent', ?, ?, ?)
            """,
            (
                book_id,
                student_id,
                reply_text,
                json.dumps(tool_calls or []),
                _reply_id(message_id),
            ),
        ).lastrowid
        conn.execute(
            """
            UPDATE teacher_agent SET update_time = datetime('now')
            WHERE student_id = ? AND book_id = ?
            """,
            (student_id, book_id),
        )

    logger.debug(
        "history.turn_committed",
        student_id=student_id,
        book_id=book_id,
        evicted=evicted,
    )
    return student_row, reply_row


def _reply_id(message_id: str) -> str:
    return f"{message_id}:reply"


def _row_to_message(row) -> HistoryMessage:
    """Convert database row to HistoryMessage."""
    return HistoryMessage(
        id=row["id"],
        role=row["role"],
        content=row["content"],
        tool_calls=json.loads(row["tool_calls"]) if row["tool_calls"] else [],
        message_id=row["message_id"],
        update_time=row["update_time"],
    )


# =============================================================================
# PROGRESS AND PLAN
# =============================================================================


@dataclass
class ChapterProgressRecord:
    """Progress of one student in one chapter."""

    chapter_number: str
    status: int
    objectives: str
    update_time: str


@dataclass
class StudyPlanRecord:
    """Overall plan and progress summary of one student in one book."""

    plan: str
    progress_summary: str
    update_time: str


def get_chapter_progress(student_id: int, book_id: int) -> list[ChapterProgressRecord]:
    """Get all chapter progress rows of a session in reading order."""
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT chapter_number, status, objectives, update_time FROM chapter_progress
            WHERE student_id = ? AND book_id = ?
            """,
            (student_id, book_id),
        ).fetchall()

    records = [
        ChapterProgressRecord(
            chapter_number=row["chapter_number"],
            status=row["status"],
            objectives=row["objectives"],
            update_time=row["update_time"],
        )
        for row in rows
    ]
    records.sort(key=lambda r: chapter_sort_key(r.chapter_number))
    return records


def get_chapter_progress_row(
    student_id: int, book_id: int, chapter_number: str
) -> ChapterProgressRecord | None:
    """Get the progress row of one chapter, or None if never set."""
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT chapter_number, status, objectives, update_time FROM chapter_progress
            WHERE student_id = ? AND book_id = ? AND chapter_number = ?
            """,
            (student_id, book_id, chapter_number),
        ).fetchone()

    if row is None:
        return None

    return ChapterProgressRecord(
        chapter_number=row["chapter_number"],
        status=row["status"],
        objectives=row["objectives"],
        update_time=row["update_time"],
    )


def upsert_chapter_progress(
    student_id: int,
    book_id: int,
    chapter_number: str,
    status: int,
    objectives: str,
) -> None:
    """Insert or replace one chapter's progress.

    Raises:
        sqlite3.IntegrityError: If status is out of range, the chapter is not
            part of the book, or the session does not exist
    """
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO chapter_progress (student_id, book_id, chapter_number, status, objectives)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (student_id, book_id, chapter_number) DO UPDATE SET
                status = excluded.status,
                objectives = excluded.objectives,
                update_time = datetime('now')
            """,
            (student_id, book_id, chapter_number, status, objectives),
        )


def reset_chapter_progress(
    student_id: int, book_id: int, chapter_number: str | None = None
) -> int:
    """Delete progress rows so chapters can start over.

    Args:
        chapter_number: Only reset this chapter; None resets the whole book

    Returns:
        Number of rows removed
    """
    with get_db() as conn:
        if chapter_number is None:
            cursor = conn.execute(
                "DELETE FROM chapter_progress WHERE student_id = ? AND book_id = ?",
                (student_id, book_id),
            )
        else:
            cursor = conn.execute(
                """
                DELETE FROM chapter_progress
                WHERE student_id = ? AND book_id = ? AND chapter_number = ?
                """,
                (student_id, book_id, chapter_number),
            )

    logger.info(
        "progress.reset",
        student_id=student_id,
        book_id=book_id,
        chapter_number=chapter_number,
        removed=cursor.rowcount,
    )
    return cursor.rowcount


def get_study_plan(student_id: int, book_id: int) -> StudyPlanRecord | None:
    """Get the plan row of a session, or None if nothing was written yet."""
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT plan, progress_summary, update_time FROM study_plan
            WHERE student_id = ? AND book_id = ?
            """,
            (student_id, book_id),
        ).fetchone()

    if row is None:
        return None

    return StudyPlanRecord(
        plan=row["plan"],
        progress_summary=row["progress_summary"],
        update_time=row["update_time"],
    )


def update_study_plan(student_id: int, book_id: int, plan: str) -> None:
    """Replace the overall study plan text."""
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO study_plan (student_id, book_id, plan) VALUES (?, ?, ?)
            ON CONFLICT (student_id, book_id) DO UPDATE SET
                plan = excluded.plan,
                update_time = datetime('now')
            """,
            (student_id, book_id, plan),
        )


def update_overall_progress(student_id: int, book_id: int, summary: str) -> None:
    """Replace the overall progress summary text."""
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO study_plan (student_id, book_id, progress_summary) VALUES (?, ?, ?)
            ON CONFLICT (student_id, book_id) DO UPDATE SET
                progress_summary = excluded.progress_summary,
                update_time = datetime('now')
            """,
            (student_id, book_id, summary),
        )
