"""SQLite database connection and schema management.

Provides connection management and schema initialization for the tutoring
sessions store. Every table that belongs to a book or a student cascades on
delete so no orphan rows survive.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import structlog

logger = structlog.get_logger(__name__)

# Default database location
DEFAULT_DB_PATH = Path("db/book_teacher.db")

# Current database path (module-level, set by init_db)
_db_path: Path | None = None


def init_db(
    db_path: Path | None = None,
    ai_model: str = "gpt-4o-mini",
    token_budget: int = 100000,
    auto_save_seconds: int | None = 600,
) -> None:
    """Initialize database with schema.

    Creates the database file and all required tables if they don't exist,
    and seeds the agent_setting singleton row.

    Args:
        db_path: Path to database file. Defaults to db/book_teacher.db
        ai_model: Model identifier for the seeded settings row
        token_budget: Token budget for the seeded settings row
        auto_save_seconds: Auto-save interval for the seeded settings row
    """
    global _db_path
    _db_path = db_path or DEFAULT_DB_PATH

    # Ensure directory exists
    _db_path.parent.mkdir(parents=True, exist_ok=True)

    with get_db() as conn:
        _create_schema(conn)
        conn.execute(
            """
            INSERT OR IGNORE INTO agent_setting (id, ai_model, token_budget, auto_save_seconds)
            VALUES (1, ?, ?, ?)
            """,
            (ai_model, token_budget, auto_save_seconds),
        )

    logger.info("database.initialized", path=str(_db_path))


def get_db_path() -> Path:
    """Return the active database path."""
    return _db_path or DEFAULT_DB_PATH


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Get database connection as context manager.

    The whole block runs in one transaction: it commits when the block exits
    normally and rolls back if it raises.

    Yields:
        SQLite connection with row factory set to sqlite3.Row

    Example:
        with get_db() as conn:
            cursor = conn.execute("SELECT * FROM book")
            rows = cursor.fetchall()
    """
    db_path = get_db_path()

    # Ensure directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")

    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _create_schema(conn: sqlite3.Connection) -> None:
    """Create database schema.

    Uses IF NOT EXISTS for idempotency.
    """
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS book (
            id INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
            title TEXT NOT NULL,
            author TEXT NOT NULL DEFAULT '',
            path TEXT UNIQUE,
            description TEXT,
            summary TEXT
        );

        -- chapter_number is a dotted sortable key ("1.", "3.2.", "-1.4.")
        CREATE TABLE IF NOT EXISTS chapter (
            book_id INTEGER NOT NULL,
            chapter_number TEXT NOT NULL,
            name TEXT NOT NULL,
            summary TEXT NOT NULL DEFAULT '',
            key_points TEXT NOT NULL DEFAULT '[]',
            PRIMARY KEY (book_id, chapter_number),
            FOREIGN KEY (book_id) REFERENCES book(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS student (
            id INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
            name TEXT NOT NULL
        );

        -- One long-lived tutoring session per (book, student)
        CREATE TABLE IF NOT EXISTS teacher_agent (
            book_id INTEGER NOT NULL,
            student_id INTEGER NOT NULL,
            current_chapter_number TEXT,
            notes TEXT NOT NULL DEFAULT '',
            last_summary_message_id INTEGER NOT NULL DEFAULT 0,
            update_time TEXT NOT NULL DEFAULT (datetime('now')),
            PRIMARY KEY (book_id, student_id),
            FOREIGN KEY (book_id) REFERENCES book(id) ON DELETE CASCADE,
            FOREIGN KEY (student_id) REFERENCES student(id) ON DELETE CASCADE,
            FOREIGN KEY (book_id, current_chapter_number)
                REFERENCES chapter(book_id, chapter_number) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS history_message (
            id INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
            book_id INTEGER NOT NULL,
            student_id INTEGER NOT NULL,
            role TEXT NOT NULL CHECK(role IN ('student', 'agent')),
            content TEXT NOT NULL,
            tool_calls TEXT NOT NULL DEFAULT '[]',
            message_id TEXT,
            update_time TEXT NOT NULL DEFAULT (datetime('now')),
            UNIQUE (book_id, student_id, message_id),
            FOREIGN KEY (book_id, student_id)
                REFERENCES teacher_agent(book_id, student_id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS chapter_progress (
            student_id INTEGER NOT NULL,
            book_id INTEGER NOT NULL,
            chapter_number TEXT NOT NULL,
            status INTEGER NOT NULL CHECK(status BETWEEN 0 AND 2),
            objectives TEXT NOT NULL DEFAULT '',
            update_time TEXT NOT NULL DEFAULT (datetime('now')),
            PRIMARY KEY (student_id, book_id, chapter_number),
            FOREIGN KEY (book_id, student_id)
                REFERENCES teacher_agent(book_id, student_id) ON DELETE CASCADE,
            FOREIGN KEY (book_id, chapter_number)
                REFERENCES chapter(book_id, chapter_number) ON DELETE CASCADE
        );

        -- Overall plan and progress summary per (student, book)
        CREATE TABLE IF NOT EXISTS study_plan (
            student_id INTEGER NOT NULL,
            book_id INTEGER NOT NULL,
            plan TEXT NOT NULL DEFAULT '',
            progress_summary TEXT NOT NULL DEFAULT '',
            update_time TEXT NOT NULL DEFAULT (datetime('now')),
            PRIMARY KEY (student_id, book_id),
            FOREIGN KEY (book_id, student_id)
                REFERENCES teacher_agent(book_id, student_id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS agent_setting (
            id INTEGER PRIMARY KEY CHECK(id = 1),
            ai_model TEXT NOT NULL,
            token_budget INTEGER NOT NULL CHECK(token_budget > 0),
            auto_save_seconds INTEGER
        );

        -- Indexes
        CREATE INDEX IF NOT EXISTS idx_history_session
            ON history_message(book_id, student_id, id);
        CREATE INDEX IF NOT EXISTS idx_progress_session
            ON chapter_progress(book_id, student_id);
        """
    )
