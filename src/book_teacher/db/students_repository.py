"""Repository functions for the student table."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from book_teacher.db.database import get_db

logger = structlog.get_logger(__name__)


@dataclass
class StudentRecord:
    """Student record from database."""

    id: int
    name: str


def insert_student(name: str) -> int:
    """Insert a new student.

    Returns:
        The new student id
    """
    with get_db() as conn:
        cursor = conn.execute("INSERT INTO student (name) VALUES (?)", (name,))
        student_id = cursor.lastrowid

    logger.debug("students.inserted", student_id=student_id)
    return student_id


def get_student_by_id(student_id: int) -> StudentRecord | None:
    """Get student by ID."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT id, name FROM student WHERE id = ?", (student_id,)
        ).fetchone()

    if row is None:
        return None

    return StudentRecord(id=row["id"], name=row["name"])


def get_all_students() -> list[StudentRecord]:
    """Get all students ordered by id."""
    with get_db() as conn:
        rows = conn.execute("SELECT id, name FROM student ORDER BY id").fetchall()

    return [StudentRecord(id=row["id"], name=row["name"]) for row in rows]


def delete_student(student_id: int) -> bool:
    """Delete student by ID; sessions, history and progress cascade.

    Returns:
        True if deleted, False if not found
    """
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM student WHERE id = ?", (student_id,))

    deleted = cursor.rowcount > 0
    if deleted:
        logger.info("students.deleted", student_id=student_id)

    return deleted
