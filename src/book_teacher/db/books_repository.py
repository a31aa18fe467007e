"""Repository functions for book and chapter tables.

Books arrive pre-populated (chapter summaries and key points included) from
the import pipeline; after import only book metadata may change.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

import structlog

from book_teacher.db.database import get_db
from book_teacher.utils.chapter_numbers import chapter_sort_key, same_chapter

logger = structlog.get_logger(__name__)


@dataclass
class ChapterRecord:
    """Chapter record from database."""

    book_id: int
    chapter_number: str
    name: str
    summary: str = ""
    key_points: list[str] = field(default_factory=list)


@dataclass
class BookRecord:
    """Book record from database."""

    id: int
    title: str
    author: str
    path: str | None
    description: str | None
    summary: str | None


def insert_book(
    title: str,
    author: str = "",
    path: str | None = None,
    description: str | None = None,
    summary: str | None = None,
    chapters: list[ChapterRecord] | list[dict] | None = None,
) -> int:
    """Insert a new book with its chapters in one transaction.

    Args:
        title: Book title
        author: Author name(s)
        path: Source location of the imported book (unique when set)
        description: Free-form description
        summary: Whole-book summary
        chapters: Chapter records or dicts with chapter_number, name,
            summary and key_points

    Returns:
        The new book id

    Raises:
        sqlite3.IntegrityError: If path already exists or chapter numbers repeat
    """
    with get_db() as conn:
        cursor = conn.execute(
            """
            INSERT INTO book (title, author, path, description, summary)
            VALUES (?, ?, ?, ?, ?)
            """,
            (title, author, path, description, summary),
        )
        book_id = cursor.lastrowid

        for chapter in chapters or []:
            if isinstance(chapter, dict):
                chapter = ChapterRecord(
                    book_id=book_id,
                    chapter_number=str(chapter["chapter_number"]),
                    name=chapter["name"],
                    summary=chapter.get("summary", "") or "",
                    key_points=list(chapter.get("key_points", []) or []),
                )
            conn.execute(
                """
                INSERT INTO chapter (book_id, chapter_number, name, summary, key_points)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    book_id,
                    chapter.chapter_number,
                    chapter.name,
                    chapter.summary,
                    json.dumps(chapter.key_points),
                ),
            )

    logger.debug("books.inserted", book_id=book_id, chapters=len(chapters or []))
    return book_id


def get_book_by_id(book_id: int) -> BookRecord | None:
    """Get book by ID.

    Returns:
        BookRecord if found, None otherwise
    """
    with get_db() as conn:
        row = conn.execute("SELECT * FROM book WHERE id = ?", (book_id,)).fetchone()

    if row is None:
        return None

    return _row_to_book(row)


def get_all_books() -> list[BookRecord]:
    """Get all books ordered by id."""
    with get_db() as conn:
        rows = conn.execute("SELECT * FROM book ORDER BY id").fetchall()

    return [_row_to_book(row) for row in rows]


def update_book_metadata(
    book_id: int,
    title: str | None = None,
    author: str | None = None,
    description: str | None = None,
    summary: str | None = None,
) -> bool:
    """Update editable book metadata. None leaves a field unchanged.

    Returns:
        True if the book exists, False otherwise
    """
    with get_db() as conn:
        cursor = conn.execute(
            """
            UPDATE book SET
                title = COALESCE(?, title),
                author = COALESCE(?, author),
                description = COALESCE(?, description),
                summary = COALESCE(?, summary)
            WHERE id = ?
            """,
            (title, author, description, summary, book_id),
        )

    updated = cursor.rowcount > 0
    if updated:
        logger.debug("books.updated", book_id=book_id)
    return updated


def delete_book(book_id: int) -> bool:
    """Delete book by ID.

    Chapters, sessions, history, progress and plans cascade.

    Returns:
        True if deleted, False if not found
    """
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM book WHERE id = ?", (book_id,))

    deleted = cursor.rowcount > 0
    if deleted:
        logger.info("books.deleted", book_id=book_id)

    return deleted


def get_chapters(book_id: int) -> list[ChapterRecord]:
    """Get all chapters of a book in reading order."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM chapter WHERE book_id = ?", (book_id,)
        ).fetchall()

    chapters = [_row_to_chapter(row) for row in rows]
    chapters.sort(key=lambda c: chapter_sort_key(c.chapter_number))
    return chapters


def get_chapter(book_id: int, chapter_number: str) -> ChapterRecord | None:
    """Get one chapter, accepting equivalent spellings ("3.2" for "3.2.").

    Returns:
        ChapterRecord if the book has that chapter, None otherwise
    """
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM chapter WHERE book_id = ? AND chapter_number = ?",
            (book_id, chapter_number),
        ).fetchone()

    if row is not None:
        return _row_to_chapter(row)

    for chapter in get_chapters(book_id):
        if same_chapter(chapter.chapter_number, chapter_number):
            return chapter
    return None


def get_first_chapter_number(book_id: int) -> str | None:
    """Get the first chapter number of a book in reading order."""
    chapters = get_chapters(book_id)
    return chapters[0].chapter_number if chapters else None


def _row_to_book(row) -> BookRecord:
    """Convert database row to BookRecord."""
    return BookRecord(
        id=row["id"],
        title=row["title"],
        author=row["author"],
        path=row["path"],
        description=row["description"],
        summary=row["summary"],
    )


def _row_to_chapter(row) -> ChapterRecord:
    """Convert database row to ChapterRecord."""
    return ChapterRecord(
        book_id=row["book_id"],
        chapter_number=row["chapter_number"],
        name=row["name"],
        summary=row["summary"] or "",
        key_points=json.loads(row["key_points"]) if row["key_points"] else [],
    )
