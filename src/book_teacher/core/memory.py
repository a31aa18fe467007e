"""Long-term memory of a tutoring session and the prompts built from it.

Two tiers: the short-term tier is the budgeted history window; the long-term
tier is the session's notes, current chapter, study plan, overall progress
and chapter progress rows. Summarization is the only path that promotes
conversation into the long-term tier.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from book_teacher.core.capabilities import ChapterStatus
from book_teacher.db import books_repository, sessions_repository
from book_teacher.db.books_repository import BookRecord
from book_teacher.db.sessions_repository import ChapterProgressRecord
from book_teacher.prompts.registry import get_prompt


@dataclass
class LongTermMemory:
    """Durable memory of one session, as read from the store."""

    current_chapter_number: str | None = None
    notes: str = ""
    plan: str = ""
    progress_summary: str = ""
    chapter_progress: list[ChapterProgressRecord] = field(default_factory=list)

    @classmethod
    def load(cls, student_id: int, book_id: int) -> LongTermMemory:
        """Read the long-term tier of a session."""
        session = sessions_repository.get_session(student_id, book_id)
        plan = sessions_repository.get_study_plan(student_id, book_id)
        return cls(
            current_chapter_number=session.current_chapter_number if session else None,
            notes=session.notes if session else "",
            plan=plan.plan if plan else "",
            progress_summary=plan.progress_summary if plan else "",
            chapter_progress=sessions_repository.get_chapter_progress(student_id, book_id),
        )

    def render(self) -> str:
        """Render as the memory block sent to the model."""
        lines = ["## Long-term memory"]
        lines.append(f"Current chapter: {self.current_chapter_number or 'not set'}")
        lines.append("")
        lines.append("### Notes about the student")
        lines.append(self.notes or "(none yet)")
        lines.append("")
        lines.append("### Study plan")
        lines.append(self.plan or "(none yet)")
        lines.append("")
        lines.append("### Overall progress")
        lines.append(self.progress_summary or "(none yet)")
        if self.chapter_progress:
            lines.append("")
            lines.append("### Chapter progress")
            for record in self.chapter_progress:
                status = ChapterStatus(record.status).name.lower()
                lines.append(f"- {record.chapter_number} [{status}] {record.objectives}")
        return "\n".join(lines)


def render_book_info(book: BookRecord) -> str:
    """Render the book metadata block appended to the instruction."""
    lines = ["## Book Info", f"- Title: {book.title}"]
    if book.author:
        lines.append(f"- Author: {book.author}")
    if book.description:
        lines.append(f"- Description: {book.description}")
    if book.summary:
        lines.append(f"- Summary: {book.summary}")
    return "\n".join(lines)


def render_table_of_contents(book_id: int) -> str:
    """Render the chapter list as indented Markdown."""
    lines = []
    for chapter in books_repository.get_chapters(book_id):
        depth = max(len([p for p in chapter.chapter_number.split(".") if p]) - 1, 0)
        lines.append(f"{'  ' * depth}- {chapter.chapter_number} {chapter.name}")
    return "\n".join(lines) or "(no chapters)"


def build_instruction(tutor_name: str, student_name: str, book: BookRecord) -> str:
    """Build the tutor system instruction for a session."""
    persona = get_prompt(
        "tutor/system",
        tutor_name=tutor_name,
        student_name=student_name,
        book_title=book.title,
    )
    return f"{persona.rstrip()}\n\n{render_book_info(book)}"


def build_distill_prompt(
    tutor_name: str, student_name: str, book: BookRecord, memory: LongTermMemory
) -> str:
    """Build the system prompt of a summarization pass."""
    return get_prompt(
        "summary/distill",
        tutor_name=tutor_name,
        student_name=student_name,
        book_title=book.title,
        memory=memory.render(),
        table_of_contents=render_table_of_contents(book.id),
    )
