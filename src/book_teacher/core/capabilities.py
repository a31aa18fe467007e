"""Capability registry: the function-calling tools exposed to the model.

Read capabilities look up the book and the student's progress. Write
capabilities mutate progress, plan and memory; each one validates its
arguments, runs in its own transaction and is idempotent.

The module-level functions are the capabilities themselves and raise
CapabilityValidationError on bad arguments. A CapabilityRegistry binds them
to one session, publishes their schemas to the model (without student_id and
book_id, which it injects) and turns validation failures into tool-error
results the model can read and correct.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable

import jsonschema
import structlog

from book_teacher.core.errors import CapabilityValidationError, StoreTransactionError
from book_teacher.db import books_repository, sessions_repository
from book_teacher.llm.client import ToolCall

logger = structlog.get_logger(__name__)


class ChapterStatus(IntEnum):
    """Chapter progress ordinal. Only moves forward unless explicitly reset."""

    NOT_STARTED = 0
    IN_PROGRESS = 1
    COMPLETED = 2


# Targets a summarization pass must commit or explicitly skip
SUMMARY_TARGETS = ("chapter_progress", "overall_progress", "study_plan", "agent_memory")


# =============================================================================
# ARGUMENT SCHEMAS
# =============================================================================


def _object(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }


_CHAPTER_NUMBER = {
    "type": "string",
    "description": "Chapter number as listed in the table of contents, e.g. '3.2.'",
}

# Model-facing parameters; student_id and book_id are injected by the registry
PARAMETERS: dict[str, dict[str, Any]] = {
    "get_table_of_contents": _object({}, []),
    "get_chapter_summary": _object({"chapter_number": _CHAPTER_NUMBER}, ["chapter_number"]),
    "get_student_plan": _object({}, []),
    "get_chapter_progress": _object({}, []),
    "get_book_progress": _object({}, []),
    "set_chapter_progress": _object(
        {
            "chapter_number": _CHAPTER_NUMBER,
            "status": {"type": "integer", "enum": [s.value for s in ChapterStatus]},
            "objectives": {
                "type": "string",
                "description": "Objectives, what was achieved and the next step",
            },
        },
        ["chapter_number", "status", "objectives"],
    ),
    "update_study_plan": _object({"plan_text": {"type": "string"}}, ["plan_text"]),
    "update_overall_progress": _object({"summary_text": {"type": "string"}}, ["summary_text"]),
    "update_agent_memory": _object({"notes_text": {"type": "string"}}, ["notes_text"]),
    "set_current_chapter": _object({"chapter_number": _CHAPTER_NUMBER}, ["chapter_number"]),
    "skip_update": _object(
        {
            "target": {"type": "string", "enum": list(SUMMARY_TARGETS)},
            "reason": {"type": "string"},
        },
        ["target"],
    ),
}


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_arguments(name: str, arguments: Any) -> None:
    """Check capability arguments against the capability's JSON schema.

    Raises:
        CapabilityValidationError: With the first schema violation found
    """
    try:
        jsonschema.validate(arguments, PARAMETERS[name])
    except jsonschema.ValidationError as e:
        where = "/".join(str(part) for part in e.absolute_path) or "arguments"
        raise CapabilityValidationError(f"Invalid {where}: {e.message}") from e


def _require_chapter(book_id: int, chapter_number: str) -> books_repository.ChapterRecord:
    chapter = books_repository.get_chapter(book_id, chapter_number)
    if chapter is None:
        raise CapabilityValidationError(
            f"Chapter {chapter_number!r} does not exist in book {book_id}; "
            "use get_table_of_contents to list valid chapter numbers"
        )
    return chapter


def _require_session(student_id: int, book_id: int) -> sessions_repository.SessionRecord:
    session = sessions_repository.get_session(student_id, book_id)
    if session is None:
        raise CapabilityValidationError(
            f"No tutoring session for student {student_id} in book {book_id}"
        )
    return session


def _store_write(operation: str, func: Callable[..., Any], *args: Any) -> Any:
    try:
        return func(*args)
    except sqlite3.Error as e:
        raise StoreTransactionError(f"{operation} failed: {e}") from e


# =============================================================================
# READ CAPABILITIES
# =============================================================================


def get_table_of_contents(book_id: int) -> dict[str, Any]:
    """List the book's chapters in reading order."""
    book = books_repository.get_book_by_id(book_id)
    if book is None:
        raise CapabilityValidationError(f"Book {book_id} does not exist")
    return {
        "book_id": book.id,
        "title": book.title,
        "chapters": [
            {"chapter_number": c.chapter_number, "name": c.name}
            for c in books_repository.get_chapters(book_id)
        ],
    }


def get_chapter_summary(book_id: int, chapter_number: str) -> dict[str, Any]:
    """Return a chapter's name, summary and key points."""
    validate_arguments("get_chapter_summary", {"chapter_number": chapter_number})
    chapter = _require_chapter(book_id, chapter_number)
    return {
        "chapter_number": chapter.chapter_number,
        "name": chapter.name,
        "summary": chapter.summary,
        "key_points": chapter.key_points,
    }


def get_student_plan(student_id: int, book_id: int) -> dict[str, Any]:
    """Return the overall study plan and progress summary."""
    _require_session(student_id, book_id)
    plan = sessions_repository.get_study_plan(student_id, book_id)
    return {
        "plan": plan.plan if plan else "",
        "progress_summary": plan.progress_summary if plan else "",
    }


def get_chapter_progress(student_id: int, book_id: int) -> list[dict[str, Any]]:
    """Return every chapter progress row of the session."""
    _require_session(student_id, book_id)
    return [
        {
            "chapter_number": r.chapter_number,
            "status": r.status,
            "status_name": ChapterStatus(r.status).name.lower(),
            "objectives": r.objectives,
            "update_time": r.update_time,
        }
        for r in sessions_repository.get_chapter_progress(student_id, book_id)
    ]


def get_book_progress(student_id: int, book_id: int) -> dict[str, Any]:
    """Return current chapter, notes, plan and chapter progress in one payload."""
    session = _require_session(student_id, book_id)
    return {
        "current_chapter_number": session.current_chapter_number,
        "notes": session.notes,
        **get_student_plan(student_id, book_id),
        "chapter_progress": get_chapter_progress(student_id, book_id),
    }


# =============================================================================
# WRITE CAPABILITIES
# =============================================================================


def set_chapter_progress(
    student_id: int,
    book_id: int,
    chapter_number: str,
    status: int,
    objectives: str,
) -> dict[str, Any]:
    """Record a chapter's status and objectives.

    Raises:
        CapabilityValidationError: If the chapter is not in the book, status
            is not 0/1/2, or the status would move backward
    """
    validate_arguments(
        "set_chapter_progress",
        {"chapter_number": chapter_number, "status": status, "objectives": objectives},
    )
    _require_session(student_id, book_id)
    chapter = _require_chapter(book_id, chapter_number)
    new_status = ChapterStatus(status)

    current = sessions_repository.get_chapter_progress_row(
        student_id, book_id, chapter.chapter_number
    )
    if current is not None and new_status < current.status:
        raise CapabilityValidationError(
            f"Chapter {chapter.chapter_number} is already "
            f"{ChapterStatus(current.status).name.lower()}; status cannot go back to "
            f"{new_status.name.lower()} without an explicit progress reset"
        )

    _store_write(
        "set_chapter_progress",
        sessions_repository.upsert_chapter_progress,
        student_id,
        book_id,
        chapter.chapter_number,
        int(new_status),
        objectives,
    )
    return {"chapter_number": chapter.chapter_number, "status": int(new_status)}


def update_study_plan(student_id: int, book_id: int, plan_text: str) -> dict[str, Any]:
    """Replace the overall study plan."""
    validate_arguments("update_study_plan", {"plan_text": plan_text})
    _require_session(student_id, book_id)
    _store_write(
        "update_study_plan", sessions_repository.update_study_plan, student_id, book_id, plan_text
    )
    return {"updated": "study_plan"}


def update_overall_progress(student_id: int, book_id: int, summary_text: str) -> dict[str, Any]:
    """Replace the overall progress summary."""
    validate_arguments("update_overall_progress", {"summary_text": summary_text})
    _require_session(student_id, book_id)
    _store_write(
        "update_overall_progress",
        sessions_repository.update_overall_progress,
        student_id,
        book_id,
        summary_text,
    )
    return {"updated": "overall_progress"}


def update_agent_memory(student_id: int, book_id: int, notes_text: str) -> dict[str, Any]:
    """Replace the agent's durable notes about the student."""
    validate_arguments("update_agent_memory", {"notes_text": notes_text})
    _require_session(student_id, book_id)
    _store_write(
        "update_agent_memory", sessions_repository.update_notes, student_id, book_id, notes_text
    )
    return {"updated": "agent_memory"}


def set_current_chapter(student_id: int, book_id: int, chapter_number: str) -> dict[str, Any]:
    """Move the session to another chapter of the same book."""
    validate_arguments("set_current_chapter", {"chapter_number": chapter_number})
    _require_session(student_id, book_id)
    chapter = _require_chapter(book_id, chapter_number)
    _store_write(
        "set_current_chapter",
        sessions_repository.set_current_chapter,
        student_id,
        book_id,
        chapter.chapter_number,
    )
    return {"current_chapter_number": chapter.chapter_number}


def skip_update(target: str, reason: str = "") -> dict[str, Any]:
    """Explicitly leave one summarization target unchanged."""
    validate_arguments("skip_update", {"target": target, "reason": reason})
    return {"skipped": target, "reason": reason}


# =============================================================================
# REGISTRY
# =============================================================================


@dataclass
class Capability:
    """A named capability and its model-facing schema."""

    name: str
    description: str
    handler: Callable[..., Any]
    kind: str  # read | write | summary
    needs_student: bool = True
    needs_book: bool = True
    summary_target: str | None = None

    @property
    def parameters(self) -> dict[str, Any]:
        return PARAMETERS[self.name]

    def schema(self) -> dict[str, Any]:
        """OpenAI function-calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class CapabilityResult:
    """Outcome of one capability call, fed back to the model."""

    name: str
    ok: bool
    data: Any = None
    reason: str = ""
    summary_target: str | None = None

    def to_tool_content(self) -> str:
        """Serialize for the tool-result message."""
        if self.ok:
            return json.dumps({"ok": True, "result": self.data}, ensure_ascii=False)
        return json.dumps({"ok": False, "error": self.reason}, ensure_ascii=False)


def _build_capabilities() -> list[Capability]:
    return [
        Capability(
            name="get_table_of_contents",
            description="List the book's chapters (number and name) in reading order.",
            handler=get_table_of_contents,
            kind="read",
            needs_student=False,
        ),
        Capability(
            name="get_chapter_summary",
            description="Get a chapter's summary and key points.",
            handler=get_chapter_summary,
            kind="read",
            needs_student=False,
        ),
        Capability(
            name="get_student_plan",
            description="Get the student's overall study plan and progress summary.",
            handler=get_student_plan,
            kind="read",
        ),
        Capability(
            name="get_chapter_progress",
            description="Get the student's status and objectives for every chapter touched so far.",
            handler=get_chapter_progress,
            kind="read",
        ),
        Capability(
            name="get_book_progress",
            description="Get current chapter, notes, plan and chapter progress in one call.",
            handler=get_book_progress,
            kind="read",
        ),
        Capability(
            name="set_chapter_progress",
            description=(
                "Record the student's status in a chapter (0 not started, 1 in progress, "
                "2 completed) with the objectives reached and next steps. "
                "Status never goes backward."
            ),
            handler=set_chapter_progress,
            kind="write",
            summary_target="chapter_progress",
        ),
        Capability(
            name="update_study_plan",
            description="Replace the student's overall study plan for this book.",
            handler=update_study_plan,
            kind="write",
            summary_target="study_plan",
        ),
        Capability(
            name="update_overall_progress",
            description="Replace the summary of the student's overall progress in this book.",
            handler=update_overall_progress,
            kind="write",
            summary_target="overall_progress",
        ),
        Capability(
            name="update_agent_memory",
            description=(
                "Replace your long-term notes about the student (interests, difficulties, "
                "preferences). Keep everything still relevant; this text is all you remember."
            ),
            handler=update_agent_memory,
            kind="write",
            summary_target="agent_memory",
        ),
        Capability(
            name="set_current_chapter",
            description="Move the lesson to another chapter of this book.",
            handler=set_current_chapter,
            kind="write",
        ),
        Capability(
            name="skip_update",
            description="Declare that one summarization target needs no change.",
            handler=skip_update,
            kind="summary",
            needs_student=False,
            needs_book=False,
        ),
    ]


class CapabilityRegistry:
    """Capabilities bound to one (student, book) session."""

    def __init__(self, student_id: int, book_id: int, summarizing: bool = False):
        """Initialize registry.

        Args:
            student_id: Session student, injected into every call
            book_id: Session book, injected into every call
            summarizing: Also expose skip_update for summarization passes
        """
        self.student_id = student_id
        self.book_id = book_id
        self._capabilities = {
            c.name: c
            for c in _build_capabilities()
            if summarizing or c.kind != "summary"
        }

    @property
    def names(self) -> list[str]:
        """Registered capability names."""
        return list(self._capabilities)

    def get(self, name: str) -> Capability | None:
        """Get a capability by name."""
        return self._capabilities.get(name)

    def schemas(self, kinds: tuple[str, ...] | None = None) -> list[dict[str, Any]]:
        """Function schemas to send with a model request.

        Args:
            kinds: Restrict to these kinds (read, write, summary)
        """
        return [
            c.schema()
            for c in self._capabilities.values()
            if kinds is None or c.kind in kinds
        ]

    def invoke(self, call: ToolCall) -> CapabilityResult:
        """Execute one model-requested call.

        Validation problems become a failed result; store failures propagate.

        Raises:
            StoreTransactionError: If the write transaction failed
        """
        capability = self._capabilities.get(call.name)
        if capability is None:
            return self._reject(call.name, f"Unknown capability {call.name!r}")

        try:
            arguments = json.loads(call.arguments or "{}")
        except json.JSONDecodeError as e:
            return self._reject(call.name, f"Arguments are not valid JSON: {e}")
        try:
            validate_arguments(call.name, arguments)
        except CapabilityValidationError as e:
            return self._reject(call.name, str(e))

        kwargs = dict(arguments)
        if capability.needs_book:
            kwargs["book_id"] = self.book_id
        if capability.needs_student:
            kwargs["student_id"] = self.student_id

        try:
            data = capability.handler(**kwargs)
        except CapabilityValidationError as e:
            return self._reject(call.name, str(e))

        summary_target = capability.summary_target
        if capability.name == "skip_update":
            summary_target = data["skipped"]

        logger.info(
            "capability.applied",
            capability=call.name,
            student_id=self.student_id,
            book_id=self.book_id,
        )
        return CapabilityResult(
            name=call.name, ok=True, data=data, summary_target=summary_target
        )

    def _reject(self, name: str, reason: str) -> CapabilityResult:
        logger.warning(
            "capability.rejected",
            capability=name,
            reason=reason,
            student_id=self.student_id,
            book_id=self.book_id,
        )
        return CapabilityResult(name=name, ok=False, reason=reason)
