"""Tests for capabilities and the capability registry (F2)."""

import json
import sqlite3
from unittest.mock import patch

import pytest

from book_teacher.core.capabilities import (
    SUMMARY_TARGETS,
    CapabilityRegistry,
    ChapterStatus,
    get_book_progress,
    get_chapter_summary,
    get_table_of_contents,
    set_chapter_progress,
    set_current_chapter,
    skip_update,
    update_agent_memory,
)
from book_teacher.core.errors import CapabilityValidationError, StoreTransactionError
from book_teacher.db.sessions_repository import (
    ensure_session,
    get_chapter_progress_row,
    get_session,
    reset_chapter_progress,
)
from book_teacher.llm.client import ToolCall


@pytest.fixture
def session(student_id, book_id):
    ensure_session(student_id, book_id)
    return student_id, book_id


@pytest.fixture
def registry(session):
    return CapabilityRegistry(*session)


def call(name: str, **arguments) -> ToolCall:
    return ToolCall(id=f"call-{name}", name=name, arguments=json.dumps(arguments))


class TestReadCapabilities:
    """Tests for read capabilities."""

    def test_table_of_contents(self, book_id):
        toc = get_table_of_contents(book_id)
        assert toc["title"] == "Rust in Action"
        assert [c["chapter_number"] for c in toc["chapters"]] == ["1.", "2.", "2.1.", "-1.1."]

    def test_table_of_contents_unknown_book(self, db_path):
        with pytest.raises(CapabilityValidationError):
            get_table_of_contents(404)

    def test_chapter_summary(self, book_id):
        summary = get_chapter_summary(book_id, "2.")
        assert summary["name"] == "Ownership"
        assert summary["key_points"] == ["move semantics", "borrow checker"]

    def test_chapter_summary_unknown_chapter(self, book_id):
        with pytest.raises(CapabilityValidationError, match="does not exist"):
            get_chapter_summary(book_id, "12.")

    def test_book_progress_payload(self, session):
        student_id, book_id = session
        update_agent_memory(student_id, book_id, "Prefers short answers")
        progress = get_book_progress(student_id, book_id)
        assert progress["current_chapter_number"] == "1."
        assert progress["notes"] == "Prefers short answers"
        assert progress["plan"] == ""
        assert progress["chapter_progress"] == []


class TestSetChapterProgress:
    """Validation and monotonicity of set_chapter_progress."""

    def test_records_progress(self, session):
        student_id, book_id = session
        result = set_chapter_progress(student_id, book_id, "2.1", 1, "References")
        assert result == {"chapter_number": "2.1.", "status": 1}
        assert get_chapter_progress_row(student_id, book_id, "2.1.").objectives == "References"

    def test_status_out_of_range_leaves_row_unchanged(self, session):
        student_id, book_id = session
        set_chapter_progress(student_id, book_id, "1.", 1, "Started")

        with pytest.raises(CapabilityValidationError):
            set_chapter_progress(student_id, book_id, "1.", 3, "Overflow")

        row = get_chapter_progress_row(student_id, book_id, "1.")
        assert (row.status, row.objectives) == (1, "Started")

    @pytest.mark.parametrize("status", [-1, True, "done", "2", 1.5, None])
    def test_invalid_status_values(self, session, status):
        with pytest.raises(CapabilityValidationError):
            set_chapter_progress(*session, "1.", status, "")

    def test_status_cannot_go_backward(self, session):
        student_id, book_id = session
        set_chapter_progress(student_id, book_id, "2.", ChapterStatus.COMPLETED, "Done")

        with pytest.raises(CapabilityValidationError, match="cannot go back"):
            set_chapter_progress(student_id, book_id, "2.", ChapterStatus.IN_PROGRESS, "Again")

        assert get_chapter_progress_row(student_id, book_id, "2.").status == 2

    def test_same_status_updates_objectives(self, session):
        student_id, book_id = session
        set_chapter_progress(student_id, book_id, "2.", 1, "Moves")
        set_chapter_progress(student_id, book_id, "2.", 1, "Moves and clones")
        assert get_chapter_progress_row(student_id, book_id, "2.").objectives == "Moves and clones"

    def test_reset_allows_starting_over(self, session):
        student_id, book_id = session
        set_chapter_progress(student_id, book_id, "2.", 2, "Done")
        reset_chapter_progress(student_id, book_id, "2.")
        set_chapter_progress(student_id, book_id, "2.", 0, "Restarting")
        assert get_chapter_progress_row(student_id, book_id, "2.").status == 0

    def test_requires_session(self, student_id, book_id):
        with pytest.raises(CapabilityValidationError, match="No tutoring session"):
            set_chapter_progress(student_id, book_id, "1.", 1, "")

    def test_store_failure_is_turn_fatal(self, session):
        with patch(
            "book_teacher.db.sessions_repository.upsert_chapter_progress",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            with pytest.raises(StoreTransactionError, match="database is locked"):
                set_chapter_progress(*session, "1.", 1, "")


class TestOtherWrites:
    """Tests for the remaining write capabilities."""

    def test_set_current_chapter(self, session):
        student_id, book_id = session
        assert set_current_chapter(student_id, book_id, "-1.1")["current_chapter_number"] == "-1.1."
        assert get_session(student_id, book_id).current_chapter_number == "-1.1."

    def test_set_current_chapter_other_book(self, session):
        with pytest.raises(CapabilityValidationError):
            set_current_chapter(*session, "8.")

    def test_writes_are_idempotent(self, session):
        student_id, book_id = session
        update_agent_memory(student_id, book_id, "Likes puzzles")
        update_agent_memory(student_id, book_id, "Likes puzzles")
        assert get_session(student_id, book_id).notes == "Likes puzzles"

    def test_text_must_be_string(self, session):
        with pytest.raises(CapabilityValidationError):
            update_agent_memory(*session, ["not", "text"])

    def test_skip_update_targets(self):
        assert skip_update("study_plan", "unchanged")["skipped"] == "study_plan"
        with pytest.raises(CapabilityValidationError):
            skip_update("everything")


class TestRegistry:
    """Tests for CapabilityRegistry."""

    def test_schemas_hide_session_ids(self, registry):
        for schema in registry.schemas():
            properties = schema["function"]["parameters"]["properties"]
            assert "student_id" not in properties
            assert "book_id" not in properties

    def test_skip_update_only_when_summarizing(self, session):
        assert "skip_update" not in CapabilityRegistry(*session).names
        assert "skip_update" in CapabilityRegistry(*session, summarizing=True).names

    def test_schemas_filtered_by_kind(self, registry):
        names = {s["function"]["name"] for s in registry.schemas(kinds=("write",))}
        assert names == {
            "set_chapter_progress",
            "update_study_plan",
            "update_overall_progress",
            "update_agent_memory",
            "set_current_chapter",
        }

    def test_invoke_injects_session(self, registry, session):
        student_id, book_id = session
        result = registry.invoke(call("set_chapter_progress", chapter_number="1.", status=1, objectives="Go"))
        assert result.ok
        assert result.summary_target == "chapter_progress"
        assert get_chapter_progress_row(student_id, book_id, "1.").status == 1

    def test_invoke_validation_error_becomes_tool_error(self, registry, session):
        result = registry.invoke(call("set_chapter_progress", chapter_number="1.", status=3, objectives=""))
        assert not result.ok
        payload = json.loads(result.to_tool_content())
        assert payload["ok"] is False
        assert "status" in payload["error"]
        assert get_chapter_progress_row(*session, "1.") is None

    def test_invoke_unknown_capability(self, registry):
        result = registry.invoke(call("delete_everything"))
        assert not result.ok
        assert "Unknown capability" in result.reason

    def test_invoke_rejects_smuggled_ids(self, registry):
        result = registry.invoke(call("update_agent_memory", notes_text="x", student_id=99))
        assert not result.ok
        assert "'student_id' was unexpected" in result.reason

    def test_invoke_missing_argument(self, registry):
        result = registry.invoke(call("update_study_plan"))
        assert not result.ok
        assert "plan_text" in result.reason

    def test_invoke_arguments_must_be_object(self, registry):
        result = registry.invoke(ToolCall(id="c", name="update_study_plan", arguments="[1]"))
        assert not result.ok
        assert "is not of type 'object'" in result.reason

    def test_invoke_error_names_offending_field(self, registry):
        result = registry.invoke(call("skip_update", target="everything"))
        assert not result.ok
        assert result.reason.startswith("Invalid target:")

    def test_invoke_bad_json(self, registry):
        result = registry.invoke(ToolCall(id="c", name="update_study_plan", arguments="{plan"))
        assert not result.ok
        assert "JSON" in result.reason

    def test_invoke_read_returns_data(self, registry):
        result = registry.invoke(call("get_chapter_summary", chapter_number="2.1."))
        assert result.ok
        assert json.loads(result.to_tool_content())["result"]["name"] == "Borrowing"

    def test_skip_update_reports_target(self, session):
        registry = CapabilityRegistry(*session, summarizing=True)
        result = registry.invoke(call("skip_update", target="agent_memory"))
        assert result.ok
        assert result.summary_target == "agent_memory"

    def test_every_summary_target_has_a_writer(self, session):
        targets = {
            c.summary_target
            for c in (CapabilityRegistry(*session).get(n) for n in CapabilityRegistry(*session).names)
            if c.summary_target
        }
        assert targets == set(SUMMARY_TARGETS)
