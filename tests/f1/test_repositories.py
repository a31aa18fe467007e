"""Tests for books, students and session repositories (F1)."""

import sqlite3

import pytest

from book_teacher.db import sessions_repository
from book_teacher.db.books_repository import (
    ChapterRecord,
    get_all_books,
    get_book_by_id,
    get_chapter,
    get_chapters,
    get_first_chapter_number,
    insert_book,
    update_book_metadata,
)
from book_teacher.db.sessions_repository import (
    advance_summary_marker,
    commit_turn,
    ensure_session,
    find_turn,
    get_chapter_progress,
    get_history,
    get_session,
    get_study_plan,
    list_student_sessions,
    reset_chapter_progress,
    set_current_chapter,
    update_notes,
    update_overall_progress,
    update_study_plan,
    upsert_chapter_progress,
)
from book_teacher.db.students_repository import (
    get_all_students,
    get_student_by_id,
    insert_student,
)


class TestBooks:
    """Tests for books and chapters."""

    def test_insert_and_get(self, book_id):
        book = get_book_by_id(book_id)
        assert book.title == "Rust in Action"
        assert book.author == "Tim McNamara"
        assert book.summary is None

    def test_get_missing_book(self, db_path):
        assert get_book_by_id(999) is None

    def test_chapters_in_reading_order(self, book_id):
        numbers = [c.chapter_number for c in get_chapters(book_id)]
        assert numbers == ["1.", "2.", "2.1.", "-1.1."]

    def test_chapter_key_points_round_trip(self, book_id):
        chapter = get_chapter(book_id, "2.1.")
        assert chapter.key_points == ["&T", "&mut T"]

    def test_get_chapter_accepts_equivalent_spelling(self, book_id):
        assert get_chapter(book_id, "2.1").chapter_number == "2.1."
        assert get_chapter(book_id, "7.") is None

    def test_first_chapter(self, book_id):
        assert get_first_chapter_number(book_id) == "1."

    def test_insert_accepts_records(self, db_path):
        book_id = insert_book(
            "Dune",
            chapters=[ChapterRecord(book_id=0, chapter_number="1.", name="Arrakis")],
        )
        assert [c.name for c in get_chapters(book_id)] == ["Arrakis"]

    def test_duplicate_chapter_rolls_back_book(self, db_path):
        with pytest.raises(sqlite3.IntegrityError):
            insert_book(
                "Broken",
                chapters=[
                    {"chapter_number": "1.", "name": "A"},
                    {"chapter_number": "1.", "name": "B"},
                ],
            )
        assert get_all_books() == []

    def test_duplicate_path_rejected(self, book_id):
        with pytest.raises(sqlite3.IntegrityError):
            insert_book("Again", path="/books/rust-in-action.pdf")

    def test_update_metadata_keeps_unset_fields(self, book_id):
        assert update_book_metadata(book_id, summary="A tour of Rust.")
        book = get_book_by_id(book_id)
        assert book.summary == "A tour of Rust."
        assert book.title == "Rust in Action"

    def test_update_missing_book(self, db_path):
        assert not update_book_metadata(42, title="Nope")


class TestStudents:
    """Tests for students."""

    def test_insert_and_list(self, db_path):
        first = insert_student("Ana")
        second = insert_student("Luis")
        assert [s.name for s in get_all_students()] == ["Ana", "Luis"]
        assert get_student_by_id(second).id == second
        assert first != second

    def test_missing_student(self, db_path):
        assert get_student_by_id(7) is None


class TestSessions:
    """Tests for teacher_agent rows."""

    def test_ensure_creates_at_first_chapter(self, student_id, book_id):
        session = ensure_session(student_id, book_id)
        assert session.current_chapter_number == "1."
        assert session.notes == ""
        assert session.last_summary_message_id == 0

    def test_ensure_is_insert_or_ignore(self, student_id, book_id):
        ensure_session(student_id, book_id)
        update_notes(student_id, book_id, "Likes examples")
        assert ensure_session(student_id, book_id).notes == "Likes examples"
        assert len(list_student_sessions(student_id)) == 1

    def test_ensure_unknown_book(self, student_id):
        with pytest.raises(sqlite3.IntegrityError):
            ensure_session(student_id, 999)

    def test_ensure_row_vanished(self, student_id, book_id, monkeypatch):
        monkeypatch.setattr(sessions_repository, "get_session", lambda s, b: None)
        with pytest.raises(LookupError):
            ensure_session(student_id, book_id)

    def test_set_current_chapter_validates_book(self, student_id, book_id):
        ensure_session(student_id, book_id)
        assert set_current_chapter(student_id, book_id, "2.1.")
        assert get_session(student_id, book_id).current_chapter_number == "2.1."
        with pytest.raises(sqlite3.IntegrityError):
            set_current_chapter(student_id, book_id, "9.")

    def test_summary_marker_never_moves_back(self, student_id, book_id):
        ensure_session(student_id, book_id)
        advance_summary_marker(student_id, book_id, 10)
        advance_summary_marker(student_id, book_id, 4)
        assert get_session(student_id, book_id).last_summary_message_id == 10


class TestHistory:
    """Tests for history persistence."""

    @pytest.fixture
    def session(self, student_id, book_id):
        ensure_session(student_id, book_id)
        return student_id, book_id

    def test_commit_turn_appends_pair_in_order(self, session):
        student_id, book_id = session
        commit_turn(student_id, book_id, "m1", "What is ownership?", "Good question.")
        commit_turn(
            student_id, book_id, "m2", "And borrowing?", "Next.", tool_calls=["get_chapter_summary"]
        )

        history = get_history(student_id, book_id)
        assert [(m.role, m.content) for m in history] == [
            ("student", "What is ownership?"),
            ("agent", "Good question."),
            ("student", "And borrowing?"),
            ("agent", "Next."),
        ]
        assert history[3].tool_calls == ["get_chapter_summary"]
        assert [m.id for m in history] == sorted(m.id for m in history)

    def test_eviction_deletes_oldest_prefix_only(self, session):
        student_id, book_id = session
        ids = [commit_turn(student_id, book_id, f"m{i}", f"q{i}", f"a{i}") for i in range(3)]
        first_reply = ids[0][1]

        commit_turn(student_id, book_id, "m3", "q3", "a3", evict_through_id=first_reply)

        contents = [m.content for m in get_history(student_id, book_id)]
        assert contents == ["q1", "a1", "q2", "a2", "q3", "a3"]

    def test_history_after_marker(self, session):
        student_id, book_id = session
        _, reply_id = commit_turn(student_id, book_id, "m1", "q1", "a1")
        commit_turn(student_id, book_id, "m2", "q2", "a2")
        assert [m.content for m in get_history(student_id, book_id, after_id=reply_id)] == [
            "q2",
            "a2",
        ]

    def test_find_turn(self, session):
        student_id, book_id = session
        commit_turn(student_id, book_id, "m1", "q1", "a1", tool_calls=["get_student_plan"])

        student_msg, reply = find_turn(student_id, book_id, "m1")
        assert student_msg.content == "q1"
        assert reply.content == "a1"
        assert reply.tool_calls == ["get_student_plan"]
        assert find_turn(student_id, book_id, "unknown") is None

    def test_repeated_message_id_rejected_atomically(self, session):
        student_id, book_id = session
        _, reply_id = commit_turn(student_id, book_id, "m0", "q0", "a0")
        commit_turn(student_id, book_id, "m1", "q1", "a1")

        with pytest.raises(sqlite3.IntegrityError):
            commit_turn(student_id, book_id, "m1", "again", "again", evict_through_id=reply_id)

        # The eviction was rolled back with the failed insert
        assert [m.content for m in get_history(student_id, book_id)] == ["q0", "a0", "q1", "a1"]


class TestProgressAndPlan:
    """Tests for chapter progress and the study plan."""

    @pytest.fixture
    def session(self, student_id, book_id):
        ensure_session(student_id, book_id)
        return student_id, book_id

    def test_upsert_replaces_row(self, session):
        student_id, book_id = session
        upsert_chapter_progress(student_id, book_id, "2.", 1, "Moves")
        upsert_chapter_progress(student_id, book_id, "2.", 2, "Moves and borrows")

        rows = get_chapter_progress(student_id, book_id)
        assert len(rows) == 1
        assert (rows[0].status, rows[0].objectives) == (2, "Moves and borrows")

    def test_progress_in_reading_order(self, session):
        student_id, book_id = session
        for number in ("-1.1.", "2.1.", "1."):
            upsert_chapter_progress(student_id, book_id, number, 1, "")
        assert [r.chapter_number for r in get_chapter_progress(student_id, book_id)] == [
            "1.",
            "2.1.",
            "-1.1.",
        ]

    def test_reset_one_chapter(self, session):
        student_id, book_id = session
        upsert_chapter_progress(student_id, book_id, "1.", 2, "")
        upsert_chapter_progress(student_id, book_id, "2.", 1, "")

        assert reset_chapter_progress(student_id, book_id, "1.") == 1
        assert [r.chapter_number for r in get_chapter_progress(student_id, book_id)] == ["2."]

    def test_reset_whole_book(self, session):
        student_id, book_id = session
        upsert_chapter_progress(student_id, book_id, "1.", 2, "")
        upsert_chapter_progress(student_id, book_id, "2.", 1, "")
        assert reset_chapter_progress(student_id, book_id) == 2
        assert get_chapter_progress(student_id, book_id) == []

    def test_plan_and_progress_summary_are_independent(self, session):
        student_id, book_id = session
        assert get_study_plan(student_id, book_id) is None

        update_study_plan(student_id, book_id, "Finish chapter 2")
        update_overall_progress(student_id, book_id, "Done with chapter 1")
        update_study_plan(student_id, book_id, "Start chapter 3")

        plan = get_study_plan(student_id, book_id)
        assert plan.plan == "Start chapter 3"
        assert plan.progress_summary == "Done with chapter 1"
