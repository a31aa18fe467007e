"""Tests for chapter number ordering (F1)."""

from book_teacher.utils.chapter_numbers import chapter_sort_key, same_chapter


class TestChapterSortKey:
    """Tests for chapter_sort_key."""

    def test_numeric_components_compare_as_integers(self):
        numbers = ["1.10.", "1.2.", "1.", "10.", "2."]
        assert sorted(numbers, key=chapter_sort_key) == ["1.", "1.2.", "1.10.", "2.", "10."]

    def test_suffix_chapters_sort_last(self):
        numbers = ["-1.2.", "3.", "-1.1.", "1."]
        assert sorted(numbers, key=chapter_sort_key) == ["1.", "3.", "-1.1.", "-1.2."]

    def test_parent_sorts_before_its_sections(self):
        assert chapter_sort_key("2.") < chapter_sort_key("2.1.")
        assert chapter_sort_key("2.9.") < chapter_sort_key("3.")

    def test_non_numeric_components_after_numeric(self):
        numbers = ["1.b.", "1.2.", "1.a."]
        assert sorted(numbers, key=chapter_sort_key) == ["1.2.", "1.a.", "1.b."]

    def test_trailing_dot_is_optional(self):
        assert chapter_sort_key("3.2") == chapter_sort_key("3.2.")


class TestSameChapter:
    """Tests for same_chapter."""

    def test_equivalent_spellings(self):
        assert same_chapter("3.2", "3.2.")
        assert same_chapter("02.", "2.")

    def test_different_chapters(self):
        assert not same_chapter("3.2.", "3.")
        assert not same_chapter("1.", "-1.1.")
