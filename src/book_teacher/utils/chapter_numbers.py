"""Chapter number helpers.

Chapter numbers are dotted strings such as "1.", "3.2." or "-1.4.".
A leading -1 marks a suffix chapter (appendix, afterword) that sorts after
every regular chapter. Components that are not integers compare as strings,
after the numeric ones at the same position.
"""

from __future__ import annotations


def chapter_sort_key(chapter_number: str) -> tuple:
    """Return a sort key for a chapter number.

    Two spellings of the same number ("3.2" and "3.2.", "02" and "2.")
    produce the same key.

    Examples:
        >>> sorted(["-1.1.", "2.", "1.10.", "1.2."], key=chapter_sort_key)
        ['1.2.', '1.10.', '2.', '-1.1.']
    """
    parts = [p for p in chapter_number.strip().split(".") if p != ""]
    components = tuple(
        (0, int(p), "") if _is_int(p) else (1, 0, p) for p in parts
    )
    is_suffix = bool(parts) and _is_int(parts[0]) and int(parts[0]) == -1
    return (1 if is_suffix else 0, components)


def same_chapter(a: str, b: str) -> bool:
    """Check whether two chapter number spellings name the same chapter."""
    return a == b or chapter_sort_key(a) == chapter_sort_key(b)


def _is_int(text: str) -> bool:
    try:
        int(text)
    except ValueError:
        return False
    return True
