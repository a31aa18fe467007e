"""Markdown prompt templates of the tutor.

Two templates ship with the package:

- ``tutor/system``: the tutor persona. Filled with ``tutor_name``,
  ``student_name`` and ``book_title``; the session instruction appends the
  book info block to it.
- ``summary/distill``: system prompt of a summarization pass. Also takes
  the rendered long-term ``memory`` and the book's ``table_of_contents``.

Placeholders are written ``{name}``. A placeholder without a value stays in
the text, so a template can be filled in two steps.

Usage:
    from book_teacher.prompts.registry import get_prompt

    persona = get_prompt(
        "tutor/system",
        tutor_name="Vera",
        student_name="Ana",
        book_title="Rust in Action",
    )
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

PROMPTS_DIR = Path(__file__).parent


def _template_path(key: str) -> Path:
    return PROMPTS_DIR / f"{key}.md"


def _read_template(key: str) -> str:
    """Read a template from disk.

    Raises:
        FileNotFoundError: If no template exists under that key
    """
    path = _template_path(key)
    if not path.is_file():
        raise FileNotFoundError(f"Prompt not found: {key} (looked at {path})")
    logger.debug("prompt.loaded", key=key)
    return path.read_text(encoding="utf-8")


@lru_cache(maxsize=16)
def _cached_template(key: str) -> str:
    return _read_template(key)


def get_prompt(key: str, use_cache: bool = True, **variables: str) -> str:
    """Fill a template with session values.

    Args:
        key: Template key, "tutor/system" or "summary/distill"
        use_cache: Read through the in-process cache (default True)
        **variables: Placeholder values, e.g. book_title="Rust in Action"

    Raises:
        FileNotFoundError: If no template exists under that key
    """
    text = _cached_template(key) if use_cache else _read_template(key)
    for name, value in variables.items():
        text = text.replace(f"{{{name}}}", str(value))
    return text


def list_prompts() -> list[str]:
    """Keys of the shipped templates, sorted."""
    return sorted(
        path.relative_to(PROMPTS_DIR).with_suffix("").as_posix()
        for path in PROMPTS_DIR.rglob("*.md")
    )


def clear_cache() -> None:
    """Forget cached templates, so edited files are read again."""
    _cached_template.cache_clear()
