"""Book endpoints.

Books arrive already processed (chapters with summaries and key points);
extraction from source documents happens upstream.
"""

import sqlite3

import structlog
from fastapi import APIRouter, HTTPException, status

from book_teacher.core.supervisor import get_supervisor
from book_teacher.db import books_repository
from book_teacher.web.schemas import (
    BookCreate,
    BookDetail,
    BookListResponse,
    BookSummary,
    BookUpdate,
    ChapterPayload,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/books", tags=["books"])


def _book_detail(book_id: int) -> BookDetail:
    book = books_repository.get_book_by_id(book_id)
    if book is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Book {book_id} not found",
        )

    return BookDetail(
        id=book.id,
        title=book.title,
        author=book.author,
        description=book.description,
        path=book.path,
        summary=book.summary,
        chapters=[
            ChapterPayload.model_validate(c) for c in books_repository.get_chapters(book_id)
        ],
    )


@router.get("", response_model=BookListResponse)
async def list_books() -> BookListResponse:
    """List all books."""
    books = [BookSummary.model_validate(b) for b in books_repository.get_all_books()]
    logger.info("books.listed", count=len(books))
    return BookListResponse(books=books, count=len(books))


@router.get("/{book_id}", response_model=BookDetail)
async def get_book(book_id: int) -> BookDetail:
    """Get a book with its table of contents."""
    return _book_detail(book_id)


@router.post("", response_model=BookDetail, status_code=status.HTTP_201_CREATED)
async def create_book(book_data: BookCreate) -> BookDetail:
    """Import a processed book with its chapters."""
    try:
        book_id = books_repository.insert_book(
            title=book_data.title,
            author=book_data.author,
            path=book_data.path,
            description=book_data.description,
            summary=book_data.summary,
            chapters=[c.model_dump() for c in book_data.chapters],
        )
    except sqlite3.IntegrityError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Book could not be imported: {e}",
        ) from e

    return _book_detail(book_id)


@router.patch("/{book_id}", response_model=BookDetail)
async def update_book(book_id: int, update: BookUpdate) -> BookDetail:
    """Update book metadata."""
    updated = books_repository.update_book_metadata(
        book_id,
        title=update.title,
        author=update.author,
        description=update.description,
        summary=update.summary,
    )
    if not updated:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Book {book_id} not found",
        )
    return _book_detail(book_id)


@router.delete("/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_book(book_id: int) -> None:
    """Delete a book; chapters and every session on it go with it."""
    await get_supervisor().discard(book_id=book_id)

    if not books_repository.delete_book(book_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Book {book_id} not found",
        )
