"""Route handlers for the Web API."""

from book_teacher.web.routes.books import router as books_router
from book_teacher.web.routes.health import router as health_router
from book_teacher.web.routes.sessions import router as sessions_router
from book_teacher.web.routes.settings import router as settings_router
from book_teacher.web.routes.students import router as students_router

__all__ = [
    "books_router",
    "health_router",
    "sessions_router",
    "settings_router",
    "students_router",
]
