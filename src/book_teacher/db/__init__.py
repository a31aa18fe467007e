"""Database module for SQLite persistence.

Provides:
- Database connection management and schema initialization
- Repository functions for books and chapters
- Repository functions for students
- Repository functions for sessions, history, progress, plans and settings
"""

from book_teacher.db.database import get_db, init_db

__all__ = ["get_db", "init_db"]
