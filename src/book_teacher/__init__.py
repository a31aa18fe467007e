"""Book Teacher - persistent, book-grounded tutoring sessions."""

__version__ = "0.1.0"
