"""Error taxonomy of the tutoring engine.

Turn-fatal: StoreTransactionError and ToolLoopExceededError.
Recoverable: TransientServiceError (surfaced as "tutor unavailable"),
CapabilityValidationError (fed back to the model as a tool error).
BudgetExceededWarning is a warning, never raised.
"""

from __future__ import annotations


class TutorError(Exception):
    """Base class for engine errors."""

    pass


class SessionNotFoundError(TutorError):
    """Raised when a session is opened for an unknown book or student."""

    def __init__(self, student_id: int, book_id: int, reason: str = ""):
        self.student_id = student_id
        self.book_id = book_id
        message = f"No session for student {student_id} and book {book_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class TransientServiceError(TutorError):
    """Raised when the language model keeps failing after bounded retries."""

    def __init__(self, attempts: int, last_error: Exception | None = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Language model unavailable after {attempts} attempts: {last_error}"
        )


class CapabilityValidationError(TutorError):
    """Raised when a capability is called with arguments violating an invariant.

    Never retried automatically; reported back into the model's tool-result
    channel so it can correct itself within the same turn.
    """

    pass


class StoreTransactionError(TutorError):
    """Raised when a store transaction fails; the whole turn is aborted."""

    pass


class ToolLoopExceededError(TutorError):
    """Raised when the model keeps calling tools past the round bound."""

    def __init__(self, rounds: int):
        self.rounds = rounds
        super().__init__(f"Model still requesting tools after {rounds} rounds")


class SummaryIncompleteError(TutorError):
    """Raised when a summarization pass ends without covering every target.

    Writes applied before the failure stay in place.
    """

    def __init__(self, missing: list[str], rounds: int):
        self.missing = missing
        self.rounds = rounds
        super().__init__(
            f"Summarization incomplete after {rounds} rounds; missing: {', '.join(missing)}"
        )


class BudgetExceededWarning(UserWarning):
    """The newest message alone does not fit the token budget."""

    pass
