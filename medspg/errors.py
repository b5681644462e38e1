"""Exceptions raised by the medsPG engines.

Precondition failures (no user, no questions, no result payload) are handled by
the UI with a redirect. Everything else is shown as a notification and leaves
the in-progress state untouched so the user can retry by hand.
"""


class MedsPGError(Exception):
    """Base class for all application errors."""


class NotAuthenticatedError(MedsPGError):
    """No signed-in user; the caller must redirect to the landing page."""


class NoQuestionsError(MedsPGError):
    """The question bank has nothing for the requested subject."""

    def __init__(self, subject: str):
        super().__init__(f"No questions available for {subject}")
        self.subject = subject


class MissingResultPayloadError(MedsPGError):
    """The results page was opened without a submitted attempt."""


class BackendError(MedsPGError):
    """A Supabase call failed (network, RLS policy, or validation)."""

    def __init__(self, message: str, table: str | None = None):
        super().__init__(message)
        self.table = table


class ValidationError(MedsPGError, ValueError):
    """User input rejected before reaching the backend."""


class NotPostOwnerError(MedsPGError):
    """Only the author may delete a post."""


class NameChangeRestrictedError(MedsPGError):
    """Display name changed again inside the cooldown window."""

    def __init__(self, days_remaining: int):
        super().__init__(f"You can change your name again in {days_remaining} days.")
        self.days_remaining = days_remaining


class AccountDeletionError(MedsPGError):
    """One or more cascade steps failed; earlier steps are not rolled back."""

    def __init__(self, failed_tables: list[str]):
        super().__init__("Failed to delete data from: " + ", ".join(failed_tables))
        self.failed_tables = failed_tables


class PointsGrantError(BackendError):
    """The content was saved but its point grant failed."""

    def __init__(self, message: str, record: dict | None = None):
        super().__init__(message, table="user_points")
        self.record = record
