"""
Exception hierarchy for the lien pipeline.

The queue and the extraction session act on the failure class:

    UIActionError      retried, then the row degrades to a partial record
    SessionError       the job goes back to the queue with backoff
    DatabaseError      never swallowed, the process fails loudly
    SinkError          records were not delivered, the job stays retryable
"""

from typing import Any


def _merge(details: dict[str, Any] | None, **context: Any) -> dict[str, Any]:
    merged = dict(details or {})
    merged.update({key: value for key, value in context.items() if value is not None})
    return merged


class LienflowError(Exception):
    """
    Root of every error raised by lienflow code.

    Attributes:
        message: Human-readable error description
        details: Structured context, logged and returned by the API
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


# --- filing source -----------------------------------------------------------


class ExtractionError(LienflowError):
    """Something went wrong while driving the filing search UI."""


class UIActionError(ExtractionError):
    """
    A single control was missing, hidden or not clickable.

    ``ui_retry`` retries these; once the budget is spent the row is recorded
    as partial and the session moves on.
    """

    def __init__(
        self,
        message: str,
        action: str | None = None,
        locator: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, _merge(details, action=action, locator=locator))


class SessionError(ExtractionError):
    """
    The extraction session cannot go on (navigation failed, the result
    counter never showed up, the page layout changed).

    ``cursor`` is the next unprocessed (page, row_index). ``records`` holds
    what the session collected before failing; the cursor is only a gap-free
    resume point once those records have been delivered.
    """

    def __init__(
        self,
        message: str,
        cursor: tuple[int, int] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.cursor = cursor
        self.records: list[Any] = []
        position = None if cursor is None else {"page": cursor[0], "row_index": cursor[1]}
        super().__init__(message, _merge(details, cursor=position))


class SessionTimeoutError(SessionError):
    """The session ran past its overall deadline."""


# --- delivery ----------------------------------------------------------------


class SinkError(LienflowError):
    """Finished records could not be handed to the downstream sink."""

    def __init__(
        self,
        message: str,
        sink: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, _merge(details, sink=sink, status_code=status_code))


# --- requests and configuration ----------------------------------------------


class ConfigurationError(LienflowError):
    """Settings are missing or inconsistent; raised at startup."""


class SourceNotSupportedError(LienflowError):
    """No source profile is registered for the requested site key."""

    def __init__(self, site: str) -> None:
        super().__init__(f"Unsupported site: {site}", details={"site": site})


class DateRangeError(LienflowError):
    """A date window is malformed, reversed or cannot be split any further."""


# --- job store ---------------------------------------------------------------


class DatabaseError(LienflowError):
    """Wraps SQLAlchemy failures with the operation and table involved."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        table: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, _merge(details, operation=operation, table=table))


class StoreError(DatabaseError):
    """A queue transition could not be applied."""


class JobNotFoundError(DatabaseError):
    """No queue job exists with the given id."""

    def __init__(self, job_id: int) -> None:
        super().__init__(
            f"Job not found: {job_id}",
            operation="select",
            table="queue_jobs",
            details={"job_id": job_id},
        )


# --- files -------------------------------------------------------------------


class FileError(LienflowError):
    """A download directory or document name could not be prepared."""

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        operation: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, _merge(details, file_path=file_path, operation=operation))
