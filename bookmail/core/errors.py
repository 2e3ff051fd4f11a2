"""Exception taxonomy for the delivery engine.

Validation errors (InvalidTimezone, InvalidTimeFormat) fail fast and are never
retried. LessonContentUnavailable and EmailProviderError are recorded per
assignment and never abort a run. OrchestratorFailure aborts the run after the
run record has been marked failed.
"""


class BookMailError(Exception):
    """Base exception for delivery engine errors."""


class InvalidTimezone(BookMailError):
    """Raised when a timezone identifier cannot be resolved."""

    def __init__(self, timezone: str | None) -> None:
        self.timezone = timezone
        super().__init__(
            f"Invalid timezone: {timezone}. Please use a valid IANA timezone identifier."
        )


class InvalidTimeFormat(BookMailError):
    """Raised when a delivery time is not a valid HH:MM value."""

    def __init__(self, value: str | None) -> None:
        self.value = value
        super().__init__(
            f"Invalid time format: {value!r}. Use HH:MM with hours 0-23 and minutes 0-59."
        )


class LessonContentUnavailable(BookMailError):
    """Raised when the lesson to deliver is missing or has no body."""

    def __init__(self, message: str, lesson_id: object = None, day_number: int | None = None) -> None:
        self.lesson_id = lesson_id
        self.day_number = day_number
        super().__init__(message)


class EmailProviderError(BookMailError):
    """Raised when the email provider rejects a send, fails, or times out."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class OrchestratorFailure(BookMailError):
    """Raised when a scheduler run cannot proceed at all."""

    def __init__(self, message: str, run_id: str | None = None) -> None:
        self.run_id = run_id
        super().__init__(message)
