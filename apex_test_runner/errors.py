"""Errors raised while running tests on the platform."""

from typing import Literal

type Phase = Literal["submission", "completion", "aggregation"]


class RunError(Exception):
    """Base error for a test run.

    Carries the run id (when one was assigned) and the phase in which the
    error happened so callers can tell submission failures from completion
    and aggregation failures.
    """

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        phase: Phase | None = None,
    ) -> None:
        super().__init__(message)
        self.run_id = run_id
        self.phase = phase

    def __str__(self) -> str:
        message = super().__str__()
        context = [
            f"{name}={value}"
            for name, value in (("phase", self.phase), ("run_id", self.run_id))
            if value is not None
        ]
        if not context:
            return message
        return f"{message} ({', '.join(context)})"


class InvalidSelectionError(RunError, ValueError):
    """Raised when a test selection cannot be turned into a run request."""


class SubmissionError(RunError):
    """Raised when the platform rejects or fails to accept a test run."""


class ProtocolError(RunError):
    """Raised when the platform answers with an unexpected response shape."""


class RunTimeoutError(RunError, TimeoutError):
    """Raised when a run does not complete before its deadline."""


class NoResultsError(RunError):
    """Raised when a run has no retrievable queue items or results."""


class StreamingUnavailableError(RunError):
    """Raised when the streaming broker cannot be reached or rejects a handshake.

    This is a capability signal: callers fall back to polling.
    """
