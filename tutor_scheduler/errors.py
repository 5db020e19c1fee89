"""Exception hierarchy shared by matching, conversation, and session code."""


class SchedulerError(Exception):
    """Base class for all tutor scheduler errors."""


class DependencyUnavailableError(SchedulerError):
    """An external collaborator failed, timed out, or is not configured.

    Always recoverable: the component owning the call applies its
    fallback instead of surfacing this to the user.
    """

    def __init__(self, dependency: str, detail: str = "") -> None:
        self.dependency = dependency
        self.detail = detail
        message = f"{dependency} unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ReasoningParseError(DependencyUnavailableError):
    """The reasoning service answered outside the fixed response schema."""

    def __init__(self, detail: str = "") -> None:
        super().__init__("reasoning", detail or "response did not match schema")


class InvalidTransitionError(SchedulerError):
    """Raised when a booking step transition is not valid from the current step."""


class StaleTurnError(SchedulerError):
    """A newer turn for the same session superseded this one mid-flight."""
