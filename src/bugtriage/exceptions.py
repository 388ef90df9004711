"""Custom exceptions for the triage core.

Every error carries the HTTP status the ingestion API answers with, and
whether a client may simply retry later.
"""


class TriageError(Exception):
    """Base exception for all bugtriage errors."""

    status_code = 500
    retryable = False


class InvalidAttributesError(TriageError):
    """Raised when a report is missing required fields or carries invalid ones."""

    status_code = 422


class UnknownAPIKeyError(TriageError):
    """Raised when a report's API key does not belong to any project."""

    status_code = 403


class UnknownBuildError(InvalidAttributesError):
    """Raised when a report names a build that was never deployed and has no revision."""


class UnknownRevisionError(InvalidAttributesError):
    """Raised when the commit resolver cannot find a revision, even after fetching."""

    def __init__(self, revision: str):
        """
        Initialize unknown revision error.

        Args:
            revision: The ref-ish the client reported
        """
        super().__init__(f"Unknown revision {revision!r}")
        self.revision = revision


class UnresolvableCommitError(TriageError):
    """Raised when no commit context exists to localize a fault against."""


class DuplicateChainError(TriageError):
    """Raised on a cyclic or dangling duplicate-of chain, or an invalid duplicate marking."""


class RetriesExhaustedError(TriageError):
    """Raised when serialization conflicts outlast the ingestion retry budget."""

    status_code = 503
    retryable = True

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class RepositoryError(Exception):
    """Raised by VCS adapters when a git operation fails."""


class BlameUnavailableError(RepositoryError):
    """Raised by blame providers when VCS access fails.

    Never surfaces from the pipeline: the blame cache treats it as "no blame".
    """


class WriteConflictError(TriageError):
    """Raised when a concurrent writer won an insert race but its row is not yet visible.

    Treated like a serialization failure: the ingestion attempt is retried.
    """

    status_code = 503
    retryable = True
