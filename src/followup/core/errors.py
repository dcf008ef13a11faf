"""Custom exception types for the follow-up triage system.

Every exception carries an ``error_type`` from the taxonomy below and a
``retryable`` flag so callers can decide between retry, degrade and surface:

- CONFIGURATION: missing/invalid settings. Not retried, surfaced to the operator.
- API / NETWORK / TIMEOUT: transient external-classifier failures. Retried with
  bounded backoff, then the classifier degrades to rules-only.
- QUOTA: rate limit hit. Retried with backoff, eventually fails closed.
- PERMISSION: fatal, never retried.
- VALIDATION / NOT_FOUND: caller errors on queue, feedback or result data.
- DATABASE: SQLite failures.

Messages follow the house standard: what failed, why it failed, and how to
fix it where there is something actionable.
"""

from typing import Literal

ErrorType = Literal[
    "CONFIGURATION",
    "API",
    "NETWORK",
    "VALIDATION",
    "PERMISSION",
    "QUOTA",
    "TIMEOUT",
    "DATABASE",
    "NOT_FOUND",
    "UNKNOWN",
]


class FollowupError(Exception):
    """Base exception for all follow-up triage errors.

    Attributes:
        error_type: Taxonomy bucket for the failure
        retryable: Whether retrying the same operation can succeed
    """

    error_type: ErrorType = "UNKNOWN"
    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(FollowupError):
    """Raised when configuration is missing or invalid."""

    error_type: ErrorType = "CONFIGURATION"


class ConfigLoadError(ConfigurationError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""


class ConfigValidationError(ConfigurationError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """


# ---------------------------------------------------------------------------
# External AI classifier
# ---------------------------------------------------------------------------


class AIClassifierError(FollowupError):
    """Raised when the external AI classifier fails after retries.

    Attributes:
        email_id: The email that failed classification (if known)
        attempts: Number of attempts made
    """

    error_type: ErrorType = "API"
    retryable = True

    def __init__(
        self,
        message: str,
        email_id: str | None = None,
        attempts: int = 0,
        *,
        retryable: bool | None = None,
    ):
        super().__init__(message, retryable=retryable)
        self.email_id = email_id
        self.attempts = attempts


class AIClassifierUnavailable(AIClassifierError):
    """Raised when the AI classifier cannot be reached at all.

    Covers a missing API key, connection failures and timeouts. The
    classification engine treats this as a signal to degrade to rules-only.
    """

    error_type: ErrorType = "NETWORK"


class RateLimitExceeded(FollowupError):
    """Raised when API rate limits are exceeded and cannot be recovered.

    This is raised when the rate limiter would require an excessive wait time
    rather than blocking indefinitely. Callers may retry later.
    """

    error_type: ErrorType = "QUOTA"
    retryable = True


class PermissionDeniedError(FollowupError):
    """Raised when the AI provider rejects our credentials (401/403). Fatal."""

    error_type: ErrorType = "PERMISSION"
    retryable = False


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(FollowupError):
    """Base for invalid input to a core operation."""

    error_type: ErrorType = "VALIDATION"


class ClassificationValidationError(ValidationError):
    """Raised when a ClassificationResult violates its invariants."""


class FeedbackValidationError(ValidationError):
    """Raised when a feedback payload has an unknown type or missing value."""


class QueueValidationError(ValidationError):
    """Raised when a queue operation gets invalid arguments (e.g. a past snooze time)."""


class InvalidTransitionError(ValidationError):
    """Raised when a queue item cannot move from its current status.

    Attributes:
        item_id: The follow-up item ID
        current_status: Status the item is in
        requested: The operation or target status that was refused
    """

    def __init__(self, message: str, item_id: str, current_status: str, requested: str):
        super().__init__(message)
        self.item_id = item_id
        self.current_status = current_status
        self.requested = requested


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class ItemNotFoundError(FollowupError):
    """Raised when a queue operation references an unknown item ID."""

    error_type: ErrorType = "NOT_FOUND"

    def __init__(self, item_id: str):
        super().__init__(
            f"Follow-up item '{item_id}' not found. "
            "Check the ID with `followup queue list`."
        )
        self.item_id = item_id


class DatabaseError(FollowupError):
    """Raised when SQLite operations fail."""

    error_type: ErrorType = "DATABASE"


class ConflictError(DatabaseError):
    """Raised when a row was modified by another invocation.

    Optimistic concurrency: the version column didn't match, so the row
    changed between read and write. Callers re-read and retry.
    """

    retryable = True

    def __init__(self, message: str, resource_id: str | None = None):
        super().__init__(message)
        self.resource_id = resource_id
