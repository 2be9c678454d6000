"""Custom exceptions for Retain."""

import uuid


class RetainError(Exception):
    """Base class for all Retain errors."""


class ConflictError(RetainError):
    """Raised when an active queue item already exists for a conversation and type.

    Callers should treat this as "already scheduled" rather than a failure.
    """

    def __init__(self, conversation_id: uuid.UUID, analysis_type: str):
        self.conversation_id = conversation_id
        self.analysis_type = analysis_type
        super().__init__(
            f"Active {analysis_type} item already queued for conversation {conversation_id}"
        )


class NotClaimedError(RetainError):
    """Raised when completing or failing a queue item that is not claimed."""

    def __init__(self, item_id: uuid.UUID, status: str | None = None):
        self.item_id = item_id
        self.status = status
        message = f"Queue item {item_id} is not claimed"
        if status:
            message += f" (status={status})"
        super().__init__(message)


class AttemptsExhaustedError(RetainError):
    """Raised for a queue item stuck in claimed state at its attempt limit."""

    def __init__(self, item_id: uuid.UUID, attempts: int):
        self.item_id = item_id
        self.attempts = attempts
        super().__init__(f"Queue item {item_id} exhausted {attempts} attempts")


class PayloadTooLargeError(RetainError):
    """Raised when an analysis payload exceeds the backend's size limit."""

    def __init__(self, size_bytes: int, max_bytes: int | None = None):
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes
        limit = f" (max {max_bytes})" if max_bytes is not None else ""
        super().__init__(f"Payload too large: {size_bytes} bytes{limit}")


class ValidationError(RetainError):
    """Raised when backend output or caller input is malformed or untrustworthy."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class BackendError(RetainError):
    """Base class for analysis backend failures.

    ``diagnostic`` is a short, user-facing string with an actionable hint.
    """

    diagnostic = "Analysis backend failed"

    def __init__(self, detail: str = "", diagnostic: str | None = None):
        if diagnostic:
            self.diagnostic = diagnostic
        self.detail = detail
        super().__init__(f"{self.diagnostic} ({detail})" if detail else self.diagnostic)


class ConnectivityError(BackendError):
    diagnostic = "Could not reach the analysis backend. Check your network connection."


class AuthError(BackendError):
    diagnostic = "Sign in required: the analysis backend rejected the configured API key."


class BackendTimeoutError(BackendError):
    diagnostic = "The analysis backend timed out."


class InvalidOutputError(BackendError):
    diagnostic = "The analysis backend returned output that is not valid JSON."


class ConsentRequiredError(BackendError):
    diagnostic = (
        "Cloud analysis is disabled. Set RETAIN_ALLOW_CLOUD_ANALYSIS=true to send "
        "conversation content to the configured backend."
    )
