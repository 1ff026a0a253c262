from __future__ import annotations


class NotifyRelayError(Exception):
    """Base error for notifyrelay."""


class EventValidationError(NotifyRelayError):
    """Inbound event failed validation and must not be retried."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


class TemplateMissingError(NotifyRelayError):
    """No template exists for an event type and channel, including the default."""

    def __init__(self, event_type: str, channel: str) -> None:
        super().__init__(f"no template for event_type={event_type} channel={channel}")
        self.event_type = event_type
        self.channel = channel


class TransportError(NotifyRelayError):
    """Channel transport failure classified by kind."""

    kind = "unknown"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransportTimeoutError(TransportError):
    """Channel call did not complete within its timeout."""

    kind = "timeout"


class ServerError(TransportError):
    """Downstream channel returned a 5xx or dropped the connection."""

    kind = "server_error"


class RateLimitedError(TransportError):
    """Downstream channel throttled the request."""

    kind = "rate_limited"


class PermanentRejectionError(TransportError):
    """Downstream channel rejected the request in a way retries cannot fix."""

    kind = "permanent"


class RecipientMissingError(PermanentRejectionError):
    """User has no contact address for the chosen channel."""


class CircuitOpenError(NotifyRelayError):
    """Dependency circuit is open; the call was not attempted."""

    kind = "circuit_open"

    def __init__(self, key: str) -> None:
        super().__init__(f"{key} is temporarily unavailable")
        self.key = key


class ExhaustedRetriesError(NotifyRelayError):
    """Every retry attempt failed with a retryable error."""

    kind = "exhausted_retries"

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class DeadlineExceededError(NotifyRelayError):
    """Pipeline invocation ran past its overall deadline."""
