"""
AvaBuilder Agent Errors

Build-time errors (validation, signing) fail fast. Network-layer errors carry
enough context for the caller to tell retryable failures from terminal ones.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for all agent errors."""
    pass


class ValidationError(AgentError):
    """Malformed address, amount, or missing field. Never sent over the network."""
    pass


class SigningError(AgentError):
    """
    Signing key unavailable or signing failed.

    Fatal for the call: build a new authorization with a fresh nonce
    instead of resubmitting.
    """
    pass


class NetworkError(AgentError):
    """Transient transport failure. Retry with a freshly built authorization."""
    pass


class RequestTimeoutError(NetworkError):
    """Outbound call exceeded its timeout and was abandoned."""

    def __init__(self, url: str, timeout: float) -> None:
        super().__init__(f"Request to {url} timed out after {timeout}s")
        self.url = url
        self.timeout = timeout


class HttpError(NetworkError):
    """Peer answered with a non-2xx status."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body}")
        self.status = status
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status >= 500 or self.status == 429


class PaymentRejected(AgentError):
    """
    Peer (or its facilitator) declined the payment authorization.

    Not a NetworkError: resending the same payment will not help. Callers
    top up funds or adjust the amount instead.
    """

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Payment rejected (HTTP {status}): {body}")
        self.status = status
        self.body = body

    @property
    def retryable(self) -> bool:
        return False


class RateLimited(AgentError):
    """Admission denied by the sliding-window limiter. Back off."""

    def __init__(self, key: str, retry_after: float | None = None) -> None:
        super().__init__(f"Rate limit exceeded for {key}")
        self.key = key
        self.retry_after = retry_after


class RegistryUnavailable(NetworkError):
    """The registry enumeration count could not be read."""
    pass
