"""Exception hierarchy for the alarm bot.

Each error is raised by one layer and caught at a single seam:
fetch errors at the tick boundary, delivery errors per item,
state write errors after dispatch, summarization errors inside adapters.
"""

from __future__ import annotations


class NanamiAlarmError(Exception):
    """Base exception for all alarm bot errors."""


class ConfigurationError(NanamiAlarmError):
    """Raised when the application cannot be configured at startup."""


class FetchError(NanamiAlarmError):
    """Raised when a remote feed endpoint is unreachable or returns non-2xx."""

    def __init__(
        self,
        source: str,
        url: str,
        status: int | None = None,
        reason: str | None = None,
    ) -> None:
        self.source = source
        self.url = url
        self.status = status
        self.reason = reason
        detail = f"HTTP {status}" if status is not None else (reason or "request failed")
        super().__init__(f"{source}: {detail} for {url}")


class SummarizationError(NanamiAlarmError):
    """Raised when a summary response is missing or cannot be parsed."""


class DeliveryError(NanamiAlarmError):
    """Raised when a message cannot be delivered to its destination."""

    def __init__(self, destination: str, reason: str) -> None:
        self.destination = destination
        self.reason = reason
        super().__init__(f"Delivery to {destination or '(unset)'} failed: {reason}")


class StateWriteError(NanamiAlarmError):
    """Raised when the last-seen marker cannot be persisted."""

    def __init__(self, source_key: str, cause: Exception | None = None) -> None:
        self.source_key = source_key
        self.cause = cause
        super().__init__(f"Failed to persist last-seen marker for {source_key}: {cause}")
