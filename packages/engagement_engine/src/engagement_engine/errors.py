"""
Engagement Engine Errors

Error taxonomy shared by the dispatcher, tracker, scheduler and drawing engine.
Batch operations capture these per item; only ValidationError and
TemplateNotFoundError are raised to callers directly.
"""

from typing import Any


class EngagementError(Exception):
    """Base class for engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(EngagementError):
    """An automation or campaign is missing required template fields."""


class TemplateNotFoundError(EngagementError):
    """No registry template with the requested name."""


class DeliveryError(EngagementError):
    """Sending to a single recipient failed."""

    def __init__(
        self,
        message: str,
        recipient: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.recipient = recipient


class ProviderError(EngagementError):
    """Error from an external provider or a malformed provider payload."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message, details)
        self.code = code
        self.retryable = retryable


class ConcurrencyConflict(EngagementError):
    """A drawing for the period already exists and is completed."""


class DisbursementError(EngagementError):
    """The gift card service failed to issue a reward."""
