"""Domain exceptions raised by webhook services.

Expected delivery failures (network errors, timeouts, non-2xx answers) are
not exceptions: they travel as :mod:`webhook_service.domain.outcomes` values.
"""
from __future__ import annotations


class WebhookServiceError(Exception):
    """Base class for errors surfaced through the management API."""

    code = "internal_error"


class ValidationError(WebhookServiceError):
    """Subscription or request configuration is invalid. Never retried."""

    code = "validation_error"


class NotFoundError(WebhookServiceError):
    code = "not_found"


class InvalidStatusTransitionError(WebhookServiceError):
    """A delivery state change would violate the status state machine."""

    code = "invalid_status_transition"


class CancellationError(WebhookServiceError):
    """The delivery cannot proceed because its subscription is disabled or deleted."""

    code = "cancelled"
