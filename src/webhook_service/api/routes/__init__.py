"""Route modules."""

from . import deliveries, events, webhooks

__all__ = [
    "deliveries",
    "events",
    "webhooks",
]
