"""Repository exports."""

from webhook_service.repositories.memory import (
    InMemoryAttemptRepository,
    InMemoryDeliveryRepository,
    InMemorySubscriptionRepository,
)
from webhook_service.repositories.webhooks import (
    DeliveryAttemptRepository,
    WebhookDeliveryRepository,
    WebhookSubscriptionRepository,
)

__all__ = [
    "DeliveryAttemptRepository",
    "WebhookDeliveryRepository",
    "WebhookSubscriptionRepository",
    "InMemoryAttemptRepository",
    "InMemoryDeliveryRepository",
    "InMemorySubscriptionRepository",
]
