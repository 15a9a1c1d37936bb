"""Domain services exports."""

from webhook_service.services.dispatcher import EventDispatcher
from webhook_service.services.executor import DeliveryExecutor
from webhook_service.services.ledger import DeliveryLedger
from webhook_service.services.registry import SubscriptionRegistry
from webhook_service.services.retry import RetryScheduler, compute_backoff
from webhook_service.services.sandbox import TestDeliverySandbox
from webhook_service.services.secrets import SecretStore

__all__ = [
    "DeliveryExecutor",
    "DeliveryLedger",
    "EventDispatcher",
    "RetryScheduler",
    "SecretStore",
    "SubscriptionRegistry",
    "TestDeliverySandbox",
    "compute_backoff",
]
