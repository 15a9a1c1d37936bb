"""Delivery status transitions."""
from __future__ import annotations

from webhook_service.core.exceptions import InvalidStatusTransitionError
from webhook_service.domain.enums import DeliveryStatus

DELIVERY_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset(
        {DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED}
    ),
    DeliveryStatus.FAILED: frozenset({DeliveryStatus.RETRYING, DeliveryStatus.EXHAUSTED}),
    DeliveryStatus.RETRYING: frozenset(
        {DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED}
    ),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.EXHAUSTED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
}


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    return target in DELIVERY_TRANSITIONS[current]


def validate_delivery_transition(current: DeliveryStatus, target: DeliveryStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStatusTransitionError(
            f"Delivery cannot move from {current.value} to {target.value}"
        )


def validate_delivery_path(current: DeliveryStatus, *steps: DeliveryStatus) -> None:
    """Validate a chain of transitions, e.g. ``pending -> failed -> retrying``."""
    for step in steps:
        validate_delivery_transition(current, step)
        current = step
