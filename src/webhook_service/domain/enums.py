"""Enumerations used across the webhook domain."""
from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    FAULT_CREATED = "fault.created"
    FAULT_UPDATED = "fault.updated"
    FAULT_RESOLVED = "fault.resolved"
    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_OVERDUE = "payment.overdue"
    RESIDENT_MOVED_IN = "resident.moved_in"
    RESIDENT_MOVED_OUT = "resident.moved_out"
    VOTE_STARTED = "vote.started"
    VOTE_ENDED = "vote.ended"
    ANNOUNCEMENT_PUBLISHED = "announcement.published"
    DOCUMENT_UPLOADED = "document.uploaded"
    WORK_ORDER_CREATED = "work_order.created"
    WORK_ORDER_COMPLETED = "work_order.completed"

    @property
    def label(self) -> str:
        return _EVENT_LABELS[self][0]

    @property
    def category(self) -> str:
        return _EVENT_LABELS[self][1]


_EVENT_LABELS: dict[EventType, tuple[str, str]] = {
    EventType.FAULT_CREATED: ("Fault Created", "Faults"),
    EventType.FAULT_UPDATED: ("Fault Updated", "Faults"),
    EventType.FAULT_RESOLVED: ("Fault Resolved", "Faults"),
    EventType.PAYMENT_RECEIVED: ("Payment Received", "Payments"),
    EventType.PAYMENT_OVERDUE: ("Payment Overdue", "Payments"),
    EventType.RESIDENT_MOVED_IN: ("Resident Moved In", "Residents"),
    EventType.RESIDENT_MOVED_OUT: ("Resident Moved Out", "Residents"),
    EventType.VOTE_STARTED: ("Vote Started", "Voting"),
    EventType.VOTE_ENDED: ("Vote Ended", "Voting"),
    EventType.ANNOUNCEMENT_PUBLISHED: ("Announcement Published", "Announcements"),
    EventType.DOCUMENT_UPLOADED: ("Document Uploaded", "Documents"),
    EventType.WORK_ORDER_CREATED: ("Work Order Created", "Work Orders"),
    EventType.WORK_ORDER_COMPLETED: ("Work Order Completed", "Work Orders"),
}

KNOWN_EVENT_TYPES = frozenset(e.value for e in EventType)


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"
    INTERNAL_ERROR = "internal_error"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {DeliveryStatus.DELIVERED, DeliveryStatus.EXHAUSTED, DeliveryStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({DeliveryStatus.PENDING, DeliveryStatus.RETRYING})


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class ErrorCode(str, Enum):
    """Machine-readable reason recorded on failed attempts and terminal deliveries."""

    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    RECEIVER_ERROR = "receiver_error"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
