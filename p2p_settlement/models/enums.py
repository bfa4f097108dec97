"""Enumerations for the settlement engine domain model."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Lifecycle states for a payment request."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    MANUAL_REVIEW = "manual_review"
    EXPIRED = "expired"
    CANCELED = "canceled"


# pending -> processing -> {completed | manual_review}
# pending -> {expired | canceled}
ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PROCESSING, PaymentStatus.EXPIRED, PaymentStatus.CANCELED}
    ),
    PaymentStatus.PROCESSING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.MANUAL_REVIEW}
    ),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.MANUAL_REVIEW: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.CANCELED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class CycleStatus(str, Enum):
    """Lifecycle states for a reconciliation cycle."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentOutcome(str, Enum):
    """What a reconciliation cycle did with one pending payment."""

    UNMATCHED = "unmatched"
    COMPLETED = "completed"
    MANUAL_REVIEW = "manual_review"
    EXPIRED = "expired"
    SKIPPED = "skipped"
    ERROR = "error"
