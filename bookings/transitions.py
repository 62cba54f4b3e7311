from .exceptions import InvalidTransition
from .models import Booking

Status = Booking.Status

ALLOWED_TRANSITIONS = {
    Status.PENDING_PAYMENT: {Status.PENDING_OWNER_APPROVAL, Status.PAYMENT_FAILED, Status.CANCELLED},
    Status.PENDING_OWNER_APPROVAL: {Status.CONFIRMED, Status.PAYMENT_FAILED, Status.CANCELLED},
    Status.PAYMENT_FAILED: {Status.PENDING_OWNER_APPROVAL, Status.CONFIRMED, Status.CANCELLED},
    Status.CONFIRMED: {Status.ACTIVE, Status.COMPLETED, Status.DISPUTED, Status.CANCELLED},
    Status.ACTIVE: {Status.COMPLETED, Status.DISPUTED, Status.CANCELLED},
    Status.DISPUTED: {Status.COMPLETED, Status.CANCELLED},
    Status.COMPLETED: set(),
    Status.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current, target):
    return target in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current, target):
    """Raise InvalidTransition unless ``current -> target`` is in the table."""
    if not can_transition(current, target):
        raise InvalidTransition(current=current, target=target)
