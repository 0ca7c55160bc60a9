"""Payment intent state machine transitions."""

from vetpay.common.errors import ConflictError


DRAFT = "draft"
PENDING = "pending"
PAID = "paid"
FAILED = "failed"
CANCELLED = "cancelled"

INTENT_STATUSES = (DRAFT, PENDING, PAID, FAILED, CANCELLED)

# Self-transitions are allowed so that re-applying an outcome only merges metadata.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    DRAFT: {PENDING, PAID, FAILED, CANCELLED},
    PENDING: {PENDING, PAID, FAILED, CANCELLED},
    FAILED: {PENDING, PAID, FAILED, CANCELLED},
    CANCELLED: {CANCELLED},
    PAID: {PAID},
}

# Manual corrections ("revert to pending") may reopen anything except a paid intent.
CORRECTION_TRANSITIONS: dict[str, set[str]] = {
    DRAFT: {PENDING},
    PENDING: {PENDING},
    FAILED: {PENDING},
    CANCELLED: {PENDING},
    PAID: set(),
}


def validate_transition(current: str, new: str, allowed: dict[str, set[str]] = ALLOWED_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in allowed.get(current, set()):
        raise ConflictError(f"Invalid transition: {current} -> {new}")


# Transaction statuses. `paid` is sticky: later notifications never regress it.
TX_INITIATED = "initiated"
TX_PENDING = "pending"
TX_PAID = "paid"
TX_FAILED = "failed"
TX_TERMINAL = {TX_PAID, TX_FAILED}
