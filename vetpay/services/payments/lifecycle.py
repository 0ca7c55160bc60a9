"""Status-changing operations on a locked `PaymentIntent` row.

Callers own the session: they load the intent with `lock_intent` (row lock),
call one of these functions, and commit. Nothing here commits.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from vetpay.common.config import settings
from vetpay.common.errors import ConflictError, NotFoundError, ValidationError
from vetpay.common.metrics import payment_intent_transitions_total
from vetpay.common.money import Metadata
from vetpay.common.state_machine import (
    CANCELLED,
    CORRECTION_TRANSITIONS,
    FAILED,
    PAID,
    PENDING,
    validate_transition,
)
from vetpay.services.payments.models import PaymentIntent, PaymentIntentTimeline


def lock_intent(db: Session, intent_id: int) -> PaymentIntent:
    """Load one intent with `SELECT ... FOR UPDATE` (a no-op on SQLite)."""

    intent = db.execute(
        select(PaymentIntent)
        .where(PaymentIntent.id == intent_id)
        .options(selectinload(PaymentIntent.transactions))
        .with_for_update()
    ).scalar_one_or_none()
    if intent is None:
        raise NotFoundError(f"payment intent {intent_id} not found")
    return intent


def _merge_meta(intent: PaymentIntent, metadata: dict[str, Any] | None) -> None:
    merged = Metadata.of(intent.meta).merged(metadata)
    if merged.values != (intent.meta or {}):
        intent.meta = merged.as_dict()


def _transition(
    db: Session,
    intent: PaymentIntent,
    new_status: str,
    reason: str,
    transaction_id: int | None = None,
    allowed: dict[str, set[str]] | None = None,
) -> None:
    """Validate and apply one status change, recording it on the timeline."""

    from_status = intent.status
    if allowed is None:
        validate_transition(from_status, new_status)
    else:
        validate_transition(from_status, new_status, allowed)
    if from_status == new_status:
        return
    intent.status = new_status
    db.add(
        PaymentIntentTimeline(
            payment_intent_id=intent.id,
            from_status=from_status,
            to_status=new_status,
            reason=reason,
            transaction_id=transaction_id,
        )
    )
    payment_intent_transitions_total.labels(service=settings.service_name, to_status=new_status).inc()


def mark_pending(db: Session, intent: PaymentIntent, provider: str, reason: str) -> None:
    """Hand the intent to a provider: status `pending`, provider recorded."""

    _transition(db, intent, PENDING, reason)
    intent.provider = provider


def mark_paid(
    db: Session,
    intent: PaymentIntent,
    amount: int,
    metadata: dict[str, Any] | None = None,
    reason: str = "payment_received",
    transaction_id: int | None = None,
) -> None:
    """Add `amount` to what was collected, capped at `amount_total`.

    The intent becomes `paid` once the total is covered and stays `pending`
    otherwise. On an already paid intent only the metadata is merged.
    """

    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise ValidationError("paid amount must be a non-negative integer")
    if intent.status == PAID:
        _merge_meta(intent, metadata)
        return

    amount_paid = min(intent.amount_total, (intent.amount_paid or 0) + amount)
    new_status = PAID if amount_paid >= intent.amount_total else PENDING
    _transition(db, intent, new_status, reason, transaction_id)
    intent.amount_paid = amount_paid
    _merge_meta(intent, metadata)


def mark_failed(
    db: Session,
    intent: PaymentIntent,
    metadata: dict[str, Any] | None = None,
    reason: str = "payment_failed",
    transaction_id: int | None = None,
) -> None:
    if intent.status == PAID:
        raise ConflictError("cannot fail a paid payment intent")
    _transition(db, intent, FAILED, reason, transaction_id)
    _merge_meta(intent, metadata)


def mark_cancelled(
    db: Session,
    intent: PaymentIntent,
    metadata: dict[str, Any] | None = None,
    reason: str = "cancelled",
) -> None:
    if intent.status == PAID:
        raise ConflictError("cannot cancel a paid payment intent")
    _transition(db, intent, CANCELLED, reason)
    _merge_meta(intent, metadata)


def revert_to_pending(
    db: Session,
    intent: PaymentIntent,
    metadata: dict[str, Any] | None = None,
    reason: str = "manual_correction",
) -> None:
    """Manual correction that reopens a failed/cancelled intent."""

    if intent.status == PAID:
        raise ConflictError("cannot revert a paid payment intent")
    _transition(db, intent, PENDING, reason, allowed=CORRECTION_TRANSITIONS)
    _merge_meta(intent, metadata)
