"""Payment provider capability interface.

A provider knows how to `start` a payment for an intent (creating exactly one
`initiated` transaction) and how to `commit` an asynchronous notification
into the local ledger. Providers never trust amounts or statuses supplied by
the caller: `commit` always works from the provider's own payment record.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from vetpay.common.config import settings
from vetpay.common.errors import ExternalProviderError, NotSupportedError, ValidationError
from vetpay.common.metrics import duplicate_events_skipped_total
from vetpay.common.state_machine import CANCELLED, PAID, TX_FAILED, TX_INITIATED, TX_PAID
from vetpay.services.payments import lifecycle
from vetpay.services.payments.models import PaymentIntent, PaymentTransaction


CORRELATION_RE = re.compile(r"^PI-(\d+)(?:-\d+)?$")


def correlation_token(intent_id: int) -> str:
    """Reference echoed back by providers to tie their payment to an intent."""

    return f"PI-{intent_id}"


def parse_correlation(reference: str | None) -> int:
    """Extract the intent id from `PI-{id}` (or `PI-{id}-{suffix}`)."""

    match = CORRELATION_RE.match(reference or "")
    if not match:
        raise ValidationError(f"invalid external reference: {reference!r}")
    return int(match.group(1))


@dataclass
class StartContext:
    """Caller-supplied hints for starting a payment."""

    return_url: str | None = None
    redirect_url: str | None = None
    origin: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"return_url": self.return_url, "redirect_url": self.redirect_url, "origin": self.origin}


@dataclass
class ProviderPayment:
    """Authoritative payment detail as reported by the provider's API.

    `status` is the provider's own vocabulary; `mapped_status` is one of the
    transaction statuses (`paid`, `failed`, `pending`). `amount` is already in
    minor units.
    """

    external_id: str
    status: str
    mapped_status: str
    amount: int | None
    currency: str | None
    correlation: str | None
    authorization_code: str | None = None
    response_code: str | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


class PaymentProvider(ABC):
    """Base class for payment providers."""

    name: str = ""
    supports_webhooks: bool = False
    webhook_event_types: frozenset[str] = frozenset()

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(f"vetpay.providers.{self.name}")

    @property
    def webhook_secret(self) -> str | None:
        return None

    @abstractmethod
    def start(self, db: Session, intent: PaymentIntent, context: StartContext) -> PaymentTransaction:
        """Create one `initiated` transaction and move the intent to `pending`."""

    @abstractmethod
    def commit(
        self,
        db: Session,
        callback_payload: dict[str, Any],
        payment: ProviderPayment | None = None,
    ) -> PaymentTransaction:
        """Reconcile a notification into a transaction and the owning intent.

        `payment` lets a caller that already fetched the provider's record
        (the webhook handler) skip the second round trip.
        """

    def fetch_payment(self, reference: str) -> ProviderPayment:
        raise NotSupportedError(f"{self.name} does not expose payment lookups")

    def callback_payload(self, query: dict[str, str]) -> dict[str, Any] | None:
        """Turn browser-callback query params into a `commit` payload, if any."""

        return None

    def _begin(
        self,
        db: Session,
        intent: PaymentIntent,
        status: str = TX_INITIATED,
        **fields: Any,
    ) -> PaymentTransaction:
        """Record the initiated transaction and hand the intent to this provider."""

        tx = PaymentTransaction(
            provider=self.name,
            status=status,
            amount=intent.amount_total,
            currency=intent.currency,
            **fields,
        )
        intent.transactions.append(tx)
        lifecycle.mark_pending(db, intent, provider=self.name, reason=f"{self.name}_started")
        db.flush()
        return tx

    def _find_transaction(self, db: Session, intent_id: int, external_id: str) -> PaymentTransaction | None:
        """Exact external-id match, else the most recent initiated attempt."""

        tx = db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.payment_intent_id == intent_id,
                PaymentTransaction.provider == self.name,
                PaymentTransaction.external_id == external_id,
            )
        ).scalar_one_or_none()
        if tx is not None:
            return tx
        return db.execute(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.payment_intent_id == intent_id,
                PaymentTransaction.provider == self.name,
                PaymentTransaction.status == TX_INITIATED,
            )
            .order_by(PaymentTransaction.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _reconcile(
        self,
        db: Session,
        intent_id: int,
        payment: ProviderPayment,
        callback_payload: dict[str, Any],
    ) -> PaymentTransaction:
        """Upsert the transaction for `payment` and apply its outcome once."""

        if payment.mapped_status == TX_PAID and payment.amount is None:
            raise ExternalProviderError(
                f"{self.name} reported payment {payment.external_id} as approved without an amount",
                provider=self.name,
            )

        intent = lifecycle.lock_intent(db, intent_id)
        tx = self._find_transaction(db, intent.id, payment.external_id)
        if tx is None:
            tx = PaymentTransaction(
                provider=self.name,
                status=TX_INITIATED,
                amount=payment.amount if payment.amount is not None else intent.amount_total,
                currency=payment.currency or intent.currency,
            )
            intent.transactions.append(tx)
            previous_status = None
        else:
            previous_status = tx.status

        new_status = payment.mapped_status
        if previous_status == TX_PAID and new_status != TX_PAID:
            self.logger.warning(
                "transaction_regression_ignored intent_id=%s external_id=%s reported=%s",
                intent.id,
                payment.external_id,
                payment.status,
            )
            new_status = TX_PAID

        tx.status = new_status
        tx.external_id = payment.external_id
        if payment.amount is not None:
            tx.amount = payment.amount
        if payment.currency:
            tx.currency = payment.currency
        if payment.authorization_code is not None:
            tx.authorization_code = payment.authorization_code
        if payment.response_code is not None:
            tx.response_code = payment.response_code
        tx.response_payload = {
            **(tx.response_payload or {}),
            "payment_data": payment.summary,
            "callback_payload": callback_payload,
        }
        db.flush()

        if new_status == previous_status:
            self.logger.info(
                "duplicate_notification_skipped intent_id=%s external_id=%s status=%s",
                intent.id,
                payment.external_id,
                new_status,
            )
            duplicate_events_skipped_total.labels(service=settings.service_name, provider=self.name).inc()
            return tx

        self._apply_outcome(db, intent, tx, payment)
        self.logger.info(
            "payment_reconciled intent_id=%s external_id=%s provider_status=%s transaction_status=%s intent_status=%s",
            intent.id,
            payment.external_id,
            payment.status,
            tx.status,
            intent.status,
        )
        return tx

    def _apply_outcome(
        self,
        db: Session,
        intent: PaymentIntent,
        tx: PaymentTransaction,
        payment: ProviderPayment,
    ) -> None:
        if tx.status == TX_PAID:
            if intent.status == CANCELLED:
                self.logger.warning(
                    "approved_payment_on_cancelled_intent intent_id=%s external_id=%s",
                    intent.id,
                    payment.external_id,
                )
                return
            if tx.currency != intent.currency:
                self.logger.warning(
                    "approved_payment_currency_mismatch intent_id=%s external_id=%s intent_currency=%s payment_currency=%s",
                    intent.id,
                    payment.external_id,
                    intent.currency,
                    tx.currency,
                )
                return
            lifecycle.mark_paid(
                db,
                intent,
                tx.amount,
                payment.metadata,
                reason=f"{self.name}_approved",
                transaction_id=tx.id,
            )
        elif tx.status == TX_FAILED:
            if intent.status in (PAID, CANCELLED):
                self.logger.warning(
                    "failure_ignored_for_settled_intent intent_id=%s intent_status=%s external_id=%s",
                    intent.id,
                    intent.status,
                    payment.external_id,
                )
                return
            lifecycle.mark_failed(
                db,
                intent,
                payment.metadata,
                reason=f"{self.name}_{payment.status}",
                transaction_id=tx.id,
            )
