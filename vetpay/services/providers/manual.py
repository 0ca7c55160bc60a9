"""Manual (cash, transfer, in-clinic card terminal) pseudo-provider."""

from typing import Any

from sqlalchemy.orm import Session

from vetpay.common.errors import NotSupportedError
from vetpay.services.payments.models import PaymentIntent, PaymentTransaction
from vetpay.services.providers.base import PaymentProvider, ProviderPayment, StartContext


class ManualPaymentProvider(PaymentProvider):
    """No redirection and no callbacks; staff settle through manual-paid."""

    name = "manual"

    def start(self, db: Session, intent: PaymentIntent, context: StartContext) -> PaymentTransaction:
        tx = self._begin(db, intent, request_payload=context.as_dict())
        self.logger.info("manual_payment_started intent_id=%s transaction_id=%s", intent.id, tx.id)
        return tx

    def commit(
        self,
        db: Session,
        callback_payload: dict[str, Any],
        payment: ProviderPayment | None = None,
    ) -> PaymentTransaction:
        raise NotSupportedError("manual provider does not support commit callbacks; use manual-paid")
