"""MercadoPago Checkout Pro provider.

`start` creates a checkout preference and sends the customer to its hosted
`init_point`; the outcome arrives later as a `payment` webhook (and as the
browser returning to the callback route). Both paths end in `commit`, which
re-reads the payment from MercadoPago before touching local state.

MercadoPago speaks decimal major units; conversion happens here and nowhere
else.
"""

import logging
from typing import Any

import httpx
from sqlalchemy.orm import Session

from vetpay.common.config import CommonSettings
from vetpay.common.errors import ExternalProviderError, ValidationError
from vetpay.common.money import Money
from vetpay.common.state_machine import TX_FAILED, TX_PAID, TX_PENDING
from vetpay.services.payments.models import PaymentIntent, PaymentTransaction
from vetpay.services.providers.base import (
    PaymentProvider,
    ProviderPayment,
    StartContext,
    correlation_token,
    parse_correlation,
)
from vetpay.services.providers.http import ProviderHTTPClient


STATUS_MAP = {
    "approved": TX_PAID,
    "rejected": TX_FAILED,
    "cancelled": TX_FAILED,
    "refunded": TX_FAILED,
    "charged_back": TX_FAILED,
    "pending": TX_PENDING,
    "in_process": TX_PENDING,
    "in_mediation": TX_PENDING,
}

SUPPORTED_CURRENCIES = {"CLP", "USD", "ARS", "BRL", "MXN"}


def map_status(mp_status: str | None) -> str:
    return STATUS_MAP.get(mp_status or "", TX_PENDING)


def map_currency(currency: str) -> str:
    code = (currency or "").upper()
    return code if code in SUPPORTED_CURRENCIES else "CLP"


class MercadoPagoClient(ProviderHTTPClient):
    """Just the two REST calls the checkout flow needs."""

    def __init__(
        self,
        access_token: str,
        base_url: str,
        timeout: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(
            provider="mercadopago",
            base_url=base_url,
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def create_preference(self, preference: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", "/checkout/preferences", "create_preference", json=preference)

    def get_payment(self, payment_id: str) -> dict[str, Any]:
        return self.request("GET", f"/v1/payments/{payment_id}", "get_payment")


class MercadoPagoProvider(PaymentProvider):
    name = "mercadopago"
    supports_webhooks = True
    webhook_event_types = frozenset({"payment"})

    def __init__(
        self,
        settings: CommonSettings,
        client: MercadoPagoClient,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(logger)
        self.settings = settings
        self.client = client

    @property
    def webhook_secret(self) -> str | None:
        return self.settings.mercadopago_webhook_secret or None

    def callback_url(self, intent_id: int) -> str:
        return f"{self.settings.app_url.rstrip('/')}/payment-intents/{intent_id}/{self.name}/callback"

    def webhook_url(self, intent_id: int) -> str:
        return f"{self.settings.app_url.rstrip('/')}/payment-intents/{intent_id}/{self.name}/webhook"

    def build_preference(self, intent: PaymentIntent, return_url: str) -> dict[str, Any]:
        amount = Money(intent.amount_total, intent.currency).to_major()
        return {
            "items": [
                {
                    "title": intent.title or "Pago de consulta veterinaria",
                    "description": intent.description or f"Pago #{intent.id}",
                    "quantity": 1,
                    "currency_id": map_currency(intent.currency),
                    "unit_price": float(amount),
                }
            ],
            "back_urls": {
                "success": f"{return_url}?status=approved",
                "failure": f"{return_url}?status=rejected",
                "pending": f"{return_url}?status=pending",
            },
            "auto_return": "approved",
            "external_reference": correlation_token(intent.id),
            "notification_url": self.webhook_url(intent.id),
            "statement_descriptor": self.settings.app_name,
            "metadata": {
                "payment_intent_id": intent.id,
                "patient_id": intent.patient_id,
                "tutor_id": intent.tutor_id,
                "consultation_id": intent.consultation_id,
            },
        }

    def start(self, db: Session, intent: PaymentIntent, context: StartContext) -> PaymentTransaction:
        return_url = context.return_url or self.callback_url(intent.id)
        preference_data = self.build_preference(intent, return_url)
        preference = self.client.create_preference(preference_data)

        preference_id = preference.get("id")
        init_point = preference.get("init_point")
        if self.settings.mercadopago_environment == "sandbox" and preference.get("sandbox_init_point"):
            init_point = preference["sandbox_init_point"]
        if not preference_id or not init_point:
            raise ExternalProviderError("mercadopago preference response is incomplete", provider=self.name)

        tx = self._begin(
            db,
            intent,
            external_id=str(preference_id),
            redirect_url=init_point,
            return_url=return_url,
            request_payload={"preference_data": preference_data, "context": context.as_dict()},
            response_payload={
                "preference_id": preference_id,
                "init_point": preference.get("init_point"),
                "sandbox_init_point": preference.get("sandbox_init_point"),
            },
        )
        self.logger.info(
            "mercadopago_preference_created intent_id=%s preference_id=%s transaction_id=%s",
            intent.id,
            preference_id,
            tx.id,
        )
        return tx

    def fetch_payment(self, reference: str) -> ProviderPayment:
        data = self.client.get_payment(reference)
        if data.get("id") is None or "status" not in data:
            raise ExternalProviderError("mercadopago payment response is incomplete", provider=self.name)

        currency = data.get("currency_id")
        if data.get("transaction_amount") is None or not currency:
            raise ExternalProviderError(
                f"mercadopago payment {reference} has no transaction_amount or currency_id", provider=self.name
            )
        amount = Money.from_major(data["transaction_amount"], currency).amount
        summary = {
            "id": data.get("id"),
            "status": data.get("status"),
            "status_detail": data.get("status_detail"),
            "transaction_amount": data.get("transaction_amount"),
            "currency_id": currency,
            "payment_method_id": data.get("payment_method_id"),
            "payment_type_id": data.get("payment_type_id"),
            "date_approved": data.get("date_approved"),
            "date_created": data.get("date_created"),
        }
        metadata = {
            "mercadopago_payment_id": data.get("id"),
            "mercadopago_status": data.get("status"),
            "mercadopago_status_detail": data.get("status_detail"),
        }
        if data.get("status") == "approved":
            metadata["mercadopago_payment_method"] = data.get("payment_method_id")
            metadata["mercadopago_date_approved"] = data.get("date_approved")

        return ProviderPayment(
            external_id=str(data["id"]),
            status=data["status"],
            mapped_status=map_status(data["status"]),
            amount=amount,
            currency=currency,
            correlation=data.get("external_reference"),
            authorization_code=data.get("authorization_code"),
            summary=summary,
            metadata=metadata,
        )

    def commit(
        self,
        db: Session,
        callback_payload: dict[str, Any],
        payment: ProviderPayment | None = None,
    ) -> PaymentTransaction:
        data = callback_payload.get("data")
        payment_id = (data.get("id") if isinstance(data, dict) else None) or callback_payload.get("id")
        if not payment_id:
            raise ValidationError("payment id not found in callback payload")

        if payment is None:
            payment = self.fetch_payment(str(payment_id))
        intent_id = parse_correlation(payment.correlation)
        return self._reconcile(db, intent_id, payment, callback_payload)

    def callback_payload(self, query: dict[str, str]) -> dict[str, Any] | None:
        payment_id = query.get("payment_id") or query.get("collection_id")
        if not payment_id or payment_id == "null":
            return None
        return {"data": {"id": payment_id}, "id": payment_id}
