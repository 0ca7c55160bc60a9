"""Provider webhook and browser-callback handling.

Webhook handling runs in a fixed order: payload shape (400), event type
filter (200, ignored), signature (401), authoritative fetch from the
provider, correlation check (400), reconciliation. Anything that fails after
the signature check is logged and acknowledged with 200 so the provider does
not keep retrying into a local bug.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import urlencode

from vetpay.common.config import CommonSettings
from vetpay.common.errors import NotSupportedError, PaymentError, SignatureError, ValidationError
from vetpay.common.logging import get_logger, payment_intent_id_ctx
from vetpay.common.metrics import webhook_events_total
from vetpay.services.payments.service import PaymentIntentService
from vetpay.services.providers.base import parse_correlation
from vetpay.services.providers.factory import ProviderFactory
from vetpay.services.webhooks.signature import verify_signature


@dataclass
class WebhookResult:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _data_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    value = data.get("id") if isinstance(data, dict) else None
    if value is None or value == "":
        return None
    return str(value)


class WebhookService:
    def __init__(
        self,
        payments: PaymentIntentService,
        providers: ProviderFactory,
        settings: CommonSettings,
        logger: logging.Logger | None = None,
    ) -> None:
        self.payments = payments
        self.providers = providers
        self.settings = settings
        self.logger = logger or get_logger("webhooks")

    def _outcome(self, provider: str, outcome: str, status_code: int, **body: Any) -> WebhookResult:
        webhook_events_total.labels(service=self.settings.service_name, provider=provider, outcome=outcome).inc()
        return WebhookResult(status_code=status_code, body={"status": outcome, **body})

    def handle(
        self,
        intent_id: int,
        provider_name: str,
        payload: Any,
        headers: Mapping[str, str],
    ) -> WebhookResult:
        """Verify and reconcile one provider notification for `intent_id`.

        Unknown or webhook-less providers raise (`UnsupportedProviderError`,
        `NotSupportedError`) before anything else is looked at.
        """

        payment_intent_id_ctx.set(str(intent_id))
        provider = self.providers.make(provider_name)
        if not provider.supports_webhooks:
            raise NotSupportedError(f"{provider_name} does not send webhooks")

        event_type = payload.get("type") if isinstance(payload, dict) else None
        data_id = _data_id(payload)
        if not event_type or data_id is None:
            self.logger.warning("webhook_invalid_payload intent_id=%s provider=%s", intent_id, provider_name)
            return self._outcome(provider_name, "invalid", 400, message="type and data.id are required")

        if event_type not in provider.webhook_event_types:
            self.logger.info("webhook_ignored intent_id=%s provider=%s type=%s", intent_id, provider_name, event_type)
            return self._outcome(provider_name, "ignored", 200, type=event_type)

        normalized = {key.lower(): value for key, value in headers.items()}
        secret = provider.webhook_secret
        if secret:
            try:
                verify_signature(normalized.get("x-signature"), data_id, normalized.get("x-request-id"), secret)
            except SignatureError as exc:
                self.logger.warning(
                    "webhook_signature_rejected intent_id=%s provider=%s reason=%s", intent_id, provider_name, exc
                )
                return self._outcome(provider_name, "unauthorized", 401, message=str(exc))
        else:
            self.logger.warning(
                "insecure_webhook_accepted intent_id=%s provider=%s signature verification disabled, no secret configured",
                intent_id,
                provider_name,
            )

        try:
            payment = provider.fetch_payment(data_id)
        except PaymentError as exc:
            self.logger.error(
                "webhook_fetch_failed intent_id=%s provider=%s data_id=%s error=%s payload=%s",
                intent_id,
                provider_name,
                data_id,
                exc,
                payload,
            )
            return self._outcome(provider_name, "error", 200, message="acknowledged")

        try:
            correlated_id = parse_correlation(payment.correlation)
        except ValidationError:
            correlated_id = None
        if correlated_id != intent_id:
            self.logger.warning(
                "webhook_correlation_mismatch intent_id=%s provider=%s external_reference=%s",
                intent_id,
                provider_name,
                payment.correlation,
            )
            return self._outcome(provider_name, "mismatch", 400, message="external reference does not match intent")

        try:
            tx = self.payments.commit(provider_name, payload, payment)
        except Exception:
            self.logger.exception(
                "webhook_processing_failed intent_id=%s provider=%s data_id=%s", intent_id, provider_name, data_id
            )
            return self._outcome(provider_name, "error", 200, message="acknowledged")

        return self._outcome(
            provider_name,
            "processed",
            200,
            transaction_id=tx.id,
            transaction_status=tx.status,
        )

    def callback(self, intent_id: int, provider_name: str, query: Mapping[str, str]) -> str:
        """Best-effort reconciliation of a browser return; returns the front-end URL.

        Query-string status and amount are never trusted: when the query carries
        a payment reference the provider is asked again through `commit`.
        """

        payment_intent_id_ctx.set(str(intent_id))
        params: dict[str, Any] = {"status": "error"}
        try:
            provider = self.providers.make(provider_name)
            payload = provider.callback_payload(dict(query))
            if payload is None:
                params["status"] = self.payments.get(intent_id).status
            else:
                tx = self.payments.commit(provider_name, payload)
                if tx.payment_intent_id != intent_id:
                    self.logger.warning(
                        "callback_correlation_mismatch intent_id=%s reconciled_intent_id=%s",
                        intent_id,
                        tx.payment_intent_id,
                    )
                else:
                    params["status"] = tx.status
                    if tx.external_id:
                        params["payment_id"] = tx.external_id
        except Exception:
            self.logger.exception("callback_failed intent_id=%s provider=%s", intent_id, provider_name)
            params = {"status": "error"}

        return f"{self.settings.redirect_base_url}/dashboard/pagos/{intent_id}?{urlencode(params)}"
