"""Transbank Webpay Plus provider (REST API v1.2).

Webpay has no server-to-server notifications: the customer's browser comes
back to the return URL carrying `token_ws` (finished) or `TBK_TOKEN` (aborted
on the payment form), and the commerce must confirm the token with Transbank.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from vetpay.common.config import CommonSettings
from vetpay.common.errors import ExternalProviderError, ValidationError
from vetpay.common.money import Money
from vetpay.common.state_machine import TX_FAILED, TX_PAID, TX_PENDING, TX_TERMINAL
from vetpay.services.payments.models import PaymentIntent, PaymentTransaction
from vetpay.services.providers.base import (
    PaymentProvider,
    ProviderPayment,
    StartContext,
    correlation_token,
    parse_correlation,
)
from vetpay.services.providers.http import ProviderHTTPClient


TRANSACTIONS_PATH = "/rswebpaytransaction/api/webpay/v1.2/transactions"


def map_status(status: str | None, response_code: Any) -> str:
    if status == "AUTHORIZED" and response_code == 0:
        return TX_PAID
    if status == "INITIALIZED":
        return TX_PENDING
    return TX_FAILED


def api_amount(money: Money) -> int | float:
    """Webpay rejects decimals for CLP, so whole amounts go out as integers."""

    major = money.to_major()
    if major == major.to_integral_value():
        return int(major)
    return float(major)


class WebpayPlusClient(ProviderHTTPClient):
    def __init__(
        self,
        commerce_code: str,
        api_key: str,
        base_url: str,
        timeout: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(
            provider="webpay_plus",
            base_url=base_url,
            headers={
                "Tbk-Api-Key-Id": commerce_code,
                "Tbk-Api-Key-Secret": api_key,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def create_transaction(self, buy_order: str, session_id: str, amount: int | float, return_url: str) -> dict[str, Any]:
        return self.request(
            "POST",
            TRANSACTIONS_PATH,
            "create_transaction",
            json={"buy_order": buy_order, "session_id": session_id, "amount": amount, "return_url": return_url},
        )

    def commit_transaction(self, token: str) -> dict[str, Any]:
        return self.request("PUT", f"{TRANSACTIONS_PATH}/{token}", "commit_transaction")

    def transaction_status(self, token: str) -> dict[str, Any]:
        return self.request("GET", f"{TRANSACTIONS_PATH}/{token}", "transaction_status")


class WebpayPlusProvider(PaymentProvider):
    name = "webpay_plus"

    def __init__(
        self,
        settings: CommonSettings,
        client: WebpayPlusClient,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(logger)
        self.settings = settings
        self.client = client

    def callback_url(self, intent_id: int) -> str:
        return f"{self.settings.app_url.rstrip('/')}/payment-intents/{intent_id}/{self.name}/callback"

    def start(self, db: Session, intent: PaymentIntent, context: StartContext) -> PaymentTransaction:
        buy_order = f"{correlation_token(intent.id)}-{datetime.now(timezone.utc):%Y%m%d%H%M%S}"
        session_id = f"intent-{intent.id}"
        return_url = context.return_url or self.callback_url(intent.id)
        amount = api_amount(Money(intent.amount_total, intent.currency))

        created = self.client.create_transaction(buy_order, session_id, amount, return_url)
        token = created.get("token")
        url = created.get("url")
        if not token or not url:
            raise ExternalProviderError("webpay create response is incomplete", provider=self.name)

        tx = self._begin(
            db,
            intent,
            external_id=token,
            redirect_url=f"{url}?token_ws={token}",
            return_url=return_url,
            request_payload={
                "buy_order": buy_order,
                "session_id": session_id,
                "amount": amount,
                "return_url": return_url,
                "context": context.as_dict(),
            },
            response_payload={"token": token, "url": url},
        )
        self.logger.info(
            "webpay_transaction_created intent_id=%s buy_order=%s transaction_id=%s", intent.id, buy_order, tx.id
        )
        return tx

    def _to_payment(self, token: str, data: dict[str, Any], aborted: bool) -> ProviderPayment:
        status = data.get("status")
        response_code = data.get("response_code")
        mapped = TX_FAILED if aborted else map_status(status, response_code)
        amount = None
        if data.get("amount") is not None:
            amount = Money.from_major(Decimal(str(data["amount"])), self.settings.default_currency).amount
        summary = {
            "status": status,
            "response_code": response_code,
            "vci": data.get("vci"),
            "amount": data.get("amount"),
            "buy_order": data.get("buy_order"),
            "session_id": data.get("session_id"),
            "authorization_code": data.get("authorization_code"),
            "payment_type_code": data.get("payment_type_code"),
            "installments_number": data.get("installments_number"),
            "transaction_date": data.get("transaction_date"),
            "aborted": aborted,
        }
        return ProviderPayment(
            external_id=token,
            status="ABORTED" if aborted else (status or "UNKNOWN"),
            mapped_status=mapped,
            amount=amount,
            currency=None,
            correlation=data.get("buy_order"),
            authorization_code=data.get("authorization_code"),
            response_code=None if response_code is None else str(response_code),
            summary=summary,
            metadata={
                "webpay_token": token,
                "webpay_status": summary["status"],
                "webpay_response_code": response_code,
                "webpay_authorization_code": data.get("authorization_code"),
            },
        )

    def commit(
        self,
        db: Session,
        callback_payload: dict[str, Any],
        payment: ProviderPayment | None = None,
    ) -> PaymentTransaction:
        token = callback_payload.get("token_ws")
        aborted_token = callback_payload.get("TBK_TOKEN")
        if not token and not aborted_token:
            raise ValidationError("token_ws or TBK_TOKEN is required")
        reference = token or aborted_token

        # A confirmed token cannot be committed twice at Transbank.
        settled = db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.provider == self.name,
                PaymentTransaction.external_id == reference,
                PaymentTransaction.status.in_(TX_TERMINAL),
            )
        ).scalar_one_or_none()
        if settled is not None:
            self.logger.info("webpay_token_already_settled token=%s transaction_id=%s", reference, settled.id)
            return settled

        if payment is None:
            if token:
                data = self.client.commit_transaction(token)
            else:
                data = self.client.transaction_status(aborted_token)
            payment = self._to_payment(reference, data, aborted=not token)
        intent_id = parse_correlation(payment.correlation)
        return self._reconcile(db, intent_id, payment, callback_payload)

    def callback_payload(self, query: dict[str, str]) -> dict[str, Any] | None:
        if query.get("token_ws"):
            return {"token_ws": query["token_ws"]}
        if query.get("TBK_TOKEN"):
            return {"TBK_TOKEN": query["TBK_TOKEN"]}
        return None
