import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SERVICE_NAME", "vetpay-payments-test")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vetpay.common.config import CommonSettings
from vetpay.common.db import Base
from vetpay.services.payments import models  # noqa: F401
from vetpay.services.payments.service import PaymentIntentService
from vetpay.services.providers.factory import ProviderFactory
from vetpay.services.providers.webpay_plus import TRANSACTIONS_PATH
from vetpay.services.webhooks.service import WebhookService
from vetpay.services.webhooks.signature import signature_header

WEBHOOK_SECRET = "test-webhook-secret"


class FakeGateway:
    """In-process stand-in for the MercadoPago and Transbank REST APIs."""

    def __init__(self):
        self.mp_payments = {}
        self.webpay = {}
        self.requests = []
        self.fail_with = None
        self._seq = 0

    def add_mp_payment(self, payment_id, intent_id, status="approved", amount=10000, currency="CLP", reference=None):
        """Register a MercadoPago payment; `amount` is in minor units."""

        self.mp_payments[str(payment_id)] = {
            "id": int(payment_id) if str(payment_id).isdigit() else payment_id,
            "status": status,
            "status_detail": "accredited" if status == "approved" else status,
            "transaction_amount": amount / 100,
            "currency_id": currency,
            "external_reference": reference if reference is not None else f"PI-{intent_id}",
            "payment_method_id": "visa",
            "payment_type_id": "credit_card",
            "date_approved": "2026-10-17T10:00:00.000-03:00" if status == "approved" else None,
            "date_created": "2026-10-17T09:59:00.000-03:00",
        }

    def calls(self, method, path_prefix):
        return [r for r in self.requests if r.method == method and r.url.path.startswith(path_prefix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"message": "upstream failure"})

        path = request.url.path
        if path == "/checkout/preferences" and request.method == "POST":
            self._seq += 1
            pref_id = f"pref-{self._seq}"
            return httpx.Response(
                201,
                json={
                    "id": pref_id,
                    "init_point": f"https://mp.test/checkout/{pref_id}",
                    "sandbox_init_point": f"https://sandbox.mp.test/checkout/{pref_id}",
                },
            )
        if path.startswith("/v1/payments/") and request.method == "GET":
            payment = self.mp_payments.get(path.rsplit("/", 1)[-1])
            if payment is None:
                return httpx.Response(404, json={"message": "payment not found"})
            return httpx.Response(200, json=payment)

        if path == TRANSACTIONS_PATH and request.method == "POST":
            body = json.loads(request.content)
            self._seq += 1
            token = f"tok-{self._seq}"
            self.webpay[token] = {
                "vci": "TSY",
                "amount": body["amount"],
                "status": "AUTHORIZED",
                "buy_order": body["buy_order"],
                "session_id": body["session_id"],
                "authorization_code": "1213",
                "payment_type_code": "VN",
                "response_code": 0,
                "installments_number": 0,
                "transaction_date": "2026-10-17T13:00:00.000Z",
            }
            return httpx.Response(200, json={"token": token, "url": "https://webpay.test/webpayserver/initTransaction"})
        if path.startswith(TRANSACTIONS_PATH + "/"):
            data = self.webpay.get(path.rsplit("/", 1)[-1])
            if data is None:
                return httpx.Response(404, json={"error_message": "token not found"})
            if request.method == "GET":
                return httpx.Response(200, json={**data, "status": "INITIALIZED", "response_code": None})
            return httpx.Response(200, json=data)

        return httpx.Response(404, json={"message": "no route"})


@pytest.fixture
def settings():
    return CommonSettings(
        _env_file=None,
        database_url="sqlite://",
        app_url="http://testserver",
        frontend_url="http://frontend.test",
        mercadopago_access_token="TEST-token",
        mercadopago_webhook_secret=WEBHOOK_SECRET,
        mercadopago_environment="production",
    )


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def providers(settings, gateway):
    factory = ProviderFactory(settings, transport=httpx.MockTransport(gateway.handler))
    yield factory
    factory.close()


@pytest.fixture
def service(session_factory, providers, settings):
    return PaymentIntentService(session_factory, providers, settings)


@pytest.fixture
def webhooks(service, providers, settings):
    return WebhookService(service, providers, settings)


@pytest.fixture
def sign():
    """Signed webhook headers for a MercadoPago `data.id`."""

    def _sign(data_id, request_id="req-1", ts="1760706000", secret=WEBHOOK_SECRET):
        headers = {"x-signature": signature_header(str(data_id), request_id, ts, secret)}
        if request_id:
            headers["x-request-id"] = request_id
        return headers

    return _sign


@pytest.fixture
def client(service, webhooks):
    from vetpay.services.payments.main import app, get_payment_service, get_webhook_service

    app.dependency_overrides[get_payment_service] = lambda: service
    app.dependency_overrides[get_webhook_service] = lambda: webhooks
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
