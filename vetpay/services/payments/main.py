"""HTTP surface for payment intents, provider webhooks and browser callbacks."""

import json
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from vetpay.common.config import settings
from vetpay.common.db import Base, SessionLocal, engine
from vetpay.common.errors import PaymentError
from vetpay.common.logging import configure_logging, logger, trace_id_ctx
from vetpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from vetpay.common.startup import log_startup_config
from vetpay.common.tracing import instrument_app, setup_tracing
from vetpay.services.payments.schemas import (
    ManualPaidRequest,
    NoteRequest,
    PageMeta,
    PaymentIntentCreateRequest,
    PaymentIntentEnvelope,
    PaymentIntentList,
    PaymentIntentResponse,
    StartRequest,
    TransactionResponse,
)
from vetpay.services.payments.service import PaymentIntentService
from vetpay.services.providers.base import StartContext
from vetpay.services.providers.factory import ProviderFactory
from vetpay.services.webhooks.service import WebhookService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_URL",
        "APP_URL",
        "FRONTEND_URL",
        "MERCADOPAGO_ACCESS_TOKEN",
        "MERCADOPAGO_WEBHOOK_SECRET",
        "MERCADOPAGO_ENVIRONMENT",
        "WEBPAY_ENVIRONMENT",
    ],
)
providers = ProviderFactory(settings)
payment_service = PaymentIntentService(SessionLocal, providers, settings)
webhook_service = WebhookService(payment_service, providers, settings)


def get_payment_service() -> PaymentIntentService:
    return payment_service


def get_webhook_service() -> WebhookService:
    return webhook_service


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.auto_create_schema:
        Base.metadata.create_all(engine)
    yield
    providers.close()


app = FastAPI(title="VetPay Payments", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency; propagate `x-request-id` as trace id."""

    trace_id = request.headers.get("x-request-id") or str(uuid4())
    trace_id_ctx.set(trace_id)
    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        response.headers["x-request-id"] = trace_id
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.error("request_failed path=%s error=%s message=%s", request.url.path, exc.code, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "message": str(exc)})


def _envelope(intent, tx=None) -> PaymentIntentEnvelope:
    return PaymentIntentEnvelope(
        data=PaymentIntentResponse.model_validate(intent),
        transaction=TransactionResponse.model_validate(tx) if tx is not None else None,
    )


@app.post("/payment-intents", response_model=PaymentIntentEnvelope, status_code=201)
def create_intent(req: PaymentIntentCreateRequest, service: PaymentIntentService = Depends(get_payment_service)):
    """Create an intent in `draft`; gateway providers are started immediately."""

    intent, tx = service.create(
        amount_total=req.amount_total,
        currency=req.currency,
        provider=req.provider,
        patient_id=req.patient_id,
        tutor_id=req.tutor_id,
        consultation_id=req.consultation_id,
        title=req.title,
        description=req.description,
        metadata=req.meta,
    )
    return _envelope(intent, tx)


@app.get("/payment-intents", response_model=PaymentIntentList)
def list_intents(
    patient_id: int | None = None,
    tutor_id: int | None = None,
    consultation_id: int | None = None,
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=15, ge=1, le=100),
    service: PaymentIntentService = Depends(get_payment_service),
):
    items, total = service.list_intents(
        patient_id=patient_id,
        tutor_id=tutor_id,
        consultation_id=consultation_id,
        status=status,
        page=page,
        per_page=per_page,
    )
    return PaymentIntentList(
        data=[PaymentIntentResponse.model_validate(item) for item in items],
        meta=PageMeta(page=page, per_page=per_page, total=total),
    )


@app.get("/payment-intents/{intent_id}", response_model=PaymentIntentEnvelope)
def get_intent(intent_id: int, service: PaymentIntentService = Depends(get_payment_service)):
    return _envelope(service.get(intent_id))


@app.post("/payment-intents/{intent_id}/start", response_model=PaymentIntentEnvelope)
def start_intent(
    intent_id: int,
    req: StartRequest | None = None,
    service: PaymentIntentService = Depends(get_payment_service),
):
    req = req or StartRequest()
    context = StartContext(return_url=req.return_url, redirect_url=req.redirect_url, origin=req.origin)
    intent, tx = service.start(intent_id, provider=req.provider, context=context)
    return _envelope(intent, tx)


@app.post("/payment-intents/{intent_id}/manual-paid", response_model=PaymentIntentEnvelope)
def manual_paid(
    intent_id: int,
    req: ManualPaidRequest,
    service: PaymentIntentService = Depends(get_payment_service),
):
    intent, tx = service.manual_mark_paid(intent_id, req.amount, reference=req.reference, note=req.note)
    return _envelope(intent, tx)


@app.post("/payment-intents/{intent_id}/cancel", response_model=PaymentIntentEnvelope)
def cancel_intent(
    intent_id: int,
    req: NoteRequest | None = None,
    service: PaymentIntentService = Depends(get_payment_service),
):
    return _envelope(service.cancel(intent_id, note=req.note if req else None))


@app.post("/payment-intents/{intent_id}/revert-pending", response_model=PaymentIntentEnvelope)
def revert_pending(
    intent_id: int,
    req: NoteRequest | None = None,
    service: PaymentIntentService = Depends(get_payment_service),
):
    """Manual correction back to `pending`; refused for paid intents."""

    return _envelope(service.revert_to_pending(intent_id, note=req.note if req else None))


@app.post("/payment-intents/{intent_id}/{provider}/webhook")
async def provider_webhook(
    intent_id: int,
    provider: str,
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """Provider notification; 4xx only for bad payloads and signatures."""

    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else None
    except ValueError:
        payload = None
    result = await run_in_threadpool(service.handle, intent_id, provider, payload, dict(request.headers))
    return JSONResponse(status_code=result.status_code, content=result.body)


@app.get("/payment-intents/{intent_id}/{provider}/callback")
def provider_callback(
    intent_id: int,
    provider: str,
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    url = service.callback(intent_id, provider, dict(request.query_params))
    return RedirectResponse(url=url, status_code=302)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
