"""API request/response schemas for payment intent endpoints."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


ProviderName = Literal["manual", "webpay_plus", "mercadopago"]


class PaymentIntentCreateRequest(BaseModel):
    """Payload accepted by `POST /payment-intents`."""

    amount_total: int = Field(gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    provider: ProviderName | None = None
    patient_id: int | None = None
    tutor_id: int | None = None
    consultation_id: int | None = None
    title: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    meta: dict[str, Any] | None = None


class StartRequest(BaseModel):
    provider: ProviderName | None = None
    return_url: str | None = None
    redirect_url: str | None = None
    origin: str | None = None


class ManualPaidRequest(BaseModel):
    amount: int = Field(ge=1)
    note: str | None = Field(default=None, max_length=500)
    reference: str | None = Field(default=None, max_length=120)


class NoteRequest(BaseModel):
    """Optional operator note for cancel / revert-pending."""

    note: str | None = Field(default=None, max_length=500)


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_intent_id: int
    provider: str
    status: str
    amount: int
    currency: str
    external_id: str | None
    authorization_code: str | None
    response_code: str | None
    redirect_url: str | None
    return_url: str | None
    request_payload: dict[str, Any] | None
    response_payload: dict[str, Any] | None
    created_at: datetime | None
    updated_at: datetime | None


class PaymentIntentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int | None
    tutor_id: int | None
    consultation_id: int | None
    currency: str
    amount_total: int
    amount_paid: int
    amount_refunded: int
    status: str
    provider: str
    title: str | None
    description: str | None
    meta: dict[str, Any] | None
    created_at: datetime | None
    updated_at: datetime | None
    transactions: list[TransactionResponse] = []


class PaymentIntentEnvelope(BaseModel):
    """Intent plus the transaction the operation created, when there is one."""

    data: PaymentIntentResponse
    transaction: TransactionResponse | None = None


class PageMeta(BaseModel):
    page: int
    per_page: int
    total: int


class PaymentIntentList(BaseModel):
    data: list[PaymentIntentResponse]
    meta: PageMeta
