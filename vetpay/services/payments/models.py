"""Payment database models.

`payment_intents` is the source of truth for what should be collected and its
current state; `payment_transactions` is the audit trail of every provider
attempt or callback against an intent; `payment_intent_timeline` records each
status change.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vetpay.common.db import Base, JSONType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentIntent(Base):
    """One logical charge."""

    __tablename__ = "payment_intents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    tutor_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    consultation_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    currency: Mapped[str] = mapped_column(String(3), default="CLP")
    amount_total: Mapped[int] = mapped_column(BigInteger)
    amount_paid: Mapped[int] = mapped_column(BigInteger, default=0)
    amount_refunded: Mapped[int] = mapped_column(BigInteger, default=0)
    status: Mapped[str] = mapped_column(String(20), default="draft", index=True)
    provider: Mapped[str] = mapped_column(String(30), default="manual", index=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    transactions: Mapped[list["PaymentTransaction"]] = relationship(
        back_populates="intent", order_by="PaymentTransaction.id"
    )
    timeline: Mapped[list["PaymentIntentTimeline"]] = relationship(
        back_populates="intent", order_by="PaymentIntentTimeline.id"
    )

    # Stale concurrent writes fail with StaleDataError instead of overwriting.
    __mapper_args__ = {"version_id_col": state_version}


class PaymentTransaction(Base):
    """One attempt or provider-reported event against an intent."""

    __tablename__ = "payment_transactions"
    __table_args__ = (
        UniqueConstraint(
            "payment_intent_id",
            "provider",
            "external_id",
            name="uq_payment_transactions_intent_provider_external",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_intent_id: Mapped[int] = mapped_column(
        ForeignKey("payment_intents.id", ondelete="CASCADE"), index=True
    )
    provider: Mapped[str] = mapped_column(String(30), index=True)
    status: Mapped[str] = mapped_column(String(20), default="initiated", index=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3), default="CLP")
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    authorization_code: Mapped[str | None] = mapped_column(String(255), nullable=True)
    response_code: Mapped[str | None] = mapped_column(String(255), nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    return_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    response_payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    intent: Mapped[PaymentIntent] = relationship(back_populates="transactions")


class PaymentIntentTimeline(Base):
    """Immutable audit trail of every intent status change."""

    __tablename__ = "payment_intent_timeline"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_intent_id: Mapped[int] = mapped_column(
        ForeignKey("payment_intents.id", ondelete="CASCADE"), index=True
    )
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20))
    reason: Mapped[str] = mapped_column(String(255))
    transaction_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    intent: Mapped[PaymentIntent] = relationship(back_populates="timeline")
