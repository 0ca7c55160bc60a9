"""Payment intent application service.

Each public method is one unit of work: open a session, lock the intent row,
call the provider, apply the state change, commit once. Nothing is committed
before the provider answer has been validated, and any exception rolls the
whole unit back, including a draft intent flushed by `create`. The row lock is
held across the provider call, which is bounded by the provider timeout.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from vetpay.common.config import CommonSettings
from vetpay.common.errors import ConflictError, NotFoundError
from vetpay.common.logging import get_logger, payment_intent_id_ctx
from vetpay.common.metrics import payment_intents_created_total
from vetpay.common.money import Metadata, Money
from vetpay.common.state_machine import CANCELLED, DRAFT, PAID, TX_PAID
from vetpay.services.payments import lifecycle
from vetpay.services.payments.models import PaymentIntent, PaymentTransaction
from vetpay.services.providers.base import ProviderPayment, StartContext
from vetpay.services.providers.factory import ProviderFactory


MAX_PER_PAGE = 100


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PaymentIntentService:
    """Owns the payment intent lifecycle and provider orchestration."""

    def __init__(
        self,
        session_factory,
        providers: ProviderFactory,
        settings: CommonSettings,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.providers = providers
        self.settings = settings
        self.logger = logger or get_logger("payments")

    def _commit(self, db) -> None:
        try:
            db.commit()
        except StaleDataError as exc:
            db.rollback()
            raise ConflictError("payment intent was modified concurrently; retry") from exc
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("conflicting payment transaction already recorded") from exc

    def create(
        self,
        amount_total: int,
        currency: str | None = None,
        provider: str | None = None,
        patient_id: int | None = None,
        tutor_id: int | None = None,
        consultation_id: int | None = None,
        title: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[PaymentIntent, PaymentTransaction | None]:
        """Create an intent in `draft`; non-manual providers are started right away."""

        money = Money.positive(amount_total, currency or self.settings.default_currency)
        meta = Metadata.of(metadata)
        provider_name = provider or "manual"
        payment_provider = self.providers.make(provider_name)

        with self.session_factory() as db:
            intent = PaymentIntent(
                patient_id=patient_id,
                tutor_id=tutor_id,
                consultation_id=consultation_id,
                currency=money.currency,
                amount_total=money.amount,
                amount_paid=0,
                amount_refunded=0,
                status=DRAFT,
                provider=provider_name,
                title=title,
                description=description,
                meta=meta.as_dict() or None,
                transactions=[],
            )
            db.add(intent)
            db.flush()
            payment_intent_id_ctx.set(str(intent.id))

            tx = None
            if provider_name != "manual":
                context = StartContext(
                    return_url=meta.values.get("return_url"),
                    redirect_url=meta.values.get("redirect_url"),
                )
                tx = payment_provider.start(db, intent, context)
            self._commit(db)

        payment_intents_created_total.labels(service=self.settings.service_name, provider=provider_name).inc()
        self.logger.info(
            "payment_intent_created intent_id=%s provider=%s amount_total=%s currency=%s",
            intent.id,
            provider_name,
            intent.amount_total,
            intent.currency,
        )
        return intent, tx

    def get(self, intent_id: int) -> PaymentIntent:
        with self.session_factory() as db:
            intent = db.execute(
                select(PaymentIntent)
                .where(PaymentIntent.id == intent_id)
                .options(selectinload(PaymentIntent.transactions))
            ).scalar_one_or_none()
            if intent is None:
                raise NotFoundError(f"payment intent {intent_id} not found")
            return intent

    def list_intents(
        self,
        patient_id: int | None = None,
        tutor_id: int | None = None,
        consultation_id: int | None = None,
        status: str | None = None,
        page: int = 1,
        per_page: int = 15,
    ) -> tuple[list[PaymentIntent], int]:
        """Newest first, filtered, paginated."""

        page = max(1, page)
        per_page = min(max(1, per_page), MAX_PER_PAGE)
        filters = []
        if patient_id is not None:
            filters.append(PaymentIntent.patient_id == patient_id)
        if tutor_id is not None:
            filters.append(PaymentIntent.tutor_id == tutor_id)
        if consultation_id is not None:
            filters.append(PaymentIntent.consultation_id == consultation_id)
        if status:
            filters.append(PaymentIntent.status == status)

        with self.session_factory() as db:
            total = db.execute(select(func.count()).select_from(PaymentIntent).where(*filters)).scalar_one()
            items = (
                db.execute(
                    select(PaymentIntent)
                    .where(*filters)
                    .options(selectinload(PaymentIntent.transactions))
                    .order_by(PaymentIntent.id.desc())
                    .offset((page - 1) * per_page)
                    .limit(per_page)
                )
                .scalars()
                .all()
            )
            return list(items), total

    def start(
        self,
        intent_id: int,
        provider: str | None = None,
        context: StartContext | None = None,
    ) -> tuple[PaymentIntent, PaymentTransaction]:
        payment_intent_id_ctx.set(str(intent_id))
        with self.session_factory() as db:
            intent = lifecycle.lock_intent(db, intent_id)
            if intent.status == PAID:
                raise ConflictError("payment intent is already paid")
            if intent.status == CANCELLED:
                raise ConflictError("payment intent is cancelled")
            provider_name = provider or intent.provider or "manual"
            tx = self.providers.make(provider_name).start(db, intent, context or StartContext())
            self._commit(db)

        self.logger.info(
            "payment_intent_started intent_id=%s provider=%s transaction_id=%s", intent.id, provider_name, tx.id
        )
        return intent, tx

    def manual_mark_paid(
        self,
        intent_id: int,
        amount: int,
        reference: str | None = None,
        note: str | None = None,
    ) -> tuple[PaymentIntent, PaymentTransaction]:
        """Record an out-of-band payment (cash, transfer) collected by staff."""

        payment_intent_id_ctx.set(str(intent_id))
        with self.session_factory() as db:
            intent = lifecycle.lock_intent(db, intent_id)
            if intent.status == PAID:
                raise ConflictError("payment intent is already paid")
            money = Money.positive(amount, intent.currency)
            if reference and any(
                t.provider == "manual" and t.external_id == reference for t in intent.transactions
            ):
                raise ConflictError(f"manual payment reference {reference!r} already recorded")

            tx = PaymentTransaction(
                provider="manual",
                status=TX_PAID,
                amount=money.amount,
                currency=intent.currency,
                external_id=reference,
                response_payload={"note": note, "reference": reference},
            )
            intent.transactions.append(tx)
            db.flush()
            intent.provider = "manual"
            lifecycle.mark_paid(
                db,
                intent,
                money.amount,
                {"manual_paid_at": _now_iso(), "manual_reference": reference},
                reason="manual_paid",
                transaction_id=tx.id,
            )
            self._commit(db)

        self.logger.info(
            "manual_payment_recorded intent_id=%s amount=%s amount_paid=%s status=%s",
            intent.id,
            money.amount,
            intent.amount_paid,
            intent.status,
        )
        return intent, tx

    def cancel(self, intent_id: int, note: str | None = None) -> PaymentIntent:
        payment_intent_id_ctx.set(str(intent_id))
        with self.session_factory() as db:
            intent = lifecycle.lock_intent(db, intent_id)
            lifecycle.mark_cancelled(db, intent, {"cancel_note": note, "cancelled_at": _now_iso()})
            self._commit(db)
        self.logger.info("payment_intent_cancelled intent_id=%s", intent_id)
        return intent

    def mark_failed(self, intent_id: int, note: str | None = None) -> PaymentIntent:
        payment_intent_id_ctx.set(str(intent_id))
        with self.session_factory() as db:
            intent = lifecycle.lock_intent(db, intent_id)
            lifecycle.mark_failed(db, intent, {"failure_note": note}, reason="marked_failed")
            self._commit(db)
        self.logger.info("payment_intent_failed intent_id=%s", intent_id)
        return intent

    def revert_to_pending(self, intent_id: int, note: str | None = None) -> PaymentIntent:
        payment_intent_id_ctx.set(str(intent_id))
        with self.session_factory() as db:
            intent = lifecycle.lock_intent(db, intent_id)
            from_status = intent.status
            lifecycle.revert_to_pending(db, intent, {"revert_note": note, "reverted_at": _now_iso()})
            self._commit(db)
        self.logger.warning("payment_intent_reverted intent_id=%s from_status=%s", intent_id, from_status)
        return intent

    def commit(
        self,
        provider: str,
        callback_payload: dict[str, Any],
        payment: ProviderPayment | None = None,
    ) -> PaymentTransaction:
        """Reconcile a provider notification into local records."""

        payment_provider = self.providers.make(provider)
        with self.session_factory() as db:
            tx = payment_provider.commit(db, callback_payload, payment)
            self._commit(db)
        return tx
