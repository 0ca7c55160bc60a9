"""Payment intent lifecycle through the application service."""

import pytest
from sqlalchemy import select

from vetpay.common.errors import (
    ConflictError,
    ExternalProviderError,
    NotFoundError,
    NotSupportedError,
    UnsupportedProviderError,
    ValidationError,
)
from vetpay.services.payments import lifecycle
from vetpay.services.payments.models import PaymentIntent, PaymentIntentTimeline, PaymentTransaction
from vetpay.services.providers.base import ProviderPayment, StartContext
from vetpay.services.providers.webpay_plus import TRANSACTIONS_PATH


def _timeline(session_factory, intent_id):
    with session_factory() as db:
        rows = db.execute(
            select(PaymentIntentTimeline)
            .where(PaymentIntentTimeline.payment_intent_id == intent_id)
            .order_by(PaymentIntentTimeline.id)
        ).scalars()
        return [(row.from_status, row.to_status, row.reason) for row in rows]


def test_create_starts_in_draft(service):
    intent, tx = service.create(amount_total=25000, currency="clp", patient_id=7, tutor_id=3, metadata={"a": 1})

    assert tx is None
    assert intent.status == "draft"
    assert intent.amount_paid == 0
    assert intent.amount_refunded == 0
    assert intent.currency == "CLP"
    assert intent.provider == "manual"
    assert intent.meta == {"a": 1}


def test_create_uses_default_currency(service):
    intent, _ = service.create(amount_total=100)
    assert intent.currency == "CLP"


@pytest.mark.parametrize("amount", [0, -5])
def test_create_requires_positive_amount(service, amount):
    with pytest.raises(ValidationError):
        service.create(amount_total=amount)


def test_create_rejects_bad_currency_and_provider(service):
    with pytest.raises(ValidationError):
        service.create(amount_total=100, currency="PESOS")
    with pytest.raises(UnsupportedProviderError):
        service.create(amount_total=100, provider="paypal")


def test_scenario_a_manual_full_payment(service, session_factory):
    intent, _ = service.create(amount_total=25000, currency="CLP", provider="manual")
    assert (intent.status, intent.amount_paid) == ("draft", 0)

    intent, tx = service.manual_mark_paid(intent.id, 25000, reference="REC-1", note="cash")

    assert intent.status == "paid"
    assert intent.amount_paid == 25000
    assert tx.status == "paid"
    assert tx.provider == "manual"
    assert tx.external_id == "REC-1"
    assert intent.meta["manual_reference"] == "REC-1"
    assert _timeline(session_factory, intent.id) == [("draft", "paid", "manual_paid")]


def test_partial_manual_payments_accumulate_and_cap(service):
    intent, _ = service.create(amount_total=10000)

    intent, _ = service.manual_mark_paid(intent.id, 4000)
    assert (intent.status, intent.amount_paid) == ("pending", 4000)

    intent, _ = service.manual_mark_paid(intent.id, 10000)
    assert (intent.status, intent.amount_paid) == ("paid", 10000)
    assert len(service.get(intent.id).transactions) == 2


def test_manual_payment_on_paid_intent_is_rejected(service):
    intent, _ = service.create(amount_total=500)
    service.manual_mark_paid(intent.id, 500)

    with pytest.raises(ConflictError):
        service.manual_mark_paid(intent.id, 500)
    assert service.get(intent.id).amount_paid == 500


def test_duplicate_manual_reference_is_rejected(service):
    intent, _ = service.create(amount_total=10000)
    service.manual_mark_paid(intent.id, 1000, reference="TRF-9")

    with pytest.raises(ConflictError):
        service.manual_mark_paid(intent.id, 1000, reference="TRF-9")
    assert service.get(intent.id).amount_paid == 1000


def test_manual_start_records_initiated_transaction(service):
    intent, _ = service.create(amount_total=1000)

    intent, tx = service.start(intent.id, context=StartContext(origin="front-desk"))

    assert intent.status == "pending"
    assert tx.status == "initiated"
    assert tx.request_payload["origin"] == "front-desk"


def test_manual_provider_has_no_commit(service):
    with pytest.raises(NotSupportedError):
        service.commit("manual", {"id": "1"})


def test_unknown_intent(service):
    with pytest.raises(NotFoundError):
        service.get(999)
    with pytest.raises(NotFoundError):
        service.manual_mark_paid(999, 100)


def test_scenario_b_mercadopago_webhook_settles_intent(service, webhooks, gateway, sign):
    intent, tx = service.create(amount_total=10000, provider="mercadopago", title="Consulta")

    assert intent.status == "pending"
    assert tx.status == "initiated"
    assert tx.redirect_url == "https://mp.test/checkout/pref-1"
    preference = gateway.calls("POST", "/checkout/preferences")[0]
    assert b'"external_reference":"PI-%d"' % intent.id in preference.content.replace(b" ", b"")

    gateway.add_mp_payment("9001", intent.id, amount=10000)
    result = webhooks.handle(intent.id, "mercadopago", {"type": "payment", "data": {"id": "9001"}}, sign("9001"))

    assert result.status_code == 200
    assert result.body["status"] == "processed"
    intent = service.get(intent.id)
    assert intent.status == "paid"
    assert intent.amount_paid == 10000
    assert [(t.external_id, t.status) for t in intent.transactions] == [("9001", "paid")]
    assert intent.meta["mercadopago_payment_id"] == 9001


def test_scenario_c_duplicate_webhook_is_idempotent(service, webhooks, gateway, sign, session_factory):
    intent, _ = service.create(amount_total=10000, provider="mercadopago")
    gateway.add_mp_payment("9002", intent.id, amount=10000)
    payload = {"type": "payment", "data": {"id": "9002"}}

    first = webhooks.handle(intent.id, "mercadopago", payload, sign("9002"))
    second = webhooks.handle(intent.id, "mercadopago", payload, sign("9002"))

    assert first.status_code == second.status_code == 200
    intent = service.get(intent.id)
    assert intent.amount_paid == 10000
    assert [t.status for t in intent.transactions if t.external_id == "9002"] == ["paid"]
    paid_rows = [row for row in _timeline(session_factory, intent.id) if row[1] == "paid"]
    assert len(paid_rows) == 1


def test_scenario_d_cancelled_intent_is_not_paid(service, webhooks, gateway, sign):
    intent, _ = service.create(amount_total=10000, provider="mercadopago")

    intent = service.cancel(intent.id, note="owner left")
    assert intent.status == "cancelled"
    assert intent.meta["cancel_note"] == "owner left"

    with pytest.raises(ConflictError):
        service.manual_mark_paid(intent.id, 10000)
    with pytest.raises(ConflictError):
        service.start(intent.id)

    gateway.add_mp_payment("9003", intent.id, amount=10000)
    webhooks.handle(intent.id, "mercadopago", {"type": "payment", "data": {"id": "9003"}}, sign("9003"))

    intent = service.get(intent.id)
    assert intent.status == "cancelled"
    assert intent.amount_paid == 0
    assert [t.status for t in intent.transactions] == ["paid"]


def test_cancel_paid_intent_is_rejected(service):
    intent, _ = service.create(amount_total=100)
    service.manual_mark_paid(intent.id, 100)
    with pytest.raises(ConflictError):
        service.cancel(intent.id)
    with pytest.raises(ConflictError):
        service.mark_failed(intent.id)


def test_rejected_then_approved_payment(service, webhooks, gateway, sign):
    intent, _ = service.create(amount_total=10000, provider="mercadopago")

    gateway.add_mp_payment("r-1", intent.id, status="rejected", amount=10000)
    webhooks.handle(intent.id, "mercadopago", {"type": "payment", "data": {"id": "r-1"}}, sign("r-1"))
    assert service.get(intent.id).status == "failed"

    gateway.add_mp_payment("a-2", intent.id, status="approved", amount=10000)
    webhooks.handle(intent.id, "mercadopago", {"type": "payment", "data": {"id": "a-2"}}, sign("a-2"))

    intent = service.get(intent.id)
    assert intent.status == "paid"
    assert sorted((t.external_id, t.status) for t in intent.transactions) == [("a-2", "paid"), ("r-1", "failed")]


def test_paid_transaction_never_regresses(service, webhooks, gateway, sign):
    intent, _ = service.create(amount_total=10000, provider="mercadopago")
    gateway.add_mp_payment("9004", intent.id, amount=10000)
    payload = {"type": "payment", "data": {"id": "9004"}}
    webhooks.handle(intent.id, "mercadopago", payload, sign("9004"))

    gateway.mp_payments["9004"]["status"] = "refunded"
    webhooks.handle(intent.id, "mercadopago", payload, sign("9004"))

    intent = service.get(intent.id)
    assert intent.status == "paid"
    assert intent.amount_paid == 10000
    assert intent.transactions[0].status == "paid"


def test_pending_payment_keeps_intent_pending(service, webhooks, gateway, sign):
    intent, _ = service.create(amount_total=10000, provider="mercadopago")
    gateway.add_mp_payment("9005", intent.id, status="in_process", amount=10000)

    webhooks.handle(intent.id, "mercadopago", {"type": "payment", "data": {"id": "9005"}}, sign("9005"))

    intent = service.get(intent.id)
    assert intent.status == "pending"
    assert intent.amount_paid == 0
    assert intent.transactions[0].status == "pending"


def test_overpayment_is_capped(service, webhooks, gateway, sign):
    intent, _ = service.create(amount_total=10000, provider="mercadopago")
    gateway.add_mp_payment("9006", intent.id, amount=15000)

    webhooks.handle(intent.id, "mercadopago", {"type": "payment", "data": {"id": "9006"}}, sign("9006"))

    intent = service.get(intent.id)
    assert intent.amount_paid == intent.amount_total == 10000


def test_mercadopago_commit_requires_payment_id(service):
    with pytest.raises(ValidationError):
        service.commit("mercadopago", {"type": "payment"})


def test_provider_timeout_leaves_nothing_behind(service, gateway):
    gateway.fail_with = "timeout"

    with pytest.raises(ExternalProviderError) as exc_info:
        service.create(amount_total=10000, provider="mercadopago")

    assert exc_info.value.retryable is True
    items, total = service.list_intents()
    assert (items, total) == ([], 0)


def test_provider_failure_on_start_keeps_intent_untouched(service, gateway):
    intent, _ = service.create(amount_total=10000)
    gateway.fail_with = 500

    with pytest.raises(ExternalProviderError):
        service.start(intent.id, provider="mercadopago")

    intent = service.get(intent.id)
    assert intent.status == "draft"
    assert intent.provider == "manual"
    assert intent.transactions == []


def test_webpay_start_and_commit(service, gateway):
    intent, tx = service.create(amount_total=2500000, provider="webpay_plus")

    assert intent.status == "pending"
    assert tx.external_id == "tok-1"
    assert tx.redirect_url == "https://webpay.test/webpayserver/initTransaction?token_ws=tok-1"
    assert tx.request_payload["buy_order"].startswith(f"PI-{intent.id}-")
    assert tx.request_payload["amount"] == 25000
    assert tx.return_url == f"http://testserver/payment-intents/{intent.id}/webpay_plus/callback"

    committed = service.commit("webpay_plus", {"token_ws": "tok-1"})

    assert committed.id == tx.id
    assert committed.status == "paid"
    assert committed.authorization_code == "1213"
    assert committed.response_code == "0"
    intent = service.get(intent.id)
    assert (intent.status, intent.amount_paid) == ("paid", 2500000)


def test_webpay_settled_token_is_not_committed_twice(service, gateway):
    intent, _ = service.create(amount_total=10000, provider="webpay_plus")
    service.commit("webpay_plus", {"token_ws": "tok-1"})

    again = service.commit("webpay_plus", {"token_ws": "tok-1"})

    assert again.status == "paid"
    assert len(gateway.calls("PUT", TRANSACTIONS_PATH)) == 1
    assert service.get(intent.id).amount_paid == 10000


def test_webpay_rejected_card(service, gateway):
    intent, _ = service.create(amount_total=10000, provider="webpay_plus")
    gateway.webpay["tok-1"].update(status="FAILED", response_code=-1)

    tx = service.commit("webpay_plus", {"token_ws": "tok-1"})

    assert tx.status == "failed"
    assert service.get(intent.id).status == "failed"


def test_webpay_aborted_checkout(service, gateway):
    intent, _ = service.create(amount_total=10000, provider="webpay_plus")

    tx = service.commit("webpay_plus", {"TBK_TOKEN": "tok-1"})

    assert tx.status == "failed"
    assert gateway.calls("GET", TRANSACTIONS_PATH)
    assert not gateway.calls("PUT", TRANSACTIONS_PATH)
    assert service.get(intent.id).status == "failed"


def test_webpay_commit_requires_token(service):
    with pytest.raises(ValidationError):
        service.commit("webpay_plus", {})


def test_failed_intent_can_be_restarted(service, gateway):
    intent, _ = service.create(amount_total=10000, provider="webpay_plus")
    gateway.webpay["tok-1"].update(status="FAILED", response_code=-1)
    service.commit("webpay_plus", {"token_ws": "tok-1"})

    intent, tx = service.start(intent.id)

    assert intent.status == "pending"
    assert tx.external_id == "tok-2"
    assert len(service.get(intent.id).transactions) == 2


def test_start_on_paid_intent_is_rejected(service):
    intent, _ = service.create(amount_total=100)
    service.manual_mark_paid(intent.id, 100)
    with pytest.raises(ConflictError):
        service.start(intent.id, provider="webpay_plus")


def test_revert_to_pending(service, session_factory):
    intent, _ = service.create(amount_total=100)
    service.cancel(intent.id)

    intent = service.revert_to_pending(intent.id, note="cancelled by mistake")

    assert intent.status == "pending"
    assert intent.meta["revert_note"] == "cancelled by mistake"
    assert _timeline(session_factory, intent.id) == [
        ("draft", "cancelled", "cancelled"),
        ("cancelled", "pending", "manual_correction"),
    ]


def test_revert_paid_intent_is_rejected(service):
    intent, _ = service.create(amount_total=100)
    service.manual_mark_paid(intent.id, 100)
    with pytest.raises(ConflictError):
        service.revert_to_pending(intent.id)


def test_mark_failed_merges_metadata(service):
    intent, _ = service.create(amount_total=100, metadata={"origin": "web"})

    intent = service.mark_failed(intent.id, note="card declined at desk")

    assert intent.status == "failed"
    assert intent.meta == {"origin": "web", "failure_note": "card declined at desk"}


def test_list_filters_and_paginates(service):
    for patient_id in (1, 1, 2):
        service.create(amount_total=100, patient_id=patient_id)
    paid, _ = service.create(amount_total=100, patient_id=1)
    service.manual_mark_paid(paid.id, 100)

    items, total = service.list_intents(patient_id=1)
    assert total == 3
    assert [item.id for item in items] == sorted((item.id for item in items), reverse=True)

    items, total = service.list_intents(status="paid")
    assert (total, [item.id for item in items]) == (1, [paid.id])

    items, total = service.list_intents(page=2, per_page=3)
    assert total == 4
    assert len(items) == 1

    _, total = service.list_intents(per_page=1000)
    assert total == 4


def test_approved_payment_without_amount_is_not_credited(service):
    intent, tx = service.create(amount_total=10000, provider="mercadopago")
    payment = ProviderPayment(
        external_id="777",
        status="approved",
        mapped_status="paid",
        amount=None,
        currency=None,
        correlation=f"PI-{intent.id}",
    )

    with pytest.raises(ExternalProviderError):
        service.commit("mercadopago", {"data": {"id": "777"}}, payment)

    intent = service.get(intent.id)
    assert (intent.status, intent.amount_paid) == ("pending", 0)
    assert [(t.external_id, t.status) for t in intent.transactions] == [(tx.external_id, "initiated")]


def test_approved_payment_in_another_currency_is_recorded_only(service, webhooks, gateway, sign):
    intent, _ = service.create(amount_total=10000, currency="CLP", provider="mercadopago")
    gateway.add_mp_payment("778", intent.id, amount=10000, currency="USD")

    result = webhooks.handle(intent.id, "mercadopago", {"type": "payment", "data": {"id": "778"}}, sign("778"))

    assert result.status_code == 200
    intent = service.get(intent.id)
    assert (intent.status, intent.amount_paid) == ("pending", 0)
    assert [(t.currency, t.amount, t.status) for t in intent.transactions] == [("USD", 10000, "paid")]


def test_stale_concurrent_write_is_a_conflict(service, session_factory):
    intent, _ = service.create(amount_total=10000)
    first = session_factory()
    second = session_factory()
    try:
        mine = first.get(PaymentIntent, intent.id)
        theirs = second.get(PaymentIntent, intent.id)
        lifecycle.mark_paid(first, mine, 10000, reason="first_writer")
        lifecycle.mark_paid(second, theirs, 10000, reason="second_writer")

        service._commit(first)
        with pytest.raises(ConflictError):
            service._commit(second)
    finally:
        first.close()
        second.close()

    intent = service.get(intent.id)
    assert (intent.status, intent.amount_paid) == ("paid", 10000)
    assert _timeline(session_factory, intent.id) == [("draft", "paid", "first_writer")]


def test_duplicate_external_id_is_a_conflict(service, session_factory):
    intent, _ = service.create(amount_total=10000)

    def record():
        return PaymentTransaction(
            payment_intent_id=intent.id,
            provider="mercadopago",
            status="paid",
            amount=10000,
            currency="CLP",
            external_id="dup-1",
        )

    with session_factory() as db:
        db.add(record())
        service._commit(db)
    with session_factory() as db:
        db.add(record())
        with pytest.raises(ConflictError):
            service._commit(db)

    assert [t.external_id for t in service.get(intent.id).transactions] == ["dup-1"]
