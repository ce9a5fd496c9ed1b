"""Integration tests for replacing a customer's payment method"""

from datetime import datetime, timezone

from fastapi.testclient import TestClient

from bnpl_scheduler.domain.models import ChargeOutcome
from bnpl_scheduler.infrastructure.database.models import PaymentInstrument
from bnpl_scheduler.infrastructure.database.repositories import InstrumentRepository

JAN_15 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


async def test_update_replaces_default_instrument(payment_methods, scheduler, make_transaction, db, fetch_events):
    transaction_id = make_transaction()
    await scheduler.create_schedule(transaction_id)

    update = payment_methods.update_payment_method("customer_1", "pi_new_card")

    assert update.replaced_count == 1
    assert len(update.scheduled_installment_ids) == 2
    assert update.failed_installment_ids == []
    assert InstrumentRepository(db).get_default_instrument("customer_1").gateway_instrument_ref == "pi_new_card"
    old = db.query(PaymentInstrument).filter(PaymentInstrument.gateway_instrument_ref == "pi_customer_1").one()
    assert old.is_default is False
    assert old.status == "replaced"
    assert "payment_method_updated" in [e.event_type for e in fetch_events(transaction_id)]


async def test_failed_installment_recovers_after_new_payment_method(
    payment_methods, processor, scheduler, make_transaction, clock, gateway, fetch_installments
):
    transaction_id = make_transaction(customer_id="credit_only", card_amount_cents=0)
    await scheduler.create_schedule(transaction_id)
    clock.set(JAN_15)
    await processor.process_due_payments()
    second = fetch_installments(transaction_id)[1]
    assert second.status == "failed"

    # Retrying without an instrument fails the same way
    again = await processor.manual_retry(second.id)
    assert again.outcome == ChargeOutcome.FAILED

    update = payment_methods.update_payment_method("credit_only", "pi_replacement")
    assert update.replaced_count == 0
    assert str(second.id) in update.failed_installment_ids

    result = await processor.manual_retry(second.id)

    assert result.outcome == ChargeOutcome.COMPLETED
    assert gateway.charges[-1]["instrument_ref"] == "pi_replacement"
    assert fetch_installments(transaction_id)[1].status == "completed"


def test_payment_method_endpoint_retries_failed(client: TestClient, make_transaction, gateway):
    transaction_id = make_transaction(customer_id="credit_only", card_amount_cents=0)
    created = client.post(f"/v1/transactions/{transaction_id}/schedule", json={})
    assert created.json()["first_capture"]["outcome"] == "failed"

    response = client.put(
        "/v1/customers/credit_only/payment-method", json={"instrument_ref": "pi_replacement", "retry_failed": True}
    )

    assert response.status_code == 200
    data = response.json()
    assert len(data["failed_installment_ids"]) == 1
    assert [r["outcome"] for r in data["retries"]] == ["completed"]
    assert gateway.charges[0]["instrument_ref"] == "pi_replacement"


def test_payment_method_endpoint_validation(client: TestClient):
    response = client.put("/v1/customers/customer_1/payment-method", json={"instrument_ref": ""})

    assert response.status_code == 422
