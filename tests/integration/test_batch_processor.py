"""Integration tests for due installment processing and retries"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from bnpl_scheduler.domain.exceptions import (
    FatalGatewayError,
    InstallmentNotFoundError,
    InvalidInstallmentStateError,
    RetryableGatewayError,
)
from bnpl_scheduler.domain.models import ChargeOutcome, InstallmentStatus
from bnpl_scheduler.infrastructure.database.models import Installment
from bnpl_scheduler.infrastructure.database.repositories import MerchantConfigRepository, as_uuid
from bnpl_scheduler.services.batch import ProcessingOptions
from bnpl_scheduler.utils.date_utils import ensure_utc

JAN_15 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def declined():
    return RetryableGatewayError("Card declined", code="card_declined")


@pytest.fixture
async def uncaptured_transaction(scheduler, make_transaction):
    """$300 pay-in-3 created on 2024-01-01; #1 still waits for its first capture"""
    transaction_id = make_transaction(amount_cents=30000, payment_plan="pay_in_3")
    result = await scheduler.create_schedule(transaction_id)
    assert result.success
    return transaction_id


@pytest.fixture
async def scheduled_transaction(processor, uncaptured_transaction):
    """Same purchase with #1 captured at checkout (ch_1); #2 falls due on 2024-01-15"""
    capture = await processor.capture_first_installment(uncaptured_transaction)
    assert capture.outcome == ChargeOutcome.COMPLETED
    return uncaptured_transaction


async def test_nothing_due_on_creation_day(processor, scheduled_transaction, gateway):
    result = await processor.process_due_payments()

    assert result.total_processed == 0
    assert len(gateway.charges) == 1


async def test_due_installment_completed(processor, scheduled_transaction, clock, gateway, fetch_installments, fetch_notifications):
    clock.set(JAN_15)

    result = await processor.process_due_payments()

    assert result.total_processed == 1
    assert result.succeeded == 1
    second = fetch_installments(scheduled_transaction)[1]
    assert second.status == InstallmentStatus.COMPLETED.value
    assert second.external_charge_ref == "ch_2"
    assert second.paid_at is not None
    assert gateway.charges[1]["instrument_ref"] == "pi_customer_1"
    assert gateway.charges[1]["amount_cents"] == 10000
    assert gateway.charges[1]["metadata"]["installment_number"] == 2
    assert len(fetch_notifications("installment.completed")) == 2


async def test_backoff_sequence_then_final_failure(
    processor, scheduled_transaction, clock, gateway, fetch_installments, fetch_notifications
):
    """Retries after 1h, 4h and 24h; the fourth decline is final"""
    gateway.failures = [declined() for _ in range(4)]
    clock.set(JAN_15)

    result = await processor.process_due_payments()
    assert result.retried == 1
    second = fetch_installments(scheduled_transaction)[1]
    assert second.status == "scheduled"
    assert second.retry_count == 1
    assert ensure_utc(second.next_retry_at) == JAN_15 + timedelta(hours=1)
    assert second.last_failure_reason.startswith("card_declined")

    # Still waiting out the backoff
    clock.advance(minutes=30)
    assert (await processor.process_due_payments()).total_processed == 0

    for expected_count, wait in [(2, timedelta(minutes=30)), (3, timedelta(hours=4))]:
        clock.advance(seconds=wait.total_seconds())
        result = await processor.process_due_payments()
        assert result.retried == 1
        assert fetch_installments(scheduled_transaction)[1].retry_count == expected_count

    clock.advance(hours=24)
    result = await processor.process_due_payments()

    assert result.failed == 1
    second = fetch_installments(scheduled_transaction)[1]
    assert second.status == "failed"
    assert second.retry_count == 3
    assert second.next_retry_at is None
    assert len(gateway.charges) == 5
    assert len(fetch_notifications("installment.retry_scheduled")) == 3
    final = fetch_notifications("installment.final_failure")
    assert len(final) == 1
    assert final[0].payload["installment_id"] == str(second.id)


async def test_merchant_retry_budget(processor, scheduled_transaction, clock, gateway, fetch_installments, db):
    MerchantConfigRepository(db).set_setting("merchant_1", "payment", "max_retries", "1")
    db.commit()
    gateway.failures = [declined(), declined()]
    clock.set(JAN_15)

    await processor.process_due_payments()
    clock.advance(hours=2)
    result = await processor.process_due_payments()

    assert result.failed == 1
    assert fetch_installments(scheduled_transaction)[1].retry_count == 1


async def test_fatal_failure_skips_retries(processor, scheduled_transaction, clock, gateway, fetch_installments):
    gateway.failures = [FatalGatewayError("Card expired", code="instrument_expired")]
    clock.set(JAN_15)

    result = await processor.process_due_payments()

    assert result.failed == 1
    second = fetch_installments(scheduled_transaction)[1]
    assert second.status == "failed"
    assert second.retry_count == 0


async def test_missing_instrument_is_fatal(processor, scheduler, make_transaction, clock, gateway, fetch_installments):
    transaction_id = make_transaction(customer_id="credit_only", card_amount_cents=0)
    await scheduler.create_schedule(transaction_id)
    clock.set(JAN_15)

    result = await processor.process_due_payments()

    # #1 is swept up for its first capture alongside #2
    assert result.failed == 2
    assert gateway.charges == []
    rows = fetch_installments(transaction_id)
    assert [r.status for r in rows[:2]] == ["failed", "failed"]
    assert all(r.last_failure_reason.startswith("missing_instrument") for r in rows[:2])


async def test_gateway_timeout_is_retried(processor, scheduled_transaction, clock, gateway, fetch_installments, test_settings):
    test_settings.gateway_timeout_seconds = 0.01
    gateway.delay = 0.5
    clock.set(JAN_15)

    result = await processor.process_due_payments()

    assert result.retried == 1
    assert fetch_installments(scheduled_transaction)[1].last_failure_reason.startswith("timeout")


async def test_corrupt_schedule_blocked(processor, scheduled_transaction, clock, gateway, session_factory, fetch_events, fetch_installments):
    db = session_factory()
    db.query(Installment).filter(
        Installment.transaction_id == as_uuid(scheduled_transaction), Installment.installment_number == 3
    ).update({"amount_cents": -1})
    db.commit()
    db.close()
    clock.set(JAN_15)

    result = await processor.process_due_payments()

    assert result.integrity_blocked == 1
    assert result.total_processed == 0
    assert len(gateway.charges) == 1
    assert fetch_installments(scheduled_transaction)[1].status == "scheduled"
    assert any(e.event_type == "integrity_violation" for e in fetch_events(scheduled_transaction))


async def test_dry_run_changes_nothing(processor, scheduled_transaction, clock, gateway, fetch_installments):
    clock.set(JAN_15)

    result = await processor.process_due_payments(ProcessingOptions(dry_run=True, batch_pause_seconds=0))

    assert result.total_processed == 1
    assert result.skipped == 1
    assert len(gateway.charges) == 1
    assert fetch_installments(scheduled_transaction)[1].status == "scheduled"


async def test_overlapping_run_is_skipped(processor, scheduled_transaction, clock, gateway):
    gateway.delay = 0.05
    clock.set(JAN_15)

    first, second = await asyncio.gather(processor.process_due_payments(), processor.process_due_payments())

    assert first.succeeded == 1
    assert second.skipped_reason == "already_running"
    assert second.total_processed == 0
    assert not processor.is_running


async def test_concurrency_is_bounded(processor, scheduler, make_transaction, clock, gateway):
    for i in range(6):
        await scheduler.create_schedule(make_transaction(customer_id=f"customer_{i}"))
    gateway.delay = 0.02
    clock.set(JAN_15)

    result = await processor.process_due_payments(
        ProcessingOptions(batch_size=4, max_concurrency=2, batch_pause_seconds=0)
    )

    # Six uncaptured first installments plus six due second installments
    assert result.succeeded == 12
    assert gateway.max_in_flight == 2


async def test_one_installment_error_does_not_abort_batch(processor, scheduler, make_transaction, clock, monkeypatch):
    first = make_transaction(customer_id="a")
    second = make_transaction(customer_id="b")
    await scheduler.create_schedule(first)
    await scheduler.create_schedule(second)
    clock.set(JAN_15)

    original = processor.charger.attempt
    calls = {"count": 0}

    async def flaky_attempt(installment_id, claim_from):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("boom")
        return await original(installment_id, claim_from)

    monkeypatch.setattr(processor.charger, "attempt", flaky_attempt)

    result = await processor.process_due_payments()

    assert result.total_processed == 4
    assert result.errored == 1
    assert result.failed == 0
    assert result.succeeded == 3
    assert [e["error"] for e in result.errors] == ["boom"]


async def test_lost_claim_is_skipped(processor, scheduled_transaction, fetch_installments):
    second = fetch_installments(scheduled_transaction)[1]

    result = await processor.charger.attempt(second.id, InstallmentStatus.FAILED)

    assert result.outcome == ChargeOutcome.SKIPPED


async def test_manual_retry_of_failed_installment(processor, scheduled_transaction, clock, gateway, fetch_installments):
    gateway.failures = [FatalGatewayError("Card expired", code="instrument_expired")]
    clock.set(JAN_15)
    await processor.process_due_payments()
    failed = fetch_installments(scheduled_transaction)[1]
    assert failed.status == "failed"

    result = await processor.manual_retry(str(failed.id))

    assert result.outcome == ChargeOutcome.COMPLETED
    assert fetch_installments(scheduled_transaction)[1].status == "completed"


async def test_manual_retry_reenters_backoff(processor, scheduled_transaction, gateway, fetch_installments):
    third = fetch_installments(scheduled_transaction)[2]
    gateway.failures = [declined()]

    result = await processor.manual_retry(third.id)

    assert result.outcome == ChargeOutcome.RETRY_SCHEDULED
    assert fetch_installments(scheduled_transaction)[2].retry_count == 1


async def test_manual_retry_rejects_processing_and_completed(processor, uncaptured_transaction, fetch_installments):
    first = fetch_installments(uncaptured_transaction)[0]
    with pytest.raises(InvalidInstallmentStateError):
        await processor.manual_retry(first.id)

    await processor.capture_first_installment(uncaptured_transaction)
    with pytest.raises(InvalidInstallmentStateError):
        await processor.manual_retry(first.id)

    with pytest.raises(InstallmentNotFoundError):
        await processor.manual_retry("6f1c1b0e-0000-4000-8000-000000000000")


async def test_capture_first_installment(processor, uncaptured_transaction, gateway, fetch_installments):
    result = await processor.capture_first_installment(uncaptured_transaction)

    assert result.outcome == ChargeOutcome.COMPLETED
    assert fetch_installments(uncaptured_transaction)[0].status == "completed"
    assert gateway.charges[0]["metadata"]["installment_number"] == 1

    with pytest.raises(InvalidInstallmentStateError):
        await processor.capture_first_installment(uncaptured_transaction)


async def test_processing_stats(processor, scheduled_transaction, clock):
    clock.set(JAN_15 + timedelta(days=1))

    stats = processor.get_processing_stats()

    assert stats.scheduled_count == 2
    assert stats.processing_count == 0
    assert stats.completed_count == 1
    assert stats.overdue_count == 1
    assert stats.total_scheduled_cents == 20000
    assert stats.average_scheduled_cents == pytest.approx(10000)
    assert stats.retries_by_status == {}


async def test_concurrent_captures_charge_once(processor, uncaptured_transaction, gateway, fetch_installments):
    gateway.delay = 0.05

    outcomes = await asyncio.gather(
        processor.capture_first_installment(uncaptured_transaction),
        processor.capture_first_installment(uncaptured_transaction),
    )

    assert sorted(o.outcome.value for o in outcomes) == ["completed", "skipped"]
    assert len(gateway.charges) == 1
    assert fetch_installments(uncaptured_transaction)[0].status == "completed"


async def test_capture_racing_batch_sweep_charges_once(processor, uncaptured_transaction, gateway):
    gateway.delay = 0.05

    capture, batch = await asyncio.gather(
        processor.capture_first_installment(uncaptured_transaction),
        processor.process_due_payments(),
    )

    assert (capture.outcome == ChargeOutcome.COMPLETED) != (batch.succeeded == 1)
    assert [c["metadata"]["installment_number"] for c in gateway.charges] == [1]


async def test_uncaptured_first_installment_collected_by_batch(
    processor, uncaptured_transaction, clock, gateway, fetch_installments
):
    clock.set(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))

    result = await processor.process_due_payments()

    assert result.succeeded == 3
    assert [(r.installment_number, r.status) for r in fetch_installments(uncaptured_transaction)] == [
        (1, "completed"),
        (2, "completed"),
        (3, "completed"),
    ]
    assert sorted(c["metadata"]["installment_number"] for c in gateway.charges) == [1, 2, 3]


async def test_retries_only_run_leaves_first_capture_alone(processor, uncaptured_transaction, gateway):
    result = await processor.process_due_payments(ProcessingOptions(retries_only=True, batch_pause_seconds=0))

    assert result.total_processed == 0
    assert gateway.charges == []


async def test_unexpected_gateway_exception_schedules_retry(
    processor, scheduled_transaction, clock, gateway, fetch_installments
):
    gateway.failures = [RuntimeError("socket closed")]
    clock.set(JAN_15)

    result = await processor.process_due_payments()

    assert result.retried == 1
    assert result.errored == 0
    second = fetch_installments(scheduled_transaction)[1]
    assert second.status == "scheduled"
    assert second.retry_count == 1
    assert ensure_utc(second.next_retry_at) == JAN_15 + timedelta(hours=1)
    assert second.last_failure_reason == "processing_error: socket closed"


async def test_retry_reasons_are_not_reported_as_errors(processor, scheduled_transaction, clock, gateway):
    gateway.failures = [declined()]
    clock.set(JAN_15)

    result = await processor.process_due_payments()

    assert result.retried == 1
    assert result.errors == []
