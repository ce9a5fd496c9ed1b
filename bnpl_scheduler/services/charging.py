"""Single installment charge attempt: claim, charge, then apply the retry decision"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from bnpl_scheduler.config import Settings, settings as default_settings
from bnpl_scheduler.domain.clock import Clock, SystemClock
from bnpl_scheduler.domain.exceptions import FatalGatewayError, GatewayError, RetryableGatewayError
from bnpl_scheduler.domain.models import ChargeOutcome, InstallmentResult, InstallmentStatus
from bnpl_scheduler.domain.retry import RetryPolicy, classify_failure
from bnpl_scheduler.infrastructure.clients.gateway import Gateway
from bnpl_scheduler.infrastructure.database.repositories import (
    AuditRepository,
    InstallmentRepository,
    InstrumentRepository,
    NotificationRepository,
)
from bnpl_scheduler.infrastructure.observability.logging import log_installment_transition
from bnpl_scheduler.infrastructure.observability.metrics import record_charge_outcome
from bnpl_scheduler.services.merchant_settings import load_payment_settings

logger = logging.getLogger(__name__)


@dataclass
class _ClaimedCharge:
    """Everything needed to call the gateway once the claim is committed"""

    installment_id: object
    transaction_id: object
    installment_number: int
    merchant_id: str
    customer_id: str
    amount_cents: int
    retry_count: int
    max_retries: int
    instrument_ref: Optional[str]


class InstallmentCharger:
    """
    Charges one installment through the gateway.

    The claim (status -> PROCESSING) and the outcome are separate short
    transactions so no database transaction is held open across the gateway
    call. Both are compare-and-swap writes; a lost race skips the installment.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: Gateway,
        clock: Clock | None = None,
        config: Settings | None = None,
        rng: random.Random | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.config = config or default_settings
        self.rng = rng or random.Random()

    def retry_policy(self, max_retries: int) -> RetryPolicy:
        return RetryPolicy.from_hours(
            self.config.retry_backoff_hours,
            max_retries=max_retries,
            jitter_ratio=self.config.retry_jitter_ratio,
            rng=self.rng,
        )

    async def attempt(self, installment_id, claim_from: InstallmentStatus) -> InstallmentResult:
        claimed = self._claim(installment_id, claim_from)
        if claimed is None:
            record_charge_outcome(ChargeOutcome.SKIPPED.value)
            return InstallmentResult(
                installment_id=str(installment_id),
                outcome=ChargeOutcome.SKIPPED,
                amount_cents=0,
            )

        try:
            receipt = await self._charge(claimed)
        except GatewayError as e:
            return self._apply_failure(claimed, e)
        except Exception as e:
            logger.exception(
                "Gateway raised an unexpected error",
                extra={"installment_id": str(claimed.installment_id)},
            )
            error = RetryableGatewayError(str(e) or type(e).__name__, code="processing_error")
            return self._apply_failure(claimed, error)

        return self._apply_success(claimed, receipt.charge_ref)

    def _claim(self, installment_id, claim_from: InstallmentStatus) -> Optional[_ClaimedCharge]:
        now = self.clock.now()
        db = self.session_factory()
        try:
            installments = InstallmentRepository(db)
            installment = installments.get_installment(installment_id)
            if installment is None or installment.status != claim_from.value:
                return None

            if claim_from == InstallmentStatus.PROCESSING:
                # First capture: a PROCESSING row is claimable once, before any attempt is stamped
                claimed = installments.claim_first_capture(installment.id, now)
            else:
                claimed = installments.compare_and_set(
                    installment.id,
                    claim_from,
                    {"status": InstallmentStatus.PROCESSING.value, "last_attempt_at": now},
                )
            if not claimed:
                db.rollback()
                logger.info("Installment claimed by another worker", extra={"installment_id": str(installment_id)})
                return None

            transaction = installment.transaction
            merchant = load_payment_settings(db, transaction.merchant_id, self.config)
            instrument = InstrumentRepository(db).get_default_instrument(transaction.customer_id)

            AuditRepository(db).record_event(
                transaction.id,
                "charge_attempted",
                installment=installment,
                from_status=claim_from.value,
                to_status=InstallmentStatus.PROCESSING.value,
                retry_count=installment.retry_count,
            )
            db.commit()

            return _ClaimedCharge(
                installment_id=installment.id,
                transaction_id=transaction.id,
                installment_number=installment.installment_number,
                merchant_id=transaction.merchant_id,
                customer_id=transaction.customer_id,
                amount_cents=installment.amount_cents,
                retry_count=installment.retry_count,
                max_retries=merchant.max_retries,
                instrument_ref=instrument.gateway_instrument_ref if instrument else None,
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _charge(self, claimed: _ClaimedCharge):
        if claimed.instrument_ref is None:
            raise FatalGatewayError("No valid payment instrument available", code="missing_instrument")

        try:
            return await asyncio.wait_for(
                self.gateway.charge_stored_instrument(
                    claimed.customer_id,
                    claimed.instrument_ref,
                    claimed.amount_cents,
                    {
                        "installment_id": str(claimed.installment_id),
                        "transaction_id": str(claimed.transaction_id),
                        "installment_number": claimed.installment_number,
                        "retry_attempt": claimed.retry_count,
                    },
                ),
                timeout=self.config.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise RetryableGatewayError(
                f"Gateway did not answer within {self.config.gateway_timeout_seconds}s", code="timeout"
            ) from e

    def _notification_payload(self, event: str, claimed: _ClaimedCharge, **extra) -> dict:
        payload = {
            "event": event,
            "installment_id": str(claimed.installment_id),
            "transaction_id": str(claimed.transaction_id),
            "installment_number": claimed.installment_number,
            "merchant_id": claimed.merchant_id,
            "customer_id": claimed.customer_id,
            "amount_cents": claimed.amount_cents,
        }
        payload.update(extra)
        return payload

    def _apply_success(self, claimed: _ClaimedCharge, charge_ref: str) -> InstallmentResult:
        now = self.clock.now()
        db = self.session_factory()
        try:
            installments = InstallmentRepository(db)
            updated = installments.compare_and_set(
                claimed.installment_id,
                InstallmentStatus.PROCESSING,
                {
                    "status": InstallmentStatus.COMPLETED.value,
                    "paid_at": now,
                    "external_charge_ref": charge_ref,
                    "next_retry_at": None,
                    "last_failure_reason": None,
                },
            )
            if not updated:
                db.rollback()
                logger.error(
                    "Charge succeeded but installment left PROCESSING concurrently",
                    extra={"installment_id": str(claimed.installment_id), "charge_ref": charge_ref},
                )
                record_charge_outcome(ChargeOutcome.ERROR.value)
                return InstallmentResult(
                    installment_id=str(claimed.installment_id),
                    outcome=ChargeOutcome.ERROR,
                    amount_cents=claimed.amount_cents,
                    error="Installment changed state during charge",
                    charge_ref=charge_ref,
                )

            installment = installments.get_installment(claimed.installment_id)
            AuditRepository(db).record_event(
                claimed.transaction_id,
                "charge_succeeded",
                installment=installment,
                from_status=InstallmentStatus.PROCESSING.value,
                to_status=InstallmentStatus.COMPLETED.value,
                retry_count=claimed.retry_count,
                detail={"charge_ref": charge_ref},
            )
            NotificationRepository(db).enqueue(
                "installment.completed",
                self._notification_payload("installment.completed", claimed, charge_ref=charge_ref),
                self.config.notification_webhook_url,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        log_installment_transition(
            str(claimed.installment_id),
            InstallmentStatus.PROCESSING.value,
            InstallmentStatus.COMPLETED.value,
            claimed.retry_count,
        )
        record_charge_outcome(ChargeOutcome.COMPLETED.value)
        return InstallmentResult(
            installment_id=str(claimed.installment_id),
            outcome=ChargeOutcome.COMPLETED,
            amount_cents=claimed.amount_cents,
            charge_ref=charge_ref,
        )

    def _apply_failure(self, claimed: _ClaimedCharge, error: GatewayError) -> InstallmentResult:
        now = self.clock.now()
        kind = classify_failure(error.code)
        decision = self.retry_policy(claimed.max_retries).decide(claimed.retry_count, kind, now)
        reason = f"{error.code}: {error}"

        db = self.session_factory()
        try:
            installments = InstallmentRepository(db)
            updated = installments.compare_and_set(
                claimed.installment_id,
                InstallmentStatus.PROCESSING,
                {
                    "status": decision.status.value,
                    "retry_count": decision.retry_count,
                    "next_retry_at": decision.next_retry_at,
                    "last_failure_reason": reason,
                },
            )
            if not updated:
                db.rollback()
                record_charge_outcome(ChargeOutcome.SKIPPED.value)
                return InstallmentResult(
                    installment_id=str(claimed.installment_id),
                    outcome=ChargeOutcome.SKIPPED,
                    amount_cents=claimed.amount_cents,
                    error="Installment changed state during charge",
                )

            installment = installments.get_installment(claimed.installment_id)
            event = "installment.final_failure" if decision.is_terminal else "installment.retry_scheduled"
            AuditRepository(db).record_event(
                claimed.transaction_id,
                "charge_failed" if decision.is_terminal else "retry_scheduled",
                installment=installment,
                from_status=InstallmentStatus.PROCESSING.value,
                to_status=decision.status.value,
                retry_count=decision.retry_count,
                detail={
                    "code": error.code,
                    "failure_kind": kind.value,
                    "next_retry_at": decision.next_retry_at.isoformat() if decision.next_retry_at else None,
                },
            )
            # The terminal notification commits with the FAILED status or not at all
            NotificationRepository(db).enqueue(
                event,
                self._notification_payload(
                    event,
                    claimed,
                    reason=reason,
                    retry_count=decision.retry_count,
                    next_retry_at=decision.next_retry_at.isoformat() if decision.next_retry_at else None,
                ),
                self.config.notification_webhook_url,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        log_installment_transition(
            str(claimed.installment_id),
            InstallmentStatus.PROCESSING.value,
            decision.status.value,
            decision.retry_count,
            reason,
        )
        outcome = ChargeOutcome.FAILED if decision.is_terminal else ChargeOutcome.RETRY_SCHEDULED
        record_charge_outcome(outcome.value)
        return InstallmentResult(
            installment_id=str(claimed.installment_id),
            outcome=outcome,
            amount_cents=claimed.amount_cents,
            error=reason,
        )
