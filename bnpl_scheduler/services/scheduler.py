"""Atomic schedule creation, repair and inspection"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from bnpl_scheduler.config import Settings, settings as default_settings
from bnpl_scheduler.domain.clock import Clock, SystemClock
from bnpl_scheduler.domain.exceptions import (
    DomainException,
    DuplicateScheduleError,
    GatewayError,
    RetryableGatewayError,
    ScheduleIntegrityError,
    ScheduleNotFoundError,
    ScheduleValidationError,
    TransactionNotFoundError,
)
from bnpl_scheduler.domain.models import (
    InstallmentSnapshot,
    InstallmentStatus,
    PaymentInterval,
    RepairResult,
    ScheduleResult,
    ValidationIssue,
)
from bnpl_scheduler.domain.schedule import calculate_schedule, installment_count, resolve_interval
from bnpl_scheduler.domain.validation import is_schedule_healthy, repair_schedule, validate_schedule
from bnpl_scheduler.infrastructure.clients.gateway import Gateway
from bnpl_scheduler.infrastructure.database.models import Installment, Transaction
from bnpl_scheduler.infrastructure.database.repositories import (
    AuditRepository,
    InstallmentRepository,
    InstrumentRepository,
    TransactionRepository,
    as_uuid,
    to_snapshot,
)
from bnpl_scheduler.infrastructure.observability.logging import log_schedule_created
from bnpl_scheduler.infrastructure.observability.metrics import record_schedule
from bnpl_scheduler.services.merchant_settings import load_payment_settings

logger = logging.getLogger(__name__)


@dataclass
class ScheduleOptions:
    start_date: Optional[date | datetime] = None
    interval: Optional[PaymentInterval | str] = None
    enable_validation: bool = True


@dataclass
class ScheduleInspection:
    """Read-only health report plus the repair that would be applied"""

    transaction_id: str
    healthy: bool
    issues: List[ValidationIssue]
    proposed: RepairResult


@dataclass
class ScheduleSummary:
    transaction_id: str
    total_amount_cents: int
    paid_amount_cents: int
    remaining_amount_cents: int
    status_counts: Dict[str, int]
    next_installment: Optional[InstallmentSnapshot]
    installments: List[InstallmentSnapshot] = field(default_factory=list)
    issues: List[ValidationIssue] = field(default_factory=list)


def _error_kind(error: Exception) -> str:
    if isinstance(error, DuplicateScheduleError):
        return "duplicate"
    if isinstance(error, ScheduleValidationError):
        return "validation"
    if isinstance(error, (TransactionNotFoundError, ScheduleNotFoundError)):
        return "not_found"
    if isinstance(error, GatewayError):
        return "gateway"
    if isinstance(error, ScheduleIntegrityError):
        return "integrity"
    return "internal"


class EnterpriseScheduler:
    """
    Creates and maintains installment schedules.

    Creation runs as one unit of work: the installments, their audit events
    and any newly provisioned charge instrument commit together or not at all.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: Gateway,
        clock: Clock | None = None,
        config: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.config = config or default_settings

    def _schedule_id(self, transaction_id) -> str:
        return f"schedule_{transaction_id}_{int(self.clock.now().timestamp() * 1000)}"

    async def create_schedule(self, transaction_id, options: ScheduleOptions | None = None) -> ScheduleResult:
        """
        Build and persist the installment schedule for a transaction.

        Never raises for expected failures: the result carries `errors` and an
        `error_kind` (validation, duplicate, not_found, gateway, integrity,
        internal) and nothing is persisted.
        """
        options = options or ScheduleOptions()
        started = time.monotonic()
        schedule_id = self._schedule_id(transaction_id)

        db = self.session_factory()
        try:
            transaction = self._load_transaction(db, transaction_id)
            installments, warnings, interval = await self._create_in_session(db, transaction, options)
            db.commit()
        except Exception as e:
            db.rollback()
            if isinstance(e, DomainException):
                logger.warning(
                    "Schedule creation failed",
                    extra={"transaction_id": str(transaction_id), "error": str(e)},
                )
            else:
                logger.exception("Unexpected error creating schedule", extra={"transaction_id": str(transaction_id)})
            record_schedule("create", success=False)
            return ScheduleResult(
                success=False,
                schedule_id=schedule_id,
                transaction_id=str(transaction_id),
                errors=[str(e)],
                error_kind=_error_kind(e),
            )
        finally:
            db.close()

        total = sum(inst.amount_cents for inst in installments)
        log_schedule_created(
            str(transaction_id),
            len(installments),
            total,
            interval.value,
            (time.monotonic() - started) * 1000,
        )
        record_schedule("create", success=True)
        return ScheduleResult(
            success=True,
            schedule_id=schedule_id,
            transaction_id=str(transaction_id),
            installments=installments,
            warnings=warnings,
            total_amount_cents=total,
            installment_count=len(installments),
        )

    def _load_transaction(self, db: Session, transaction_id) -> Transaction:
        try:
            tx_uuid = as_uuid(transaction_id)
        except ValueError as e:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found") from e
        transaction = TransactionRepository(db).get_transaction(tx_uuid)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def _validate_transaction(self, db: Session, transaction: Transaction) -> Tuple[int, List[str]]:
        """Return the installment count and any warnings; raise on hard errors"""
        errors = []
        warnings = []

        if transaction.amount_cents is None or transaction.amount_cents <= 0:
            errors.append("Transaction amount must be positive")
        elif transaction.amount_cents < self.config.min_transaction_cents:
            errors.append(
                f"Transaction amount {transaction.amount_cents} below minimum {self.config.min_transaction_cents}"
            )
        elif transaction.amount_cents > self.config.recommended_max_transaction_cents:
            warnings.append(
                f"Transaction amount {transaction.amount_cents} exceeds recommended maximum "
                f"{self.config.recommended_max_transaction_cents}"
            )

        count = 0
        try:
            count = installment_count(transaction.payment_plan)
        except ScheduleValidationError as e:
            errors.append(str(e))

        if errors:
            raise ScheduleValidationError("; ".join(errors))

        if InstallmentRepository(db).count_for_transaction(transaction.id) > 0:
            raise DuplicateScheduleError(f"Payment schedule already exists for transaction {transaction.id}")

        return count, warnings

    async def _create_in_session(
        self,
        db: Session,
        transaction: Transaction,
        options: ScheduleOptions,
        paid: Optional[Dict[int, Dict[str, Any]]] = None,
    ) -> Tuple[List[InstallmentSnapshot], List[str], PaymentInterval]:
        """
        Shared by create and repair; the caller owns commit/rollback.

        `paid` maps installment numbers to the payment fields of rows already
        collected. Repair passes them so a recreated installment keeps its
        COMPLETED state and is never charged again.
        """
        paid = paid or {}
        count, warnings = self._validate_transaction(db, transaction)

        merchant = load_payment_settings(db, transaction.merchant_id, self.config)
        interval = resolve_interval(options.interval, merchant.payment_interval, self.config.default_payment_interval)
        start = options.start_date or self.clock.now()
        schedule = calculate_schedule(transaction.amount_cents, count, start, interval)

        installments = InstallmentRepository(db)
        audit = AuditRepository(db)
        rows: List[Installment] = []
        for scheduled in schedule:
            previous = paid.get(scheduled.installment_number)
            if previous is not None:
                status = InstallmentStatus.COMPLETED
            elif scheduled.installment_number == 1:
                status = InstallmentStatus.PROCESSING
            else:
                status = InstallmentStatus.SCHEDULED
            row = installments.add_installment(transaction.id, scheduled, status)
            if previous is not None:
                for key, value in previous.items():
                    setattr(row, key, value)
                db.flush()
            audit.record_event(
                transaction.id,
                "created",
                installment=row,
                to_status=status.value,
                retry_count=0,
                detail={"amount_cents": scheduled.amount_cents, "due_date": scheduled.due_date.isoformat()},
            )
            rows.append(row)

        await self._ensure_instrument(db, transaction)

        snapshots = [to_snapshot(row) for row in rows]
        if options.enable_validation:
            issues = validate_schedule(snapshots)
            if sum(s.amount_cents for s in snapshots) != transaction.amount_cents:
                raise ScheduleIntegrityError("Installment total does not match transaction amount", issues)
            if not is_schedule_healthy(issues):
                raise ScheduleIntegrityError(
                    "Generated schedule failed validation: " + ", ".join(i.code for i in issues),
                    issues,
                )

        return snapshots, warnings, interval

    async def _ensure_instrument(self, db: Session, transaction: Transaction) -> None:
        """Provision a reusable instrument when the card-funded portion needs one"""
        if not transaction.card_amount_cents or transaction.card_amount_cents <= 0:
            return

        instruments = InstrumentRepository(db)
        if instruments.get_default_instrument(transaction.customer_id) is not None:
            return

        try:
            instrument_ref = await asyncio.wait_for(
                self.gateway.create_reusable_instrument(transaction.customer_id),
                timeout=self.config.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise RetryableGatewayError("Instrument provisioning timed out", code="timeout") from e

        instruments.add_default_instrument(transaction.customer_id, instrument_ref)
        logger.info(
            "Provisioned reusable instrument",
            extra={"customer_id": transaction.customer_id, "transaction_id": str(transaction.id)},
        )

    async def repair_schedule(self, transaction_id, actor: str = "system", reason: Optional[str] = None) -> ScheduleResult:
        """
        Delete and recreate a transaction's schedule in one unit of work.

        The old rows and the validator findings are kept in the audit trail.
        The recreated schedule starts on the earliest existing due date, and an
        installment number that was already collected comes back COMPLETED.

        Raises:
            TransactionNotFoundError: Unknown transaction
            ScheduleNotFoundError: Transaction has no installments
        """
        schedule_id = self._schedule_id(transaction_id)
        db = self.session_factory()
        try:
            transaction = self._load_transaction(db, transaction_id)
            installments = InstallmentRepository(db)
            existing = installments.list_for_transaction(transaction.id)
            if not existing:
                raise ScheduleNotFoundError(f"No installments to repair for transaction {transaction_id}")

            snapshots = [to_snapshot(row) for row in existing]
            issues = validate_schedule(snapshots)
            AuditRepository(db).record_event(
                transaction.id,
                "schedule_repair",
                detail={
                    "actor": actor,
                    "reason": reason,
                    "issues": [issue.to_dict() for issue in issues],
                    "previous": [
                        {
                            "id": s.id,
                            "installment_number": s.installment_number,
                            "due_date": s.due_date.isoformat(),
                            "amount_cents": s.amount_cents,
                            "status": s.status,
                        }
                        for s in snapshots
                    ],
                },
            )

            start = min(s.due_date for s in snapshots)
            paid = {
                row.installment_number: {
                    "paid_at": row.paid_at,
                    "external_charge_ref": row.external_charge_ref,
                    "early_discount_cents": row.early_discount_cents,
                    "last_attempt_at": row.last_attempt_at,
                    "retry_count": row.retry_count,
                }
                for row in existing
                if row.status == InstallmentStatus.COMPLETED.value
            }
            installments.delete_for_transaction(transaction.id)
            db.expire(transaction)

            created, warnings, _ = await self._create_in_session(
                db, transaction, ScheduleOptions(start_date=start, enable_validation=True), paid=paid
            )
            db.commit()
        except Exception:
            db.rollback()
            record_schedule("repair", success=False)
            raise
        finally:
            db.close()

        logger.info(
            "Schedule repaired",
            extra={"transaction_id": str(transaction_id), "actor": actor, "issue_count": len(issues)},
        )
        record_schedule("repair", success=True)
        return ScheduleResult(
            success=True,
            schedule_id=schedule_id,
            transaction_id=str(transaction_id),
            installments=created,
            warnings=warnings,
            total_amount_cents=sum(s.amount_cents for s in created),
            installment_count=len(created),
        )

    def inspect_schedule(self, transaction_id) -> ScheduleInspection:
        """Validator findings and the dry-run repair proposal; writes nothing"""
        db = self.session_factory()
        try:
            transaction = self._load_transaction(db, transaction_id)
            snapshots = [to_snapshot(row) for row in InstallmentRepository(db).list_for_transaction(transaction.id)]
        finally:
            db.close()

        issues = validate_schedule(snapshots)
        return ScheduleInspection(
            transaction_id=str(transaction_id),
            healthy=is_schedule_healthy(issues),
            issues=issues,
            proposed=repair_schedule(snapshots),
        )

    def get_schedule_summary(self, transaction_id) -> ScheduleSummary:
        db = self.session_factory()
        try:
            transaction = self._load_transaction(db, transaction_id)
            snapshots = [to_snapshot(row) for row in InstallmentRepository(db).list_for_transaction(transaction.id)]
            if not snapshots:
                raise ScheduleNotFoundError(f"No payment schedule for transaction {transaction_id}")
        finally:
            db.close()

        total = sum(s.amount_cents for s in snapshots)
        paid = sum(s.amount_cents for s in snapshots if s.status == InstallmentStatus.COMPLETED.value)
        upcoming = [s for s in snapshots if s.status == InstallmentStatus.SCHEDULED.value]
        next_installment = min(upcoming, key=lambda s: (s.due_date, s.installment_number)) if upcoming else None

        return ScheduleSummary(
            transaction_id=str(transaction_id),
            total_amount_cents=total,
            paid_amount_cents=paid,
            remaining_amount_cents=total - paid,
            status_counts=dict(Counter(s.status for s in snapshots)),
            next_installment=next_installment,
            installments=snapshots,
            issues=validate_schedule(snapshots),
        )

