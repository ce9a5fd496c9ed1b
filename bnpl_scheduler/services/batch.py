"""Due installment discovery and bounded-concurrency charging"""

import asyncio
import logging
import random
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Tuple

from sqlalchemy.orm import Session

from bnpl_scheduler.config import Settings, settings as default_settings
from bnpl_scheduler.domain.clock import Clock, SystemClock
from bnpl_scheduler.domain.exceptions import (
    InstallmentNotFoundError,
    InvalidInstallmentStateError,
    ScheduleNotFoundError,
)
from bnpl_scheduler.domain.models import BatchResult, ChargeOutcome, InstallmentResult, InstallmentStatus
from bnpl_scheduler.domain.validation import is_schedule_healthy, validate_schedule
from bnpl_scheduler.infrastructure.clients.gateway import Gateway
from bnpl_scheduler.infrastructure.database.repositories import (
    AuditRepository,
    InstallmentRepository,
    as_uuid,
    to_snapshot,
)
from bnpl_scheduler.infrastructure.observability.logging import log_batch_completed
from bnpl_scheduler.infrastructure.observability.metrics import batch_duration_histogram, integrity_violation_counter
from bnpl_scheduler.services.charging import InstallmentCharger

logger = logging.getLogger(__name__)


@dataclass
class ProcessingOptions:
    batch_size: int = 50
    max_concurrency: int = 10
    batch_pause_seconds: float = 1.0
    retries_only: bool = False
    dry_run: bool = False
    run_type: str = "manual"

    @classmethod
    def from_settings(cls, config: Settings, **overrides) -> "ProcessingOptions":
        options = cls(
            batch_size=config.batch_size,
            max_concurrency=config.batch_max_concurrency,
            batch_pause_seconds=config.batch_pause_seconds,
        )
        return replace(options, **overrides)


@dataclass
class ProcessingStats:
    scheduled_count: int = 0
    overdue_count: int = 0
    failed_count: int = 0
    processing_count: int = 0
    completed_count: int = 0
    total_scheduled_cents: int = 0
    average_scheduled_cents: float = 0.0
    retries_by_status: Dict[str, int] = field(default_factory=dict)


class BatchProcessor:
    """
    Charges due installments.

    Only one batch runs per processor at a time; an overlapping call returns
    immediately with skipped_reason="already_running".
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: Gateway,
        clock: Clock | None = None,
        config: Settings | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.config = config or default_settings
        self.charger = InstallmentCharger(session_factory, gateway, self.clock, self.config, rng)
        self._sleep = sleep
        self._guard = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._guard.locked()

    async def process_due_payments(self, options: ProcessingOptions | None = None) -> BatchResult:
        """
        Charge every installment that is due now.

        Returns:
            BatchResult with per-outcome counts; one installment's failure never
            aborts the run
        """
        options = options or ProcessingOptions.from_settings(self.config)

        if not self._guard.acquire(blocking=False):
            logger.warning("Batch already running, skipping", extra={"run_type": options.run_type})
            return BatchResult(started_at=self.clock.now(), skipped_reason="already_running")

        started = time.monotonic()
        result = BatchResult(started_at=self.clock.now())
        try:
            due_claims = self._select_due(options, result)
            if not due_claims:
                logger.info("No due installments", extra={"run_type": options.run_type})
                return result

            logger.info(
                "Processing due installments",
                extra={"run_type": options.run_type, "count": len(due_claims), "dry_run": options.dry_run},
            )
            for offset in range(0, len(due_claims), options.batch_size):
                chunk = due_claims[offset : offset + options.batch_size]
                for outcome in await self._process_chunk(chunk, options):
                    result.record(outcome)

                if offset + options.batch_size < len(due_claims) and options.batch_pause_seconds > 0:
                    await self._sleep(options.batch_pause_seconds)

            return result
        finally:
            result.duration_ms = (time.monotonic() - started) * 1000
            batch_duration_histogram.labels(run_type=options.run_type).observe(result.duration_ms / 1000)
            log_batch_completed(
                options.run_type,
                result.total_processed,
                result.succeeded,
                result.retried,
                result.failed,
                result.errored,
                result.duration_ms,
            )
            self._guard.release()

    def _select_due(self, options: ProcessingOptions, result: BatchResult) -> List[Tuple[object, InstallmentStatus]]:
        """
        Due (installment id, claim status) pairs, minus those whose transaction
        fails the integrity gate.

        Installment #1 rows still waiting for their first capture are swept up
        as PROCESSING claims so a missed inline capture is never left uncharged.
        """
        now = self.clock.now()
        today = self.clock.today()
        db = self.session_factory()
        try:
            installments = InstallmentRepository(db)
            due = [
                (row, InstallmentStatus.SCHEDULED)
                for row in installments.find_due(today, now, retries_only=options.retries_only)
            ]
            if not options.retries_only:
                due.extend((row, InstallmentStatus.PROCESSING) for row in installments.find_uncaptured_first(today))

            by_transaction: "OrderedDict[object, List[Tuple[object, InstallmentStatus]]]" = OrderedDict()
            for row, claim_from in due:
                by_transaction.setdefault(row.transaction_id, []).append((row.id, claim_from))

            audit = AuditRepository(db)
            selected = []
            for transaction_id, claims in by_transaction.items():
                issues = validate_schedule(to_snapshot(r) for r in installments.list_for_transaction(transaction_id))
                if is_schedule_healthy(issues):
                    selected.extend(claims)
                    continue

                result.integrity_blocked += len(claims)
                integrity_violation_counter.inc()
                logger.warning(
                    "Skipping transaction with corrupt schedule",
                    extra={"transaction_id": str(transaction_id), "issues": [i.code for i in issues]},
                )
                if not options.dry_run:
                    audit.record_event(
                        transaction_id,
                        "integrity_violation",
                        detail={"issues": [i.to_dict() for i in issues]},
                    )
            db.commit()
            return selected
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _process_chunk(
        self, claims: List[Tuple[object, InstallmentStatus]], options: ProcessingOptions
    ) -> List[InstallmentResult]:
        semaphore = asyncio.Semaphore(options.max_concurrency)

        async def bounded(installment_id, claim_from):
            async with semaphore:
                return await self._process_one(installment_id, claim_from, options)

        return list(await asyncio.gather(*(bounded(i, status) for i, status in claims)))

    async def _process_one(
        self, installment_id, claim_from: InstallmentStatus, options: ProcessingOptions
    ) -> InstallmentResult:
        if options.dry_run:
            logger.info("Dry run: would charge installment", extra={"installment_id": str(installment_id)})
            return InstallmentResult(installment_id=str(installment_id), outcome=ChargeOutcome.SKIPPED, amount_cents=0)

        try:
            return await self.charger.attempt(installment_id, claim_from)
        except Exception as e:
            logger.exception("Unexpected error charging installment", extra={"installment_id": str(installment_id)})
            return InstallmentResult(
                installment_id=str(installment_id),
                outcome=ChargeOutcome.ERROR,
                amount_cents=0,
                error=str(e),
            )

    async def manual_retry(self, installment_id) -> InstallmentResult:
        """
        Immediately attempt a SCHEDULED or FAILED installment.

        Raises:
            InstallmentNotFoundError: Unknown installment
            InvalidInstallmentStateError: Installment is COMPLETED or PROCESSING
        """
        db = self.session_factory()
        try:
            try:
                installment = InstallmentRepository(db).get_installment(as_uuid(installment_id))
            except ValueError:
                installment = None
            if installment is None:
                raise InstallmentNotFoundError(f"Installment {installment_id} not found")
            status = InstallmentStatus(installment.status)
            installment_uuid = installment.id
        finally:
            db.close()

        if status not in (InstallmentStatus.SCHEDULED, InstallmentStatus.FAILED):
            raise InvalidInstallmentStateError(f"Cannot retry installment in status {status.value}")

        logger.info("Manual retry requested", extra={"installment_id": str(installment_id), "status": status.value})
        result = await self.charger.attempt(installment_uuid, status)
        if result.outcome == ChargeOutcome.SKIPPED:
            raise InvalidInstallmentStateError(f"Installment {installment_id} changed state before retry")
        return result

    async def capture_first_installment(self, transaction_id) -> InstallmentResult:
        """
        Charge installment #1 while it is still PROCESSING after schedule creation.

        Only the first caller to stamp the attempt charges; a concurrent capture
        or batch sweep that loses the claim gets a SKIPPED result.
        """
        db = self.session_factory()
        try:
            try:
                first = InstallmentRepository(db).get_by_number(as_uuid(transaction_id), 1)
            except ValueError:
                first = None
            if first is None:
                raise ScheduleNotFoundError(f"No first installment for transaction {transaction_id}")
            if first.status != InstallmentStatus.PROCESSING.value:
                raise InvalidInstallmentStateError(f"First installment is {first.status}, not processing")
            installment_uuid = first.id
        finally:
            db.close()

        return await self.charger.attempt(installment_uuid, InstallmentStatus.PROCESSING)

    def get_processing_stats(self) -> ProcessingStats:
        db = self.session_factory()
        try:
            installments = InstallmentRepository(db)
            counts = installments.count_by_status()
            total, average = installments.scheduled_amount_stats()
            return ProcessingStats(
                scheduled_count=counts.get(InstallmentStatus.SCHEDULED.value, 0),
                overdue_count=installments.count_overdue(self.clock.today()),
                failed_count=counts.get(InstallmentStatus.FAILED.value, 0),
                processing_count=counts.get(InstallmentStatus.PROCESSING.value, 0),
                completed_count=counts.get(InstallmentStatus.COMPLETED.value, 0),
                total_scheduled_cents=total,
                average_scheduled_cents=average,
                retries_by_status=installments.retry_counts_by_status(),
            )
        finally:
            db.close()
