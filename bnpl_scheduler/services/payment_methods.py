"""Replacing the stored instrument that installments are charged against"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List

from sqlalchemy.orm import Session

from bnpl_scheduler.domain.models import InstallmentStatus
from bnpl_scheduler.infrastructure.database.repositories import (
    AuditRepository,
    InstallmentRepository,
    InstrumentRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class PaymentMethodUpdate:
    customer_id: str
    instrument_ref: str
    replaced_count: int
    scheduled_installment_ids: List[str] = field(default_factory=list)
    failed_installment_ids: List[str] = field(default_factory=list)


class PaymentMethodService:
    """
    Swaps a customer's default instrument.

    Charges always resolve the default instrument at claim time, so the new
    instrument applies to every open installment at once. FAILED installments
    stay FAILED until someone retries them.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def update_payment_method(
        self,
        customer_id: str,
        instrument_ref: str,
        instrument_type: str = "card",
    ) -> PaymentMethodUpdate:
        db = self.session_factory()
        try:
            instruments = InstrumentRepository(db)
            replaced = instruments.deactivate_defaults(customer_id)
            instrument = instruments.add_default_instrument(customer_id, instrument_ref)
            instrument.instrument_type = instrument_type

            open_rows = InstallmentRepository(db).list_for_customer(
                customer_id, [InstallmentStatus.SCHEDULED, InstallmentStatus.FAILED]
            )
            audit = AuditRepository(db)
            for transaction_id in dict.fromkeys(row.transaction_id for row in open_rows):
                audit.record_event(
                    transaction_id,
                    "payment_method_updated",
                    detail={"customer_id": customer_id, "instrument_type": instrument_type, "replaced": replaced},
                )
            update = PaymentMethodUpdate(
                customer_id=customer_id,
                instrument_ref=instrument_ref,
                replaced_count=replaced,
                scheduled_installment_ids=[
                    str(r.id) for r in open_rows if r.status == InstallmentStatus.SCHEDULED.value
                ],
                failed_installment_ids=[str(r.id) for r in open_rows if r.status == InstallmentStatus.FAILED.value],
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "Payment method updated",
            extra={
                "customer_id": customer_id,
                "replaced": update.replaced_count,
                "scheduled_count": len(update.scheduled_installment_ids),
                "failed_count": len(update.failed_installment_ids),
            },
        )
        return update
