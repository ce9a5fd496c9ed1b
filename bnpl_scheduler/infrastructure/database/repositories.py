"""Data access layer for BNPL entities"""

import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from bnpl_scheduler.domain.discounts import EarlyPaymentAnalytics
from bnpl_scheduler.domain.merchant_config import EarlyPaymentSettings
from bnpl_scheduler.domain.models import InstallmentSnapshot, InstallmentStatus, ScheduledInstallment
from bnpl_scheduler.infrastructure.database.models import (
    EarlyPaymentConfig,
    Installment,
    InstallmentEvent,
    MerchantSetting,
    OutboundNotification,
    PaymentInstrument,
    Transaction,
)


def as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def to_snapshot(installment: Installment) -> InstallmentSnapshot:
    return InstallmentSnapshot(
        id=str(installment.id),
        installment_number=installment.installment_number,
        due_date=installment.due_date,
        amount_cents=installment.amount_cents,
        status=installment.status,
    )


class TransactionRepository:
    """Repository for BNPL transactions"""

    def __init__(self, db: Session):
        self.db = db

    def create_transaction(
        self,
        merchant_id: str,
        customer_id: str,
        amount_cents: int,
        payment_plan: str,
        card_amount_cents: int = 0,
    ) -> Transaction:
        db_transaction = Transaction(
            merchant_id=merchant_id,
            customer_id=customer_id,
            amount_cents=amount_cents,
            payment_plan=payment_plan,
            card_amount_cents=card_amount_cents,
        )
        self.db.add(db_transaction)
        self.db.flush()  # Get ID without committing
        return db_transaction

    def get_transaction(self, transaction_id: uuid.UUID) -> Optional[Transaction]:
        return self.db.query(Transaction).filter(Transaction.id == transaction_id).first()


class InstallmentRepository:
    """Repository for installments; every status write is a compare-and-swap"""

    def __init__(self, db: Session):
        self.db = db

    def add_installment(
        self,
        transaction_id: uuid.UUID,
        scheduled: ScheduledInstallment,
        status: InstallmentStatus,
    ) -> Installment:
        db_installment = Installment(
            transaction_id=transaction_id,
            installment_number=scheduled.installment_number,
            amount_cents=scheduled.amount_cents,
            due_date=scheduled.due_date,
            status=status.value,
            retry_count=0,
        )
        self.db.add(db_installment)
        self.db.flush()
        return db_installment

    def get_installment(self, installment_id: uuid.UUID) -> Optional[Installment]:
        return self.db.query(Installment).filter(Installment.id == installment_id).first()

    def get_by_number(self, transaction_id: uuid.UUID, installment_number: int) -> Optional[Installment]:
        return (
            self.db.query(Installment)
            .filter(
                Installment.transaction_id == transaction_id,
                Installment.installment_number == installment_number,
            )
            .first()
        )

    def list_for_transaction(self, transaction_id: uuid.UUID) -> List[Installment]:
        return (
            self.db.query(Installment)
            .filter(Installment.transaction_id == transaction_id)
            .order_by(Installment.installment_number, Installment.due_date)
            .all()
        )

    def count_for_transaction(self, transaction_id: uuid.UUID) -> int:
        return self.db.query(Installment).filter(Installment.transaction_id == transaction_id).count()

    def delete_for_transaction(self, transaction_id: uuid.UUID) -> int:
        return (
            self.db.query(Installment)
            .filter(Installment.transaction_id == transaction_id)
            .delete(synchronize_session=False)
        )

    def find_due(self, today: date, now: datetime, retries_only: bool = False) -> List[Installment]:
        """
        SCHEDULED installments that are due and not waiting out a retry backoff.

        A row with next_retry_at set is only eligible once that time has passed,
        even though its due date is already behind us.
        """
        query = self.db.query(Installment).filter(
            Installment.status == InstallmentStatus.SCHEDULED.value,
            Installment.due_date <= today,
        )
        if retries_only:
            query = query.filter(Installment.next_retry_at.isnot(None), Installment.next_retry_at <= now)
        else:
            query = query.filter(or_(Installment.next_retry_at.is_(None), Installment.next_retry_at <= now))
        return query.order_by(Installment.due_date, Installment.installment_number).all()

    def find_uncaptured_first(self, today: date) -> List[Installment]:
        """Installment #1 rows still PROCESSING from creation that nobody has tried to charge"""
        return (
            self.db.query(Installment)
            .filter(
                Installment.status == InstallmentStatus.PROCESSING.value,
                Installment.installment_number == 1,
                Installment.last_attempt_at.is_(None),
                Installment.due_date <= today,
            )
            .order_by(Installment.due_date)
            .all()
        )

    def compare_and_set(
        self,
        installment_id: uuid.UUID,
        expected_status: InstallmentStatus,
        values: Dict[str, Any],
    ) -> bool:
        """Apply `values` only if the row is still in `expected_status`"""
        updated = (
            self.db.query(Installment)
            .filter(Installment.id == installment_id, Installment.status == expected_status.value)
            .update(values, synchronize_session=False)
        )
        return updated == 1

    def claim_first_capture(self, installment_id: uuid.UUID, now: datetime) -> bool:
        """Stamp a never-attempted PROCESSING row; only one caller can win"""
        updated = (
            self.db.query(Installment)
            .filter(
                Installment.id == installment_id,
                Installment.status == InstallmentStatus.PROCESSING.value,
                Installment.last_attempt_at.is_(None),
            )
            .update({"last_attempt_at": now}, synchronize_session=False)
        )
        return updated == 1

    def list_for_customer(self, customer_id: str, statuses: List[InstallmentStatus]) -> List[Installment]:
        return (
            self.db.query(Installment)
            .join(Transaction, Installment.transaction_id == Transaction.id)
            .filter(
                Transaction.customer_id == customer_id,
                Installment.status.in_([s.value for s in statuses]),
            )
            .order_by(Installment.due_date, Installment.installment_number)
            .all()
        )

    def count_by_status(self) -> Dict[str, int]:
        rows = self.db.query(Installment.status, func.count(Installment.id)).group_by(Installment.status).all()
        return {status: count for status, count in rows}

    def count_overdue(self, today: date) -> int:
        return (
            self.db.query(Installment)
            .filter(Installment.status == InstallmentStatus.SCHEDULED.value, Installment.due_date < today)
            .count()
        )

    def scheduled_amount_stats(self) -> tuple[int, float]:
        total, average = (
            self.db.query(func.sum(Installment.amount_cents), func.avg(Installment.amount_cents))
            .filter(Installment.status == InstallmentStatus.SCHEDULED.value)
            .one()
        )
        return int(total or 0), float(average or 0.0)

    def retry_counts_by_status(self) -> Dict[str, int]:
        rows = (
            self.db.query(Installment.status, func.count(Installment.id))
            .filter(Installment.retry_count > 0)
            .group_by(Installment.status)
            .all()
        )
        return {status: count for status, count in rows}


class InstrumentRepository:
    """Repository for stored customer payment instruments"""

    def __init__(self, db: Session):
        self.db = db

    def get_default_instrument(self, customer_id: str) -> Optional[PaymentInstrument]:
        return (
            self.db.query(PaymentInstrument)
            .filter(
                PaymentInstrument.customer_id == customer_id,
                PaymentInstrument.is_default.is_(True),
                PaymentInstrument.status == "active",
            )
            .order_by(PaymentInstrument.created_at.desc())
            .first()
        )

    def add_default_instrument(self, customer_id: str, gateway_instrument_ref: str) -> PaymentInstrument:
        instrument = PaymentInstrument(
            customer_id=customer_id,
            gateway_instrument_ref=gateway_instrument_ref,
            is_default=True,
            status="active",
        )
        self.db.add(instrument)
        self.db.flush()
        return instrument

    def deactivate_defaults(self, customer_id: str) -> int:
        return (
            self.db.query(PaymentInstrument)
            .filter(PaymentInstrument.customer_id == customer_id, PaymentInstrument.is_default.is_(True))
            .update({"is_default": False, "status": "replaced"}, synchronize_session=False)
        )


class MerchantConfigRepository:
    """Repository for merchant key/value settings and early payment configuration"""

    def __init__(self, db: Session):
        self.db = db

    def get_setting_values(self, merchant_id: str, setting_type: str) -> Dict[str, str]:
        rows = (
            self.db.query(MerchantSetting)
            .filter(
                MerchantSetting.merchant_id == merchant_id,
                MerchantSetting.setting_type == setting_type,
                MerchantSetting.is_active.is_(True),
            )
            .all()
        )
        return {row.setting_key: row.setting_value for row in rows}

    def set_setting(self, merchant_id: str, setting_type: str, key: str, value: str) -> MerchantSetting:
        row = (
            self.db.query(MerchantSetting)
            .filter(
                MerchantSetting.merchant_id == merchant_id,
                MerchantSetting.setting_type == setting_type,
                MerchantSetting.setting_key == key,
            )
            .first()
        )
        if row is None:
            row = MerchantSetting(merchant_id=merchant_id, setting_type=setting_type, setting_key=key)
            self.db.add(row)
        row.setting_value = value
        row.is_active = True
        self.db.flush()
        return row

    def get_early_payment_config(self, merchant_id: str) -> Optional[EarlyPaymentConfig]:
        return self.db.query(EarlyPaymentConfig).filter(EarlyPaymentConfig.merchant_id == merchant_id).first()

    def save_early_payment_settings(self, merchant_id: str, config: EarlyPaymentSettings) -> EarlyPaymentConfig:
        row = self.get_early_payment_config(merchant_id)
        if row is None:
            row = EarlyPaymentConfig(merchant_id=merchant_id, time_range_counts={})
            self.db.add(row)

        row.enabled = config.enabled
        row.discount_tiers = [tier.model_dump() for tier in config.discount_tiers]
        row.allow_partial_settlement = config.allow_partial_settlement
        row.minimum_amount_cents = config.minimum_amount_cents
        row.maximum_amount_cents = config.maximum_amount_cents
        row.approval_threshold_cents = config.approval_threshold_cents
        row.excluded_payment_methods = list(config.excluded_payment_methods)
        row.customer_tier_restrictions = [r.model_dump() for r in config.customer_tier_restrictions]
        self.db.flush()
        return row

    def get_or_create_early_payment_config(self, merchant_id: str) -> EarlyPaymentConfig:
        """Onboarding path: missing configuration is created with defaults"""
        row = self.get_early_payment_config(merchant_id)
        if row is None:
            row = self.save_early_payment_settings(merchant_id, EarlyPaymentSettings.default())
        return row

    @staticmethod
    def to_settings(row: EarlyPaymentConfig) -> EarlyPaymentSettings:
        return EarlyPaymentSettings.load(
            {
                "enabled": row.enabled,
                "discount_tiers": row.discount_tiers or [],
                "allow_partial_settlement": row.allow_partial_settlement,
                "minimum_amount_cents": row.minimum_amount_cents,
                "maximum_amount_cents": row.maximum_amount_cents,
                "approval_threshold_cents": row.approval_threshold_cents,
                "excluded_payment_methods": row.excluded_payment_methods or [],
                "customer_tier_restrictions": row.customer_tier_restrictions or [],
            }
        )

    @staticmethod
    def to_analytics(row: EarlyPaymentConfig) -> EarlyPaymentAnalytics:
        return EarlyPaymentAnalytics(
            total_early_payments=row.total_early_payments or 0,
            total_savings_cents=row.total_savings_cents or 0,
            total_settled_cents=row.total_settled_cents or 0,
            average_discount_rate=row.average_discount_rate or 0.0,
            time_range_counts=dict(row.time_range_counts or {}),
            last_calculated_at=row.analytics_updated_at,
        )

    def save_analytics(self, row: EarlyPaymentConfig, analytics: EarlyPaymentAnalytics) -> None:
        row.total_early_payments = analytics.total_early_payments
        row.total_savings_cents = analytics.total_savings_cents
        row.total_settled_cents = analytics.total_settled_cents
        row.average_discount_rate = analytics.average_discount_rate
        row.time_range_counts = dict(analytics.time_range_counts)
        row.analytics_updated_at = analytics.last_calculated_at
        self.db.flush()


class AuditRepository:
    """Append-only installment event trail"""

    def __init__(self, db: Session):
        self.db = db

    def record_event(
        self,
        transaction_id: uuid.UUID,
        event_type: str,
        installment: Optional[Installment] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        retry_count: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> InstallmentEvent:
        event = InstallmentEvent(
            transaction_id=transaction_id,
            installment_id=installment.id if installment is not None else None,
            installment_number=installment.installment_number if installment is not None else None,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            retry_count=retry_count,
            detail=detail,
        )
        self.db.add(event)
        return event

    def list_events(self, transaction_id: uuid.UUID) -> List[InstallmentEvent]:
        return (
            self.db.query(InstallmentEvent)
            .filter(InstallmentEvent.transaction_id == transaction_id)
            .order_by(InstallmentEvent.created_at, InstallmentEvent.id)
            .all()
        )


class NotificationRepository:
    """Outbox rows written in the same transaction as the state change they announce"""

    def __init__(self, db: Session):
        self.db = db

    def enqueue(self, event_type: str, payload: Dict[str, Any], target_url: str) -> OutboundNotification:
        notification = OutboundNotification(
            event_type=event_type,
            payload=payload,
            target_url=target_url,
            status="pending",
            attempts=0,
        )
        self.db.add(notification)
        return notification

    def list_pending(self, limit: int = 100) -> List[OutboundNotification]:
        return (
            self.db.query(OutboundNotification)
            .filter(OutboundNotification.status == "pending")
            .order_by(OutboundNotification.created_at)
            .limit(limit)
            .all()
        )

    def list_by_event(self, event_type: str) -> List[OutboundNotification]:
        return self.db.query(OutboundNotification).filter(OutboundNotification.event_type == event_type).all()

    def mark_delivery(self, notification_id: uuid.UUID, delivered: bool, now: datetime, max_attempts: int) -> str:
        """Record one delivery round; undeliverable rows go to 'failed' once attempts run out"""
        notification = (
            self.db.query(OutboundNotification).filter(OutboundNotification.id == notification_id).first()
        )
        if notification is None:
            return "missing"
        notification.attempts = (notification.attempts or 0) + 1
        notification.last_attempt_at = now
        if delivered:
            notification.status = "sent"
        elif notification.attempts >= max_attempts:
            notification.status = "failed"
        self.db.flush()
        return notification.status
