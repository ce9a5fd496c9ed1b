"""SQLAlchemy ORM models for transactions, installments and merchant configuration"""

import uuid
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class Transaction(Base):
    """Approved BNPL purchase"""

    __tablename__ = "bnpl_transaction"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(Text, nullable=False, index=True)
    customer_id = Column(Text, nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    card_amount_cents = Column(BigInteger, nullable=False, default=0)  # Card-funded portion
    payment_plan = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    installments = relationship(
        "Installment",
        back_populates="transaction",
        order_by="Installment.installment_number",
        passive_deletes=True,
    )


class Installment(Base):
    """Single scheduled payment of a transaction, with its retry audit fields"""

    __tablename__ = "bnpl_installment"
    __table_args__ = (
        UniqueConstraint("transaction_id", "installment_number", name="uq_installment_number"),
        Index("ix_installment_status_due", "status", "due_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(
        UUID(as_uuid=True), ForeignKey("bnpl_transaction.id", ondelete="CASCADE"), nullable=False, index=True
    )
    installment_number = Column(Integer, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    due_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False, default="scheduled")
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_failure_reason = Column(Text, nullable=True)
    external_charge_ref = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    early_discount_cents = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    transaction = relationship("Transaction", back_populates="installments")


class PaymentInstrument(Base):
    """Reusable gateway instrument stored for a customer"""

    __tablename__ = "payment_instrument"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(Text, nullable=False, index=True)
    gateway_instrument_ref = Column(Text, nullable=False)
    instrument_type = Column(Text, nullable=False, default="card")
    is_default = Column(Boolean, nullable=False, default=False)
    status = Column(Text, nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MerchantSetting(Base):
    """Generic key/value merchant setting; read through typed settings models"""

    __tablename__ = "merchant_setting"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(Text, nullable=False, index=True)
    setting_type = Column(Text, nullable=False)  # "payment" | ...
    setting_key = Column(Text, nullable=False)
    setting_value = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class EarlyPaymentConfig(Base):
    """Merchant discount tiers, eligibility toggles and analytics accumulator"""

    __tablename__ = "early_payment_config"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(Text, nullable=False, unique=True)
    enabled = Column(Boolean, nullable=False, default=True)
    discount_tiers = Column(JSON, nullable=False)
    allow_partial_settlement = Column(Boolean, nullable=False, default=True)
    minimum_amount_cents = Column(BigInteger, nullable=False, default=0)
    maximum_amount_cents = Column(BigInteger, nullable=True)
    approval_threshold_cents = Column(BigInteger, nullable=True)
    excluded_payment_methods = Column(JSON, nullable=True)
    customer_tier_restrictions = Column(JSON, nullable=True)

    # Analytics
    total_early_payments = Column(Integer, nullable=False, default=0)
    total_savings_cents = Column(BigInteger, nullable=False, default=0)
    total_settled_cents = Column(BigInteger, nullable=False, default=0)
    average_discount_rate = Column(Float, nullable=False, default=0.0)
    time_range_counts = Column(JSON, nullable=True)
    analytics_updated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())


class InstallmentEvent(Base):
    """Append-only audit trail of installment transitions; survives schedule repair"""

    __tablename__ = "installment_event"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    installment_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    installment_number = Column(Integer, nullable=True)
    event_type = Column(Text, nullable=False)
    from_status = Column(Text, nullable=True)
    to_status = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=True)
    detail = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OutboundNotification(Base):
    """Notification outbox with delivery retry tracking"""

    __tablename__ = "outbound_notification"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False)
    target_url = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
