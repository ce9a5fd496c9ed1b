"""Early payment options and settlement"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from bnpl_scheduler.config import Settings, settings as default_settings
from bnpl_scheduler.domain.clock import Clock, SystemClock
from bnpl_scheduler.domain.discounts import (
    DiscountQuote,
    EarlyPaymentAnalytics,
    EligibilityDecision,
    calculate_discount,
    can_settle_early,
    is_discount_beneficial,
    record_early_payment,
)
from bnpl_scheduler.domain.exceptions import (
    ConcurrentModificationError,
    EarlyPaymentNotAllowedError,
    EarlySettlementError,
    InvalidInstallmentStateError,
    TransactionNotFoundError,
)
from bnpl_scheduler.domain.merchant_config import EarlyPaymentSettings
from bnpl_scheduler.domain.models import InstallmentStatus
from bnpl_scheduler.infrastructure.clients.gateway import Gateway
from bnpl_scheduler.infrastructure.database.models import Installment, Transaction
from bnpl_scheduler.infrastructure.database.repositories import (
    AuditRepository,
    InstallmentRepository,
    InstrumentRepository,
    MerchantConfigRepository,
    NotificationRepository,
    TransactionRepository,
    as_uuid,
)
from bnpl_scheduler.infrastructure.observability.metrics import record_early_settlement

logger = logging.getLogger(__name__)


@dataclass
class InstallmentOption:
    installment_id: str
    installment_number: int
    due_date: date
    amount_cents: int
    days_before_due: int
    quote: DiscountQuote
    eligibility: EligibilityDecision


@dataclass
class EarlyPaymentOptions:
    """Per-installment quotes plus the aggregate settle-everything option"""

    transaction_id: str
    options: List[InstallmentOption] = field(default_factory=list)
    total_amount_cents: int = 0
    total_discount_cents: int = 0
    total_final_cents: int = 0
    settle_all_beneficial: bool = False
    eligibility: EligibilityDecision = field(default_factory=lambda: EligibilityDecision(allowed=True))
    allow_partial_settlement: bool = True


@dataclass
class SettlementResult:
    transaction_id: str
    installment_ids: List[str]
    original_amount_cents: int
    discount_cents: int
    charged_amount_cents: int
    charge_ref: str


class EarlyPaymentService:
    """Quotes and settles future installments at a merchant-configured discount"""

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

    def _load_transaction(self, db: Session, transaction_id) -> Transaction:
        try:
            transaction = TransactionRepository(db).get_transaction(as_uuid(transaction_id))
        except ValueError:
            transaction = None
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def _merchant_settings(self, db: Session, merchant_id: str) -> Optional[EarlyPaymentSettings]:
        row = MerchantConfigRepository(db).get_early_payment_config(merchant_id)
        return MerchantConfigRepository.to_settings(row) if row is not None else None

    def _future_installments(self, db: Session, transaction: Transaction, today: date) -> List[Installment]:
        return [
            inst
            for inst in InstallmentRepository(db).list_for_transaction(transaction.id)
            if inst.status == InstallmentStatus.SCHEDULED.value and inst.due_date > today
        ]

    def _option_for(
        self,
        installment: Installment,
        today: date,
        merchant: Optional[EarlyPaymentSettings],
        payment_method_type: Optional[str],
        customer_tier: Optional[str],
    ) -> InstallmentOption:
        days = (installment.due_date - today).days
        return InstallmentOption(
            installment_id=str(installment.id),
            installment_number=installment.installment_number,
            due_date=installment.due_date,
            amount_cents=installment.amount_cents,
            days_before_due=days,
            quote=calculate_discount(
                installment.amount_cents, days, merchant, fallback_rate=self.config.fallback_discount_rate
            ),
            eligibility=can_settle_early(merchant, installment.amount_cents, payment_method_type, customer_tier),
        )

    def get_early_payment_options(
        self,
        transaction_id,
        payment_method_type: Optional[str] = None,
        customer_tier: Optional[str] = None,
    ) -> EarlyPaymentOptions:
        today = self.clock.today()
        db = self.session_factory()
        try:
            transaction = self._load_transaction(db, transaction_id)
            merchant = self._merchant_settings(db, transaction.merchant_id)
            options = [
                self._option_for(inst, today, merchant, payment_method_type, customer_tier)
                for inst in self._future_installments(db, transaction, today)
            ]
        finally:
            db.close()

        total = sum(o.amount_cents for o in options)
        discount = sum(o.quote.discount_cents for o in options)
        return EarlyPaymentOptions(
            transaction_id=str(transaction_id),
            options=options,
            total_amount_cents=total,
            total_discount_cents=discount,
            total_final_cents=total - discount,
            settle_all_beneficial=bool(options) and is_discount_beneficial(total, discount),
            eligibility=can_settle_early(merchant, total, payment_method_type, customer_tier),
            allow_partial_settlement=merchant.allow_partial_settlement if merchant else True,
        )

    async def settle_early(
        self,
        transaction_id,
        installment_ids: Optional[List[str]] = None,
        payment_method_type: Optional[str] = None,
        customer_tier: Optional[str] = None,
    ) -> SettlementResult:
        """
        Settle future installments with one discounted charge.

        The selected installments are claimed (SCHEDULED -> PROCESSING) together
        before the gateway is called; a failed charge releases the claims and a
        charge that cannot be finalized is refunded. If that refund fails too the
        installments stay PROCESSING and the charge is flagged for manual review.

        Raises:
            TransactionNotFoundError: Unknown transaction
            InvalidInstallmentStateError: Nothing to settle or a requested installment is not settleable
            EarlyPaymentNotAllowedError: Merchant eligibility rules reject the settlement
            ConcurrentModificationError: An installment changed state while claiming
            EarlySettlementError: Charge failed or could not be finalized
        """
        today = self.clock.today()
        now = self.clock.now()

        db = self.session_factory()
        try:
            transaction = self._load_transaction(db, transaction_id)
            merchant = self._merchant_settings(db, transaction.merchant_id)
            candidates = self._future_installments(db, transaction, today)

            if installment_ids:
                requested = {str(i).lower() for i in installment_ids}
                selected = [inst for inst in candidates if str(inst.id) in requested]
                if len(selected) != len(requested):
                    raise InvalidInstallmentStateError("Only future scheduled installments can be settled early")
                partial = len(selected) < len(candidates)
            else:
                selected = candidates
                partial = False

            if not selected:
                raise InvalidInstallmentStateError(f"No installments to settle for transaction {transaction_id}")
            if partial and merchant is not None and not merchant.allow_partial_settlement:
                raise EarlyPaymentNotAllowedError("Merchant does not allow partial early settlement")

            options = [self._option_for(inst, today, merchant, payment_method_type, customer_tier) for inst in selected]
            original = sum(o.amount_cents for o in options)
            eligibility = can_settle_early(merchant, original, payment_method_type, customer_tier)
            if not eligibility.allowed:
                raise EarlyPaymentNotAllowedError(eligibility.reason)

            instrument = InstrumentRepository(db).get_default_instrument(transaction.customer_id)
            if instrument is None:
                raise EarlySettlementError("No valid payment instrument available")

            installments = InstallmentRepository(db)
            for inst in selected:
                claimed = installments.compare_and_set(
                    inst.id,
                    InstallmentStatus.SCHEDULED,
                    {"status": InstallmentStatus.PROCESSING.value, "last_attempt_at": now},
                )
                if not claimed:
                    raise ConcurrentModificationError(f"Installment {inst.id} changed state during settlement")

            AuditRepository(db).record_event(
                transaction.id,
                "early_settlement_claimed",
                from_status=InstallmentStatus.SCHEDULED.value,
                to_status=InstallmentStatus.PROCESSING.value,
                detail={"installment_ids": [o.installment_id for o in options]},
            )
            db.commit()

            customer_id = transaction.customer_id
            merchant_id = transaction.merchant_id
            tx_uuid = transaction.id
            instrument_ref = instrument.gateway_instrument_ref
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        discount = sum(o.quote.discount_cents for o in options)
        charge_amount = original - discount
        claimed_ids = [o.installment_id for o in options]

        try:
            receipt = await asyncio.wait_for(
                self.gateway.charge_stored_instrument(
                    customer_id,
                    instrument_ref,
                    charge_amount,
                    {
                        "transaction_id": str(tx_uuid),
                        "installment_ids": claimed_ids,
                        "type": "early_settlement",
                        "discount_cents": discount,
                    },
                ),
                timeout=self.config.gateway_timeout_seconds,
            )
        except Exception as e:
            reason = "timeout" if isinstance(e, asyncio.TimeoutError) else (str(e) or type(e).__name__)
            logger.warning(
                "Early settlement charge failed, releasing claims",
                extra={"transaction_id": str(tx_uuid), "error": reason},
            )
            self._release_after_failure(tx_uuid, claimed_ids, reason=reason)
            record_early_settlement(success=False)
            raise EarlySettlementError(f"Early settlement charge failed: {reason}") from e

        try:
            self._finalize(tx_uuid, merchant_id, options, receipt.charge_ref, original, discount, customer_id)
        except Exception as e:
            logger.exception(
                "Early settlement finalize failed after charge, refunding",
                extra={"transaction_id": str(tx_uuid), "charge_ref": receipt.charge_ref},
            )
            record_early_settlement(success=False)
            await self._refund_or_hold(tx_uuid, claimed_ids, receipt.charge_ref, charge_amount, e)
            raise EarlySettlementError(f"Early settlement could not be finalized; charge refunded: {e}") from e

        record_early_settlement(success=True, discount_cents=discount)
        logger.info(
            "Early settlement completed",
            extra={
                "transaction_id": str(tx_uuid),
                "installment_count": len(options),
                "discount_cents": discount,
                "charged_cents": charge_amount,
            },
        )
        return SettlementResult(
            transaction_id=str(tx_uuid),
            installment_ids=claimed_ids,
            original_amount_cents=original,
            discount_cents=discount,
            charged_amount_cents=charge_amount,
            charge_ref=receipt.charge_ref,
        )

    async def _refund_or_hold(
        self,
        transaction_id,
        installment_ids: List[str],
        charge_ref: str,
        amount_cents: int,
        cause: Exception,
    ) -> None:
        """
        Refund a charge whose settlement could not be recorded.

        The claims are released only once the refund has gone through. When the
        refund fails the installments stay PROCESSING, out of reach of the batch,
        and the charge is flagged for manual review.

        Raises:
            EarlySettlementError: The refund failed
        """
        try:
            await asyncio.wait_for(
                self.gateway.refund_charge(charge_ref, amount_cents),
                timeout=self.config.gateway_timeout_seconds,
            )
        except Exception as refund_error:
            logger.exception(
                "Refund failed; settled installments held for manual review",
                extra={"transaction_id": str(transaction_id), "charge_ref": charge_ref},
            )
            self._flag_for_review(transaction_id, installment_ids, charge_ref, amount_cents, cause, refund_error)
            raise EarlySettlementError(
                f"Early settlement could not be finalized and refund of {charge_ref} failed; held for manual review"
            ) from refund_error

        self._release_after_failure(transaction_id, installment_ids, reason="finalize_failed")

    def _release_after_failure(self, transaction_id, installment_ids: List[str], reason: str) -> None:
        try:
            self._release_claims(transaction_id, installment_ids, reason=reason)
        except Exception:
            logger.exception(
                "Could not release early settlement claims",
                extra={"transaction_id": str(transaction_id), "installment_ids": installment_ids},
            )

    def _flag_for_review(
        self,
        transaction_id,
        installment_ids: List[str],
        charge_ref: str,
        amount_cents: int,
        cause: Exception,
        refund_error: Exception,
    ) -> None:
        detail = {
            "installment_ids": installment_ids,
            "charge_ref": charge_ref,
            "amount_cents": amount_cents,
            "finalize_error": str(cause),
            "refund_error": str(refund_error) or type(refund_error).__name__,
        }
        db = self.session_factory()
        try:
            AuditRepository(db).record_event(
                transaction_id,
                "early_settlement_needs_review",
                from_status=InstallmentStatus.PROCESSING.value,
                to_status=InstallmentStatus.PROCESSING.value,
                detail=detail,
            )
            NotificationRepository(db).enqueue(
                "early_settlement.needs_review",
                {"event": "early_settlement.needs_review", "transaction_id": str(transaction_id), **detail},
                self.config.notification_webhook_url,
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Could not record early settlement review flag", extra=detail)
        finally:
            db.close()

    def _release_claims(self, transaction_id, installment_ids: List[str], reason: str) -> None:
        db = self.session_factory()
        try:
            installments = InstallmentRepository(db)
            for installment_id in installment_ids:
                installments.compare_and_set(
                    as_uuid(installment_id),
                    InstallmentStatus.PROCESSING,
                    {"status": InstallmentStatus.SCHEDULED.value},
                )
            AuditRepository(db).record_event(
                transaction_id,
                "early_settlement_released",
                from_status=InstallmentStatus.PROCESSING.value,
                to_status=InstallmentStatus.SCHEDULED.value,
                detail={"installment_ids": installment_ids, "reason": reason},
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _finalize(
        self,
        transaction_id,
        merchant_id: str,
        options: List[InstallmentOption],
        charge_ref: str,
        original_cents: int,
        discount_cents: int,
        customer_id: str,
    ) -> None:
        now = self.clock.now()
        db = self.session_factory()
        try:
            installments = InstallmentRepository(db)
            for option in options:
                completed = installments.compare_and_set(
                    as_uuid(option.installment_id),
                    InstallmentStatus.PROCESSING,
                    {
                        "status": InstallmentStatus.COMPLETED.value,
                        "paid_at": now,
                        "external_charge_ref": charge_ref,
                        "early_discount_cents": option.quote.discount_cents,
                        "next_retry_at": None,
                    },
                )
                if not completed:
                    raise ConcurrentModificationError(f"Installment {option.installment_id} left PROCESSING")

            merchants = MerchantConfigRepository(db)
            config_row = merchants.get_early_payment_config(merchant_id)
            if config_row is not None:
                tier = options[0].quote.tier
                analytics = record_early_payment(
                    merchants.to_analytics(config_row),
                    original_cents,
                    discount_cents,
                    tier.time_range if tier else None,
                    now,
                )
                merchants.save_analytics(config_row, analytics)

            AuditRepository(db).record_event(
                transaction_id,
                "early_settlement_completed",
                from_status=InstallmentStatus.PROCESSING.value,
                to_status=InstallmentStatus.COMPLETED.value,
                detail={"charge_ref": charge_ref, "discount_cents": discount_cents},
            )
            NotificationRepository(db).enqueue(
                "early_settlement.completed",
                {
                    "event": "early_settlement.completed",
                    "transaction_id": str(transaction_id),
                    "merchant_id": merchant_id,
                    "customer_id": customer_id,
                    "installment_ids": [o.installment_id for o in options],
                    "original_amount_cents": original_cents,
                    "discount_cents": discount_cents,
                    "charged_amount_cents": original_cents - discount_cents,
                    "charge_ref": charge_ref,
                },
                self.config.notification_webhook_url,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def onboard_merchant(self, merchant_id: str) -> EarlyPaymentSettings:
        """Create the default early payment configuration if the merchant has none"""
        db = self.session_factory()
        try:
            row = MerchantConfigRepository(db).get_or_create_early_payment_config(merchant_id)
            db.commit()
            return MerchantConfigRepository.to_settings(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def update_config(self, merchant_id: str, data: Dict[str, Any]) -> EarlyPaymentSettings:
        """Validate and store a merchant's configuration; raises ConfigurationError"""
        merchant = EarlyPaymentSettings.load(data)
        db = self.session_factory()
        try:
            MerchantConfigRepository(db).save_early_payment_settings(merchant_id, merchant)
            db.commit()
            return merchant
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_analytics(self, merchant_id: str) -> EarlyPaymentAnalytics:
        db = self.session_factory()
        try:
            row = MerchantConfigRepository(db).get_early_payment_config(merchant_id)
            return MerchantConfigRepository.to_analytics(row) if row is not None else EarlyPaymentAnalytics()
        finally:
            db.close()
