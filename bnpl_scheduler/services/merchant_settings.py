"""Typed merchant settings lookup over the key/value store"""

from sqlalchemy.orm import Session

from bnpl_scheduler.config import Settings
from bnpl_scheduler.domain.merchant_config import MerchantPaymentSettings
from bnpl_scheduler.infrastructure.database.repositories import MerchantConfigRepository

PAYMENT_SETTING_TYPE = "payment"


def load_payment_settings(db: Session, merchant_id: str, config: Settings) -> MerchantPaymentSettings:
    """Merchant overrides on top of global defaults; raises ConfigurationError on bad values"""
    values = MerchantConfigRepository(db).get_setting_values(merchant_id, PAYMENT_SETTING_TYPE)
    return MerchantPaymentSettings.from_key_values(
        values,
        defaults={
            "payment_interval": config.default_payment_interval,
            "grace_period_days": config.default_grace_period_days,
            "late_fee_cents": config.default_late_fee_cents,
            "max_retries": config.default_max_retries,
        },
    )
