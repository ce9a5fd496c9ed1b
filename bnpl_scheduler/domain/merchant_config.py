"""Typed merchant configuration, validated when loaded from storage"""

import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from bnpl_scheduler.domain.exceptions import ConfigurationError
from bnpl_scheduler.domain.models import PaymentInterval

_RANGE_PATTERN = re.compile(r"^(\d+)-(\d+)days$")
_OPEN_RANGE_PATTERN = re.compile(r"^(\d+)\+days$")


def parse_time_range(time_range: str) -> tuple[int, Optional[int]]:
    """'0-7days' -> (0, 7), '31+days' -> (31, None)"""
    match = _RANGE_PATTERN.match(time_range)
    if match:
        low, high = int(match.group(1)), int(match.group(2))
        if low > high:
            raise ValueError(f"Empty time range: {time_range}")
        return low, high

    match = _OPEN_RANGE_PATTERN.match(time_range)
    if match:
        return int(match.group(1)), None

    raise ValueError(f"Unrecognized time range: {time_range}")


class DiscountTier(BaseModel):
    """Discount rate for paying a given number of days before the original due date"""

    time_range: str
    discount_rate: float = Field(..., gt=0, le=1)
    minimum_amount_cents: int = Field(0, ge=0)
    maximum_discount_cents: int = Field(..., gt=0)
    description: str = ""

    @field_validator("time_range")
    @classmethod
    def check_time_range(cls, value: str) -> str:
        parse_time_range(value)
        return value

    def covers(self, days_before_due: int) -> bool:
        low, high = parse_time_range(self.time_range)
        return days_before_due >= low and (high is None or days_before_due <= high)


class CustomerTierRestriction(BaseModel):
    tier: str
    allow_early_payment: bool = True


class EarlyPaymentSettings(BaseModel):
    """Per-merchant early payment configuration"""

    enabled: bool = True
    discount_tiers: List[DiscountTier] = Field(..., min_length=1)
    allow_partial_settlement: bool = True
    minimum_amount_cents: int = Field(0, ge=0)
    maximum_amount_cents: Optional[int] = Field(None, gt=0)
    approval_threshold_cents: Optional[int] = Field(None, gt=0)
    excluded_payment_methods: List[str] = Field(default_factory=list)
    customer_tier_restrictions: List[CustomerTierRestriction] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_amount_bounds(self) -> "EarlyPaymentSettings":
        if self.maximum_amount_cents is not None and self.maximum_amount_cents < self.minimum_amount_cents:
            raise ValueError("Maximum early payment amount cannot be less than minimum")
        return self

    @classmethod
    def default(cls) -> "EarlyPaymentSettings":
        """Configuration created on merchant onboarding"""
        return cls(
            enabled=True,
            allow_partial_settlement=True,
            minimum_amount_cents=1_000,
            discount_tiers=[
                DiscountTier(
                    time_range="0-7days",
                    discount_rate=0.02,
                    minimum_amount_cents=1_000,
                    maximum_discount_cents=5_000,
                    description="Pay within 7 days for 2% discount",
                ),
                DiscountTier(
                    time_range="8-14days",
                    discount_rate=0.015,
                    minimum_amount_cents=1_000,
                    maximum_discount_cents=3_000,
                    description="Pay within 14 days for 1.5% discount",
                ),
                DiscountTier(
                    time_range="15-30days",
                    discount_rate=0.01,
                    minimum_amount_cents=1_000,
                    maximum_discount_cents=2_000,
                    description="Pay within 30 days for 1% discount",
                ),
            ],
        )

    @classmethod
    def load(cls, data: Dict) -> "EarlyPaymentSettings":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError("Invalid early payment configuration: " + "; ".join(_format_errors(e))) from e


def _format_errors(error: ValidationError) -> List[str]:
    return [f"{'.'.join(str(part) for part in err['loc']) or 'config'}: {err['msg']}" for err in error.errors()]


def validate_early_payment_config(data: Dict) -> List[str]:
    """Problems with a raw early payment configuration; empty when it would load"""
    try:
        EarlyPaymentSettings.model_validate(data)
    except ValidationError as e:
        return _format_errors(e)
    return []


class MerchantPaymentSettings(BaseModel):
    """
    Payment category settings, built from merchant key/value rows over global defaults.

    grace_period_days and late_fee_cents are validated and stored with the
    merchant's terms but no charge path reads them: overdue installments are
    retried on the backoff table and no late fee is ever assessed.
    """

    payment_interval: PaymentInterval = PaymentInterval.BIWEEKLY
    grace_period_days: int = Field(3, ge=0)
    late_fee_cents: int = Field(2_500, ge=0)
    max_retries: int = Field(3, ge=0, le=10)

    @classmethod
    def from_key_values(cls, values: Dict[str, str], defaults: Dict[str, object]) -> "MerchantPaymentSettings":
        """Merchant values win over defaults; unknown keys are ignored"""
        merged = dict(defaults)
        merged.update({key: value for key, value in values.items() if key in cls.model_fields and value != ""})
        try:
            return cls.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid merchant payment settings: {e}") from e
