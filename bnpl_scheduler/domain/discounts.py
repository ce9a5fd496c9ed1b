"""Early payment discount engine - tier matching, eligibility and analytics"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Optional

from bnpl_scheduler.domain.merchant_config import DiscountTier, EarlyPaymentSettings

FALLBACK_DISCOUNT_RATE = 0.01
MINIMUM_BENEFIT_CENTS = 100  # $1
MINIMUM_BENEFIT_RATE = Decimal("0.005")  # 0.5%


@dataclass
class DiscountQuote:
    """Discount offered for settling an amount early"""

    original_amount_cents: int
    discount_cents: int
    final_amount_cents: int
    discount_rate: float
    tier: Optional[DiscountTier]
    beneficial: bool
    fallback: bool = False


@dataclass
class EligibilityDecision:
    allowed: bool
    reason: Optional[str] = None


@dataclass
class EarlyPaymentAnalytics:
    """Merchant-level accumulator; advisory metrics, not ledger entries"""

    total_early_payments: int = 0
    total_savings_cents: int = 0
    total_settled_cents: int = 0
    average_discount_rate: float = 0.0
    time_range_counts: Dict[str, int] = field(default_factory=dict)
    last_calculated_at: Optional[datetime] = None

    @property
    def most_popular_time_range(self) -> Optional[str]:
        if not self.time_range_counts:
            return None
        return max(self.time_range_counts.items(), key=lambda item: item[1])[0]


def _apply_rate(amount_cents: int, rate: float) -> int:
    return int((Decimal(amount_cents) * Decimal(str(rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def find_applicable_tier(
    tiers: Iterable[DiscountTier],
    days_before_due: int,
    amount_cents: int,
) -> Optional[DiscountTier]:
    """Highest-rate tier whose range covers the days and whose minimum the amount meets"""
    best: Optional[DiscountTier] = None
    for tier in tiers:
        if not tier.covers(days_before_due) or amount_cents < tier.minimum_amount_cents:
            continue
        if best is None or tier.discount_rate > best.discount_rate:
            best = tier
    return best


def is_discount_beneficial(amount_cents: int, discount_cents: int) -> bool:
    """Worth presenting when the discount is at least $1 or 0.5%, whichever is larger"""
    minimum_benefit = max(Decimal(MINIMUM_BENEFIT_CENTS), Decimal(amount_cents) * MINIMUM_BENEFIT_RATE)
    return Decimal(discount_cents) >= minimum_benefit


def calculate_discount(
    amount_cents: int,
    days_before_due: int,
    config: Optional[EarlyPaymentSettings],
    fallback_rate: float = FALLBACK_DISCOUNT_RATE,
) -> DiscountQuote:
    """
    Compute the early payment discount for an amount.

    Without a merchant configuration, or with a disabled one, a flat
    `fallback_rate` applies. Otherwise the best matching tier's rate is used,
    capped at the tier's maximum discount; no matching tier means no discount.
    """
    tier = None
    fallback = config is None or not config.enabled

    if fallback:
        rate = fallback_rate
        discount = _apply_rate(amount_cents, rate)
    else:
        tier = find_applicable_tier(config.discount_tiers, days_before_due, amount_cents)
        if tier is None:
            rate = 0.0
            discount = 0
        else:
            rate = tier.discount_rate
            discount = min(_apply_rate(amount_cents, rate), tier.maximum_discount_cents)

    return DiscountQuote(
        original_amount_cents=amount_cents,
        discount_cents=discount,
        final_amount_cents=amount_cents - discount,
        discount_rate=rate,
        tier=tier,
        beneficial=is_discount_beneficial(amount_cents, discount),
        fallback=fallback,
    )


def can_settle_early(
    config: Optional[EarlyPaymentSettings],
    amount_cents: int,
    payment_method_type: Optional[str] = None,
    customer_tier: Optional[str] = None,
) -> EligibilityDecision:
    """Eligibility gate evaluated before any discount is calculated"""
    if config is None:
        return EligibilityDecision(allowed=True)

    if not config.enabled:
        return EligibilityDecision(False, "Early payment is disabled for this merchant")

    if amount_cents < config.minimum_amount_cents:
        return EligibilityDecision(False, f"Minimum early payment amount is {config.minimum_amount_cents} cents")

    if config.maximum_amount_cents is not None and amount_cents > config.maximum_amount_cents:
        return EligibilityDecision(False, f"Maximum early payment amount is {config.maximum_amount_cents} cents")

    if payment_method_type and payment_method_type in config.excluded_payment_methods:
        return EligibilityDecision(False, f"Payment method {payment_method_type} not allowed for early payment")

    if customer_tier:
        for restriction in config.customer_tier_restrictions:
            if restriction.tier == customer_tier and not restriction.allow_early_payment:
                return EligibilityDecision(False, f"Early payment not allowed for {customer_tier} tier customers")

    if config.approval_threshold_cents is not None and amount_cents >= config.approval_threshold_cents:
        return EligibilityDecision(False, "This amount requires merchant approval")

    return EligibilityDecision(allowed=True)


def record_early_payment(
    analytics: EarlyPaymentAnalytics,
    amount_cents: int,
    discount_cents: int,
    time_range: Optional[str],
    now: datetime,
) -> EarlyPaymentAnalytics:
    """Fold one settlement into the analytics; average rate is savings over settled volume"""
    analytics.total_early_payments += 1
    analytics.total_savings_cents += discount_cents
    analytics.total_settled_cents += amount_cents
    if analytics.total_settled_cents > 0:
        analytics.average_discount_rate = analytics.total_savings_cents / analytics.total_settled_cents
    if time_range:
        analytics.time_range_counts[time_range] = analytics.time_range_counts.get(time_range, 0) + 1
    analytics.last_calculated_at = now
    return analytics
