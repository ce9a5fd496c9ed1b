"""Early payment endpoints: options, settlement and merchant configuration"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from bnpl_scheduler.api.dependencies import get_early_payment_service, get_request_id
from bnpl_scheduler.api.errors import to_http_exception
from bnpl_scheduler.api.v1.schemas import (
    DiscountQuoteSchema,
    EarlyPaymentAnalyticsResponse,
    EarlyPaymentConfigResponse,
    EarlyPaymentOptionSchema,
    EarlyPaymentOptionsResponse,
    EarlySettlementRequest,
    EarlySettlementResponse,
)
from bnpl_scheduler.domain.discounts import DiscountQuote
from bnpl_scheduler.domain.exceptions import DomainException
from bnpl_scheduler.domain.merchant_config import validate_early_payment_config
from bnpl_scheduler.services.early_payment import EarlyPaymentService

logger = logging.getLogger(__name__)

router = APIRouter()


def quote_schema(quote: DiscountQuote) -> DiscountQuoteSchema:
    return DiscountQuoteSchema(
        original_amount_cents=quote.original_amount_cents,
        discount_cents=quote.discount_cents,
        final_amount_cents=quote.final_amount_cents,
        discount_rate=quote.discount_rate,
        time_range=quote.tier.time_range if quote.tier else None,
        beneficial=quote.beneficial,
        fallback=quote.fallback,
    )


@router.get("/transactions/{transaction_id}/early-payment-options", response_model=EarlyPaymentOptionsResponse)
def get_early_payment_options(
    transaction_id: str,
    payment_method_type: Optional[str] = None,
    customer_tier: Optional[str] = None,
    service: EarlyPaymentService = Depends(get_early_payment_service),
):
    try:
        result = service.get_early_payment_options(transaction_id, payment_method_type, customer_tier)
    except DomainException as e:
        raise to_http_exception(e)

    return EarlyPaymentOptionsResponse(
        transaction_id=result.transaction_id,
        options=[
            EarlyPaymentOptionSchema(
                installment_id=o.installment_id,
                installment_number=o.installment_number,
                due_date=o.due_date,
                amount_cents=o.amount_cents,
                days_before_due=o.days_before_due,
                eligible=o.eligibility.allowed,
                ineligible_reason=o.eligibility.reason,
                quote=quote_schema(o.quote),
            )
            for o in result.options
        ],
        total_amount_cents=result.total_amount_cents,
        total_discount_cents=result.total_discount_cents,
        total_final_cents=result.total_final_cents,
        settle_all_beneficial=result.settle_all_beneficial,
        eligible=result.eligibility.allowed,
        ineligible_reason=result.eligibility.reason,
        allow_partial_settlement=result.allow_partial_settlement,
    )


@router.post("/transactions/{transaction_id}/early-settlement", response_model=EarlySettlementResponse)
async def settle_early(
    transaction_id: str,
    request_body: EarlySettlementRequest,
    request: Request,
    service: EarlyPaymentService = Depends(get_early_payment_service),
):
    """Settle future installments with a single discounted charge"""
    try:
        result = await service.settle_early(
            transaction_id,
            installment_ids=request_body.installment_ids,
            payment_method_type=request_body.payment_method_type,
            customer_tier=request_body.customer_tier,
        )
    except DomainException as e:
        logger.warning(
            "Early settlement rejected",
            extra={"request_id": get_request_id(request), "transaction_id": transaction_id, "error": str(e)},
        )
        raise to_http_exception(e)

    return EarlySettlementResponse(
        transaction_id=result.transaction_id,
        installment_ids=result.installment_ids,
        original_amount_cents=result.original_amount_cents,
        discount_cents=result.discount_cents,
        charged_amount_cents=result.charged_amount_cents,
        charge_ref=result.charge_ref,
    )


@router.get("/merchants/{merchant_id}/early-payment/analytics", response_model=EarlyPaymentAnalyticsResponse)
def get_analytics(merchant_id: str, service: EarlyPaymentService = Depends(get_early_payment_service)):
    analytics = service.get_analytics(merchant_id)
    return EarlyPaymentAnalyticsResponse(
        merchant_id=merchant_id,
        total_early_payments=analytics.total_early_payments,
        total_savings_cents=analytics.total_savings_cents,
        total_settled_cents=analytics.total_settled_cents,
        average_discount_rate=analytics.average_discount_rate,
        most_popular_time_range=analytics.most_popular_time_range,
        time_range_counts=analytics.time_range_counts,
        last_calculated_at=analytics.last_calculated_at,
    )


@router.post("/merchants/{merchant_id}/early-payment/config", response_model=EarlyPaymentConfigResponse, status_code=201)
def onboard_merchant(merchant_id: str, service: EarlyPaymentService = Depends(get_early_payment_service)):
    """Create the default configuration if none exists"""
    config = service.onboard_merchant(merchant_id)
    return EarlyPaymentConfigResponse(merchant_id=merchant_id, config=config.model_dump())


@router.put("/merchants/{merchant_id}/early-payment/config", response_model=EarlyPaymentConfigResponse)
def update_config(
    merchant_id: str,
    config: Dict[str, Any] = Body(...),
    service: EarlyPaymentService = Depends(get_early_payment_service),
):
    problems = validate_early_payment_config(config)
    if problems:
        raise HTTPException(status_code=422, detail=problems)

    try:
        stored = service.update_config(merchant_id, config)
    except DomainException as e:
        raise to_http_exception(e)
    return EarlyPaymentConfigResponse(merchant_id=merchant_id, config=stored.model_dump())
