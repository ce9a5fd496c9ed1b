"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from bnpl_scheduler.domain.models import PaymentInterval


class ScheduleRequest(BaseModel):
    """Request body for POST /v1/transactions/{transaction_id}/schedule"""

    start_date: Optional[date] = Field(None, description="First due date; defaults to today (UTC)")
    interval: Optional[PaymentInterval] = Field(None, description="Overrides the merchant's payment interval")
    enable_validation: bool = True
    capture_first: bool = Field(
        True, description="Charge installment #1 right after the schedule commits; otherwise the next batch run does"
    )


class RepairRequest(BaseModel):
    actor: str = Field("system", min_length=1)
    reason: Optional[str] = None


class InstallmentSchema(BaseModel):
    """Single installment in a schedule"""

    id: str
    installment_number: int
    due_date: date
    amount_cents: int
    status: str


class InstallmentResultResponse(BaseModel):
    installment_id: str
    outcome: str
    amount_cents: int
    error: Optional[str] = None
    charge_ref: Optional[str] = None


class ScheduleResponse(BaseModel):
    success: bool
    schedule_id: str
    transaction_id: str
    installments: List[InstallmentSchema]
    warnings: List[str] = []
    total_amount_cents: int
    installment_count: int
    first_capture: Optional[InstallmentResultResponse] = None


class ValidationIssueSchema(BaseModel):
    type: str
    severity: str
    code: str
    message: str
    affected_items: List[str] = []
    suggested_action: Optional[str] = None


class ScheduleSummaryResponse(BaseModel):
    """Response for GET /v1/transactions/{transaction_id}/schedule"""

    transaction_id: str
    total_amount_cents: int
    paid_amount_cents: int
    remaining_amount_cents: int
    status_counts: Dict[str, int]
    next_installment: Optional[InstallmentSchema] = None
    installments: List[InstallmentSchema]
    issues: List[ValidationIssueSchema]


class RepairActionSchema(BaseModel):
    type: str
    description: str
    affected_items: List[str] = []


class InspectionResponse(BaseModel):
    transaction_id: str
    healthy: bool
    issues: List[ValidationIssueSchema]
    proposed_installments: List[InstallmentSchema]
    proposed_actions: List[RepairActionSchema]


class BatchRunRequest(BaseModel):
    """Request body for POST /v1/batch/run"""

    dry_run: bool = False
    retries_only: bool = False
    batch_size: Optional[int] = Field(None, gt=0)
    max_concurrency: Optional[int] = Field(None, gt=0)


class BatchResultResponse(BaseModel):
    total_processed: int
    succeeded: int
    retried: int
    failed: int
    errored: int
    skipped: int
    integrity_blocked: int
    errors: List[Dict[str, str]]
    duration_ms: float
    started_at: Optional[datetime] = None
    skipped_reason: Optional[str] = None


class ProcessingStatsResponse(BaseModel):
    scheduled_count: int
    overdue_count: int
    failed_count: int
    processing_count: int
    completed_count: int
    total_scheduled_cents: int
    average_scheduled_cents: float
    retries_by_status: Dict[str, int]


class DiscountQuoteSchema(BaseModel):
    original_amount_cents: int
    discount_cents: int
    final_amount_cents: int
    discount_rate: float
    time_range: Optional[str] = None
    beneficial: bool
    fallback: bool


class EarlyPaymentOptionSchema(BaseModel):
    installment_id: str
    installment_number: int
    due_date: date
    amount_cents: int
    days_before_due: int
    eligible: bool
    ineligible_reason: Optional[str] = None
    quote: DiscountQuoteSchema


class EarlyPaymentOptionsResponse(BaseModel):
    """Response for GET /v1/transactions/{transaction_id}/early-payment-options"""

    transaction_id: str
    options: List[EarlyPaymentOptionSchema]
    total_amount_cents: int
    total_discount_cents: int
    total_final_cents: int
    settle_all_beneficial: bool
    eligible: bool
    ineligible_reason: Optional[str] = None
    allow_partial_settlement: bool


class EarlySettlementRequest(BaseModel):
    installment_ids: Optional[List[str]] = Field(None, description="Omit to settle every future installment")
    payment_method_type: Optional[str] = None
    customer_tier: Optional[str] = None


class EarlySettlementResponse(BaseModel):
    transaction_id: str
    installment_ids: List[str]
    original_amount_cents: int
    discount_cents: int
    charged_amount_cents: int
    charge_ref: str


class EarlyPaymentAnalyticsResponse(BaseModel):
    merchant_id: str
    total_early_payments: int
    total_savings_cents: int
    total_settled_cents: int
    average_discount_rate: float
    most_popular_time_range: Optional[str] = None
    time_range_counts: Dict[str, int]
    last_calculated_at: Optional[datetime] = None


class EarlyPaymentConfigResponse(BaseModel):
    merchant_id: str
    config: Dict[str, Any]


class PaymentMethodRequest(BaseModel):
    """Request body for PUT /v1/customers/{customer_id}/payment-method"""

    instrument_ref: str = Field(..., min_length=1, description="Gateway reference of the new reusable instrument")
    instrument_type: str = Field("card", min_length=1)
    retry_failed: bool = Field(False, description="Immediately retry the customer's FAILED installments")


class PaymentMethodResponse(BaseModel):
    customer_id: str
    replaced_count: int
    scheduled_installment_ids: List[str]
    failed_installment_ids: List[str]
    retries: List[InstallmentResultResponse] = []
