"""Schedule endpoints: create, summarize, inspect, repair and first capture"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request

from bnpl_scheduler.api.dependencies import get_batch_processor, get_request_id, get_scheduler
from bnpl_scheduler.api.errors import STATUS_BY_ERROR_KIND, to_http_exception
from bnpl_scheduler.api.v1.schemas import (
    InspectionResponse,
    InstallmentResultResponse,
    InstallmentSchema,
    RepairActionSchema,
    RepairRequest,
    ScheduleRequest,
    ScheduleResponse,
    ScheduleSummaryResponse,
    ValidationIssueSchema,
)
from bnpl_scheduler.domain.exceptions import DomainException
from bnpl_scheduler.domain.models import InstallmentResult, InstallmentSnapshot, ScheduleResult, ValidationIssue
from bnpl_scheduler.services.batch import BatchProcessor
from bnpl_scheduler.services.scheduler import EnterpriseScheduler, ScheduleOptions

logger = logging.getLogger(__name__)

router = APIRouter()


def installment_schema(snapshot: InstallmentSnapshot) -> InstallmentSchema:
    return InstallmentSchema(
        id=snapshot.id,
        installment_number=snapshot.installment_number,
        due_date=snapshot.due_date,
        amount_cents=snapshot.amount_cents,
        status=snapshot.status,
    )


def issue_schema(issue: ValidationIssue) -> ValidationIssueSchema:
    return ValidationIssueSchema(**issue.to_dict())


def installment_result_response(result: InstallmentResult) -> InstallmentResultResponse:
    return InstallmentResultResponse(
        installment_id=result.installment_id,
        outcome=result.outcome.value,
        amount_cents=result.amount_cents,
        error=result.error,
        charge_ref=result.charge_ref,
    )


def schedule_response(result: ScheduleResult) -> ScheduleResponse:
    return ScheduleResponse(
        success=result.success,
        schedule_id=result.schedule_id,
        transaction_id=result.transaction_id,
        installments=[installment_schema(s) for s in result.installments],
        warnings=result.warnings,
        total_amount_cents=result.total_amount_cents,
        installment_count=result.installment_count,
    )


@router.post("/transactions/{transaction_id}/schedule", response_model=ScheduleResponse, status_code=201)
async def create_schedule(
    transaction_id: str,
    request_body: ScheduleRequest,
    request: Request,
    scheduler: EnterpriseScheduler = Depends(get_scheduler),
    processor: BatchProcessor = Depends(get_batch_processor),
):
    """
    Create the installment schedule for a transaction.

    Flow:
    1. Validate the transaction and compute the schedule
    2. Persist installments (#1 PROCESSING) and provision a reusable instrument
    3. Charge installment #1 inline unless capture_first is false; an
       uncaptured #1 is picked up by the next batch run
    """
    request_id = get_request_id(request)
    result = await scheduler.create_schedule(
        transaction_id,
        ScheduleOptions(
            start_date=request_body.start_date,
            interval=request_body.interval,
            enable_validation=request_body.enable_validation,
        ),
    )
    if not result.success:
        logger.warning(
            "Schedule creation rejected",
            extra={"request_id": request_id, "transaction_id": transaction_id, "error_kind": result.error_kind},
        )
        raise HTTPException(status_code=STATUS_BY_ERROR_KIND.get(result.error_kind, 500), detail=result.errors)

    response = schedule_response(result)
    if request_body.capture_first:
        try:
            capture = await processor.capture_first_installment(transaction_id)
        except DomainException as e:
            raise to_http_exception(e)
        response.first_capture = installment_result_response(capture)
    return response


@router.get("/transactions/{transaction_id}/schedule", response_model=ScheduleSummaryResponse)
def get_schedule(transaction_id: str, scheduler: EnterpriseScheduler = Depends(get_scheduler)):
    """Totals, status counts, next due installment and integrity findings"""
    try:
        summary = scheduler.get_schedule_summary(transaction_id)
    except DomainException as e:
        raise to_http_exception(e)

    return ScheduleSummaryResponse(
        transaction_id=summary.transaction_id,
        total_amount_cents=summary.total_amount_cents,
        paid_amount_cents=summary.paid_amount_cents,
        remaining_amount_cents=summary.remaining_amount_cents,
        status_counts=summary.status_counts,
        next_installment=installment_schema(summary.next_installment) if summary.next_installment else None,
        installments=[installment_schema(s) for s in summary.installments],
        issues=[issue_schema(i) for i in summary.issues],
    )


@router.get("/transactions/{transaction_id}/schedule/inspection", response_model=InspectionResponse)
def inspect_schedule(transaction_id: str, scheduler: EnterpriseScheduler = Depends(get_scheduler)):
    try:
        inspection = scheduler.inspect_schedule(transaction_id)
    except DomainException as e:
        raise to_http_exception(e)

    proposed_installments: List[InstallmentSchema] = [
        installment_schema(s) for s in inspection.proposed.installments
    ]
    return InspectionResponse(
        transaction_id=inspection.transaction_id,
        healthy=inspection.healthy,
        issues=[issue_schema(i) for i in inspection.issues],
        proposed_installments=proposed_installments,
        proposed_actions=[
            RepairActionSchema(type=a.type, description=a.description, affected_items=a.affected_items)
            for a in inspection.proposed.actions
        ],
    )


@router.post("/transactions/{transaction_id}/schedule/repair", response_model=ScheduleResponse)
async def repair_schedule(
    transaction_id: str,
    request_body: RepairRequest,
    request: Request,
    scheduler: EnterpriseScheduler = Depends(get_scheduler),
):
    """Administrative: delete and recreate the schedule, keeping the old rows in the audit trail"""
    try:
        result = await scheduler.repair_schedule(transaction_id, actor=request_body.actor, reason=request_body.reason)
    except DomainException as e:
        logger.warning(
            "Schedule repair failed",
            extra={"request_id": get_request_id(request), "transaction_id": transaction_id, "error": str(e)},
        )
        raise to_http_exception(e)
    return schedule_response(result)


@router.post("/transactions/{transaction_id}/capture", response_model=InstallmentResultResponse)
async def capture_first_installment(
    transaction_id: str,
    processor: BatchProcessor = Depends(get_batch_processor),
):
    try:
        result = await processor.capture_first_installment(transaction_id)
    except DomainException as e:
        raise to_http_exception(e)
    return installment_result_response(result)
