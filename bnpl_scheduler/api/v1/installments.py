"""Installment operations and batch processing endpoints"""

from fastapi import APIRouter, Depends, HTTPException

from bnpl_scheduler.api.dependencies import get_batch_processor
from bnpl_scheduler.api.errors import to_http_exception
from bnpl_scheduler.api.v1.schedules import installment_result_response
from bnpl_scheduler.api.v1.schemas import (
    BatchResultResponse,
    BatchRunRequest,
    InstallmentResultResponse,
    ProcessingStatsResponse,
)
from bnpl_scheduler.domain.exceptions import DomainException
from bnpl_scheduler.services.batch import BatchProcessor, ProcessingOptions

router = APIRouter()


@router.post("/installments/{installment_id}/retry", response_model=InstallmentResultResponse)
async def manual_retry(installment_id: str, processor: BatchProcessor = Depends(get_batch_processor)):
    """Immediately attempt a SCHEDULED or FAILED installment"""
    try:
        result = await processor.manual_retry(installment_id)
    except DomainException as e:
        raise to_http_exception(e)
    return installment_result_response(result)


@router.post("/batch/run", response_model=BatchResultResponse)
async def run_batch(request_body: BatchRunRequest, processor: BatchProcessor = Depends(get_batch_processor)):
    """
    Trigger a batch run outside the ticker.

    Returns 409 when a run is already in progress.
    """
    overrides = {"run_type": "manual", "dry_run": request_body.dry_run, "retries_only": request_body.retries_only}
    if request_body.batch_size:
        overrides["batch_size"] = request_body.batch_size
    if request_body.max_concurrency:
        overrides["max_concurrency"] = request_body.max_concurrency

    result = await processor.process_due_payments(ProcessingOptions.from_settings(processor.config, **overrides))
    if result.skipped_reason == "already_running":
        raise HTTPException(status_code=409, detail="Batch already running")

    return BatchResultResponse(
        total_processed=result.total_processed,
        succeeded=result.succeeded,
        retried=result.retried,
        failed=result.failed,
        errored=result.errored,
        skipped=result.skipped,
        integrity_blocked=result.integrity_blocked,
        errors=result.errors,
        duration_ms=result.duration_ms,
        started_at=result.started_at,
        skipped_reason=result.skipped_reason,
    )


@router.get("/batch/stats", response_model=ProcessingStatsResponse)
def processing_stats(processor: BatchProcessor = Depends(get_batch_processor)):
    stats = processor.get_processing_stats()
    return ProcessingStatsResponse(
        scheduled_count=stats.scheduled_count,
        overdue_count=stats.overdue_count,
        failed_count=stats.failed_count,
        processing_count=stats.processing_count,
        completed_count=stats.completed_count,
        total_scheduled_cents=stats.total_scheduled_cents,
        average_scheduled_cents=stats.average_scheduled_cents,
        retries_by_status=stats.retries_by_status,
    )
