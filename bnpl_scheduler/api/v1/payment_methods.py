"""Customer payment method endpoint"""

import logging

from fastapi import APIRouter, Depends, Request

from bnpl_scheduler.api.dependencies import get_batch_processor, get_payment_method_service, get_request_id
from bnpl_scheduler.api.v1.schedules import installment_result_response
from bnpl_scheduler.api.v1.schemas import PaymentMethodRequest, PaymentMethodResponse
from bnpl_scheduler.domain.exceptions import DomainException
from bnpl_scheduler.services.batch import BatchProcessor
from bnpl_scheduler.services.payment_methods import PaymentMethodService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.put("/customers/{customer_id}/payment-method", response_model=PaymentMethodResponse)
async def update_payment_method(
    customer_id: str,
    request_body: PaymentMethodRequest,
    request: Request,
    service: PaymentMethodService = Depends(get_payment_method_service),
    processor: BatchProcessor = Depends(get_batch_processor),
):
    """
    Replace the customer's default instrument.

    With retry_failed, each FAILED installment is retried once against the
    new instrument; one that changed state in the meantime is left out.
    """
    update = service.update_payment_method(customer_id, request_body.instrument_ref, request_body.instrument_type)

    retries = []
    if request_body.retry_failed:
        for installment_id in update.failed_installment_ids:
            try:
                retries.append(installment_result_response(await processor.manual_retry(installment_id)))
            except DomainException as e:
                logger.warning(
                    "Retry after payment method update skipped",
                    extra={"request_id": get_request_id(request), "installment_id": installment_id, "error": str(e)},
                )

    return PaymentMethodResponse(
        customer_id=update.customer_id,
        replaced_count=update.replaced_count,
        scheduled_installment_ids=update.scheduled_installment_ids,
        failed_installment_ids=update.failed_installment_ids,
        retries=retries,
    )
