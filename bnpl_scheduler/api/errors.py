"""Map domain exceptions to HTTP errors"""

from fastapi import HTTPException

from bnpl_scheduler.domain.exceptions import (
    ConcurrentModificationError,
    ConfigurationError,
    DomainException,
    DuplicateScheduleError,
    EarlyPaymentNotAllowedError,
    EarlySettlementError,
    GatewayError,
    InstallmentNotFoundError,
    InvalidInstallmentStateError,
    ScheduleIntegrityError,
    ScheduleNotFoundError,
    ScheduleValidationError,
    TransactionNotFoundError,
)

_STATUS_BY_ERROR = [
    ((TransactionNotFoundError, ScheduleNotFoundError, InstallmentNotFoundError), 404),
    ((DuplicateScheduleError, InvalidInstallmentStateError, ConcurrentModificationError), 409),
    ((ScheduleValidationError, ScheduleIntegrityError, ConfigurationError, EarlyPaymentNotAllowedError), 422),
    ((GatewayError, EarlySettlementError), 503),
]

STATUS_BY_ERROR_KIND = {
    "not_found": 404,
    "duplicate": 409,
    "validation": 422,
    "integrity": 422,
    "gateway": 503,
    "internal": 500,
}


def to_http_exception(error: DomainException) -> HTTPException:
    for error_types, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_types):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=500, detail="Internal server error")
