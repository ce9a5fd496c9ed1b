"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ConfigurationError(DomainException):
    """Merchant or service configuration failed validation at load time"""

    pass


class ScheduleValidationError(DomainException):
    """Schedule input is malformed; rejected before any mutation"""

    pass


class DuplicateScheduleError(ScheduleValidationError):
    """A schedule already exists for the transaction"""

    pass


class ScheduleIntegrityError(DomainException):
    """Persisted schedule violates sequence, date or amount invariants"""

    def __init__(self, message: str, issues=None):
        super().__init__(message)
        self.issues = list(issues or [])


class TransactionNotFoundError(DomainException):
    """Transaction does not exist"""

    pass


class ScheduleNotFoundError(DomainException):
    """Transaction has no installments"""

    pass


class InstallmentNotFoundError(DomainException):
    """Installment does not exist"""

    pass


class InvalidInstallmentStateError(DomainException):
    """Installment is not in a state that allows the requested action"""

    pass


class ConcurrentModificationError(DomainException):
    """Another writer changed the installment status first"""

    pass


class EarlyPaymentNotAllowedError(DomainException):
    """Early settlement rejected by the merchant's eligibility rules"""

    pass


class EarlySettlementError(DomainException):
    """Early settlement charge could not be completed"""

    pass


class GatewayError(DomainException):
    """Payment gateway call failed"""

    def __init__(self, message: str, code: str = "processing_error"):
        super().__init__(message)
        self.code = code


class RetryableGatewayError(GatewayError):
    """Declines and transient network/processing failures"""

    pass


class FatalGatewayError(GatewayError):
    """Invalid or missing instrument; retrying cannot succeed"""

    pass
