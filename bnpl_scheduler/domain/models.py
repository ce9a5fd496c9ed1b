"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class InstallmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentPlan(str, Enum):
    PAY_IN_1 = "pay_in_1"
    PAY_IN_2 = "pay_in_2"
    PAY_IN_3 = "pay_in_3"
    PAY_IN_4 = "pay_in_4"


class PaymentInterval(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class IssueType(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ChargeOutcome(str, Enum):
    """Result of processing one installment in a batch"""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class ScheduledInstallment:
    """One computed entry of a payment schedule"""

    amount_cents: int
    due_date: date
    installment_number: int


@dataclass(frozen=True)
class InstallmentSnapshot:
    """Read-only view of a persisted installment used by validation and repair"""

    id: str
    installment_number: int
    due_date: date
    amount_cents: int
    status: str = InstallmentStatus.SCHEDULED.value


@dataclass
class ValidationIssue:
    """Schedule integrity finding"""

    type: IssueType
    severity: IssueSeverity
    code: str
    message: str
    affected_items: List[str] = field(default_factory=list)
    suggested_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "affected_items": list(self.affected_items),
            "suggested_action": self.suggested_action,
        }


@dataclass
class RepairAction:
    """Change applied (or proposed) by schedule repair"""

    type: str  # "renumber" | "fix_amount"
    description: str
    affected_items: List[str] = field(default_factory=list)


@dataclass
class RepairResult:
    installments: List[InstallmentSnapshot]
    actions: List[RepairAction]


@dataclass
class ScheduleResult:
    """Outcome of creating or repairing a transaction's schedule"""

    success: bool
    schedule_id: str
    transaction_id: str
    installments: List[InstallmentSnapshot] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error_kind: Optional[str] = None
    total_amount_cents: int = 0
    installment_count: int = 0


@dataclass
class ChargeReceipt:
    """Successful gateway charge"""

    charge_ref: str
    status: str


@dataclass
class InstallmentResult:
    installment_id: str
    outcome: ChargeOutcome
    amount_cents: int
    error: Optional[str] = None
    charge_ref: Optional[str] = None


@dataclass
class BatchResult:
    """Aggregate statistics of one batch run"""

    total_processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    errored: int = 0
    skipped: int = 0
    integrity_blocked: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    duration_ms: float = 0.0
    started_at: Optional[datetime] = None
    skipped_reason: Optional[str] = None

    def record(self, result: InstallmentResult) -> None:
        self.total_processed += 1
        if result.outcome == ChargeOutcome.COMPLETED:
            self.succeeded += 1
        elif result.outcome == ChargeOutcome.RETRY_SCHEDULED:
            self.retried += 1
        elif result.outcome == ChargeOutcome.SKIPPED:
            self.skipped += 1
        elif result.outcome == ChargeOutcome.FAILED:
            self.failed += 1
        else:
            self.errored += 1

        # Retry reasons stay on the installment row
        if result.error and result.outcome in (ChargeOutcome.FAILED, ChargeOutcome.ERROR):
            self.errors.append({"installment_id": result.installment_id, "error": result.error})
