"""Schedule integrity validation and repair"""

from collections import Counter
from dataclasses import replace
from typing import Iterable, List

from bnpl_scheduler.domain.models import (
    InstallmentSnapshot,
    IssueSeverity,
    IssueType,
    RepairAction,
    RepairResult,
    ValidationIssue,
)
from bnpl_scheduler.domain.schedule import split_evenly


def validate_schedule(installments: Iterable[InstallmentSnapshot]) -> List[ValidationIssue]:
    """
    Check sequence, date-progression and amount invariants.

    - Installment numbers must be exactly 1..N (gap: error/high, duplicate: error/critical)
    - Due dates must strictly increase with installment number (warning/medium)
    - Total must be positive (error/critical), each amount positive (error/high)
    """
    items = list(installments)
    issues: List[ValidationIssue] = []

    if not items:
        issues.append(
            ValidationIssue(
                type=IssueType.ERROR,
                severity=IssueSeverity.CRITICAL,
                code="empty_schedule",
                message="Payment schedule cannot be empty",
                suggested_action="Recreate the schedule for this transaction",
            )
        )
        return issues

    numbers = sorted(inst.installment_number for inst in items)
    if numbers != list(range(1, len(items) + 1)):
        issues.append(
            ValidationIssue(
                type=IssueType.ERROR,
                severity=IssueSeverity.HIGH,
                code="sequence_gap",
                message="Installment numbers are not sequential from 1",
                affected_items=[inst.id for inst in items],
                suggested_action="Renumber installments sequentially starting from 1",
            )
        )

    duplicates = sorted(num for num, count in Counter(numbers).items() if count > 1)
    if duplicates:
        issues.append(
            ValidationIssue(
                type=IssueType.ERROR,
                severity=IssueSeverity.CRITICAL,
                code="duplicate_installment_number",
                message=f"Duplicate installment numbers found: {', '.join(map(str, duplicates))}",
                affected_items=[inst.id for inst in items if inst.installment_number in duplicates],
                suggested_action="Remove duplicates and renumber sequence",
            )
        )

    by_number = sorted(items, key=lambda inst: inst.installment_number)
    for previous, current in zip(by_number, by_number[1:]):
        if current.due_date <= previous.due_date:
            issues.append(
                ValidationIssue(
                    type=IssueType.WARNING,
                    severity=IssueSeverity.MEDIUM,
                    code="non_monotonic_due_date",
                    message=(
                        f"Installment {current.installment_number} due date is not after "
                        f"installment {previous.installment_number}"
                    ),
                    affected_items=[current.id, previous.id],
                    suggested_action="Adjust due dates to ensure proper progression",
                )
            )

    total = sum(inst.amount_cents for inst in items)
    if total <= 0:
        issues.append(
            ValidationIssue(
                type=IssueType.ERROR,
                severity=IssueSeverity.CRITICAL,
                code="non_positive_total",
                message="Total payment amount is zero or negative",
                affected_items=[inst.id for inst in items],
                suggested_action="Verify payment amounts are positive",
            )
        )

    non_positive = [inst.id for inst in items if inst.amount_cents <= 0]
    if non_positive:
        issues.append(
            ValidationIssue(
                type=IssueType.ERROR,
                severity=IssueSeverity.HIGH,
                code="non_positive_amount",
                message="Some installments have zero or negative amounts",
                affected_items=non_positive,
                suggested_action="Set all installment amounts to positive values",
            )
        )

    return issues


def is_schedule_healthy(issues: Iterable[ValidationIssue]) -> bool:
    """Warnings are tolerated; any error-type issue is not"""
    return not any(issue.type == IssueType.ERROR for issue in issues)


def repair_schedule(installments: Iterable[InstallmentSnapshot]) -> RepairResult:
    """
    Renumber by due date and redistribute non-positive amounts.

    Returns new snapshots; the input is left untouched. The positive total is
    re-split with the calculator's floor-plus-remainder rule, so running the
    repair on its own output changes nothing.

    A positive total smaller than one cent per installment cannot be spread:
    the leading installments stay at zero and the result still fails
    validation. Such a schedule can only be rebuilt from the transaction
    amount, which is what EnterpriseScheduler.repair_schedule does.
    """
    ordered = sorted(installments, key=lambda inst: (inst.due_date, inst.installment_number, inst.id))
    actions: List[RepairAction] = []

    renumbered = [replace(inst, installment_number=i + 1) for i, inst in enumerate(ordered)]
    moved = [new.id for old, new in zip(ordered, renumbered) if old.installment_number != new.installment_number]
    if moved:
        actions.append(
            RepairAction(
                type="renumber",
                description="Renumbered installments to sequential order by due date",
                affected_items=moved,
            )
        )

    if any(inst.amount_cents <= 0 for inst in renumbered):
        positive_total = sum(inst.amount_cents for inst in renumbered if inst.amount_cents > 0)
        if positive_total > 0:
            amounts = split_evenly(positive_total, len(renumbered))
            changed = [inst.id for inst, amount in zip(renumbered, amounts) if inst.amount_cents != amount]
            renumbered = [replace(inst, amount_cents=amount) for inst, amount in zip(renumbered, amounts)]
            if changed:
                actions.append(
                    RepairAction(
                        type="fix_amount",
                        description="Redistributed positive total evenly across installments",
                        affected_items=changed,
                    )
                )

    return RepairResult(installments=renumbered, actions=actions)
