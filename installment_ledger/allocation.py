"""
Payment Allocator

Decides how an incoming payment covers a plan's schedule and applies or
reverses that decision on a copy of the schedule. Nothing here persists
anything; the payment manager hands the results to the mutation protocol.
"""

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union

from .exceptions import ValidationError
from .money import RoundingPolicy, apply_rounding, coerce_policy, to_decimal, EPSILON, ZERO, Numeric
from .schedule import EntryStatus, InterestModel, ScheduleEntry, coerce_model


# Month index of the overpayment bucket
EXCESS_MONTH = -1


@dataclass(frozen=True)
class MonthAllocation:
    """Amount of a payment applied to one schedule entry"""
    month: int
    applied: Decimal
    remaining_for_month: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            'month': self.month,
            'applied': str(self.applied),
            'remaining_for_month': str(self.remaining_for_month),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MonthAllocation':
        return cls(
            month=int(data['month']),
            applied=Decimal(str(data['applied'])),
            remaining_for_month=Decimal(str(data.get('remaining_for_month', '0'))),
        )


@dataclass
class PaymentBreakdown:
    """Bookkeeping split of a payment"""
    principal: Decimal = ZERO
    interest: Decimal = ZERO
    fees: Decimal = ZERO

    def to_dict(self) -> Dict[str, str]:
        return {
            'principal': str(self.principal),
            'interest': str(self.interest),
            'fees': str(self.fees),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'PaymentBreakdown':
        data = data or {}
        return cls(
            principal=Decimal(str(data.get('principal', '0'))),
            interest=Decimal(str(data.get('interest', '0'))),
            fees=Decimal(str(data.get('fees', '0'))),
        )


@dataclass
class AllocationResult:
    """Outcome of allocating one payment"""
    total: Decimal
    applied_to_months: List[MonthAllocation] = field(default_factory=list)
    breakdown: PaymentBreakdown = field(default_factory=PaymentBreakdown)

    @property
    def excess(self) -> Decimal:
        """Overpayment that no schedule entry absorbed"""
        return sum(
            (a.applied for a in self.applied_to_months if a.month == EXCESS_MONTH), ZERO
        )

    @property
    def total_applied(self) -> Decimal:
        return sum((a.applied for a in self.applied_to_months), ZERO)


def _split(entry: ScheduleEntry, model: InterestModel, applied: Decimal, outstanding: Decimal,
           policy: RoundingPolicy) -> Dict[str, Decimal]:
    """Principal/interest split of an amount applied to one entry"""
    if model == InterestModel.EQUAL or outstanding <= 0:
        return {'principal': applied, 'interest': ZERO}
    applied_interest = apply_rounding(entry.interest * applied / outstanding, policy)
    applied_interest = min(applied_interest, applied)
    return {'principal': applied - applied_interest, 'interest': applied_interest}


def allocate_payment(
    schedule: Sequence[ScheduleEntry],
    interest_model: Union[InterestModel, str],
    amount: Numeric,
    rounding_policy: Union[RoundingPolicy, str, None] = RoundingPolicy.NEAREST,
) -> AllocationResult:
    """
    Waterfall a payment across the schedule in month order.

    Fully paid entries are skipped. Whatever is left after the last entry goes
    to the EXCESS_MONTH bucket and counts as principal.
    """
    model = coerce_model(interest_model)
    policy = coerce_policy(rounding_policy)
    amount = to_decimal(amount)
    result = AllocationResult(total=amount)

    remaining = amount
    for entry in schedule:
        if remaining <= 0:
            break
        if entry.is_paid:
            continue

        outstanding = entry.outstanding
        applied = min(outstanding, remaining)
        remaining -= applied

        split = _split(entry, model, applied, outstanding, policy)
        result.breakdown.principal += split['principal']
        result.breakdown.interest += split['interest']
        result.applied_to_months.append(
            MonthAllocation(entry.month, applied, max(ZERO, outstanding - applied))
        )

    if remaining > 0:
        result.breakdown.principal += remaining
        result.applied_to_months.append(MonthAllocation(EXCESS_MONTH, remaining, ZERO))

    return result


def allocate_to_month(
    schedule: Sequence[ScheduleEntry],
    interest_model: Union[InterestModel, str],
    amount: Numeric,
    month: int,
    rounding_policy: Union[RoundingPolicy, str, None] = RoundingPolicy.NEAREST,
) -> AllocationResult:
    """
    Apply the whole amount to one entry, bypassing the waterfall.

    The entry must exist and the amount may not exceed what is still owed on it.
    """
    model = coerce_model(interest_model)
    policy = coerce_policy(rounding_policy)
    amount = to_decimal(amount)

    entry = find_entry(schedule, month)
    if entry is None:
        raise ValidationError("Installment month not found on plan")

    outstanding = entry.outstanding
    if amount > outstanding + EPSILON:
        raise ValidationError(
            f"Payment of {amount} exceeds the {outstanding} outstanding for month {month}"
        )

    split = _split(entry, model, amount, outstanding, policy)
    return AllocationResult(
        total=amount,
        applied_to_months=[MonthAllocation(month, amount, max(ZERO, outstanding - amount))],
        breakdown=PaymentBreakdown(principal=split['principal'], interest=split['interest']),
    )


def find_entry(schedule: Sequence[ScheduleEntry], month: int) -> Optional[ScheduleEntry]:
    # Months are 1..N without gaps, so the index is month - 1
    if 1 <= month <= len(schedule) and schedule[month - 1].month == month:
        return schedule[month - 1]
    return None


def apply_allocation(
    schedule: Sequence[ScheduleEntry],
    allocations: Sequence[MonthAllocation],
    paid_date: date
) -> List[ScheduleEntry]:
    """Return a new schedule with the allocation written into paid amounts"""
    updated = [replace(entry) for entry in schedule]
    for allocation in allocations:
        if allocation.month == EXCESS_MONTH:
            continue
        entry = updated[allocation.month - 1]
        entry.paid_amount += allocation.applied
        if entry.is_paid:
            if entry.status != EntryStatus.PAID:
                entry.status = EntryStatus.PAID
                entry.paid_date = paid_date
        else:
            entry.status = EntryStatus.PENDING
            entry.paid_date = None
    return updated


def reverse_allocation(
    schedule: Sequence[ScheduleEntry],
    allocations: Sequence[MonthAllocation]
) -> List[ScheduleEntry]:
    """Return a new schedule with a previously applied allocation taken back out"""
    updated = [replace(entry) for entry in schedule]
    for allocation in allocations:
        if allocation.month == EXCESS_MONTH:
            continue
        entry = updated[allocation.month - 1]
        entry.paid_amount = max(ZERO, entry.paid_amount - allocation.applied)
        if not entry.is_paid:
            entry.status = EntryStatus.PENDING
            entry.paid_date = None
    return updated
