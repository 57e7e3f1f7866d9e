"""
Schedule Generator

Builds the repayment schedule of an installment plan under the equal, flat and
amortized interest models. Generation is pure: the same terms always produce
the same entries, and nothing here touches storage.
"""

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union
import calendar

from .exceptions import ValidationError
from .money import (
    RoundingPolicy, apply_rounding, coerce_policy, is_settled, to_decimal,
    ZERO, Numeric
)


class InterestModel(Enum):
    """How interest is charged over the term"""
    EQUAL = "equal"          # Zero-cost credit, principal split evenly
    FLAT = "flat"            # Simple interest on the original principal
    AMORTIZED = "amortized"  # Reducing-balance annuity


class EntryStatus(Enum):
    """Persisted status of a schedule entry"""
    PENDING = "pending"
    PAID = "paid"


OVERDUE = "overdue"


@dataclass
class ScheduleEntry:
    """One periodic obligation of a plan"""
    month: int
    due_date: date
    amount: Decimal
    principal: Decimal
    interest: Decimal
    balance: Decimal                      # Principal still owed after this entry
    paid_amount: Decimal = ZERO
    status: EntryStatus = EntryStatus.PENDING
    paid_date: Optional[date] = None

    @property
    def outstanding(self) -> Decimal:
        return max(ZERO, self.amount - self.paid_amount)

    @property
    def is_paid(self) -> bool:
        return is_settled(self.paid_amount, self.amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'month': self.month,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount),
            'principal': str(self.principal),
            'interest': str(self.interest),
            'balance': str(self.balance),
            'paid_amount': str(self.paid_amount),
            'status': self.status.value,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleEntry':
        status = data.get('status', EntryStatus.PENDING.value)
        # Older records may carry a persisted "overdue"; it is only a view
        if status == OVERDUE:
            status = EntryStatus.PENDING.value
        paid_date = data.get('paid_date')
        return cls(
            month=int(data['month']),
            due_date=date.fromisoformat(data['due_date']),
            amount=Decimal(str(data['amount'])),
            principal=Decimal(str(data.get('principal', data['amount']))),
            interest=Decimal(str(data.get('interest', '0'))),
            balance=Decimal(str(data.get('balance', '0'))),
            paid_amount=Decimal(str(data.get('paid_amount', '0'))),
            status=EntryStatus(status),
            paid_date=date.fromisoformat(paid_date) if paid_date else None,
        )


def coerce_model(model: Union[InterestModel, str, None]) -> InterestModel:
    if model is None:
        return InterestModel.EQUAL
    if isinstance(model, InterestModel):
        return model
    try:
        return InterestModel(str(model).lower())
    except ValueError:
        raise ValidationError(f"Unknown interest model: {model}")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def amortized_monthly_payment(principal: Numeric, annual_rate: Numeric, months: int) -> Decimal:
    """
    Nominal annuity payment: P * c * (1 + c)^n / ((1 + c)^n - 1).

    Falls back to P / n when the rate is zero. Returns the unrounded figure.
    """
    principal = to_decimal(principal)
    if principal <= 0 or months <= 0:
        return ZERO
    monthly_rate = to_decimal(annual_rate) / Decimal('100') / Decimal('12')
    if monthly_rate == 0:
        return principal / Decimal(months)
    factor = (Decimal('1') + monthly_rate) ** months
    return principal * monthly_rate * factor / (factor - Decimal('1'))


def generate_schedule(
    principal: Numeric,
    annual_rate: Numeric,
    months: int,
    start_date: Optional[date] = None,
    rounding_policy: Union[RoundingPolicy, str, None] = RoundingPolicy.NEAREST,
    interest_model: Union[InterestModel, str, None] = InterestModel.EQUAL,
) -> List[ScheduleEntry]:
    """
    Generate the repayment schedule for a principal.

    Entry i (1-based) falls due i months after start_date. The last entry of
    every model absorbs rounding residue so the principal portions add up to
    the principal exactly.

    Args:
        principal: Amount financed (total minus down payment)
        annual_rate: Annual rate in percent, may be zero
        months: Number of monthly installments
        start_date: Plan start date, defaults to today
        rounding_policy: nearest, up or down, applied per entry
        interest_model: equal, flat or amortized

    Returns:
        Ordered list of ScheduleEntry; empty when months <= 0 or principal <= 0
    """
    policy = coerce_policy(rounding_policy)
    model = coerce_model(interest_model)
    principal = to_decimal(principal)
    rate = to_decimal(annual_rate or 0)

    if rate < 0:
        raise ValidationError("Interest rate cannot be negative")
    if months <= 0 or principal <= 0:
        return []

    start = start_date or date.today()

    if model == InterestModel.FLAT:
        schedule = _flat_schedule(principal, rate, months, start, policy)
    elif model == InterestModel.EQUAL:
        schedule = _equal_schedule(principal, months, start, policy)
    else:
        schedule = _amortized_schedule(principal, rate, months, start, policy)

    # Sub-cent principals leave entries with nothing to collect; they keep
    # their slot in the term but start out settled
    for entry in schedule:
        if entry.amount <= 0:
            entry.status = EntryStatus.PAID
    return schedule


def _equal_schedule(principal: Decimal, months: int, start: date,
                    policy: RoundingPolicy) -> List[ScheduleEntry]:
    schedule = []
    monthly = apply_rounding(principal / Decimal(months), policy)
    balance = principal

    for i in range(months):
        portion = balance if i == months - 1 else min(monthly, balance)
        balance -= portion
        schedule.append(ScheduleEntry(
            month=i + 1,
            due_date=add_months(start, i + 1),
            amount=portion,
            principal=portion,
            interest=ZERO,
            balance=balance,
        ))
    return schedule


def _flat_schedule(principal: Decimal, rate: Decimal, months: int, start: date,
                   policy: RoundingPolicy) -> List[ScheduleEntry]:
    total = apply_rounding(
        principal * (Decimal('1') + rate / Decimal('100') * Decimal(months) / Decimal('12')),
        policy
    )
    total_interest = max(ZERO, total - principal)
    principal_monthly = apply_rounding(principal / Decimal(months), policy)
    interest_monthly = apply_rounding(total_interest / Decimal(months), policy)

    # Each column is rounded on its own; the last entry trues up both
    schedule = []
    balance = principal
    interest_left = total_interest
    for i in range(months):
        if i == months - 1:
            portion = balance
            interest = interest_left
        else:
            portion = min(principal_monthly, balance)
            interest = min(interest_monthly, interest_left)
        balance -= portion
        interest_left -= interest
        schedule.append(ScheduleEntry(
            month=i + 1,
            due_date=add_months(start, i + 1),
            amount=portion + interest,
            principal=portion,
            interest=interest,
            balance=balance,
        ))
    return schedule


def _amortized_schedule(principal: Decimal, rate: Decimal, months: int, start: date,
                        policy: RoundingPolicy) -> List[ScheduleEntry]:
    nominal = amortized_monthly_payment(principal, rate, months)
    monthly_rate = rate / Decimal('100') / Decimal('12')

    schedule = []
    balance = principal
    for i in range(months):
        interest = apply_rounding(balance * monthly_rate, policy)
        if i == months - 1:
            # True-up: retire whatever the rounded entries left behind
            portion = balance
        else:
            portion = min(apply_rounding(nominal - balance * monthly_rate, policy), balance)
        balance -= portion
        schedule.append(ScheduleEntry(
            month=i + 1,
            due_date=add_months(start, i + 1),
            amount=portion + interest,
            principal=portion,
            interest=interest,
            balance=balance,
        ))
    return schedule


def classify_entry(entry: ScheduleEntry, as_of: Optional[date] = None) -> str:
    """View-time status: "overdue" when due before as_of and still pending"""
    as_of = as_of or date.today()
    if entry.status == EntryStatus.PENDING and entry.due_date < as_of:
        return OVERDUE
    return entry.status.value


def overdue_entries(schedule: Sequence[ScheduleEntry], as_of: Optional[date] = None) -> List[ScheduleEntry]:
    return [entry for entry in schedule if classify_entry(entry, as_of) == OVERDUE]


def verify_client_schedule(
    server_schedule: Sequence[ScheduleEntry],
    client_schedule: Sequence[Dict[str, Any]],
    tolerance: Numeric = Decimal('1.00')
) -> None:
    """
    Reject a client-computed schedule that disagrees with the server.

    Lengths must match and every amount must be within tolerance.
    """
    tolerance = to_decimal(tolerance)
    if len(client_schedule) != len(server_schedule):
        raise ValidationError("Provided installment schedule does not match server calculation")
    for server_entry, client_entry in zip(server_schedule, client_schedule):
        client_amount = to_decimal(client_entry.get('amount', 0))
        if abs(client_amount - server_entry.amount) > tolerance:
            raise ValidationError("Provided installment schedule does not match server calculation")


def copy_schedule(schedule: Sequence[ScheduleEntry]) -> List[ScheduleEntry]:
    return [replace(entry) for entry in schedule]


def total_principal(schedule: Sequence[ScheduleEntry]) -> Decimal:
    return sum((entry.principal for entry in schedule), ZERO)
