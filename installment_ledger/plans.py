"""
Installment Plans

A plan is the aggregate that owns its schedule: entries are generated once at
creation and afterwards only their paid fields change. Every write after
creation goes through a versioned plan step so two writers racing on the same
plan cannot silently overwrite each other.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union
import uuid

from .audit import AuditEventType, AuditTrail
from .config import LedgerConfig, get_config
from .exceptions import ConcurrentModificationError, NotFoundError, ValidationError
from .money import RoundingPolicy, coerce_policy, quantize_money, to_decimal, ZERO, Numeric
from .mutation import BalanceMutationProtocol, MutationStep
from .policy import Actor, AllowAllPolicy, AuthorizationPolicy, Permission
from .reconciliation import calculate_remaining_balance
from .schedule import (
    InterestModel, ScheduleEntry, add_months, coerce_model, generate_schedule,
    overdue_entries, verify_client_schedule
)
from .storage import StorageInterface, StorageRecord


def compute_total_amount(base_price: Numeric, markup_percent: Numeric) -> Decimal:
    """Sale price on credit: base price plus markup percent"""
    base_price = to_decimal(base_price)
    markup = to_decimal(markup_percent)
    if base_price <= 0:
        raise ValidationError("Base price must be positive")
    if markup < 0:
        raise ValidationError("Markup cannot be negative")
    return quantize_money(base_price + base_price * markup / Decimal('100'))


@dataclass
class InstallmentPlan(StorageRecord):
    """Credit sale repaid through a fixed schedule"""
    customer_id: str
    total_amount: Decimal
    down_payment: Decimal
    annual_rate: Decimal
    months: int
    interest_model: InterestModel
    rounding_policy: RoundingPolicy
    start_date: date
    end_date: date
    schedule: List[ScheduleEntry] = field(default_factory=list)
    remaining_balance: Decimal = ZERO
    monthly_installment: Decimal = ZERO
    product_id: Optional[str] = None
    created_by: Optional[str] = None
    version: int = 0

    @property
    def principal(self) -> Decimal:
        return self.total_amount - self.down_payment

    @property
    def is_settled(self) -> bool:
        return all(entry.is_paid for entry in self.schedule)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'customer_id': self.customer_id,
            'product_id': self.product_id,
            'total_amount': str(self.total_amount),
            'down_payment': str(self.down_payment),
            'principal': str(self.principal),
            'annual_rate': str(self.annual_rate),
            'months': self.months,
            'interest_model': self.interest_model.value,
            'rounding_policy': self.rounding_policy.value,
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'schedule': [entry.to_dict() for entry in self.schedule],
            'remaining_balance': str(self.remaining_balance),
            'monthly_installment': str(self.monthly_installment),
            'created_by': self.created_by,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InstallmentPlan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            product_id=data.get('product_id'),
            total_amount=Decimal(str(data['total_amount'])),
            down_payment=Decimal(str(data.get('down_payment', '0'))),
            annual_rate=Decimal(str(data.get('annual_rate', '0'))),
            months=int(data['months']),
            interest_model=InterestModel(data['interest_model']),
            rounding_policy=RoundingPolicy(data['rounding_policy']),
            start_date=date.fromisoformat(data['start_date']),
            end_date=date.fromisoformat(data['end_date']),
            schedule=[ScheduleEntry.from_dict(entry) for entry in data.get('schedule', [])],
            remaining_balance=Decimal(str(data.get('remaining_balance', '0'))),
            monthly_installment=Decimal(str(data.get('monthly_installment', '0'))),
            created_by=data.get('created_by'),
            version=int(data.get('version', 0)),
        )


class PlanManager:
    """
    Creates plans and owns the versioned plan write used by every mutation
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        protocol: Optional[BalanceMutationProtocol] = None,
        policy: Optional[AuthorizationPolicy] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.audit_trail = audit_trail if self.config.enable_audit_logging else None
        self.protocol = protocol or BalanceMutationProtocol(storage, self.config.transaction_mode)
        self.policy = policy or AllowAllPolicy()
        self.plans_table = "plans"

    def create_plan(
        self,
        customer_id: str,
        total_amount: Numeric,
        months: int,
        down_payment: Numeric = ZERO,
        annual_rate: Optional[Numeric] = None,
        start_date: Optional[date] = None,
        interest_model: Union[InterestModel, str, None] = None,
        rounding_policy: Union[RoundingPolicy, str, None] = None,
        product_id: Optional[str] = None,
        client_schedule: Optional[Sequence[Dict[str, Any]]] = None,
        actor: Optional[Actor] = None
    ) -> InstallmentPlan:
        """
        Create a plan together with its schedule

        Args:
            customer_id: Buyer
            total_amount: Sale price on credit
            months: Number of monthly installments
            down_payment: Paid upfront, not part of the schedule
            annual_rate: Annual percent; defaults to the configured markup
            start_date: First installment falls due one month later
            interest_model: equal, flat or amortized (configured default)
            rounding_policy: nearest, up or down (configured default)
            product_id: Product sold, if any
            client_schedule: Schedule the client computed; rejected if it
                differs from the server's by more than the tolerance
            actor: Caller, checked against the policy

        Returns:
            Persisted InstallmentPlan
        """
        self.policy.require(actor, Permission.CREATE_PLAN)

        total_amount = quantize_money(total_amount)
        down_payment = quantize_money(down_payment or 0)
        if total_amount <= 0:
            raise ValidationError("Total amount must be positive")
        if down_payment < 0:
            raise ValidationError("Down payment cannot be negative")
        if down_payment > total_amount:
            raise ValidationError("Down payment cannot exceed the total amount")
        if not isinstance(months, int) or isinstance(months, bool) or months <= 0:
            raise ValidationError("Number of months must be a positive integer")

        rate = to_decimal(
            annual_rate if annual_rate is not None else self.config.default_markup_percent
        )
        model = coerce_model(interest_model or self.config.default_interest_model)
        try:
            policy = coerce_policy(rounding_policy or self.config.default_rounding_policy)
        except ValueError:
            raise ValidationError(f"Unknown rounding policy: {rounding_policy}")
        start = start_date or date.today()

        schedule = generate_schedule(total_amount - down_payment, rate, months, start, policy, model)
        if client_schedule is not None:
            verify_client_schedule(schedule, client_schedule, self.config.schedule_tolerance)

        now = datetime.now(timezone.utc)
        plan = InstallmentPlan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            product_id=product_id,
            total_amount=total_amount,
            down_payment=down_payment,
            annual_rate=rate,
            months=months,
            interest_model=model,
            rounding_policy=policy,
            start_date=start,
            end_date=add_months(start, months),
            schedule=schedule,
            remaining_balance=calculate_remaining_balance(schedule),
            monthly_installment=schedule[0].amount if schedule else ZERO,
            created_by=actor.user_id if actor else None,
            version=1,
        )

        self.protocol.run(
            "plan.create",
            [MutationStep(
                name="plan",
                apply=lambda: self.storage.save(self.plans_table, plan.id, plan.to_dict()),
                compensate=lambda: self.storage.delete(self.plans_table, plan.id),
            )],
            context={"plan_id": plan.id, "customer_id": customer_id},
            user_id=plan.created_by
        )

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.PLAN_CREATED,
                entity_type="plan",
                entity_id=plan.id,
                metadata={
                    "customer_id": customer_id,
                    "total_amount": total_amount,
                    "down_payment": down_payment,
                    "principal": plan.principal,
                    "annual_rate": rate,
                    "months": months,
                    "interest_model": model.value,
                    "rounding_policy": policy.value,
                },
                user_id=plan.created_by
            )

        return plan

    def get_plan(self, plan_id: str) -> Optional[InstallmentPlan]:
        data = self.storage.load(self.plans_table, plan_id)
        if data:
            return InstallmentPlan.from_dict(data)
        return None

    def require_plan(self, plan_id: str) -> InstallmentPlan:
        plan = self.get_plan(plan_id)
        if not plan:
            raise NotFoundError("plan", plan_id)
        return plan

    def list_plans(self) -> List[InstallmentPlan]:
        return [InstallmentPlan.from_dict(data) for data in self.storage.load_all(self.plans_table)]

    def get_customer_plans(self, customer_id: str) -> List[InstallmentPlan]:
        return [
            InstallmentPlan.from_dict(data)
            for data in self.storage.find(self.plans_table, {'customer_id': customer_id})
        ]

    def get_overdue_entries(self, plan_id: str, as_of: Optional[date] = None) -> List[ScheduleEntry]:
        return overdue_entries(self.require_plan(plan_id).schedule, as_of)

    def with_schedule(self, plan: InstallmentPlan, schedule: List[ScheduleEntry]) -> InstallmentPlan:
        """Next version of a plan carrying a new schedule and its recomputed balance"""
        return replace(
            plan,
            schedule=schedule,
            remaining_balance=calculate_remaining_balance(schedule),
            updated_at=datetime.now(timezone.utc),
            version=plan.version + 1,
        )

    def _write_versioned(self, plan: InstallmentPlan, expected_version: int) -> InstallmentPlan:
        if not self.storage.save_if_version(self.plans_table, plan.id, plan.to_dict(), expected_version):
            raise ConcurrentModificationError("plan", plan.id, expected_version)
        return plan

    def plan_write_step(self, name: str, original: InstallmentPlan, updated: InstallmentPlan) -> MutationStep:
        """
        Conditional write of the updated plan over the version that was read.

        The compensation writes the original content back as a newer version,
        again conditional, so a concurrent writer is never overwritten.
        """
        def restore():
            restored = replace(
                original,
                updated_at=datetime.now(timezone.utc),
                version=updated.version + 1,
            )
            return self._write_versioned(restored, updated.version)

        return MutationStep(
            name=name,
            apply=lambda: self._write_versioned(updated, original.version),
            compensate=restore,
        )
