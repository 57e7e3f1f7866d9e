"""
Payments

Records customer payments against installment plans. A payment touches up to
three records: the plan (schedule and cached balance), the payment itself, and
the cash balance of the staff member who received the money. All three are
written through the balance mutation protocol.

A payment is never patched in place. Editing reverses its stored allocation
and applies the new figures as if it were a fresh payment; deleting only
reverses.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import uuid

from .allocation import (
    AllocationResult, MonthAllocation, PaymentBreakdown, EXCESS_MONTH,
    allocate_payment, allocate_to_month, apply_allocation, reverse_allocation
)
from .audit import AuditEventType, AuditTrail
from .config import LedgerConfig, get_config
from .exceptions import NotFoundError, ValidationError
from .idempotency import IdempotencyGuard
from .money import ZERO, Numeric, quantize_money
from .mutation import BalanceMutationProtocol, MutationStep
from .plans import InstallmentPlan, PlanManager
from .policy import Actor, AllowAllPolicy, AuthorizationPolicy, Permission
from .storage import StorageInterface, StorageRecord
from .users import CashUser, UserDirectory


class PaymentStatus(Enum):
    RECORDED = "recorded"
    REVERSED = "reversed"


@dataclass
class Payment(StorageRecord):
    """Money received against a plan"""
    plan_id: str
    amount: Decimal
    payment_date: date
    target_month: int = 0                  # 0 means waterfall across the schedule
    allocation: List[MonthAllocation] = field(default_factory=list)
    breakdown: PaymentBreakdown = field(default_factory=PaymentBreakdown)
    recorded_by: Optional[str] = None
    received_by: Optional[str] = None      # Cash holder credited with the amount
    notes: Optional[str] = None
    status: PaymentStatus = PaymentStatus.RECORDED

    @property
    def excess(self) -> Decimal:
        return sum((a.applied for a in self.allocation if a.month == EXCESS_MONTH), ZERO)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'plan_id': self.plan_id,
            'amount': str(self.amount),
            'payment_date': self.payment_date.isoformat(),
            'target_month': self.target_month,
            'allocation': [a.to_dict() for a in self.allocation],
            'breakdown': self.breakdown.to_dict(),
            'recorded_by': self.recorded_by,
            'received_by': self.received_by,
            'notes': self.notes,
            'status': self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            plan_id=data['plan_id'],
            amount=Decimal(str(data['amount'])),
            payment_date=date.fromisoformat(data['payment_date']),
            target_month=int(data.get('target_month', 0)),
            allocation=[MonthAllocation.from_dict(a) for a in data.get('allocation', [])],
            breakdown=PaymentBreakdown.from_dict(data.get('breakdown')),
            recorded_by=data.get('recorded_by'),
            received_by=data.get('received_by'),
            notes=data.get('notes'),
            status=PaymentStatus(data.get('status', PaymentStatus.RECORDED.value)),
        )


@dataclass
class PaymentResult:
    """Outcome of a payment operation"""
    payment: Payment
    plan: Optional[InstallmentPlan] = None
    receiver: Optional[CashUser] = None
    duplicate: bool = False
    warning: Optional[str] = None
    strategy: Optional[str] = None


class PaymentManager:
    """
    Records, edits and deletes payments

    Args:
        storage: Backend for payments
        plan_manager: Loads plans and provides the versioned plan write
        user_directory: Cash holders credited with received payments
        audit_trail: Receives an event per successful operation
        protocol: Balance mutation protocol; built from config when omitted
        policy: Authorization capability checked against the actor
        config: Ledger configuration
        clock: Returns the current UTC time; shared with the idempotency guard
    """

    def __init__(
        self,
        storage: StorageInterface,
        plan_manager: PlanManager,
        user_directory: UserDirectory,
        audit_trail: Optional[AuditTrail] = None,
        protocol: Optional[BalanceMutationProtocol] = None,
        policy: Optional[AuthorizationPolicy] = None,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.plan_manager = plan_manager
        self.user_directory = user_directory
        self.config = config or get_config()
        self.audit_trail = audit_trail if self.config.enable_audit_logging else None
        self.protocol = protocol or plan_manager.protocol
        self.policy = policy or AllowAllPolicy()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.payments_table = "payments"
        self.idempotency_guard = IdempotencyGuard(
            storage,
            window_seconds=self.config.idempotency_window_seconds,
            clock=self.clock,
            payments_table=self.payments_table
        )

    # Queries

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.payments_table, payment_id)
        if data:
            return Payment.from_dict(data)
        return None

    def require_payment(self, payment_id: str) -> Payment:
        payment = self.get_payment(payment_id)
        if not payment:
            raise NotFoundError("payment", payment_id)
        return payment

    def get_plan_payments(self, plan_id: str) -> List[Payment]:
        payments = [
            Payment.from_dict(data)
            for data in self.storage.find(self.payments_table, {'plan_id': plan_id})
        ]
        payments.sort(key=lambda p: p.created_at)
        return payments

    # Operations

    def record_payment(
        self,
        plan_id: str,
        amount: Numeric,
        target_month: int = 0,
        payment_date: Optional[date] = None,
        recorded_by: Optional[str] = None,
        received_by: Optional[str] = None,
        notes: Optional[str] = None,
        actor: Optional[Actor] = None
    ) -> PaymentResult:
        """
        Record a payment against a plan

        Args:
            plan_id: Plan being paid
            amount: Amount received, must be positive
            target_month: 0 to waterfall across the schedule, or the month to pay
            payment_date: Defaults to today
            recorded_by: Staff member entering the payment (defaults to the actor)
            received_by: Staff member holding the cash (defaults to recorded_by)
            notes: Free text
            actor: Caller, checked against the policy

        Returns:
            PaymentResult; duplicate=True with the earlier payment when the same
            payment was recorded moments ago
        """
        self.policy.require(actor, Permission.RECORD_PAYMENT)
        amount = self._validate_amount(amount)
        target_month = self._validate_target(target_month)
        recorded_by = recorded_by or (actor.user_id if actor else None)

        check = self.idempotency_guard.check(plan_id, amount, recorded_by)
        if check.is_duplicate:
            previous = Payment.from_dict(check.previous_record)
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_DUPLICATE_SUPPRESSED,
                    entity_type="payment",
                    entity_id=previous.id,
                    metadata={"plan_id": plan_id, "amount": amount},
                    user_id=recorded_by
                )
            return PaymentResult(payment=previous, duplicate=True, warning=check.warning)

        plan = self.plan_manager.require_plan(plan_id)
        received_by = received_by or recorded_by
        if received_by:
            self.user_directory.require_user(received_by)

        now = self.clock()
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            plan_id=plan.id,
            amount=amount,
            payment_date=payment_date or now.date(),
            target_month=target_month,
            recorded_by=recorded_by,
            received_by=received_by,
            notes=notes,
        )

        result = self.apply_payment_mutation(plan, payment, received_by)

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_RECORDED,
                entity_type="payment",
                entity_id=payment.id,
                metadata={
                    "plan_id": plan.id,
                    "amount": amount,
                    "target_month": target_month,
                    "allocation": [a.to_dict() for a in result.payment.allocation],
                    "breakdown": result.payment.breakdown.to_dict(),
                    "received_by": received_by,
                },
                user_id=recorded_by
            )
        return result

    def edit_payment(
        self,
        payment_id: str,
        amount: Optional[Numeric] = None,
        target_month: Optional[int] = None,
        payment_date: Optional[date] = None,
        received_by: Optional[str] = None,
        notes: Optional[str] = None,
        actor: Optional[Actor] = None
    ) -> PaymentResult:
        """
        Change a payment by reversing its allocation and applying the new one.

        The plan write, the receiver balance changes and the payment record go
        through the protocol as one mutation.
        """
        self.policy.require(actor, Permission.EDIT_PAYMENT)
        original = self._require_recorded(payment_id)
        plan = self.plan_manager.require_plan(original.plan_id)

        new_amount = self._validate_amount(amount) if amount is not None else original.amount
        new_target = self._validate_target(target_month) if target_month is not None else original.target_month
        new_receiver = received_by or original.received_by
        if new_receiver and new_receiver != original.received_by:
            self.user_directory.require_user(new_receiver)

        reversed_schedule = reverse_allocation(plan.schedule, original.allocation)
        allocation = self._allocate(replace(plan, schedule=reversed_schedule), new_amount, new_target)
        new_date = payment_date or original.payment_date
        final_schedule = apply_allocation(reversed_schedule, allocation.applied_to_months, new_date)
        updated_plan = self.plan_manager.with_schedule(plan, final_schedule)

        updated = replace(
            original,
            updated_at=self.clock(),
            amount=new_amount,
            target_month=new_target,
            payment_date=new_date,
            allocation=allocation.applied_to_months,
            breakdown=allocation.breakdown,
            received_by=new_receiver,
            notes=notes if notes is not None else original.notes,
        )

        steps = [self.plan_manager.plan_write_step("plan", plan, updated_plan)]
        if original.received_by and original.received_by == new_receiver:
            if new_amount != original.amount:
                steps.append(self.user_directory.adjust_step(
                    "receiver", new_receiver, new_amount - original.amount
                ))
        else:
            if original.received_by:
                steps.append(self.user_directory.debit_step(
                    "previous_receiver", original.received_by, original.amount
                ))
        steps.append(self._save_step("payment", updated, previous=original))
        if new_receiver and new_receiver != original.received_by:
            steps.append(self.user_directory.credit_step("receiver", new_receiver, new_amount))

        outcome = self.protocol.run(
            "payment.edit", steps,
            context={"payment_id": original.id, "plan_id": plan.id},
            user_id=actor.user_id if actor else None
        )

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_EDITED,
                entity_type="payment",
                entity_id=original.id,
                metadata={
                    "plan_id": plan.id,
                    "previous_amount": original.amount,
                    "amount": new_amount,
                    "previous_target_month": original.target_month,
                    "target_month": new_target,
                },
                user_id=actor.user_id if actor else None
            )

        return PaymentResult(
            payment=updated,
            plan=outcome["plan"],
            receiver=outcome.results.get("receiver"),
            strategy=outcome.strategy
        )

    def delete_payment(self, payment_id: str, actor: Optional[Actor] = None) -> PaymentResult:
        """Reverse a payment and remove its record"""
        return self._reverse(payment_id, actor, remove_record=True)

    def reverse_payment(self, payment_id: str, actor: Optional[Actor] = None) -> PaymentResult:
        """Reverse a payment but keep its record with status reversed"""
        return self._reverse(payment_id, actor, remove_record=False)

    def _reverse(self, payment_id: str, actor: Optional[Actor], remove_record: bool) -> PaymentResult:
        self.policy.require(actor, Permission.DELETE_PAYMENT)
        payment = self._require_recorded(payment_id)
        plan = self.plan_manager.require_plan(payment.plan_id)

        result = self.reverse_mutation(plan, payment, remove_record=remove_record,
                                       user_id=actor.user_id if actor else None)

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_DELETED if remove_record else AuditEventType.PAYMENT_REVERSED,
                entity_type="payment",
                entity_id=payment.id,
                metadata={"plan_id": plan.id, "amount": payment.amount,
                          "allocation": [a.to_dict() for a in payment.allocation]},
                user_id=actor.user_id if actor else None
            )
        return result

    # Protocol entry points

    def apply_payment_mutation(
        self,
        plan: InstallmentPlan,
        payment: Payment,
        target_user_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> PaymentResult:
        """
        Allocate a new payment and persist its effects.

        Order: plan (schedule and balance), payment record, receiver credit.
        """
        allocation = self._allocate(plan, payment.amount, payment.target_month)
        payment = replace(payment, allocation=allocation.applied_to_months, breakdown=allocation.breakdown)
        updated_plan = self.plan_manager.with_schedule(
            plan, apply_allocation(plan.schedule, allocation.applied_to_months, payment.payment_date)
        )

        steps = [
            self.plan_manager.plan_write_step("plan", plan, updated_plan),
            self._save_step("payment", payment),
        ]
        if target_user_id:
            steps.append(self.user_directory.credit_step("receiver", target_user_id, payment.amount))

        outcome = self.protocol.run(
            "payment.record", steps,
            context={"payment_id": payment.id, "plan_id": plan.id, "amount": str(payment.amount)},
            user_id=user_id or payment.recorded_by
        )
        return PaymentResult(
            payment=payment,
            plan=outcome["plan"],
            receiver=outcome.results.get("receiver"),
            strategy=outcome.strategy
        )

    def reverse_mutation(
        self,
        plan: InstallmentPlan,
        payment: Payment,
        remove_record: bool = True,
        user_id: Optional[str] = None
    ) -> PaymentResult:
        """
        Undo a payment's effects.

        Order: plan (schedule and balance), receiver debit, payment record
        removed or marked reversed.
        """
        updated_plan = self.plan_manager.with_schedule(
            plan, reverse_allocation(plan.schedule, payment.allocation)
        )
        steps = [self.plan_manager.plan_write_step("plan", plan, updated_plan)]
        if payment.received_by:
            steps.append(self.user_directory.debit_step("receiver", payment.received_by, payment.amount))

        if remove_record:
            final = payment
            steps.append(MutationStep(
                name="payment",
                apply=lambda: self.storage.delete(self.payments_table, payment.id),
                compensate=lambda: self.storage.save(self.payments_table, payment.id, payment.to_dict()),
            ))
        else:
            final = replace(payment, status=PaymentStatus.REVERSED, updated_at=self.clock())
            steps.append(self._save_step("payment", final, previous=payment))

        outcome = self.protocol.run(
            "payment.delete" if remove_record else "payment.reverse", steps,
            context={"payment_id": payment.id, "plan_id": plan.id, "amount": str(payment.amount)},
            user_id=user_id
        )
        return PaymentResult(
            payment=final,
            plan=outcome["plan"],
            receiver=outcome.results.get("receiver"),
            strategy=outcome.strategy
        )

    # Helpers

    def _allocate(self, plan: InstallmentPlan, amount: Decimal, target_month: int) -> AllocationResult:
        if target_month == 0:
            return allocate_payment(plan.schedule, plan.interest_model, amount, plan.rounding_policy)
        return allocate_to_month(plan.schedule, plan.interest_model, amount, target_month, plan.rounding_policy)

    def _save_step(self, name: str, payment: Payment, previous: Optional[Payment] = None) -> MutationStep:
        def undo():
            if previous is None:
                self.storage.delete(self.payments_table, payment.id)
            else:
                self.storage.save(self.payments_table, previous.id, previous.to_dict())

        def save():
            self.storage.save(self.payments_table, payment.id, payment.to_dict())
            return payment

        return MutationStep(name=name, apply=save, compensate=undo)

    def _require_recorded(self, payment_id: str) -> Payment:
        payment = self.require_payment(payment_id)
        if payment.status == PaymentStatus.REVERSED:
            raise ValidationError(f"Payment {payment_id} has already been reversed")
        return payment

    @staticmethod
    def _validate_amount(amount: Numeric) -> Decimal:
        try:
            amount = quantize_money(amount)
        except (ArithmeticError, TypeError, ValueError):
            raise ValidationError(f"Invalid payment amount: {amount}")
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")
        return amount

    @staticmethod
    def _validate_target(target_month: int) -> int:
        if not isinstance(target_month, int) or isinstance(target_month, bool) or target_month < 0:
            raise ValidationError("Target month must be 0 or a schedule month")
        return target_month
