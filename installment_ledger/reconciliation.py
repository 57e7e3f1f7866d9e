"""
Ledger Consistency Recalculator

The schedule is the source of truth for what is left to collect on a plan;
the cached remaining_balance only exists for cheap reads. This module
recomputes the balance from the schedule, reports drift between the two, and
repairs it. It also rebuilds each cash holder's balance from the ledger
records (payments received, transfers, expenses) for the same purpose.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .audit import AuditEventType, AuditTrail
from .exceptions import LedgerError
from .logging_config import get_logger, log_action
from .money import EPSILON, ZERO
from .mutation import BalanceMutationProtocol
from .policy import Actor, AllowAllPolicy, AuthorizationPolicy, Permission
from .storage import StorageInterface
from .users import UserDirectory


logger = get_logger("installment_ledger.reconciliation")


def _field(entry: Any, name: str, default: str = '0') -> Decimal:
    if isinstance(entry, dict):
        return Decimal(str(entry.get(name, default) or default))
    return getattr(entry, name)


def calculate_remaining_balance(schedule: Iterable[Any]) -> Decimal:
    """
    Sum of what is still owed on every entry paid below its amount.

    Accepts ScheduleEntry objects or their stored dictionaries.
    """
    total = ZERO
    for entry in schedule:
        amount = _field(entry, 'amount')
        paid = _field(entry, 'paid_amount')
        if paid < amount:
            total += max(ZERO, amount - paid)
    return total


@dataclass
class BalanceDrift:
    """Cached plan balance that disagrees with its schedule"""
    plan_id: str
    cached: Decimal
    computed: Decimal

    @property
    def difference(self) -> Decimal:
        return self.computed - self.cached


@dataclass
class CashDrift:
    """Stored cash balance that disagrees with the ledger records"""
    user_id: str
    name: str
    stored: Decimal
    expected: Decimal

    @property
    def difference(self) -> Decimal:
        return self.expected - self.stored


@dataclass
class RepairReport:
    """Summary of a repair run"""
    checked: int = 0
    drifted: List[Union[BalanceDrift, CashDrift]] = field(default_factory=list)
    fixed: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)
    applied: bool = False

    @property
    def unchanged(self) -> int:
        return self.checked - len(self.drifted)


class LedgerConsistencyChecker:
    """
    Detects and repairs drift in cached balances

    Args:
        storage: Backend holding plans, payments, transfers and expenses
        plan_manager: Provides plan loading and the versioned plan write
        user_directory: Provides cash holders and balance steps
        protocol: Mutation protocol used for every repair write
        audit_trail: Records each repair
        tolerance: Differences at or below this are ignored
    """

    def __init__(
        self,
        storage: StorageInterface,
        plan_manager,
        user_directory: UserDirectory,
        protocol: Optional[BalanceMutationProtocol] = None,
        audit_trail: Optional[AuditTrail] = None,
        policy: Optional[AuthorizationPolicy] = None,
        tolerance: Decimal = EPSILON
    ):
        self.storage = storage
        self.plan_manager = plan_manager
        self.user_directory = user_directory
        self.protocol = protocol or plan_manager.protocol
        self.audit_trail = audit_trail
        self.policy = policy or AllowAllPolicy()
        self.tolerance = Decimal(str(tolerance))

        self.payments_table = "payments"
        self.transfers_table = "cash_transfers"
        self.expenses_table = "expenses"

    # Plan balances

    def check_plan(self, plan) -> Optional[BalanceDrift]:
        computed = calculate_remaining_balance(plan.schedule)
        if abs(computed - plan.remaining_balance) > self.tolerance:
            return BalanceDrift(plan.id, plan.remaining_balance, computed)
        return None

    def find_drifted_plans(self) -> List[BalanceDrift]:
        drifts = []
        for plan in self.plan_manager.list_plans():
            drift = self.check_plan(plan)
            if drift:
                drifts.append(drift)
        return drifts

    def repair_plan(self, plan_id: str, actor: Optional[Actor] = None) -> Optional[BalanceDrift]:
        """Overwrite the cached balance with the schedule's figure if they disagree"""
        self.policy.require(actor, Permission.REPAIR_LEDGER)
        plan = self.plan_manager.require_plan(plan_id)
        drift = self.check_plan(plan)
        if drift is None:
            return None

        updated = self.plan_manager.with_schedule(plan, plan.schedule)
        self.protocol.run(
            "plan.repair_balance",
            [self.plan_manager.plan_write_step("plan", plan, updated)],
            context={"plan_id": plan.id, "cached": str(drift.cached), "computed": str(drift.computed)},
            user_id=actor.user_id if actor else None
        )

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.PLAN_BALANCE_REPAIRED,
                entity_type="plan",
                entity_id=plan.id,
                metadata={"previous": drift.cached, "corrected": drift.computed},
                user_id=actor.user_id if actor else None
            )
        return drift

    def repair_all_plans(self, apply: bool = False, actor: Optional[Actor] = None) -> RepairReport:
        """Check every plan; with apply=True also repair the drifted ones"""
        self.policy.require(actor, Permission.REPAIR_LEDGER)
        report = RepairReport(applied=apply)
        for plan in self.plan_manager.list_plans():
            report.checked += 1
            drift = self.check_plan(plan)
            if drift is None:
                continue
            report.drifted.append(drift)
            if not apply:
                continue
            try:
                self.repair_plan(plan.id, actor)
                report.fixed += 1
            except LedgerError as exc:
                report.errors.append((plan.id, exc.message))

        log_action(
            logger, "info", "Plan balance check finished",
            action="repair_balances",
            extra={"checked": report.checked, "drifted": len(report.drifted),
                   "fixed": report.fixed, "errors": len(report.errors), "applied": apply}
        )
        return report

    # Cash balances

    def expected_cash_balance(self, user_id: str, opening_balance: Decimal = ZERO) -> Decimal:
        """
        Opening balance + payments received (not reversed) + transfers in
        - transfers out (neither rejected) - expenses
        """
        def total(records: List[Dict[str, Any]], excluded_status: Optional[str] = None) -> Decimal:
            return sum(
                (Decimal(str(r['amount'])) for r in records
                 if excluded_status is None or r.get('status') != excluded_status),
                ZERO
            )

        received = total(self.storage.find(self.payments_table, {'received_by': user_id}), 'reversed')
        transfers_in = total(self.storage.find(self.transfers_table, {'to_user_id': user_id}), 'rejected')
        transfers_out = total(self.storage.find(self.transfers_table, {'from_user_id': user_id}), 'rejected')
        expenses = total(self.storage.find(self.expenses_table, {'user_id': user_id}))

        return opening_balance + received + transfers_in - transfers_out - expenses

    def find_cash_drift(self) -> List[CashDrift]:
        drifts = []
        for user in self.user_directory.list_users():
            expected = self.expected_cash_balance(user.id, user.opening_balance)
            if abs(expected - user.cash_balance) > self.tolerance:
                drifts.append(CashDrift(user.id, user.name, user.cash_balance, expected))
        return drifts

    def reconcile_cash_balances(self, apply: bool = False, actor: Optional[Actor] = None) -> RepairReport:
        """Compare every stored cash balance with the ledger; optionally correct it"""
        self.policy.require(actor, Permission.REPAIR_LEDGER)
        report = RepairReport(applied=apply)
        report.checked = len(self.user_directory.list_users())
        report.drifted.extend(self.find_cash_drift())

        if apply:
            for drift in report.drifted:
                try:
                    self.protocol.run(
                        "cash.reconcile",
                        [self.user_directory.adjust_step("balance", drift.user_id, drift.difference)],
                        context={"user_id": drift.user_id, "stored": str(drift.stored),
                                 "expected": str(drift.expected)},
                        user_id=actor.user_id if actor else None
                    )
                except LedgerError as exc:
                    report.errors.append((drift.user_id, exc.message))
                    continue
                report.fixed += 1
                if self.audit_trail:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.CASH_BALANCE_REPAIRED,
                        entity_type="user",
                        entity_id=drift.user_id,
                        metadata={"previous": drift.stored, "corrected": drift.expected},
                        user_id=actor.user_id if actor else None
                    )

        log_action(
            logger, "info", "Cash balance reconciliation finished",
            action="reconcile_cash",
            extra={"checked": report.checked, "drifted": len(report.drifted),
                   "fixed": report.fixed, "errors": len(report.errors), "applied": apply}
        )
        return report
