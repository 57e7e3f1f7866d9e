"""
Test suite for plans and payments

Plan creation, payment recording (waterfall and direct-to-month), edits and
deletions through full reversal, duplicate suppression, optimistic plan
versioning and behaviour under mid-sequence failures on both paths.
"""

import pytest
from datetime import date
from decimal import Decimal

from installment_ledger.exceptions import (
    ConcurrentModificationError, InsufficientFundsError, NotFoundError,
    OperationFailedError, PermissionDeniedError, ValidationError
)
from installment_ledger.idempotency import DUPLICATE_WARNING
from installment_ledger.money import RoundingPolicy
from installment_ledger.payments import Payment, PaymentStatus
from installment_ledger.plans import compute_total_amount
from installment_ledger.policy import Actor, Role, RolePolicy
from installment_ledger.reconciliation import calculate_remaining_balance
from installment_ledger.schedule import EntryStatus, InterestModel

from ledger_helpers import FlakyStorage, build_ledger


START = date(2024, 1, 1)


def assert_balance_consistent(plan):
    assert abs(calculate_remaining_balance(plan.schedule) - plan.remaining_balance) <= Decimal('0.001')


class TestPlanCreation:
    """Plans are created together with their schedule"""

    def setup_method(self):
        self.ledger = build_ledger()

    def test_compute_total_amount(self):
        assert compute_total_amount(1000, 40) == Decimal('1400.00')
        assert compute_total_amount('99.99', '0') == Decimal('99.99')
        with pytest.raises(ValidationError):
            compute_total_amount(0, 10)

    def test_create_equal_plan(self):
        plan = self.ledger.plans.create_plan(
            "cust-1", 1800, 3, down_payment=300, annual_rate=0,
            start_date=START, interest_model="equal"
        )

        assert plan.principal == Decimal('1500')
        assert [e.amount for e in plan.schedule] == [Decimal('500')] * 3
        assert plan.remaining_balance == Decimal('1500')
        assert plan.monthly_installment == Decimal('500')
        assert plan.end_date == date(2024, 4, 1)
        assert plan.version == 1
        assert plan.rounding_policy == RoundingPolicy.NEAREST

        stored = self.ledger.plans.get_plan(plan.id)
        assert stored == plan

    def test_create_amortized_plan(self):
        plan = self.ledger.plans.create_plan(
            "cust-1", 10000, 10, annual_rate=12, start_date=START, interest_model=InterestModel.AMORTIZED
        )
        assert sum(e.principal for e in plan.schedule) == Decimal('10000')
        assert plan.remaining_balance == sum(e.amount for e in plan.schedule)
        assert_balance_consistent(plan)

    def test_rate_defaults_to_configured_markup(self):
        plan = self.ledger.plans.create_plan("cust-1", 1200, 12, start_date=START, interest_model="flat")
        assert plan.annual_rate == Decimal('40')

    @pytest.mark.parametrize("kwargs,message", [
        ({"total_amount": 0, "months": 3}, "Total amount"),
        ({"total_amount": 100, "months": 0}, "months"),
        ({"total_amount": 100, "months": 2.5}, "months"),
        ({"total_amount": 100, "months": 3, "down_payment": 150}, "Down payment"),
        ({"total_amount": 100, "months": 3, "down_payment": -1}, "Down payment"),
        ({"total_amount": 100, "months": 3, "rounding_policy": "sideways"}, "rounding policy"),
    ])
    def test_invalid_terms_rejected(self, kwargs, message):
        with pytest.raises(ValidationError, match=message):
            self.ledger.plans.create_plan("cust-1", start_date=START, **kwargs)
        assert self.ledger.storage.count("plans") == 0

    def test_client_schedule_verified(self):
        client = [{'amount': '500'}, {'amount': '500'}, {'amount': '500'}]
        self.ledger.plans.create_plan("cust-1", 1500, 3, annual_rate=0, start_date=START,
                                      interest_model="equal", client_schedule=client)

        client[1] = {'amount': '450'}
        with pytest.raises(ValidationError, match="does not match server calculation"):
            self.ledger.plans.create_plan("cust-1", 1500, 3, annual_rate=0, start_date=START,
                                          interest_model="equal", client_schedule=client)

    def test_overdue_entries(self):
        plan = self.ledger.plans.create_plan("cust-1", 1500, 3, annual_rate=0, start_date=START, interest_model="equal")
        overdue = self.ledger.plans.get_overdue_entries(plan.id, as_of=date(2024, 3, 2))
        assert [e.month for e in overdue] == [1, 2]

        stored = self.ledger.storage.load("plans", plan.id)
        assert all(entry['status'] == 'pending' for entry in stored['schedule'])

    def test_customer_plans(self):
        self.ledger.plans.create_plan("cust-1", 1500, 3, start_date=START)
        self.ledger.plans.create_plan("cust-2", 1500, 3, start_date=START)
        assert len(self.ledger.plans.get_customer_plans("cust-1")) == 1


class PaymentTestBase:
    """A 3 x 500 equal plan and two cash holders"""

    storage_factory = FlakyStorage

    def setup_method(self):
        self.storage = self.storage_factory()
        self.ledger = build_ledger(storage=self.storage)
        self.employee = self.ledger.users.register_user("Emp", Role.EMPLOYEE, user_id="emp")
        self.manager = self.ledger.users.register_user("Mgr", Role.MANAGER, user_id="mgr")
        self.plan = self.ledger.plans.create_plan(
            "cust-1", 1500, 3, annual_rate=0, start_date=START, interest_model="equal"
        )

    def balance(self, user_id):
        return self.ledger.users.get_balance(user_id)

    def plan_now(self):
        return self.ledger.plans.require_plan(self.plan.id)


class TestRecordPayment(PaymentTestBase):

    def test_waterfall_payment(self):
        result = self.ledger.payments.record_payment(self.plan.id, 700, recorded_by="emp")

        plan = result.plan
        assert plan.schedule[0].paid_amount == Decimal('500')
        assert plan.schedule[0].status == EntryStatus.PAID
        assert plan.schedule[0].paid_date == date(2024, 3, 1)
        assert plan.schedule[1].paid_amount == Decimal('200')
        assert plan.schedule[1].status == EntryStatus.PENDING
        assert plan.remaining_balance == Decimal('800')
        assert plan.version == 2
        assert_balance_consistent(plan)

        assert result.payment.breakdown.principal == Decimal('700')
        assert [(a.month, a.applied) for a in result.payment.allocation] == [(1, Decimal('500')), (2, Decimal('200'))]
        assert result.receiver.cash_balance == Decimal('700')
        assert result.strategy == "compensating"
        assert not result.duplicate

        stored = self.ledger.payments.get_payment(result.payment.id)
        assert stored.amount == Decimal('700')
        assert stored.received_by == "emp"
        assert stored.status == PaymentStatus.RECORDED
        assert self.plan_now() == plan

    def test_direct_to_month_payment(self):
        result = self.ledger.payments.record_payment(self.plan.id, 500, target_month=2, recorded_by="emp")

        assert result.plan.schedule[0].paid_amount == 0
        assert result.plan.schedule[1].status == EntryStatus.PAID
        assert result.plan.remaining_balance == Decimal('1000')

    def test_received_by_other_user(self):
        self.ledger.payments.record_payment(self.plan.id, 300, recorded_by="emp", received_by="mgr")
        assert self.balance("emp") == 0
        assert self.balance("mgr") == Decimal('300')

    def test_overpayment_settles_plan(self):
        result = self.ledger.payments.record_payment(self.plan.id, 1700, recorded_by="emp")

        assert result.payment.excess == Decimal('200')
        assert result.plan.remaining_balance == 0
        assert result.plan.is_settled
        assert self.balance("emp") == Decimal('1700')

    @pytest.mark.parametrize("kwargs,message", [
        ({"amount": 0}, "positive"),
        ({"amount": -5}, "positive"),
        ({"amount": "abc"}, "Invalid payment amount"),
        ({"amount": 100, "target_month": -1}, "Target month"),
        ({"amount": 100, "target_month": 9}, "Installment month not found on plan"),
        ({"amount": 600, "target_month": 1}, "exceeds"),
    ])
    def test_invalid_payments_rejected_without_side_effects(self, kwargs, message):
        with pytest.raises(ValidationError, match=message):
            self.ledger.payments.record_payment(self.plan.id, recorded_by="emp", **kwargs)

        assert self.storage.count("payments") == 0
        assert self.balance("emp") == 0
        assert self.plan_now().version == 1

    def test_unknown_plan_and_receiver(self):
        with pytest.raises(NotFoundError, match="Plan"):
            self.ledger.payments.record_payment("missing", 100, recorded_by="emp")
        with pytest.raises(NotFoundError, match="User"):
            self.ledger.payments.record_payment(self.plan.id, 100, recorded_by="emp", received_by="ghost")

    def test_duplicate_suppressed_within_window(self):
        first = self.ledger.payments.record_payment(self.plan.id, 700, recorded_by="emp")
        self.ledger.clock.advance(2)
        second = self.ledger.payments.record_payment(self.plan.id, 700, recorded_by="emp")

        assert second.duplicate
        assert second.warning == DUPLICATE_WARNING
        assert second.payment.id == first.payment.id
        assert self.storage.count("payments") == 1
        assert self.balance("emp") == Decimal('700')

    def test_same_payment_after_window_is_recorded(self):
        self.ledger.payments.record_payment(self.plan.id, 300, recorded_by="emp")
        self.ledger.clock.advance(6)
        second = self.ledger.payments.record_payment(self.plan.id, 300, recorded_by="emp")

        assert not second.duplicate
        assert self.storage.count("payments") == 2
        assert self.balance("emp") == Decimal('600')

    def test_different_recorder_is_not_duplicate(self):
        self.ledger.payments.record_payment(self.plan.id, 300, recorded_by="emp")
        second = self.ledger.payments.record_payment(self.plan.id, 300, recorded_by="mgr")
        assert not second.duplicate

    def test_stale_plan_write_is_rejected(self):
        stale = self.plan_now()
        self.ledger.payments.record_payment(self.plan.id, 100, recorded_by="emp")

        payment = Payment(
            id="late", created_at=self.ledger.clock(), updated_at=self.ledger.clock(),
            plan_id=stale.id, amount=Decimal('50'), payment_date=date(2024, 3, 1), recorded_by="emp"
        )
        with pytest.raises(ConcurrentModificationError):
            self.ledger.payments.apply_payment_mutation(stale, payment, "emp")

        assert self.storage.count("payments") == 1
        assert self.balance("emp") == Decimal('100')
        assert self.plan_now().schedule[0].paid_amount == Decimal('100')


class TestEditAndDelete(PaymentTestBase):

    def setup_method(self):
        super().setup_method()
        self.payment = self.ledger.payments.record_payment(self.plan.id, 700, recorded_by="emp").payment

    def test_edit_amount_reverses_then_reapplies(self):
        result = self.ledger.payments.edit_payment(self.payment.id, amount=300)

        plan = result.plan
        assert plan.schedule[0].paid_amount == Decimal('300')
        assert plan.schedule[0].status == EntryStatus.PENDING
        assert plan.schedule[1].paid_amount == 0
        assert plan.remaining_balance == Decimal('1200')
        assert_balance_consistent(plan)
        assert self.balance("emp") == Decimal('300')

        stored = self.ledger.payments.get_payment(self.payment.id)
        assert stored.amount == Decimal('300')
        assert [(a.month, a.applied) for a in stored.allocation] == [(1, Decimal('300'))]

    def test_edit_target_month(self):
        result = self.ledger.payments.edit_payment(self.payment.id, amount=500, target_month=3)

        assert [e.paid_amount for e in result.plan.schedule] == [0, 0, Decimal('500')]
        assert self.balance("emp") == Decimal('500')

    def test_edit_receiver_moves_cash(self):
        self.ledger.payments.edit_payment(self.payment.id, received_by="mgr")

        assert self.balance("emp") == 0
        assert self.balance("mgr") == Decimal('700')
        assert self.ledger.payments.get_payment(self.payment.id).received_by == "mgr"

    def test_invalid_edit_changes_nothing(self):
        with pytest.raises(ValidationError):
            self.ledger.payments.edit_payment(self.payment.id, amount=600, target_month=1)

        assert self.plan_now().remaining_balance == Decimal('800')
        assert self.ledger.payments.get_payment(self.payment.id).amount == Decimal('700')

    def test_delete_restores_schedule(self):
        result = self.ledger.payments.delete_payment(self.payment.id)

        assert [e.amount for e in result.plan.schedule] == [Decimal('500')] * 3
        assert all(e.paid_amount == 0 and e.status == EntryStatus.PENDING for e in result.plan.schedule)
        assert result.plan.remaining_balance == Decimal('1500')
        assert self.ledger.payments.get_payment(self.payment.id) is None
        assert self.balance("emp") == 0

    def test_reverse_keeps_record(self):
        self.ledger.payments.reverse_payment(self.payment.id)

        stored = self.ledger.payments.get_payment(self.payment.id)
        assert stored.status == PaymentStatus.REVERSED
        assert self.plan_now().remaining_balance == Decimal('1500')

        with pytest.raises(ValidationError, match="already been reversed"):
            self.ledger.payments.edit_payment(self.payment.id, amount=100)

    def test_delete_refused_when_receiver_spent_the_cash(self):
        self.ledger.cash.transfer("emp", "mgr", 700)

        with pytest.raises(InsufficientFundsError):
            self.ledger.payments.delete_payment(self.payment.id)

        plan = self.plan_now()
        assert plan.schedule[0].paid_amount == Decimal('500')
        assert plan.remaining_balance == Decimal('800')
        # Applied, then restored by compensation
        assert plan.version == 4
        assert self.ledger.payments.get_payment(self.payment.id) is not None
        assert self.balance("emp") == 0

    def test_delete_unknown_payment(self):
        with pytest.raises(NotFoundError):
            self.ledger.payments.delete_payment("missing")


class TestFailuresOnCompensatingPath(PaymentTestBase):

    def test_receiver_credit_failure_restores_plan(self):
        self.storage.fail_next("increment", "users")

        with pytest.raises(OperationFailedError):
            self.ledger.payments.record_payment(self.plan.id, 700, recorded_by="emp")

        plan = self.plan_now()
        assert plan.remaining_balance == Decimal('1500')
        assert all(e.paid_amount == 0 for e in plan.schedule)
        assert self.storage.count("payments") == 0
        assert self.balance("emp") == 0

    def test_payment_save_failure_restores_plan(self):
        self.storage.fail_next("save", "payments")

        with pytest.raises(OperationFailedError):
            self.ledger.payments.record_payment(self.plan.id, 700, recorded_by="emp")

        assert self.plan_now().remaining_balance == Decimal('1500')
        assert self.balance("emp") == 0

    def test_recalculator_agrees_after_failures(self):
        self.storage.fail_next("increment", "users")
        with pytest.raises(OperationFailedError):
            self.ledger.payments.record_payment(self.plan.id, 700, recorded_by="emp")
        self.ledger.payments.record_payment(self.plan.id, 250, recorded_by="emp")

        assert self.ledger.checker.find_drifted_plans() == []
        assert self.ledger.checker.find_cash_drift() == []


class TestFailuresOnTransactionalPath(PaymentTestBase):

    @staticmethod
    def storage_factory():
        return FlakyStorage(supports_transactions=True)

    def test_failure_rolls_everything_back(self):
        self.storage.fail_next("increment", "users")

        with pytest.raises(OperationFailedError):
            self.ledger.payments.record_payment(self.plan.id, 700, recorded_by="emp")

        plan = self.plan_now()
        assert plan.version == 1
        assert plan.remaining_balance == Decimal('1500')
        assert self.storage.count("payments") == 0
        assert self.balance("emp") == 0

    def test_success_reports_transactional_strategy(self):
        result = self.ledger.payments.record_payment(self.plan.id, 700, recorded_by="emp")
        assert result.strategy == "transactional"
        assert self.balance("emp") == Decimal('700')


class TestPaymentPermissions:

    def setup_method(self):
        self.ledger = build_ledger(policy=RolePolicy())
        self.ledger.users.register_user("Emp", Role.EMPLOYEE, user_id="emp")
        self.plan = self.ledger.plans.create_plan("cust-1", 1500, 3, annual_rate=0, start_date=START,
                                                  interest_model="equal")
        self.employee = Actor("emp", Role.EMPLOYEE)
        self.admin = Actor("adm", Role.ADMIN)

    def test_employee_records_but_cannot_edit_or_delete(self):
        result = self.ledger.payments.record_payment(self.plan.id, 200, actor=self.employee)
        assert result.payment.recorded_by == "emp"

        with pytest.raises(PermissionDeniedError):
            self.ledger.payments.edit_payment(result.payment.id, amount=100, actor=self.employee)
        with pytest.raises(PermissionDeniedError):
            self.ledger.payments.delete_payment(result.payment.id, actor=self.employee)

        self.ledger.payments.delete_payment(result.payment.id, actor=self.admin)
        assert self.ledger.payments.get_payment(result.payment.id) is None
