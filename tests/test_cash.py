"""
Test suite for cash transfers and expenses

Guarded debits, role based transfer targets, compensation of a partially
applied transfer, and expense create/update/delete.
"""

import pytest
from datetime import date
from decimal import Decimal

from installment_ledger.cash import CashTransfer, ExpenseCategory, TransferStatus
from installment_ledger.exceptions import (
    InsufficientFundsError, NotFoundError, OperationFailedError, PermissionDeniedError,
    ReconciliationRequiredError, ValidationError
)
from installment_ledger.policy import Actor, Role, RolePolicy
from installment_ledger.storage import InMemoryStorage

from ledger_helpers import FlakyStorage, build_ledger


class CashTestBase:

    storage_factory = FlakyStorage
    policy = None

    def setup_method(self):
        self.storage = self.storage_factory()
        self.ledger = build_ledger(storage=self.storage, policy=self.policy)
        users = self.ledger.users
        users.register_user("Emp", Role.EMPLOYEE, opening_balance=1000, user_id="emp")
        users.register_user("Mgr", Role.MANAGER, user_id="mgr")
        users.register_user("Adm", Role.ADMIN, user_id="adm")
        self.cash = self.ledger.cash

    def balance(self, user_id):
        return self.ledger.users.get_balance(user_id)


class TestTransfers(CashTestBase):

    def test_transfer_moves_cash(self):
        transfer = self.cash.transfer("emp", "mgr", Decimal('400'), notes="end of day")

        assert self.balance("emp") == Decimal('600')
        assert self.balance("mgr") == Decimal('400')
        stored = self.cash.get_transfer(transfer.id)
        assert stored == transfer
        assert stored.status == TransferStatus.COMPLETED
        assert self.cash.get_user_transfers("mgr") == [transfer]

    def test_whole_balance_can_be_transferred(self):
        self.cash.transfer("emp", "mgr", 1000)
        assert self.balance("emp") == 0

    def test_insufficient_funds_rejected_before_any_write(self):
        self.ledger.users.register_user("Low", Role.EMPLOYEE, opening_balance=50, user_id="low")

        with pytest.raises(InsufficientFundsError, match="Insufficient cash balance"):
            self.cash.transfer("low", "mgr", 100)

        assert self.balance("low") == Decimal('50')
        assert self.balance("mgr") == 0
        assert self.storage.count("cash_transfers") == 0

    def test_guarded_debit_refuses_even_without_precheck(self):
        """Balance spent between the read and the write"""
        step = self.ledger.users.debit_step("sender", "emp", Decimal('1000.01'))
        with pytest.raises(InsufficientFundsError):
            step.apply()
        assert self.balance("emp") == Decimal('1000')

    @pytest.mark.parametrize("amount", [0, -10, "x"])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError):
            self.cash.transfer("emp", "mgr", amount)

    def test_self_transfer_rejected(self):
        with pytest.raises(ValidationError, match="yourself"):
            self.cash.transfer("emp", "emp", 10)

    def test_inactive_recipient_rejected(self):
        self.ledger.users.set_active("mgr", False)
        with pytest.raises(ValidationError, match="not active"):
            self.cash.transfer("emp", "mgr", 10)

    def test_unknown_user(self):
        with pytest.raises(NotFoundError):
            self.cash.transfer("emp", "ghost", 10)

    def test_recipient_credit_failure_restores_sender(self):
        # First users increment is the sender debit, the second the recipient credit
        self.storage.fail_next("increment", "users", skip=1)

        with pytest.raises(OperationFailedError):
            self.cash.transfer("emp", "mgr", 400)

        assert self.balance("emp") == Decimal('1000')
        assert self.balance("mgr") == 0
        assert self.storage.count("cash_transfers") == 0

    def test_record_failure_restores_both_balances(self):
        self.storage.fail_next("save", "cash_transfers")

        with pytest.raises(OperationFailedError):
            self.cash.transfer("emp", "mgr", 400)

        assert self.balance("emp") == Decimal('1000')
        assert self.balance("mgr") == 0

    def test_failed_compensation_is_fatal(self):
        # Recipient credit fails, then crediting the sender back fails too
        self.storage.fail_next("increment", "users", skip=1, times=2)

        with pytest.raises(ReconciliationRequiredError):
            self.cash.transfer("emp", "mgr", 400)

        assert self.balance("emp") == Decimal('600')
        issues = self.ledger.protocol.open_issues()
        assert len(issues) == 1
        assert issues[0]["operation"] == "cash.transfer"
        assert issues[0]["failed_step"] == "recipient"
        assert issues[0]["compensation_step"] == "sender"

    def test_transfer_record_roundtrip(self):
        transfer = self.cash.transfer("emp", "adm", 1)
        assert CashTransfer.from_dict(transfer.to_dict()) == transfer


class TestTransfersTransactional(CashTestBase):

    @staticmethod
    def storage_factory():
        return FlakyStorage(supports_transactions=True)

    def test_recipient_credit_failure_rolls_back(self):
        self.storage.fail_next("increment", "users", skip=1)

        with pytest.raises(OperationFailedError):
            self.cash.transfer("emp", "mgr", 400)

        assert self.balance("emp") == Decimal('1000')
        assert self.balance("mgr") == 0
        assert self.ledger.protocol.open_issues() == []


class TestTransferPolicy(CashTestBase):

    policy = RolePolicy()

    def test_cash_moves_up_the_hierarchy(self):
        self.cash.transfer("emp", "mgr", 100, actor=Actor("emp", Role.EMPLOYEE))
        self.cash.transfer("mgr", "adm", 50, actor=Actor("mgr", Role.MANAGER))
        self.cash.transfer("adm", "emp", 10, actor=Actor("adm", Role.ADMIN))

        assert self.balance("emp") == Decimal('910')
        assert self.balance("mgr") == Decimal('50')
        assert self.balance("adm") == Decimal('40')

    def test_manager_cannot_send_to_employee(self):
        self.cash.transfer("emp", "mgr", 100)
        with pytest.raises(PermissionDeniedError, match="cannot transfer cash"):
            self.cash.transfer("mgr", "emp", 50, actor=Actor("mgr", Role.MANAGER))
        assert self.balance("mgr") == Decimal('100')


class TestExpenses(CashTestBase):

    def test_create_expense(self):
        expense = self.cash.create_expense(
            "emp", ExpenseCategory.SUPPLIES, '250', expense_date=date(2024, 3, 1), description="Boxes"
        )

        assert self.balance("emp") == Decimal('750')
        assert self.cash.get_expense(expense.id) == expense
        assert self.cash.get_user_expenses("emp") == [expense]

    def test_category_by_value(self):
        expense = self.cash.create_expense("emp", "rent", 100)
        assert expense.category == ExpenseCategory.RENT

    def test_unknown_category(self):
        with pytest.raises(ValidationError, match="Invalid expense category"):
            self.cash.create_expense("emp", "parties", 100)
        assert self.balance("emp") == Decimal('1000')

    def test_insufficient_funds(self):
        with pytest.raises(InsufficientFundsError):
            self.cash.create_expense("mgr", ExpenseCategory.TAXES, 1)
        assert self.storage.count("expenses") == 0

    def test_update_amount(self):
        expense = self.cash.create_expense("emp", ExpenseCategory.RENT, 250)

        updated = self.cash.update_expense(expense.id, amount=400, description="Rent March")

        assert updated.amount == Decimal('400')
        assert self.balance("emp") == Decimal('600')
        stored = self.cash.get_expense(expense.id)
        assert stored.amount == Decimal('400')
        assert stored.description == "Rent March"

    def test_update_uses_refunded_cash(self):
        expense = self.cash.create_expense("emp", ExpenseCategory.RENT, 1000)
        self.cash.update_expense(expense.id, amount=900)
        assert self.balance("emp") == Decimal('100')

    def test_update_beyond_balance_changes_nothing(self):
        expense = self.cash.create_expense("emp", ExpenseCategory.RENT, 250)

        with pytest.raises(InsufficientFundsError):
            self.cash.update_expense(expense.id, amount=1100)

        assert self.balance("emp") == Decimal('750')
        assert self.cash.get_expense(expense.id).amount == Decimal('250')

    def test_delete_refunds(self):
        expense = self.cash.create_expense("emp", ExpenseCategory.LOGISTICS, 250)

        self.cash.delete_expense(expense.id)

        assert self.balance("emp") == Decimal('1000')
        assert self.cash.get_expense(expense.id) is None

    def test_delete_record_failure_takes_refund_back(self):
        expense = self.cash.create_expense("emp", ExpenseCategory.LOGISTICS, 250)
        self.storage.fail_next("delete", "expenses")

        with pytest.raises(OperationFailedError):
            self.cash.delete_expense(expense.id)

        assert self.balance("emp") == Decimal('750')
        assert self.cash.get_expense(expense.id) is not None

    def test_unknown_expense(self):
        with pytest.raises(NotFoundError):
            self.cash.delete_expense("missing")


class TestExpensePolicy(CashTestBase):

    policy = RolePolicy(permissions={Role.EMPLOYEE: set()})

    def test_policy_can_forbid_expenses(self):
        with pytest.raises(PermissionDeniedError):
            self.cash.create_expense("emp", ExpenseCategory.OTHER, 10, actor=Actor("emp", Role.EMPLOYEE))


class CreditDuringUpdateStorage(InMemoryStorage):
    """Lands a credit on the user just before a field update is written"""

    def update_fields(self, table, record_id, fields):
        self.increment(table, record_id, 'cash_balance', Decimal('500'))
        return super().update_fields(table, record_id, fields)


class TestUserStatus:

    def setup_method(self):
        self.ledger = build_ledger(storage=CreditDuringUpdateStorage())
        self.ledger.users.register_user("Mgr", Role.MANAGER, opening_balance=100, user_id="mgr")

    def test_deactivation_keeps_concurrent_credit(self):
        user = self.ledger.users.set_active("mgr", False)

        assert not user.is_active
        assert user.cash_balance == Decimal('600')
        assert self.ledger.users.get_balance("mgr") == Decimal('600')
        assert not self.ledger.users.require_user("mgr").is_active

    def test_unknown_user(self):
        with pytest.raises(NotFoundError):
            self.ledger.users.set_active("ghost", False)
