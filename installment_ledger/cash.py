"""
Cash Transfers and Expenses

Staff hand collected cash up the hierarchy and pay business expenses out of
the cash they hold. Both start with a guarded decrement of the payer's
balance, so a transfer or expense can never overdraw a cash holder.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .audit import AuditEventType, AuditTrail
from .config import LedgerConfig, get_config
from .exceptions import InsufficientFundsError, NotFoundError, PermissionDeniedError, ValidationError
from .money import Numeric, quantize_money
from .mutation import BalanceMutationProtocol, MutationStep
from .policy import Actor, AllowAllPolicy, AuthorizationPolicy, Permission
from .storage import StorageInterface, StorageRecord
from .users import UserDirectory


class TransferStatus(Enum):
    COMPLETED = "completed"
    REJECTED = "rejected"


class ExpenseCategory(Enum):
    SALARY = "salary"
    RENT = "rent"
    UTILITIES = "utilities"
    INVENTORY_PURCHASE = "inventory_purchase"
    SUPPLIES = "supplies"
    MARKETING = "marketing"
    MAINTENANCE = "maintenance"
    LOGISTICS = "logistics"
    TAXES = "taxes"
    OTHER = "other"


@dataclass
class CashTransfer(StorageRecord):
    """Cash handed from one staff member to another"""
    from_user_id: str
    to_user_id: str
    amount: Decimal
    status: TransferStatus = TransferStatus.COMPLETED
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CashTransfer':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            from_user_id=data['from_user_id'],
            to_user_id=data['to_user_id'],
            amount=Decimal(str(data['amount'])),
            status=TransferStatus(data['status']),
            notes=data.get('notes'),
        )


@dataclass
class Expense(StorageRecord):
    """Business expense paid out of a staff member's cash"""
    user_id: str
    category: ExpenseCategory
    amount: Decimal
    expense_date: date
    description: Optional[str] = None
    related_user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['category'] = self.category.value
        result['expense_date'] = self.expense_date.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Expense':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            category=ExpenseCategory(data['category']),
            amount=Decimal(str(data['amount'])),
            expense_date=date.fromisoformat(data['expense_date']),
            description=data.get('description'),
            related_user_id=data.get('related_user_id'),
        )


def _positive_amount(amount: Numeric) -> Decimal:
    try:
        amount = quantize_money(amount)
    except (ArithmeticError, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {amount}")
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    return amount


def _record_steps(storage: StorageInterface, table: str, name: str, record: StorageRecord,
                  previous: Optional[StorageRecord] = None) -> MutationStep:
    """Save a record; compensation deletes it or restores the previous version"""
    def undo():
        if previous is None:
            storage.delete(table, record.id)
        else:
            storage.save(table, previous.id, previous.to_dict())

    def save():
        storage.save(table, record.id, record.to_dict())
        return record

    return MutationStep(name=name, apply=save, compensate=undo)


class CashManager:
    """
    Transfers between cash holders and expenses paid from cash

    Args:
        storage: Backend for transfers and expenses
        user_directory: Cash holders and their balance steps
        audit_trail: Receives an event per successful operation
        protocol: Balance mutation protocol; built from config when omitted
        policy: Authorization capability, also decides allowed transfer targets
    """

    def __init__(
        self,
        storage: StorageInterface,
        user_directory: UserDirectory,
        audit_trail: Optional[AuditTrail] = None,
        protocol: Optional[BalanceMutationProtocol] = None,
        policy: Optional[AuthorizationPolicy] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.user_directory = user_directory
        self.config = config or get_config()
        self.audit_trail = audit_trail if self.config.enable_audit_logging else None
        self.protocol = protocol or BalanceMutationProtocol(storage, self.config.transaction_mode)
        self.policy = policy or AllowAllPolicy()
        self.transfers_table = "cash_transfers"
        self.expenses_table = "expenses"

    # Transfers

    def transfer(
        self,
        from_user_id: str,
        to_user_id: str,
        amount: Numeric,
        notes: Optional[str] = None,
        actor: Optional[Actor] = None
    ) -> CashTransfer:
        """
        Move cash from one holder to another

        Order: guarded debit of the sender, credit of the recipient, transfer
        record. Insufficient funds fail the first step with nothing written.
        """
        amount = _positive_amount(amount)
        if from_user_id == to_user_id:
            raise ValidationError("Cannot transfer cash to yourself")

        sender = self.user_directory.require_user(from_user_id)
        recipient = self.user_directory.require_user(to_user_id)
        if not recipient.is_active:
            raise ValidationError("Recipient is not active")

        if actor is not None:
            self.policy.require(actor, Permission.TRANSFER_CASH)
            if not self.policy.can_transfer_to(Actor(sender.id, sender.role), recipient.role):
                raise PermissionDeniedError(
                    f"A {sender.role.value} cannot transfer cash to a {recipient.role.value}"
                )

        if sender.cash_balance < amount:
            raise InsufficientFundsError(sender.id, amount)

        now = datetime.now(timezone.utc)
        transfer = CashTransfer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=amount,
            notes=notes,
        )

        self.protocol.run(
            "cash.transfer",
            [
                self.user_directory.debit_step("sender", from_user_id, amount),
                self.user_directory.credit_step("recipient", to_user_id, amount),
                _record_steps(self.storage, self.transfers_table, "transfer", transfer),
            ],
            context={"transfer_id": transfer.id, "from_user_id": from_user_id,
                     "to_user_id": to_user_id, "amount": str(amount)},
            user_id=actor.user_id if actor else from_user_id
        )

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.CASH_TRANSFERRED,
                entity_type="cash_transfer",
                entity_id=transfer.id,
                metadata={"from_user_id": from_user_id, "to_user_id": to_user_id, "amount": amount},
                user_id=actor.user_id if actor else from_user_id
            )
        return transfer

    def get_transfer(self, transfer_id: str) -> Optional[CashTransfer]:
        data = self.storage.load(self.transfers_table, transfer_id)
        if data:
            return CashTransfer.from_dict(data)
        return None

    def get_user_transfers(self, user_id: str) -> List[CashTransfer]:
        records = (self.storage.find(self.transfers_table, {'from_user_id': user_id}) +
                   self.storage.find(self.transfers_table, {'to_user_id': user_id}))
        transfers = [CashTransfer.from_dict(data) for data in records]
        transfers.sort(key=lambda t: t.created_at, reverse=True)
        return transfers

    # Expenses

    def create_expense(
        self,
        user_id: str,
        category: ExpenseCategory,
        amount: Numeric,
        expense_date: Optional[date] = None,
        description: Optional[str] = None,
        related_user_id: Optional[str] = None,
        actor: Optional[Actor] = None
    ) -> Expense:
        """Pay an expense from the user's cash: guarded debit, then the record"""
        self.policy.require(actor, Permission.MANAGE_EXPENSES)
        amount = _positive_amount(amount)
        category = self._category(category)
        spender = self.user_directory.require_user(user_id)
        if related_user_id:
            self.user_directory.require_user(related_user_id)
        if spender.cash_balance < amount:
            raise InsufficientFundsError(user_id, amount)

        now = datetime.now(timezone.utc)
        expense = Expense(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            category=category,
            amount=amount,
            expense_date=expense_date or now.date(),
            description=description,
            related_user_id=related_user_id,
        )

        self.protocol.run(
            "expense.create",
            [
                self.user_directory.debit_step("spender", user_id, amount),
                _record_steps(self.storage, self.expenses_table, "expense", expense),
            ],
            context={"expense_id": expense.id, "user_id": user_id, "amount": str(amount)},
            user_id=actor.user_id if actor else user_id
        )

        self._audit(AuditEventType.EXPENSE_RECORDED, expense, actor,
                    {"category": category.value, "amount": amount})
        return expense

    def update_expense(
        self,
        expense_id: str,
        amount: Optional[Numeric] = None,
        category: Optional[ExpenseCategory] = None,
        expense_date: Optional[date] = None,
        description: Optional[str] = None,
        actor: Optional[Actor] = None
    ) -> Expense:
        """Refund the old amount and charge the new one as a single mutation

        The spender may spend the refunded cash, so only the net change has to
        be covered by the balance.
        """
        self.policy.require(actor, Permission.MANAGE_EXPENSES)
        original = self.require_expense(expense_id)
        new_amount = _positive_amount(amount) if amount is not None else original.amount

        updated = replace(
            original,
            updated_at=datetime.now(timezone.utc),
            amount=new_amount,
            category=self._category(category) if category is not None else original.category,
            expense_date=expense_date or original.expense_date,
            description=description if description is not None else original.description,
        )

        # Full reversal first, then the new amount is charged like a fresh expense
        steps = [
            self.user_directory.credit_step("refund", original.user_id, original.amount),
            self.user_directory.debit_step("spender", original.user_id, new_amount),
            _record_steps(self.storage, self.expenses_table, "expense", updated, previous=original),
        ]

        self.protocol.run(
            "expense.update", steps,
            context={"expense_id": expense_id, "user_id": original.user_id,
                     "previous_amount": str(original.amount), "amount": str(new_amount)},
            user_id=actor.user_id if actor else original.user_id
        )

        self._audit(AuditEventType.EXPENSE_UPDATED, updated, actor,
                    {"previous_amount": original.amount, "amount": new_amount})
        return updated

    def delete_expense(self, expense_id: str, actor: Optional[Actor] = None) -> Expense:
        """Refund the spender, then remove the record"""
        self.policy.require(actor, Permission.MANAGE_EXPENSES)
        expense = self.require_expense(expense_id)

        self.protocol.run(
            "expense.delete",
            [
                self.user_directory.credit_step("spender", expense.user_id, expense.amount),
                MutationStep(
                    name="expense",
                    apply=lambda: self.storage.delete(self.expenses_table, expense.id),
                    compensate=lambda: self.storage.save(self.expenses_table, expense.id, expense.to_dict()),
                ),
            ],
            context={"expense_id": expense_id, "user_id": expense.user_id, "amount": str(expense.amount)},
            user_id=actor.user_id if actor else expense.user_id
        )

        self._audit(AuditEventType.EXPENSE_DELETED, expense, actor, {"amount": expense.amount})
        return expense

    def get_expense(self, expense_id: str) -> Optional[Expense]:
        data = self.storage.load(self.expenses_table, expense_id)
        if data:
            return Expense.from_dict(data)
        return None

    def require_expense(self, expense_id: str) -> Expense:
        expense = self.get_expense(expense_id)
        if not expense:
            raise NotFoundError("expense", expense_id)
        return expense

    def get_user_expenses(self, user_id: str) -> List[Expense]:
        expenses = [Expense.from_dict(d) for d in self.storage.find(self.expenses_table, {'user_id': user_id})]
        expenses.sort(key=lambda e: e.expense_date, reverse=True)
        return expenses

    @staticmethod
    def _category(category) -> ExpenseCategory:
        if isinstance(category, ExpenseCategory):
            return category
        try:
            return ExpenseCategory(category)
        except ValueError:
            raise ValidationError(f"Invalid expense category: {category}")

    def _audit(self, event_type: AuditEventType, expense: Expense, actor: Optional[Actor],
               metadata: Dict[str, Any]) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="expense",
                entity_id=expense.id,
                metadata={"user_id": expense.user_id, **metadata},
                user_id=actor.user_id if actor else expense.user_id
            )
