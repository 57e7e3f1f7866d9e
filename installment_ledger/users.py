"""
Cash Holders

Staff members who collect and hand over cash. User management lives outside
the ledger; this module keeps just enough of a user record to hold the cash
balance and provides the guarded debit / credit steps every money movement
is built from.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import uuid

from .audit import AuditEventType, AuditTrail
from .exceptions import InsufficientFundsError, NotFoundError, ValidationError
from .mutation import MutationStep
from .money import ZERO, Numeric, quantize_money
from .policy import Role
from .storage import StorageInterface, StorageRecord


@dataclass
class CashUser(StorageRecord):
    """A staff member holding cash"""
    name: str
    role: Role
    cash_balance: Decimal = ZERO
    opening_balance: Decimal = ZERO
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['role'] = self.role.value
        # Kept numeric so the store can increment it in place
        result['cash_balance'] = self.cash_balance
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CashUser':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            role=Role(data['role']),
            cash_balance=Decimal(str(data.get('cash_balance', '0'))),
            opening_balance=Decimal(str(data.get('opening_balance', '0'))),
            is_active=data.get('is_active', True),
        )


class UserDirectory:
    """Lookup of cash holders and the balance steps used by the protocol"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.users_table = "users"

    def register_user(
        self,
        name: str,
        role: Role,
        opening_balance: Numeric = ZERO,
        user_id: Optional[str] = None
    ) -> CashUser:
        """Create a cash holder, optionally with cash already in hand"""
        opening_balance = quantize_money(opening_balance)
        if opening_balance < 0:
            raise ValidationError("Opening balance cannot be negative")

        now = datetime.now(timezone.utc)
        user = CashUser(
            id=user_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            role=role if isinstance(role, Role) else Role(role),
            cash_balance=opening_balance,
            opening_balance=opening_balance,
        )
        self.storage.save(self.users_table, user.id, user.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.CASH_USER_REGISTERED,
                entity_type="user",
                entity_id=user.id,
                metadata={"role": user.role.value, "opening_balance": opening_balance}
            )
        return user

    def get_user(self, user_id: str) -> Optional[CashUser]:
        data = self.storage.load(self.users_table, user_id)
        if data:
            return CashUser.from_dict(data)
        return None

    def require_user(self, user_id: str) -> CashUser:
        user = self.get_user(user_id)
        if not user:
            raise NotFoundError("user", user_id)
        return user

    def list_users(self) -> List[CashUser]:
        return [CashUser.from_dict(data) for data in self.storage.load_all(self.users_table)]

    def set_active(self, user_id: str, is_active: bool) -> CashUser:
        # Field-level write; the cash balance belongs to the mutation protocol
        updated = self.storage.update_fields(self.users_table, user_id, {
            'is_active': is_active,
            'updated_at': datetime.now(timezone.utc).isoformat(),
        })
        if updated is None:
            raise NotFoundError("user", user_id)
        return CashUser.from_dict(updated)

    def get_balance(self, user_id: str) -> Decimal:
        return self.require_user(user_id).cash_balance

    # Balance primitives. Only the mutation protocol should call these.

    def _debit(self, user_id: str, amount: Decimal) -> CashUser:
        updated = self.storage.increment(
            self.users_table, user_id, 'cash_balance', -amount, guard_gte=amount
        )
        if updated is None:
            if not self.storage.exists(self.users_table, user_id):
                raise NotFoundError("user", user_id)
            raise InsufficientFundsError(user_id, amount)
        return CashUser.from_dict(updated)

    def _credit(self, user_id: str, amount: Decimal) -> CashUser:
        updated = self.storage.increment(self.users_table, user_id, 'cash_balance', amount)
        if updated is None:
            raise NotFoundError("user", user_id)
        return CashUser.from_dict(updated)

    def debit_step(self, name: str, user_id: str, amount: Decimal) -> MutationStep:
        """Guarded decrement; compensated by crediting the same amount back"""
        return MutationStep(
            name=name,
            apply=lambda: self._debit(user_id, amount),
            compensate=lambda: self._credit(user_id, amount),
        )

    def credit_step(self, name: str, user_id: str, amount: Decimal) -> MutationStep:
        """Increment; compensated by a guarded decrement so the balance never goes negative"""
        return MutationStep(
            name=name,
            apply=lambda: self._credit(user_id, amount),
            compensate=lambda: self._debit(user_id, amount),
        )

    def adjust_step(self, name: str, user_id: str, delta: Decimal) -> MutationStep:
        """Credit for a positive delta, guarded debit for a negative one"""
        if delta >= 0:
            return self.credit_step(name, user_id, delta)
        return self.debit_step(name, user_id, -delta)
