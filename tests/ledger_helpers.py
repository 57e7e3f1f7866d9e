"""
Shared builders for the ledger tests
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from installment_ledger.audit import AuditTrail
from installment_ledger.cash import CashManager
from installment_ledger.config import LedgerConfig
from installment_ledger.mutation import BalanceMutationProtocol
from installment_ledger.payment_requests import PaymentRequestManager
from installment_ledger.payments import PaymentManager
from installment_ledger.plans import PlanManager
from installment_ledger.reconciliation import LedgerConsistencyChecker
from installment_ledger.storage import InMemoryStorage
from installment_ledger.users import UserDirectory


class InjectedFailure(RuntimeError):
    pass


class FlakyStorage(InMemoryStorage):
    """
    InMemoryStorage that raises on selected writes.

    fail_next("increment", "users", skip=1) lets the first matching call
    through and fails the second one.
    """

    def __init__(self, supports_transactions: bool = False):
        super().__init__(supports_transactions)
        self._rules = []

    def fail_next(self, method: str, table: str, times: int = 1, skip: int = 0) -> None:
        self._rules.append({"method": method, "table": table, "times": times, "skip": skip})

    def _check(self, method: str, table: str) -> None:
        for rule in self._rules:
            if rule["method"] != method or rule["table"] != table or rule["times"] <= 0:
                continue
            if rule["skip"] > 0:
                rule["skip"] -= 1
                return
            rule["times"] -= 1
            raise InjectedFailure(f"injected {method} failure on {table}")

    def save(self, table, record_id, data):
        self._check("save", table)
        super().save(table, record_id, data)

    def delete(self, table, record_id):
        self._check("delete", table)
        return super().delete(table, record_id)

    def increment(self, table, record_id, field, delta, guard_gte=None):
        self._check("increment", table)
        return super().increment(table, record_id, field, delta, guard_gte)

    def save_if_version(self, table, record_id, data, expected_version):
        self._check("save_if_version", table)
        return super().save_if_version(table, record_id, data, expected_version)


class FakeClock:
    """Settable UTC clock"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def build_ledger(storage=None, policy=None, clock=None, transaction_mode="auto"):
    """Wire every manager over one storage backend"""
    storage = storage if storage is not None else InMemoryStorage()
    clock = clock or FakeClock()
    config = LedgerConfig(database_url="memory://", transaction_mode=transaction_mode)
    audit = AuditTrail(storage)
    protocol = BalanceMutationProtocol(storage, transaction_mode)
    users = UserDirectory(storage, audit)
    plans = PlanManager(storage, audit, protocol, policy, config)
    payments = PaymentManager(storage, plans, users, audit, protocol, policy, config, clock)
    requests = PaymentRequestManager(storage, payments, audit, policy, config)
    cash = CashManager(storage, users, audit, protocol, policy, config)
    checker = LedgerConsistencyChecker(storage, plans, users, protocol, audit, policy)
    return SimpleNamespace(
        storage=storage, clock=clock, config=config, audit=audit, protocol=protocol,
        users=users, plans=plans, payments=payments, requests=requests, cash=cash,
        checker=checker,
    )
