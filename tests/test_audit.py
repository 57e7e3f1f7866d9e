"""
Test suite for the hash-chained audit trail
"""

from datetime import date
from decimal import Decimal

from installment_ledger.audit import AuditEvent, AuditEventType, AuditTrail
from installment_ledger.policy import Role
from installment_ledger.storage import InMemoryStorage

from ledger_helpers import build_ledger


class TestAuditTrail:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def test_empty_trail_is_valid(self):
        result = self.audit.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 0

    def test_events_are_chained(self):
        first = self.audit.log_event(AuditEventType.PLAN_CREATED, "plan", "p1", {"principal": Decimal('1500')})
        second = self.audit.log_event(AuditEventType.PAYMENT_RECORDED, "payment", "x1", user_id="emp")

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert first.metadata == {"principal": "1500"}
        assert self.audit.count_events() == 2
        assert self.audit.verify_integrity()['valid']

    def test_chain_resumes_from_storage(self):
        first = self.audit.log_event(AuditEventType.PLAN_CREATED, "plan", "p1")

        reopened = AuditTrail(self.storage)
        second = reopened.log_event(AuditEventType.PLAN_CREATED, "plan", "p2")

        assert second.previous_hash == first.current_hash

    def test_tampered_metadata_detected(self):
        event = self.audit.log_event(AuditEventType.CASH_TRANSFERRED, "cash_transfer", "t1", {"amount": "100"})
        self.audit.log_event(AuditEventType.CASH_TRANSFERRED, "cash_transfer", "t2", {"amount": "50"})

        data = self.storage.load("audit_events", event.id)
        data['metadata'] = {"amount": "1"}
        self.storage.save("audit_events", event.id, data)

        result = self.audit.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'] == [{'event_id': event.id, 'position': 0}]

    def test_deleted_event_breaks_chain(self):
        self.audit.log_event(AuditEventType.PLAN_CREATED, "plan", "p1")
        middle = self.audit.log_event(AuditEventType.PLAN_CREATED, "plan", "p2")
        last = self.audit.log_event(AuditEventType.PLAN_CREATED, "plan", "p3")

        self.storage.delete("audit_events", middle.id)

        result = self.audit.verify_integrity()
        assert not result['valid']
        assert result['chain_breaks'] == [{'event_id': last.id, 'position': 1}]

    def test_event_roundtrip(self):
        event = self.audit.log_event(AuditEventType.EXPENSE_RECORDED, "expense", "e1", {"day": date(2024, 3, 1)})
        restored = AuditEvent.from_dict(self.storage.load("audit_events", event.id))
        assert restored == event
        assert restored.verify_hash()


class TestLedgerAuditing:

    def test_ledger_operations_leave_valid_chain(self):
        ledger = build_ledger()
        ledger.users.register_user("Emp", Role.EMPLOYEE, opening_balance=100, user_id="emp")
        ledger.users.register_user("Mgr", Role.MANAGER, user_id="mgr")
        plan = ledger.plans.create_plan("cust-1", 1500, 3, annual_rate=0, start_date=date(2024, 1, 1),
                                        interest_model="equal")
        payment = ledger.payments.record_payment(plan.id, 500, recorded_by="emp").payment
        ledger.payments.edit_payment(payment.id, amount=400)
        ledger.cash.transfer("emp", "mgr", 300)

        assert ledger.audit.verify_integrity()['valid']

        events = ledger.audit.get_events_for_entity("payment", payment.id)
        assert [e.event_type for e in events] == [
            AuditEventType.PAYMENT_RECORDED, AuditEventType.PAYMENT_EDITED
        ]
        assert events[0].user_id == "emp"
