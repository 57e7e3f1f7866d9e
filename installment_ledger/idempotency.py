"""
Idempotency Guard

Absorbs client-side double submits of a payment (double click, retry on
timeout). Before a payment is created, the most recent payment with the same
plan, amount and recorder is looked up; if it was created within the window,
that record is returned instead of creating a second one.

This is not a general de-duplication mechanism: two identical payments made
deliberately more than the window apart are both recorded.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .storage import StorageInterface


DUPLICATE_WARNING = "Duplicate suppressed (recent similar payment)"


@dataclass
class IdempotencyResult:
    """Result of an idempotency check"""
    is_duplicate: bool
    previous_record: Optional[Dict[str, Any]] = None
    warning: Optional[str] = None


class IdempotencyGuard:
    """
    Recent-duplicate lookup over the payments table

    Args:
        storage: Backend holding payments
        window_seconds: How recent a matching payment must be to count as a duplicate
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        storage: StorageInterface,
        window_seconds: float = 5.0,
        clock: Optional[Callable[[], datetime]] = None,
        payments_table: str = "payments"
    ):
        self.storage = storage
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.payments_table = payments_table

    def check(self, plan_id: str, amount: Decimal, recorded_by: Optional[str]) -> IdempotencyResult:
        candidates = self.storage.find(self.payments_table, {
            'plan_id': plan_id,
            'amount': str(amount),
            'recorded_by': recorded_by,
            'status': 'recorded',
        })
        if not candidates:
            return IdempotencyResult(is_duplicate=False)

        latest = max(candidates, key=lambda record: record['created_at'])
        created_at = datetime.fromisoformat(latest['created_at'])
        if self.clock() - created_at < self.window:
            return IdempotencyResult(
                is_duplicate=True,
                previous_record=latest,
                warning=DUPLICATE_WARNING
            )
        return IdempotencyResult(is_duplicate=False)
