"""
Installment Ledger

Installment-sales ledger and settlement engine: repayment schedules,
payment allocation, staff cash custody, and balance mutations that stay
consistent with or without multi-document transactions.
"""

from .allocation import allocate_payment, allocate_to_month
from .reconciliation import calculate_remaining_balance
from .schedule import generate_schedule

__version__ = "1.0.0"

__all__ = [
    "allocate_payment",
    "allocate_to_month",
    "calculate_remaining_balance",
    "generate_schedule",
]
