"""
Maintenance commands

    python -m installment_ledger repair-balances [--apply] [--database-url URL]
    python -m installment_ledger reconcile-cash [--apply] [--database-url URL]

Both commands are dry runs unless --apply is given.
"""

import argparse
import sys
from typing import List, Optional

from .audit import AuditTrail
from .config import get_config
from .logging_config import setup_logging
from .mutation import BalanceMutationProtocol
from .plans import PlanManager
from .reconciliation import LedgerConsistencyChecker, RepairReport
from .storage import create_storage
from .users import UserDirectory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="installment_ledger",
        description="Installment ledger maintenance"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    repair = subparsers.add_parser("repair-balances", help="Recompute plan balances from their schedules")
    reconcile = subparsers.add_parser("reconcile-cash", help="Rebuild staff cash balances from the ledger")
    for sub in (repair, reconcile):
        sub.add_argument("--apply", action="store_true", help="Write corrections (default: report only)")
        sub.add_argument("--database-url", help="Override LEDGER_DATABASE_URL")
    return parser


def _print_report(report: RepairReport, label: str) -> None:
    for drift in report.drifted:
        if hasattr(drift, "plan_id"):
            print(f"plan {drift.plan_id}: cached {drift.cached} computed {drift.computed}")
        else:
            print(f"user {drift.user_id} ({drift.name}): stored {drift.stored} expected {drift.expected}")
    for record_id, message in report.errors:
        print(f"error {record_id}: {message}")

    mode = "applied" if report.applied else "dry run"
    print(f"{label}: {report.checked} checked, {len(report.drifted)} drifted, "
          f"{report.fixed} fixed, {len(report.errors)} errors ({mode})")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)

    storage = create_storage(args.database_url or config.database_url, config.mongo_database)
    try:
        audit_trail = AuditTrail(storage) if config.enable_audit_logging else None
        protocol = BalanceMutationProtocol(storage, config.transaction_mode)
        checker = LedgerConsistencyChecker(
            storage,
            PlanManager(storage, audit_trail, protocol, config=config),
            UserDirectory(storage, audit_trail),
            protocol=protocol,
            audit_trail=audit_trail,
            tolerance=config.rounding_epsilon
        )

        if args.command == "repair-balances":
            report = checker.repair_all_plans(apply=args.apply)
            _print_report(report, "Plans")
        else:
            report = checker.reconcile_cash_balances(apply=args.apply)
            _print_report(report, "Cash holders")
    finally:
        storage.close()

    return 1 if report.errors else 0


if __name__ == "__main__":
    sys.exit(main())
