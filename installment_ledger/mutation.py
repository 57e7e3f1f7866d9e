"""
Balance Mutation Protocol

Every write that moves money (payments, transfers, expenses, repairs) is
expressed as an ordered list of steps, each with an apply action and a
compensating action that exactly undoes it. The protocol checks the store
before each operation and picks a strategy:

- transactional: all applies run inside one store transaction; any failure
  rolls everything back.
- compensating: applies run one by one; when one fails, the compensations of
  the steps that already ran are executed in reverse order. A failing
  compensation is the one fatal case and is logged for manual reconciliation.

Callers never learn which strategy ran. Ledger errors (validation, insufficient
funds, version conflicts) propagate unchanged; anything else is reported as a
generic OperationFailedError with the cause chained.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import uuid

from .exceptions import LedgerError, OperationFailedError, ReconciliationRequiredError
from .logging_config import get_logger, log_action, log_reconciliation_required
from .storage import StorageInterface


logger = get_logger("installment_ledger.mutation")

TRANSACTIONAL = "transactional"
COMPENSATING = "compensating"


@dataclass
class MutationStep:
    """One write of a mutation and the action that undoes it"""
    name: str
    apply: Callable[[], Any]
    compensate: Optional[Callable[[], Any]] = None


@dataclass
class MutationOutcome:
    """Result of a successful mutation"""
    operation: str
    strategy: str
    results: Dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, step_name: str) -> Any:
        return self.results[step_name]


class _CompensationFailed(Exception):
    """Internal signal carrying the step whose compensation raised"""

    def __init__(self, failed_step: Optional[str], compensation_step: str, cause: BaseException):
        self.failed_step = failed_step
        self.compensation_step = compensation_step
        self.cause = cause
        super().__init__(f"compensation of {compensation_step} failed: {cause}")


class MutationStrategy(ABC):
    """Runs the steps of one mutation"""

    name: str = ""

    @abstractmethod
    def execute(self, operation: str, steps: List[MutationStep]) -> Dict[str, Any]:
        pass


class TransactionalStrategy(MutationStrategy):
    """All steps inside a single store transaction"""

    name = TRANSACTIONAL

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def execute(self, operation: str, steps: List[MutationStep]) -> Dict[str, Any]:
        results = {}
        with self.storage.atomic():
            for step in steps:
                results[step.name] = step.apply()
        return results


class CompensatingStrategy(MutationStrategy):
    """Ordered writes with explicit compensation on failure"""

    name = COMPENSATING

    def execute(self, operation: str, steps: List[MutationStep]) -> Dict[str, Any]:
        results = {}
        completed: List[MutationStep] = []
        for step in steps:
            try:
                results[step.name] = step.apply()
            except Exception:
                self._compensate(operation, step.name, completed)
                raise
            completed.append(step)
        return results

    def _compensate(self, operation: str, failed_step: str, completed: List[MutationStep]) -> None:
        for step in reversed(completed):
            if step.compensate is None:
                continue
            try:
                step.compensate()
            except Exception as exc:
                raise _CompensationFailed(failed_step, step.name, exc) from exc
            log_action(
                logger, "info", f"Compensated step {step.name} of {operation}",
                action="compensate", resource=operation,
                extra={"step": step.name, "failed_step": failed_step}
            )


class BalanceMutationProtocol:
    """
    Entry point for every balance-affecting write.

    Args:
        storage: Backend the steps write to; checked before each operation
        transaction_mode: "auto" checks the store, "transactional" and
            "compensating" force a strategy
        issues_table: Table where failed compensations are recorded
    """

    def __init__(
        self,
        storage: StorageInterface,
        transaction_mode: str = "auto",
        issues_table: str = "reconciliation_issues"
    ):
        if transaction_mode not in ("auto", TRANSACTIONAL, COMPENSATING):
            raise ValueError(f"Unknown transaction mode: {transaction_mode}")
        self.storage = storage
        self.transaction_mode = transaction_mode
        self.issues_table = issues_table

    def select_strategy(self) -> MutationStrategy:
        """Resolve the strategy for one operation; never cached"""
        if self.transaction_mode == COMPENSATING:
            return CompensatingStrategy()
        if self.transaction_mode == TRANSACTIONAL or self.storage.supports_atomic_multi_write():
            return TransactionalStrategy(self.storage)
        return CompensatingStrategy()

    def run(
        self,
        operation: str,
        steps: List[MutationStep],
        context: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> MutationOutcome:
        """
        Execute a mutation.

        Args:
            operation: Name used in logs, e.g. "payment.record"
            steps: Ordered steps; step names must be unique
            context: Identifiers logged with failures
            user_id: Actor for log records

        Returns:
            MutationOutcome with each step's apply result keyed by step name

        Raises:
            LedgerError subclasses unchanged, OperationFailedError for any other
            failure, ReconciliationRequiredError when compensation failed
        """
        context = context or {}
        strategy_name = None
        try:
            strategy = self.select_strategy()
            strategy_name = strategy.name
            results = strategy.execute(operation, steps)
        except _CompensationFailed as exc:
            error = ReconciliationRequiredError(
                operation, exc.failed_step, exc.compensation_step, context
            )
            log_reconciliation_required(
                logger, operation, exc.failed_step, exc.compensation_step,
                context, exc_info=exc.cause
            )
            self._record_issue(operation, exc, context)
            raise error from exc.cause
        except LedgerError as exc:
            log_action(
                logger, "warning", f"{operation} rejected: {exc.message}",
                user_id=user_id, action=operation,
                extra={"strategy": strategy_name, "error": type(exc).__name__, **context}
            )
            raise
        except Exception as exc:
            log_action(
                logger, "error", f"{operation} failed",
                user_id=user_id, action=operation,
                extra={"strategy": strategy_name, **context}, exc_info=exc
            )
            raise OperationFailedError(operation, context) from exc

        log_action(
            logger, "info", f"{operation} completed",
            user_id=user_id, action=operation,
            extra={"strategy": strategy_name, **context}
        )
        return MutationOutcome(operation=operation, strategy=strategy_name, results=results)

    def _record_issue(self, operation: str, failure: _CompensationFailed, context: Dict[str, Any]) -> None:
        """Best-effort record for the repair tooling; the CRITICAL log is authoritative"""
        issue_id = str(uuid.uuid4())
        try:
            self.storage.save(self.issues_table, issue_id, {
                "id": issue_id,
                "created_at": datetime.now(timezone.utc).isoformat(),
                "operation": operation,
                "failed_step": failure.failed_step,
                "compensation_step": failure.compensation_step,
                "error": repr(failure.cause),
                "context": context,
                "resolved": False,
            })
        except Exception:
            logger.exception("Could not record reconciliation issue for %s", operation)

    def open_issues(self) -> List[Dict[str, Any]]:
        """Failed compensations not yet marked resolved"""
        return [
            issue for issue in self.storage.load_all(self.issues_table)
            if not issue.get("resolved")
        ]
