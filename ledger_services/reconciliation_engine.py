"""
ReconciliationEngine -- single entry point for checked ledger edits.

Responsibility:
    Wires the pure engines (checker, resolver, projector) to one session
    using the active configuration, and exposes the protocol operations:
    check, options, resolve, preview, commit and the task cascade.
    Also hands out the ``RecordService`` for creating new records.

Architecture position:
    Services -- orchestration layer.  The only place that reads
    ``ledger_config`` and translates it into engine arguments.

Invariants enforced:
    - Transaction boundaries: with ``auto_commit`` the session is committed
      after a successful commit and rolled back on any failure, so a failed
      cascade leaves no trace.
    - Preview and commit share one ``CascadeProjector``.

Failure modes:
    - Every kernel exception propagates unchanged after rollback.
"""

from __future__ import annotations

import time
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from ledger_config import LedgerConfig, get_active_config
from ledger_engines.cascade import CascadeProjector
from ledger_engines.invariants import CheckResult, Conflict, InvariantChecker
from ledger_engines.resolution import (
    ResolutionPlan,
    ResolutionRequest,
    Strategy,
    StrategyOption,
    StrategyResolver,
    StrategyText,
)
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import RecordType
from ledger_kernel.domain.mutations import Mutation, MutationType
from ledger_kernel.exceptions import InvalidMutationError, NothingToResolveError
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.record_service import RecordService
from ledger_services.cascade_executor import CascadeExecutor, CommitResult
from ledger_services.preview_service import PreviewResult, PreviewService

logger = get_logger("services.reconciliation_engine")

_TASK_MUTATIONS = {
    "amount": MutationType.TASK_AMOUNT,
    "prepaid_amount": MutationType.TASK_PREPAID,
    "expense_amount": MutationType.TASK_EXPENSE,
}


def strategy_texts(config: LedgerConfig) -> dict[Strategy, StrategyText]:
    return {
        Strategy(key): StrategyText(text.label, text.description, text.recommended)
        for key, text in config.strategies.items()
    }


class ReconciliationEngine:
    """
    Checked mutation protocol over one session.

    Usage:
        engine = ReconciliationEngine(session, actor_id, auto_commit=True)
        preview = engine.preview(mutation, request)
        if not preview.blocked:
            engine.commit(mutation, request)
    """

    def __init__(
        self,
        session: Session,
        actor_id: UUID,
        clock: Clock | None = None,
        config: LedgerConfig | None = None,
        auto_commit: bool = False,
    ):
        self._session = session
        self._actor_id = actor_id
        self._clock = clock or SystemClock()
        self._config = config or get_active_config()
        self._auto_commit = auto_commit

        tolerance = self._config.amount_tolerance
        self._checker = InvariantChecker(tolerance)
        self._resolver = StrategyResolver(
            tolerance=tolerance,
            latest_fallback=self._config.auto_reduce_latest_fallback,
            texts=strategy_texts(self._config),
            conversion_payment_method=self._config.conversion_payment_method,
        )
        self._projector = CascadeProjector()
        self._records = RecordService(
            session,
            actor_id,
            self._clock,
            default_commission_rate=self._config.default_commission_rate,
        )
        self._selector = LedgerSelector(session)
        self._preview = PreviewService(
            session, self._checker, self._resolver, self._projector, self._clock,
        )
        self._executor = CascadeExecutor(
            session,
            actor_id,
            self._checker,
            self._resolver,
            self._projector,
            self._records,
            clock=self._clock,
            tolerance=tolerance,
        )

    @property
    def records(self) -> RecordService:
        return self._records

    @property
    def config(self) -> LedgerConfig:
        return self._config

    # -----------------------------------------------------------------
    # Read-only protocol steps
    # -----------------------------------------------------------------

    def check(self, mutation: Mutation) -> CheckResult:
        client_id = self._selector.client_id_for(mutation.target_type, mutation.target_id)
        return self._checker.check(
            mutation=mutation, snapshot=self._selector.client_snapshot(client_id)
        )

    def options(self, conflict: Conflict) -> tuple[StrategyOption, ...]:
        return self._resolver.options(conflict)

    def resolve(self, mutation: Mutation, request: ResolutionRequest) -> ResolutionPlan:
        """Compile a plan for the mutation's current conflict."""
        conflict = self.check(mutation).pending_conflict
        if conflict is None:
            raise NothingToResolveError(mutation.target_type.value, str(mutation.target_id))
        return self._resolver.compile(conflict=conflict, request=request)

    def preview(
        self,
        mutation: Mutation,
        request: ResolutionRequest | None = None,
    ) -> PreviewResult:
        return self._preview.preview(mutation, request)

    # -----------------------------------------------------------------
    # Commit
    # -----------------------------------------------------------------

    def commit(
        self,
        mutation: Mutation,
        request: ResolutionRequest | None = None,
    ) -> CommitResult:
        """
        Apply the mutation and its cascade.

        Postconditions:
            - On success the session is committed (when auto_commit=True).
            - On failure the session is rolled back (when auto_commit=True)
              and the exception is re-raised.
        """
        with LogContext.bind(
            correlation_id=str(uuid4()),
            actor_id=str(self._actor_id),
            mutation_type=mutation.mutation_type.value,
            target_id=str(mutation.target_id),
        ):
            logger.info(
                "mutation_commit_started",
                extra={
                    "proposed_amount": (
                        str(mutation.proposed_amount)
                        if mutation.proposed_amount is not None else None
                    ),
                    "expected_version": mutation.expected_version,
                    "strategy": request.strategy.value if request else None,
                },
            )
            t0 = time.monotonic()
            try:
                result = self._executor.execute(mutation, request)
                if self._auto_commit:
                    self._session.commit()
                logger.info(
                    "mutation_commit_completed",
                    extra={
                        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                        "target_version": result.target_version,
                        "warning_count": len(result.warnings),
                    },
                )
                return result
            except Exception:
                if self._auto_commit:
                    self._session.rollback()
                logger.error(
                    "mutation_commit_failed",
                    extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
                    exc_info=True,
                )
                raise

    def cascade_task(
        self,
        task_id: UUID,
        *,
        amount: Decimal | None = None,
        prepaid_amount: Decimal | None = None,
        expense_amount: Decimal | None = None,
        expected_version: int | None = None,
        request: ResolutionRequest | None = None,
    ) -> CommitResult:
        """Change one task figure and recompute its invoice, commission and transactions."""
        given = {
            name: value
            for name, value in (
                ("amount", amount),
                ("prepaid_amount", prepaid_amount),
                ("expense_amount", expense_amount),
            )
            if value is not None
        }
        if len(given) != 1:
            raise InvalidMutationError(
                RecordType.TASK.value, "exactly one of amount, prepaid_amount, expense_amount is required"
            )
        (name, value), = given.items()
        mutation = Mutation(
            _TASK_MUTATIONS[name], task_id, value, expected_version=expected_version,
        )
        return self.commit(mutation, request)
