"""
CascadeExecutor -- applies a mutation and its resolution plan atomically.

Responsibility:
    Inside the caller's transaction: lock the target and its client, compare
    versions, re-run the invariant check against live data, recompile the
    plan, materialize the projected state (decisions, target update, task
    cascade, created credits and payments, transactions), refresh cached
    balances, and finally verify the database against the projection.

Architecture position:
    Services -- imperative shell over the pure engines.  Uses the kernel's
    selector and record service for reads and writes; uses the same
    ``CascadeProjector`` as the preview service.

Invariants enforced:
    - Version comparison happens after the row lock, inside the commit.
    - Nothing is written unless the live conflict (if any) is covered by a
      complete plan.
    - A plan submitted for a mutation that no longer conflicts is rejected
      (``NothingToResolveError``); nothing is applied twice.
    - Derived figures are recomputed from the written rows and compared with
      the projection; any difference raises ``CascadeDriftError``.

Failure modes:
    - Any exception leaves flushed but uncommitted work in the session; the
      transaction owner rolls it back.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_engines.cascade import CascadeProjector, Consequences, Projection
from ledger_engines.invariants import InvariantChecker
from ledger_engines.resolution import ResolutionPlan, ResolutionRequest, StrategyResolver
from ledger_kernel.domain.amounts import AMOUNT_TOLERANCE, same_amount
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import LedgerSnapshot, RecordType
from ledger_kernel.domain.mutations import Mutation
from ledger_kernel.exceptions import (
    CascadeDriftError,
    ConcurrentModificationError,
    NothingToResolveError,
    UnresolvedConflictError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models import LedgerTransaction
from ledger_kernel.selectors.ledger_selector import MODEL_FOR, LedgerSelector, not_found
from ledger_kernel.services.record_service import RecordService

logger = get_logger("services.cascade_executor")

_SYNC_ORDER: tuple[tuple[RecordType, str], ...] = (
    (RecordType.CREDIT, "credits"),
    (RecordType.RECEIVABLE, "receivables"),
    (RecordType.PAYMENT, "payments"),
    (RecordType.ALLOCATION, "allocations"),
    (RecordType.TASK, "tasks"),
    (RecordType.COMMISSION, "commissions"),
)

_NOT_COLUMNS = frozenset({"id", "version", "sequence"})


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _columns(record: Any) -> list[str]:
    return [f.name for f in fields(record) if f.name not in _NOT_COLUMNS]


@dataclass(frozen=True)
class CommitResult:
    mutation: Mutation
    plan: ResolutionPlan | None
    consequences: Consequences
    warnings: tuple[str, ...]
    target_version: int | None
    created_credit_ids: tuple[UUID, ...] = ()
    created_payment_ids: tuple[UUID, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "mutation_type": self.mutation.mutation_type.value,
            "target_id": self.mutation.target_id,
            "target_version": self.target_version,
            "plan": self.plan.to_dict() if self.plan else None,
            "consequences": self.consequences.to_dict(),
            "warnings": list(self.warnings),
            "created_credit_ids": list(self.created_credit_ids),
            "created_payment_ids": list(self.created_payment_ids),
        }


class CascadeExecutor:
    """
    Writes one checked mutation and its cascade.

    Contract:
        ``execute`` flushes; it never commits or rolls back.

    Non-goals:
        - Does NOT hold locks across calls; a caller that loses a version
          race re-reads, re-previews and retries.
    """

    def __init__(
        self,
        session: Session,
        actor_id: UUID,
        checker: InvariantChecker,
        resolver: StrategyResolver,
        projector: CascadeProjector,
        records: RecordService,
        clock: Clock | None = None,
        tolerance: Decimal = AMOUNT_TOLERANCE,
    ):
        self._session = session
        self._actor_id = actor_id
        self._checker = checker
        self._resolver = resolver
        self._projector = projector
        self._records = records
        self._clock = clock or SystemClock()
        self._tol = tolerance
        self._selector = LedgerSelector(session)

    def execute(
        self,
        mutation: Mutation,
        request: ResolutionRequest | None = None,
    ) -> CommitResult:
        row = self._lock_target(mutation)

        client_id = self._selector.client_id_for(mutation.target_type, mutation.target_id)
        self._records.lock_client(client_id)
        snapshot = self._selector.client_snapshot(client_id)

        check = self._checker.check(mutation=mutation, snapshot=snapshot)
        conflict = check.pending_conflict
        plan = None
        if conflict is None:
            if request is not None:
                raise NothingToResolveError(mutation.target_type.value, str(mutation.target_id))
        else:
            if request is None:
                raise UnresolvedConflictError(conflict)
            plan = self._resolver.compile(conflict=conflict, request=request)

        projection = self._projector.project(
            snapshot=snapshot,
            mutation=mutation,
            plan=plan,
            today=self._clock.today(),
        )

        logger.info(
            "cascade_started",
            extra={
                "client_id": str(client_id),
                "strategy": plan.strategy.value if plan else None,
                "steps": len(plan.changed_steps()) if plan else 0,
            },
        )
        self._materialize(projection)
        self._records.refresh_balances(projection.after.parties)
        self._verify(projection.after, self._selector.client_snapshot(client_id))

        created_credits = tuple(set(projection.after.credits) - set(snapshot.credits))
        created_payments = tuple(set(projection.after.payments) - set(snapshot.payments))
        logger.info(
            "cascade_completed",
            extra={
                "client_id": str(client_id),
                "credits_created": len(created_credits),
                "payments_created": len(created_payments),
                "transactions_changed": len(projection.consequences.transaction_changes),
            },
        )
        return CommitResult(
            mutation=mutation,
            plan=plan,
            consequences=projection.consequences,
            warnings=projection.warnings,
            target_version=None if row.is_deleted else row.version,
            created_credit_ids=created_credits,
            created_payment_ids=created_payments,
        )

    # -----------------------------------------------------------------
    # Locking
    # -----------------------------------------------------------------

    def _lock_target(self, mutation: Mutation) -> Any:
        model = MODEL_FOR[mutation.target_type]
        row = self._session.execute(
            select(model)
            .where(model.id == mutation.target_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None or row.is_deleted:
            raise not_found(mutation.target_type, mutation.target_id)

        expected = mutation.expected_version
        if expected is not None and row.version != expected:
            logger.warning(
                "concurrent_modification_detected",
                extra={"expected_version": expected, "current_version": row.version},
            )
            raise ConcurrentModificationError(
                mutation.target_type.value,
                str(mutation.target_id),
                expected,
                row.version,
                self._selector.record_data(mutation.target_type, mutation.target_id),
            )
        return row

    # -----------------------------------------------------------------
    # Materialization
    # -----------------------------------------------------------------

    def _materialize(self, projection: Projection) -> None:
        before, after = projection.before, projection.after
        for record_type, attr in _SYNC_ORDER:
            self._sync(record_type, getattr(before, attr), getattr(after, attr))
            self._session.flush()
        self._sync_transactions(before.transactions, after.transactions)
        self._session.flush()

    def _sync(
        self,
        record_type: RecordType,
        before: Mapping[UUID, Any],
        after: Mapping[UUID, Any],
    ) -> None:
        model = MODEL_FOR[record_type]
        now = self._clock.now()
        for record_id, old in before.items():
            new = after.get(record_id)
            row = self._session.get(model, record_id)
            if new is None:
                row.deleted_at = now
            else:
                changed = [c for c in _columns(new) if getattr(old, c) != getattr(new, c)]
                if not changed:
                    continue
                for column in changed:
                    setattr(row, column, _column_value(getattr(new, column)))
            row.updated_by_id = self._actor_id
            if hasattr(row, "bump_version"):
                row.bump_version()

        for record_id, new in after.items():
            if record_id in before:
                continue
            values = {c: _column_value(getattr(new, c)) for c in _columns(new)}
            self._session.add(model(
                id=record_id,
                sequence=self._records.next_sequence(),
                created_by_id=self._actor_id,
                **values,
            ))
            logger.info(
                "cascade_record_created",
                extra={"record_type": record_type.value, "record_id": str(record_id)},
            )

    def _sync_transactions(
        self,
        before: Mapping[UUID, Any],
        after: Mapping[UUID, Any],
    ) -> None:
        now = self._clock.now()
        for txn_id, old in before.items():
            new = after.get(txn_id)
            if new is not None and new.debit == old.debit and new.credit == old.credit:
                continue
            row = self._session.get(LedgerTransaction, txn_id)
            if new is None:
                row.deleted_at = now
            else:
                row.debit, row.credit = new.debit, new.credit
            row.updated_by_id = self._actor_id

        for txn_id, new in after.items():
            if txn_id in before:
                continue
            self._records.post_transaction(
                new.party_id,
                new.kind,
                new.kind.source_type,
                new.source_id,
                new.amount,
                new.transaction_on,
                transaction_id=txn_id,
            )

    # -----------------------------------------------------------------
    # Verification
    # -----------------------------------------------------------------

    def _verify(self, projected: LedgerSnapshot, actual: LedgerSnapshot) -> None:
        """Compare recomputed state with the projection."""
        for attr in ("credits", "allocations", "receivables", "payments", "tasks", "transactions"):
            want, got = set(getattr(projected, attr)), set(getattr(actual, attr))
            if want != got:
                self._drift(attr, "ids", sorted(map(str, want)), sorted(map(str, got)))

        for credit_id, credit in projected.credits.items():
            self._compare(f"credit:{credit_id}", "amount", credit.amount, actual.credits[credit_id].amount)
            self._compare(
                f"credit:{credit_id}", "allocated_amount",
                projected.allocated_amount(credit_id), actual.allocated_amount(credit_id),
            )
        for receivable_id, receivable in projected.receivables.items():
            ref = f"receivable:{receivable_id}"
            self._compare(ref, "amount", receivable.amount, actual.receivables[receivable_id].amount)
            self._compare(
                ref, "paid_amount",
                projected.paid_amount(receivable_id), actual.paid_amount(receivable_id),
            )
            want_status, got_status = projected.status(receivable_id), actual.status(receivable_id)
            if want_status != got_status:
                self._drift(ref, "status", want_status.value, got_status.value)
        for commission_id, commission in projected.commissions.items():
            self._compare(
                f"commission:{commission_id}", "amount",
                commission.amount, actual.commissions[commission_id].amount,
            )
        for txn_id, txn in projected.transactions.items():
            self._compare(
                f"transaction:{txn_id}", "amount", txn.signed_amount,
                actual.transactions[txn_id].signed_amount,
            )
        for party_id, party in projected.parties.items():
            self._compare(f"party:{party_id}", "balance", party.balance, actual.balance_of(party_id))

    def _compare(self, ref: str, field: str, projected: Decimal, actual: Decimal) -> None:
        if not same_amount(projected, actual, self._tol):
            self._drift(ref, field, projected, actual)

    @staticmethod
    def _drift(ref: str, field: str, projected: Any, actual: Any) -> None:
        logger.error(
            "cascade_drift_detected",
            extra={"record_ref": ref, "field": field},
        )
        raise CascadeDriftError(ref, field, projected, actual)
