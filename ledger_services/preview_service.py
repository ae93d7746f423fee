"""
PreviewService -- dry run of a mutation and its resolution.

Responsibility:
    Read the client's snapshot, check the mutation, compile the requested
    plan and project the cascade, returning warnings, errors and the exact
    consequences a commit with the same inputs would produce.

Architecture position:
    Services -- read-only shell over the pure engines.  Shares the
    ``CascadeProjector`` with ``CascadeExecutor`` so a preview and the
    commit that follows it cannot disagree.

Invariants enforced:
    - Nothing is flushed or written; the session is only read.
    - Consequences are reported only when the mutation can be committed as
      submitted (no errors).

Failure modes:
    - ``RecordNotFoundError`` propagates; every other validation or
      resolution failure is collected into ``errors``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from ledger_engines.cascade import CascadeProjector, Consequences
from ledger_engines.invariants import CheckResult, InvariantChecker
from ledger_engines.resolution import (
    ResolutionPlan,
    ResolutionRequest,
    StrategyOption,
    StrategyResolver,
    options_to_dict,
)
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.mutations import Mutation
from ledger_kernel.exceptions import (
    ConcurrentModificationError,
    NothingToResolveError,
    ResolutionError,
    UnresolvedConflictError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_services.error_payloads import error_payload

logger = get_logger("services.preview")


@dataclass(frozen=True)
class PreviewResult:
    mutation: Mutation
    target_version: int
    check: CheckResult | None = None
    plan: ResolutionPlan | None = None
    options: tuple[StrategyOption, ...] = ()
    warnings: tuple[str, ...] = ()
    errors: tuple[dict[str, Any], ...] = ()
    consequences: Consequences | None = None

    @property
    def blocked(self) -> bool:
        return bool(self.errors)

    @property
    def conflict(self):
        return self.check.pending_conflict if self.check else None

    def to_dict(self) -> dict[str, Any]:
        conflict = self.conflict
        return {
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "consequences": self.consequences.to_dict() if self.consequences else None,
            "target_version": self.target_version,
            "conflict": conflict.to_dict() if conflict else None,
            "resolution_options": options_to_dict(self.options) if self.options else None,
        }


class PreviewService:
    """
    Computes what a commit would do without doing it.

    Contract:
        ``preview(mutation, request)`` returns a ``PreviewResult``; it
        raises only for unknown or deleted targets.
    """

    def __init__(
        self,
        session: Session,
        checker: InvariantChecker,
        resolver: StrategyResolver,
        projector: CascadeProjector,
        clock: Clock | None = None,
    ):
        self._selector = LedgerSelector(session)
        self._checker = checker
        self._resolver = resolver
        self._projector = projector
        self._clock = clock or SystemClock()

    def preview(
        self,
        mutation: Mutation,
        request: ResolutionRequest | None = None,
    ) -> PreviewResult:
        row = self._selector.get_live(mutation.target_type, mutation.target_id)
        version = row.version
        errors: list[dict[str, Any]] = []

        expected = mutation.expected_version
        if expected is not None and expected != version:
            errors.append(error_payload(ConcurrentModificationError(
                mutation.target_type.value,
                str(mutation.target_id),
                expected,
                version,
                self._selector.record_data(mutation.target_type, mutation.target_id),
            )))

        client_id = self._selector.client_id_for(mutation.target_type, mutation.target_id)
        snapshot = self._selector.client_snapshot(client_id)

        try:
            check = self._checker.check(mutation=mutation, snapshot=snapshot)
        except ValidationError as exc:
            errors.append(error_payload(exc))
            return self._result(mutation, version, errors=errors)

        conflict = check.pending_conflict
        options = self._resolver.options(conflict) if conflict else ()
        plan = None
        try:
            if conflict is None:
                if request is not None:
                    raise NothingToResolveError(
                        mutation.target_type.value, str(mutation.target_id)
                    )
            elif request is None:
                raise UnresolvedConflictError(conflict)
            else:
                plan = self._resolver.compile(conflict=conflict, request=request)
        except (ValidationError, ResolutionError) as exc:
            errors.append(error_payload(exc))

        if errors:
            return self._result(
                mutation, version, check=check, plan=plan, options=options, errors=errors,
            )

        projection = self._projector.project(
            snapshot=snapshot,
            mutation=mutation,
            plan=plan,
            today=self._clock.today(),
        )
        return self._result(
            mutation,
            version,
            check=check,
            plan=plan,
            options=options,
            warnings=projection.warnings,
            consequences=projection.consequences,
        )

    @staticmethod
    def _result(mutation: Mutation, version: int, **kwargs: Any) -> PreviewResult:
        errors = tuple(kwargs.pop("errors", ()))
        result = PreviewResult(mutation=mutation, target_version=version, errors=errors, **kwargs)
        logger.info(
            "mutation_previewed",
            extra={
                "mutation_type": mutation.mutation_type.value,
                "target_id": str(mutation.target_id),
                "blocked": result.blocked,
                "error_codes": [e["code"] for e in errors],
            },
        )
        return result
