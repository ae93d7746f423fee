"""
LedgerApi -- transport-agnostic request/response boundary.

Responsibility:
    Maps upstream requests (CLI, UI, batch job) onto ``ReconciliationEngine``
    calls and maps every outcome onto a ``(status, body)`` pair:

        200  success, or a preview (blocked previews carry ``errors``)
        404  unknown or deleted record
        409  invariant conflict (``code`` names the conflict) or
             ``concurrent_modification`` with the current record
        422  validation or resolution error (incomplete plans state the
             uncovered amount)
        500  cascade drift

Architecture position:
    Services -- outermost layer.  Owns one session per call; the engine
    commits or rolls it back.

Invariants enforced:
    - Money leaves as ``Decimal``, ids as strings, dates as ISO strings.
    - A request never leaves partial state: any failure rolls back.
"""

from __future__ import annotations

from dataclasses import is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Iterable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_config import LedgerConfig
from ledger_engines.resolution import (
    Decision,
    ResolutionRequest,
    Strategy,
    options_to_dict,
)
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.mutations import Mutation, MutationType
from ledger_kernel.exceptions import (
    ConcurrentModificationError,
    InvalidDecisionError,
    InvalidMutationError,
    LedgerKernelError,
    RecordNotFoundError,
    ResolutionError,
    StrategyUnavailableError,
    UnresolvedConflictError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_services.error_payloads import error_payload
from ledger_services.reconciliation_engine import ReconciliationEngine

logger = get_logger("services.api")

Response = tuple[int, dict[str, Any]]

OK = 200
NOT_FOUND = 404
CONFLICT = 409
UNPROCESSABLE = 422
SERVER_ERROR = 500


def to_jsonable(value: Any) -> Any:
    """Boundary form: Decimal stays Decimal, UUID -> str, date -> ISO string."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(to_jsonable(k)): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    if is_dataclass(value) and hasattr(value, "to_dict"):
        return to_jsonable(value.to_dict())
    return value


def _request(
    resolution_type: str | None = None,
    decisions: Iterable[Mapping[str, Any]] = (),
    id_keys: tuple[str, ...] = ("id",),
) -> ResolutionRequest | None:
    """Build a resolution request from boundary input; None when nothing was chosen."""
    decisions = list(decisions or ())
    if resolution_type is None and not decisions:
        return None
    parsed = []
    for item in decisions:
        dependent_id = next((item[k] for k in id_keys if item.get(k) is not None), None)
        if dependent_id is None:
            raise InvalidDecisionError("", str(item.get("action", "")), "dependent id is required")
        parsed.append(Decision.parse(
            dependent_id,
            item.get("action", ""),
            item.get("new_amount"),
            item.get("payment_method"),
        ))
    try:
        strategy = Strategy(resolution_type or Strategy.MANUAL_RESOLUTION.value)
    except ValueError as exc:
        raise StrategyUnavailableError(str(resolution_type), "any") from exc
    return ResolutionRequest(strategy, tuple(parsed))


class LedgerApi:
    """
    Request handlers for the checked mutation protocol.

    Every handler takes its full context as arguments and returns
    ``(status, body)``; nothing is kept between calls.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        actor_id: UUID,
        clock: Clock | None = None,
        config: LedgerConfig | None = None,
    ):
        self._session_factory = session_factory
        self._actor_id = actor_id
        self._clock = clock
        self._config = config

    # -----------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------

    def _engine(self, session: Session) -> ReconciliationEngine:
        return ReconciliationEngine(
            session,
            self._actor_id,
            clock=self._clock,
            config=self._config,
            auto_commit=True,
        )

    def _commit(self, mutation: Mutation, request: ResolutionRequest | None) -> Response:
        try:
            with self._session_factory() as session:
                engine = self._engine(session)
                try:
                    result = engine.commit(mutation, request)
                except UnresolvedConflictError as exc:
                    return self._conflict(engine, exc)
                return OK, to_jsonable({
                    "status": "ok",
                    "data": {
                        "target": mutation.target_ref,
                        "target_version": result.target_version,
                        "consequences": result.consequences.to_dict(),
                        "warnings": list(result.warnings),
                        "plan": result.plan.to_dict() if result.plan else None,
                        "created_credit_ids": list(result.created_credit_ids),
                        "created_payment_ids": list(result.created_payment_ids),
                    },
                })
        except LedgerKernelError as exc:
            return self._error(exc)

    def _preview(self, mutation: Mutation, request: ResolutionRequest | None) -> Response:
        try:
            with self._session_factory() as session:
                preview = self._engine(session).preview(mutation, request)
                return OK, to_jsonable(preview.to_dict())
        except LedgerKernelError as exc:
            return self._error(exc)

    @staticmethod
    def _conflict(engine: ReconciliationEngine, exc: UnresolvedConflictError) -> Response:
        conflict = exc.conflict
        data = conflict.to_dict()
        data["resolution_options"] = options_to_dict(engine.options(conflict))
        return CONFLICT, to_jsonable({
            "code": conflict.kind.api_code,
            "message": str(exc),
            "data": data,
        })

    @staticmethod
    def _error(exc: LedgerKernelError) -> Response:
        payload = error_payload(exc)
        if isinstance(exc, ConcurrentModificationError):
            payload["data"] = exc.current_data
            status = CONFLICT
        elif isinstance(exc, RecordNotFoundError):
            status = NOT_FOUND
        elif isinstance(exc, (ValidationError, ResolutionError)):
            status = UNPROCESSABLE
        else:
            status = SERVER_ERROR
        logger.info(
            "api_request_rejected",
            extra={"status": status, "code": payload["code"]},
        )
        return status, to_jsonable(payload)

    @staticmethod
    def _mutation(
        mutation_type: MutationType,
        target_id: UUID | str,
        new_amount: Any = None,
        expected_version: int | None = None,
    ) -> Mutation:
        try:
            target = target_id if isinstance(target_id, UUID) else UUID(str(target_id))
        except ValueError as exc:
            raise InvalidMutationError(mutation_type.value, f"malformed id {target_id!r}") from exc
        return Mutation(mutation_type, target, new_amount, expected_version)

    def _guarded(self, build: Callable[[], Response]) -> Response:
        try:
            return build()
        except LedgerKernelError as exc:
            return self._error(exc)

    # -----------------------------------------------------------------
    # Credits
    # -----------------------------------------------------------------

    def update_credit(
        self, credit_id, new_amount, expected_version: int | None = None,
    ) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(MutationType.CREDIT_AMOUNT, credit_id, new_amount, expected_version),
            None,
        ))

    def delete_credit(self, credit_id, expected_version: int | None = None) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(MutationType.CREDIT_DELETE, credit_id, None, expected_version),
            None,
        ))

    def resolve_credit_reduction(
        self,
        credit_id,
        new_amount,
        allocation_adjustments: Iterable[Mapping[str, Any]] = (),
        expected_version: int | None = None,
        resolution_type: str | None = None,
    ) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(MutationType.CREDIT_AMOUNT, credit_id, new_amount, expected_version),
            _request(
                resolution_type or Strategy.MANUAL_RESOLUTION.value,
                allocation_adjustments,
                ("allocation_id", "id"),
            ),
        ))

    def resolve_credit_deletion(
        self,
        credit_id,
        allocation_resolutions: Iterable[Mapping[str, Any]] = (),
        expected_version: int | None = None,
        resolution_type: str | None = None,
    ) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(MutationType.CREDIT_DELETE, credit_id, None, expected_version),
            _request(
                resolution_type or Strategy.MANUAL_RESOLUTION.value,
                allocation_resolutions,
                ("allocation_id", "id"),
            ),
        ))

    # -----------------------------------------------------------------
    # Receivables
    # -----------------------------------------------------------------

    def update_receivable(
        self, receivable_id, new_amount, expected_version: int | None = None,
    ) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(
                MutationType.RECEIVABLE_AMOUNT, receivable_id, new_amount, expected_version
            ),
            None,
        ))

    def resolve_overpayment(
        self,
        receivable_id,
        new_amount,
        payment_decisions: Iterable[Mapping[str, Any]] = (),
        allocation_decisions: Iterable[Mapping[str, Any]] = (),
        expected_version: int | None = None,
    ) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(
                MutationType.RECEIVABLE_AMOUNT, receivable_id, new_amount, expected_version
            ),
            _manual(payment_decisions, allocation_decisions),
        ))

    def auto_resolve_overpayment(
        self,
        receivable_id,
        new_amount,
        resolution_type: str,
        expected_version: int | None = None,
    ) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(
                MutationType.RECEIVABLE_AMOUNT, receivable_id, new_amount, expected_version
            ),
            _request(resolution_type),
        ))

    def delete_receivable(self, receivable_id, expected_version: int | None = None) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(MutationType.RECEIVABLE_DELETE, receivable_id, None, expected_version),
            None,
        ))

    def resolve_receivable_deletion(
        self,
        receivable_id,
        payment_decisions: Iterable[Mapping[str, Any]] = (),
        allocation_decisions: Iterable[Mapping[str, Any]] = (),
        expected_version: int | None = None,
        resolution_type: str | None = None,
    ) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(MutationType.RECEIVABLE_DELETE, receivable_id, None, expected_version),
            _chosen(resolution_type, payment_decisions, allocation_decisions),
        ))

    # -----------------------------------------------------------------
    # Payments and allocations
    # -----------------------------------------------------------------

    def update_payment(
        self,
        payment_id,
        new_amount,
        expected_version: int | None = None,
        resolution_type: str | None = None,
        payment_decisions: Iterable[Mapping[str, Any]] = (),
        allocation_decisions: Iterable[Mapping[str, Any]] = (),
    ) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(MutationType.PAYMENT_AMOUNT, payment_id, new_amount, expected_version),
            _chosen(resolution_type, payment_decisions, allocation_decisions, optional=True),
        ))

    def delete_payment(self, payment_id, expected_version: int | None = None) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(MutationType.PAYMENT_DELETE, payment_id, None, expected_version),
            None,
        ))

    def update_allocation(
        self, allocation_id, new_amount, expected_version: int | None = None,
    ) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(
                MutationType.ALLOCATION_AMOUNT, allocation_id, new_amount, expected_version
            ),
            None,
        ))

    def delete_allocation(self, allocation_id, expected_version: int | None = None) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(MutationType.ALLOCATION_DELETE, allocation_id, None, expected_version),
            None,
        ))

    # -----------------------------------------------------------------
    # Previews
    # -----------------------------------------------------------------

    def validate(
        self,
        mutation_type: str,
        target_id,
        new_amount: Any = None,
        expected_version: int | None = None,
        resolution_type: str | None = None,
        decisions: Iterable[Mapping[str, Any]] = (),
    ) -> Response:
        """Dry run of any mutation; ``decisions`` items are ``{id, action, new_amount?}``."""
        return self._guarded(lambda: self._preview(
            self._mutation(MutationType(mutation_type), target_id, new_amount, expected_version),
            _request(resolution_type, decisions),
        ))

    def validate_transaction(
        self, payment_id, new_amount: Any = None, delete: bool = False, **kwargs: Any,
    ) -> Response:
        mutation_type = MutationType.PAYMENT_DELETE if delete else MutationType.PAYMENT_AMOUNT
        return self.validate(mutation_type.value, payment_id, new_amount, **kwargs)

    def validate_invoice(
        self, receivable_id, new_amount: Any = None, delete: bool = False, **kwargs: Any,
    ) -> Response:
        mutation_type = (
            MutationType.RECEIVABLE_DELETE if delete else MutationType.RECEIVABLE_AMOUNT
        )
        return self.validate(mutation_type.value, receivable_id, new_amount, **kwargs)

    def validate_credit(
        self, credit_id, new_amount: Any = None, delete: bool = False, **kwargs: Any,
    ) -> Response:
        mutation_type = MutationType.CREDIT_DELETE if delete else MutationType.CREDIT_AMOUNT
        return self.validate(mutation_type.value, credit_id, new_amount, **kwargs)

    def validate_task(
        self, task_id, field: str, new_value: Any, **kwargs: Any,
    ) -> Response:
        """``field`` is one of ``amount``, ``prepaid_amount``, ``expense_amount``."""
        mutation_type = {
            "amount": MutationType.TASK_AMOUNT,
            "prepaid_amount": MutationType.TASK_PREPAID,
            "expense_amount": MutationType.TASK_EXPENSE,
        }.get(field)
        if mutation_type is None:
            return UNPROCESSABLE, {
                "code": "invalid_mutation",
                "message": f"Unknown task field {field!r}",
                "details": {"field": field},
            }
        return self.validate(mutation_type.value, task_id, new_value, **kwargs)

    # -----------------------------------------------------------------
    # Task cascade
    # -----------------------------------------------------------------

    def cascade_task_amount(
        self,
        task_id,
        new_amount,
        expected_version: int | None = None,
        resolution_type: str | None = None,
    ) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(MutationType.TASK_AMOUNT, task_id, new_amount, expected_version),
            _request(resolution_type),
        ))

    def cascade_task_prepaid(
        self,
        task_id,
        new_prepaid,
        expected_version: int | None = None,
        resolution_type: str | None = None,
    ) -> Response:
        return self._guarded(lambda: self._commit(
            self._mutation(MutationType.TASK_PREPAID, task_id, new_prepaid, expected_version),
            _request(resolution_type),
        ))


def _manual(
    payment_decisions: Iterable[Mapping[str, Any]],
    allocation_decisions: Iterable[Mapping[str, Any]],
    optional: bool = False,
) -> ResolutionRequest | None:
    """Manual request from per-payment and per-allocation decision lists."""
    payments = [
        {**item, "id": item.get("payment_id", item.get("id"))}
        for item in payment_decisions or ()
    ]
    allocations = [
        {**item, "id": item.get("allocation_id", item.get("id"))}
        for item in allocation_decisions or ()
    ]
    decisions = payments + allocations
    if optional and not decisions:
        return None
    return _request(Strategy.MANUAL_RESOLUTION.value, decisions)


def _chosen(
    resolution_type: str | None,
    payment_decisions: Iterable[Mapping[str, Any]],
    allocation_decisions: Iterable[Mapping[str, Any]],
    optional: bool = False,
) -> ResolutionRequest | None:
    if resolution_type is not None:
        return _request(resolution_type)
    return _manual(payment_decisions, allocation_decisions, optional=optional)
