"""
Resolution Strategy Resolver -- from a conflict to an executable plan.

Responsibility:
    Enumerates the strategies applicable to a ``Conflict`` (with
    ``available`` and ``recommended`` flags), validates the caller's choice,
    and compiles it into a ``ResolutionPlan``: one ``PlanStep`` per
    dependent stating its new amount and how much of the gap it removes.

Architecture position:
    Engines -- pure calculation layer.  Zero I/O.  Strategy labels and the
    ``auto_reduce_latest`` fallback are passed in by the service layer from
    configuration.

Invariants enforced:
    - Completeness: a plan is returned only when the amount it removes
      covers the gap within the tolerance; otherwise
      ``IncompleteResolutionError`` names the uncovered amount.
    - Decisions come from a closed set per conflict and dependent type.
    - Each dependent is decided at most once; unknown dependents are
      rejected; undecided dependents are kept.
    - LIFO order is (date, sequence) newest first.

Failure modes:
    - ``InvalidDecisionError`` for malformed manual decisions.
    - ``StrategyUnavailableError`` for a strategy the conflict does not offer.
    - ``IncompleteResolutionError`` for plans that leave part of the gap.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping
from uuid import UUID

from ledger_engines.invariants import Conflict, ConflictKind, Dependent
from ledger_engines.tracer import traced_engine
from ledger_kernel.domain.amounts import (
    AMOUNT_TOLERANCE,
    ZERO,
    covers,
    exceeds,
    to_amount,
    total,
)
from ledger_kernel.domain.dtos import RecordType
from ledger_kernel.exceptions import (
    IncompleteResolutionError,
    InvalidDecisionError,
    StrategyUnavailableError,
)


class Strategy(str, Enum):
    AUTO_REDUCE_PAYMENTS = "auto_reduce_payments"
    AUTO_REDUCE_LATEST = "auto_reduce_latest"
    CONVERT_SURPLUS_TO_CREDIT = "convert_surplus_to_credit"
    MANUAL_RESOLUTION = "manual_resolution"


class LatestFallback(str, Enum):
    """What ``auto_reduce_latest`` does when the latest dependent is too small."""

    ERROR = "error"
    AUTO_REDUCE_PAYMENTS = "auto_reduce_payments"


class DecisionAction(str, Enum):
    KEEP = "keep"
    # credit conflicts
    REDUCE_ALLOCATION = "reduce_allocation"
    REMOVE_ALLOCATION = "remove_allocation"
    CONVERT_TO_PAYMENT = "convert_to_payment"
    # both sides
    DELETE_ALLOCATION = "delete_allocation"
    # receivable and payment conflicts
    DELETE = "delete"
    REDUCE_TO = "reduce_to"
    CONVERT_TO_CREDIT = "convert_to_credit"
    RETURN_TO_CREDIT = "return_to_credit"


_A = DecisionAction

_CREDIT_REDUCTION_ACTIONS = frozenset({
    _A.KEEP, _A.REDUCE_ALLOCATION, _A.REMOVE_ALLOCATION, _A.DELETE_ALLOCATION,
})
_CREDIT_DELETION_ACTIONS = frozenset({
    _A.KEEP, _A.DELETE_ALLOCATION, _A.CONVERT_TO_PAYMENT,
})
_PAYMENT_ACTIONS = frozenset({
    _A.KEEP, _A.DELETE, _A.REDUCE_TO, _A.CONVERT_TO_CREDIT,
})
_ALLOCATION_ACTIONS = frozenset({
    _A.KEEP, _A.DELETE_ALLOCATION, _A.RETURN_TO_CREDIT,
})


def allowed_actions(kind: ConflictKind, record_type: RecordType) -> frozenset[DecisionAction]:
    """The closed decision set for one dependent of one conflict kind."""
    if kind == ConflictKind.CREDIT_REDUCTION:
        return _CREDIT_REDUCTION_ACTIONS
    if kind == ConflictKind.CREDIT_DELETION:
        return _CREDIT_DELETION_ACTIONS
    if record_type == RecordType.PAYMENT:
        return _PAYMENT_ACTIONS
    return _ALLOCATION_ACTIONS


_REDUCE_TO_PATTERN = re.compile(r"^reduce_to_(?P<amount>\d+(\.\d+)?)$")


@dataclass(frozen=True, slots=True)
class Decision:
    """
    One caller decision for one dependent.

    ``new_amount`` is the dependent's amount after the decision for
    ``reduce_allocation``, ``reduce_to`` and ``return_to_credit``, and the
    amount the payment keeps for ``convert_to_credit``.
    """

    dependent_id: UUID
    action: DecisionAction
    new_amount: Decimal | None = None
    payment_method: str | None = None

    @classmethod
    def parse(
        cls,
        dependent_id: UUID | str,
        action: str,
        new_amount: Any = None,
        payment_method: str | None = None,
    ) -> Decision:
        """
        Build a decision from boundary input.

        Accepts the ``reduce_to_X`` spelling as well as ``reduce_to`` with a
        separate ``new_amount``.
        """
        dep_id = dependent_id if isinstance(dependent_id, UUID) else UUID(str(dependent_id))
        match = _REDUCE_TO_PATTERN.match(action or "")
        if match:
            action, new_amount = DecisionAction.REDUCE_TO.value, match.group("amount")
        try:
            parsed = DecisionAction(action)
        except ValueError as exc:
            raise InvalidDecisionError(str(dep_id), str(action), "unknown action") from exc
        amount = None if new_amount is None else to_amount(new_amount, "new_amount")
        return cls(dep_id, parsed, amount, payment_method)


@dataclass(frozen=True, slots=True)
class ResolutionRequest:
    """The caller's choice: a strategy and, for manual resolution, decisions."""

    strategy: Strategy
    decisions: tuple[Decision, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.strategy, Strategy):
            object.__setattr__(self, "strategy", Strategy(self.strategy))
        object.__setattr__(self, "decisions", tuple(self.decisions))


@dataclass(frozen=True, slots=True)
class PlanStep:
    dependent: Dependent
    action: DecisionAction
    new_amount: Decimal
    removed: Decimal
    payment_method: str | None = None

    @property
    def removes_record(self) -> bool:
        return self.action != DecisionAction.KEEP and self.new_amount == ZERO

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_type": self.dependent.record_type.value,
            "record_id": self.dependent.record_id,
            "action": self.action.value,
            "old_amount": self.dependent.amount,
            "new_amount": self.new_amount,
            "removed": self.removed,
        }


@dataclass(frozen=True, slots=True)
class ResolutionPlan:
    """
    A complete, validated resolution of one conflict.

    Guarantees:
        ``removed`` covers ``gap`` within the tolerance.  ``target_amount``
        overrides the mutation's proposed amount when the strategy caps the
        edited record itself (payment overpayment converted to credit).
    """

    strategy: Strategy
    conflict_kind: ConflictKind
    target_type: RecordType
    target_id: UUID
    gap: Decimal
    steps: tuple[PlanStep, ...]
    target_amount: Decimal | None = None
    capped_excess: Decimal = ZERO

    @property
    def removed(self) -> Decimal:
        return total(s.removed for s in self.steps) + self.capped_excess

    @property
    def credit_to_create(self) -> Decimal:
        """Money reclassified from payments into one new client credit."""
        converted = total(
            s.removed for s in self.steps if s.action == DecisionAction.CONVERT_TO_CREDIT
        )
        return converted + self.capped_excess

    @property
    def payments_to_create(self) -> tuple[PlanStep, ...]:
        return tuple(s for s in self.steps if s.action == DecisionAction.CONVERT_TO_PAYMENT)

    def changed_steps(self) -> tuple[PlanStep, ...]:
        return tuple(s for s in self.steps if s.action != DecisionAction.KEEP)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "conflict_kind": self.conflict_kind.value,
            "target_type": self.target_type.value,
            "target_id": self.target_id,
            "gap": self.gap,
            "removed": self.removed,
            "target_amount": self.target_amount,
            "credit_to_create": self.credit_to_create,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(frozen=True, slots=True)
class StrategyText:
    label: str
    description: str
    recommended: bool = False


DEFAULT_STRATEGY_TEXTS: dict[Strategy, StrategyText] = {
    Strategy.AUTO_REDUCE_PAYMENTS: StrategyText(
        "Reduce most recent first",
        "Reduce or remove the most recent payments and allocations until the gap is covered.",
    ),
    Strategy.AUTO_REDUCE_LATEST: StrategyText(
        "Reduce latest only",
        "Reduce only the single most recent payment or allocation.",
    ),
    Strategy.CONVERT_SURPLUS_TO_CREDIT: StrategyText(
        "Convert surplus to credit",
        "Move the surplus out of the payments into a new client credit.",
        recommended=True,
    ),
    Strategy.MANUAL_RESOLUTION: StrategyText(
        "Decide per record",
        "Choose what happens to each payment and allocation.",
    ),
}


@dataclass(frozen=True, slots=True)
class StrategyOption:
    strategy: Strategy
    label: str
    description: str
    recommended: bool
    available: bool
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "description": self.description,
            "recommended": self.recommended,
            "available": self.available,
            "reason": self.reason or None,
        }


def options_to_dict(options: Iterable[StrategyOption]) -> dict[str, dict[str, Any]]:
    return {o.strategy.value: o.to_dict() for o in options}


class StrategyResolver:
    """
    Pure resolver from conflicts to plans.

    Contract:
        ``options(conflict)`` lists every strategy with its availability;
        ``compile(conflict=..., request=...)`` returns a complete plan or
        raises.  Neither touches storage.
    """

    def __init__(
        self,
        tolerance: Decimal = AMOUNT_TOLERANCE,
        latest_fallback: LatestFallback | str = LatestFallback.ERROR,
        texts: Mapping[Strategy, StrategyText] | None = None,
        conversion_payment_method: str = "credit_conversion",
    ):
        self._tol = tolerance
        self._fallback = LatestFallback(latest_fallback)
        self._texts = dict(DEFAULT_STRATEGY_TEXTS)
        if texts:
            self._texts.update(texts)
        self._conversion_method = conversion_payment_method

    # -----------------------------------------------------------------
    # Options
    # -----------------------------------------------------------------

    def _availability(self, conflict: Conflict, strategy: Strategy) -> tuple[bool, str]:
        can_cover = covers(conflict.absorbable, conflict.gap, self._tol)
        if strategy == Strategy.AUTO_REDUCE_PAYMENTS:
            return can_cover, "" if can_cover else "dependents cannot cover the gap"
        if strategy == Strategy.AUTO_REDUCE_LATEST:
            lifo = conflict.lifo()
            if lifo and covers(lifo[0].amount, conflict.gap, self._tol):
                return True, ""
            if self._fallback == LatestFallback.AUTO_REDUCE_PAYMENTS and can_cover:
                return True, ""
            return False, "the latest dependent alone cannot cover the gap"
        if strategy == Strategy.CONVERT_SURPLUS_TO_CREDIT:
            if conflict.kind.is_credit_conflict:
                return False, "only applies to receivable and payment overpayments"
            if conflict.kind == ConflictKind.PAYMENT_OVERPAYMENT:
                return True, ""
            return can_cover, "" if can_cover else "dependents cannot cover the gap"
        return bool(conflict.dependents), "" if conflict.dependents else "no dependents"

    def options(self, conflict: Conflict) -> tuple[StrategyOption, ...]:
        result = []
        for strategy in Strategy:
            available, reason = self._availability(conflict, strategy)
            text = self._texts[strategy]
            result.append(StrategyOption(
                strategy=strategy,
                label=text.label,
                description=text.description,
                recommended=text.recommended and available,
                available=available,
                reason=reason,
            ))
        return tuple(result)

    # -----------------------------------------------------------------
    # Compilation
    # -----------------------------------------------------------------

    @traced_engine("strategy_resolver", "1.0", fingerprint_fields=("conflict", "request"))
    def compile(self, *, conflict: Conflict, request: ResolutionRequest) -> ResolutionPlan:
        strategy = request.strategy
        if strategy == Strategy.MANUAL_RESOLUTION:
            steps = self._manual_steps(conflict, request.decisions)
            return self._complete(conflict, strategy, steps)

        if strategy == Strategy.CONVERT_SURPLUS_TO_CREDIT:
            if conflict.kind.is_credit_conflict:
                raise StrategyUnavailableError(strategy.value, conflict.kind.value)
            if conflict.kind == ConflictKind.PAYMENT_OVERPAYMENT:
                return ResolutionPlan(
                    strategy=strategy,
                    conflict_kind=conflict.kind,
                    target_type=conflict.target_type,
                    target_id=conflict.target_id,
                    gap=conflict.gap,
                    steps=(),
                    target_amount=conflict.proposed_amount - conflict.gap,
                    capped_excess=conflict.gap,
                )
            steps = self._lifo_steps(conflict, conflict.lifo(), convert=True)
            return self._complete(conflict, strategy, steps)

        if strategy == Strategy.AUTO_REDUCE_LATEST:
            lifo = conflict.lifo()
            if lifo and covers(lifo[0].amount, conflict.gap, self._tol):
                return self._complete(
                    conflict, strategy, self._lifo_steps(conflict, lifo[:1])
                )
            if self._fallback == LatestFallback.ERROR:
                covered = lifo[0].amount if lifo else ZERO
                raise IncompleteResolutionError(conflict.kind.value, conflict.gap, covered)

        steps = self._lifo_steps(conflict, conflict.lifo())
        return self._complete(conflict, strategy, steps)

    def _complete(
        self,
        conflict: Conflict,
        strategy: Strategy,
        steps: list[PlanStep],
    ) -> ResolutionPlan:
        removed = total(s.removed for s in steps)
        if not covers(removed, conflict.gap, self._tol):
            raise IncompleteResolutionError(conflict.kind.value, conflict.gap, removed)
        return ResolutionPlan(
            strategy=strategy,
            conflict_kind=conflict.kind,
            target_type=conflict.target_type,
            target_id=conflict.target_id,
            gap=conflict.gap,
            steps=tuple(steps),
        )

    def _lifo_steps(
        self,
        conflict: Conflict,
        ordered: Iterable[Dependent],
        convert: bool = False,
    ) -> list[PlanStep]:
        """Take from dependents in the given order until the gap is absorbed."""
        steps: list[PlanStep] = []
        outstanding = conflict.gap
        for dep in ordered:
            if outstanding <= ZERO:
                break
            take = min(outstanding, dep.amount)
            new_amount = dep.amount - take
            steps.append(PlanStep(
                dependent=dep,
                action=self._auto_action(conflict.kind, dep, new_amount, convert),
                new_amount=new_amount,
                removed=take,
            ))
            outstanding -= take
        return steps

    @staticmethod
    def _auto_action(
        kind: ConflictKind,
        dep: Dependent,
        new_amount: Decimal,
        convert: bool,
    ) -> DecisionAction:
        if kind == ConflictKind.CREDIT_DELETION:
            return DecisionAction.DELETE_ALLOCATION
        if kind == ConflictKind.CREDIT_REDUCTION:
            if new_amount == ZERO:
                return DecisionAction.REMOVE_ALLOCATION
            return DecisionAction.REDUCE_ALLOCATION
        if dep.is_allocation:
            return DecisionAction.RETURN_TO_CREDIT
        if convert:
            return DecisionAction.CONVERT_TO_CREDIT
        return DecisionAction.DELETE if new_amount == ZERO else DecisionAction.REDUCE_TO

    def _manual_steps(
        self,
        conflict: Conflict,
        decisions: Iterable[Decision],
    ) -> list[PlanStep]:
        by_id: dict[UUID, Decision] = {}
        for decision in decisions:
            key = str(decision.dependent_id)
            if conflict.dependent(decision.dependent_id) is None:
                raise InvalidDecisionError(
                    key, decision.action.value, "not a dependent of this conflict"
                )
            if decision.dependent_id in by_id:
                raise InvalidDecisionError(key, decision.action.value, "decided more than once")
            if decision.action not in allowed_actions(
                conflict.kind, conflict.dependent(decision.dependent_id).record_type
            ):
                raise InvalidDecisionError(
                    key, decision.action.value,
                    f"not allowed for {conflict.kind.value} conflicts",
                )
            by_id[decision.dependent_id] = decision

        steps = []
        for dep in conflict.dependents:
            decision = by_id.get(dep.record_id, Decision(dep.record_id, DecisionAction.KEEP))
            new_amount = self._decided_amount(dep, decision)
            steps.append(PlanStep(
                dependent=dep,
                action=decision.action,
                new_amount=new_amount,
                removed=dep.amount - new_amount,
                payment_method=(
                    decision.payment_method or self._conversion_method
                    if decision.action == DecisionAction.CONVERT_TO_PAYMENT else None
                ),
            ))
        return steps

    @staticmethod
    def _decided_amount(dep: Dependent, decision: Decision) -> Decimal:
        """Amount the dependent keeps after the decision."""
        action = decision.action
        if action == DecisionAction.KEEP:
            return dep.amount
        if action in (
            DecisionAction.DELETE,
            DecisionAction.DELETE_ALLOCATION,
            DecisionAction.REMOVE_ALLOCATION,
            DecisionAction.CONVERT_TO_PAYMENT,
        ):
            return ZERO

        new_amount = decision.new_amount
        if new_amount is None:
            if action in (DecisionAction.REDUCE_TO, DecisionAction.REDUCE_ALLOCATION):
                raise InvalidDecisionError(
                    str(dep.record_id), action.value, "new_amount is required"
                )
            new_amount = ZERO
        if exceeds(new_amount, dep.amount, ZERO):
            raise InvalidDecisionError(
                str(dep.record_id), action.value,
                f"new_amount {new_amount} is outside [0, {dep.amount}]",
            )
        return new_amount
