"""
Module: ledger_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    reconciliation engines.  This is the canonical import surface for
    ledger_services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import ledger_kernel.domain, ledger_kernel.exceptions and
    ledger_kernel.logging_config (and sibling engine modules).
    MUST NOT import sqlalchemy, ledger_kernel models/selectors/services,
    ledger_config or ledger_services.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or ``date.today()``.
      Business dates are passed in by the services layer.
    - Decimal-only arithmetic: amounts are ``Decimal``; floats are forbidden.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from ledger_engines.invariants import InvariantChecker
    from ledger_engines.resolution import StrategyResolver, ResolutionRequest
    from ledger_engines.cascade import CascadeProjector
"""

from ledger_kernel.logging_config import get_logger

logger = get_logger("engines")

from ledger_engines.cascade import CascadeProjector, Consequences, Projection
from ledger_engines.invariants import (
    CheckResult,
    Conflict,
    ConflictKind,
    Dependent,
    InvariantChecker,
    RecomputeScope,
)
from ledger_engines.resolution import (
    Decision,
    DecisionAction,
    LatestFallback,
    PlanStep,
    ResolutionPlan,
    ResolutionRequest,
    Strategy,
    StrategyOption,
    StrategyResolver,
    StrategyText,
    allowed_actions,
)
from ledger_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "CascadeProjector",
    "CheckResult",
    "Conflict",
    "ConflictKind",
    "Consequences",
    "Decision",
    "DecisionAction",
    "Dependent",
    "InvariantChecker",
    "LatestFallback",
    "PlanStep",
    "Projection",
    "RecomputeScope",
    "ResolutionPlan",
    "ResolutionRequest",
    "Strategy",
    "StrategyOption",
    "StrategyResolver",
    "StrategyText",
    "allowed_actions",
    "compute_input_fingerprint",
    "traced_engine",
]
