"""
ledger_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines (ledger_engines/)
    with database sessions, the clock and configuration.  This is the only
    layer that reads ``ledger_config`` or owns transaction boundaries.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction (enforced by tests/architecture/test_ledger_boundaries.py):
        ledger_services/ -> ledger_engines/  (allowed)
        ledger_services/ -> ledger_kernel/   (allowed)
        ledger_services/ -> ledger_config/   (allowed)
        ledger_engines/  -> ledger_services/ (FORBIDDEN)
        ledger_kernel/   -> ledger_services/ (FORBIDDEN)

Failure modes:
    - ImportError at startup if a service's dependency graph is broken.
"""

from ledger_kernel.logging_config import get_logger

logger = get_logger("services")

from ledger_services.api import LedgerApi
from ledger_services.cascade_executor import CascadeExecutor, CommitResult
from ledger_services.preview_service import PreviewResult, PreviewService
from ledger_services.reconciliation_engine import ReconciliationEngine

__all__ = [
    "CascadeExecutor",
    "CommitResult",
    "LedgerApi",
    "PreviewResult",
    "PreviewService",
    "ReconciliationEngine",
]
