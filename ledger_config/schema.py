"""
Configuration schema (``ledger_config.schema``).

Frozen dataclasses describing the reconciliation settings.  Instances are
produced by ``ledger_config.loader`` and handed out by
``ledger_config.get_active_config()``; nothing else constructs them at
runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping

LATEST_FALLBACKS = ("error", "auto_reduce_payments")

STRATEGY_KEYS = (
    "auto_reduce_payments",
    "auto_reduce_latest",
    "convert_surplus_to_credit",
    "manual_resolution",
)


@dataclass(frozen=True)
class StrategyLabelDef:
    """Operator-facing text of one resolution strategy."""

    label: str
    description: str
    recommended: bool = False


@dataclass(frozen=True)
class LedgerConfig:
    """
    Reconciliation settings for one ledger.

    ``auto_reduce_latest_fallback`` decides what ``auto_reduce_latest``
    does when the single latest dependent cannot cover the gap: ``error``
    marks the strategy unavailable, ``auto_reduce_payments`` falls back to
    LIFO reduction across all dependents.
    """

    config_id: str
    version: int
    currency: str
    amount_tolerance: Decimal
    default_commission_rate: Decimal
    auto_reduce_latest_fallback: str
    conversion_payment_method: str
    strategies: Mapping[str, StrategyLabelDef] = field(default_factory=dict)
    checksum: str = ""
