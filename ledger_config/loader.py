"""
Configuration Loader (``ledger_config.loader``).

Responsibility
--------------
Loads the YAML settings file and parses it into a frozen ``LedgerConfig``.
Callers go through ``ledger_config.get_active_config()``; the loader is
internal tooling.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required keys have no silent defaults.
* Money settings are parsed as ``Decimal`` from their string form.
* ``compute_checksum`` is deterministic for identical content.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from ledger_config.schema import (
    LATEST_FALLBACKS,
    STRATEGY_KEYS,
    LedgerConfig,
    StrategyLabelDef,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file.

    Raises:
        FileNotFoundError: if path does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{name} must be a decimal number, got {value!r}") from exc
    if not result.is_finite() or result < 0:
        raise ValueError(f"{name} must be a non-negative decimal, got {value!r}")
    return result


def parse_strategy(data: dict[str, Any]) -> StrategyLabelDef:
    return StrategyLabelDef(
        label=data["label"],
        description=data["description"],
        recommended=bool(data.get("recommended", False)),
    )


def parse_config(data: dict[str, Any]) -> LedgerConfig:
    """
    Parse the raw YAML mapping into a ``LedgerConfig``.

    Raises:
        KeyError: a required key is missing.
        ValueError: a value is out of range or unknown.
    """
    ledger = data["ledger"]
    resolution = data["resolution"]

    fallback = resolution.get("auto_reduce_latest_fallback", "error")
    if fallback not in LATEST_FALLBACKS:
        raise ValueError(
            f"auto_reduce_latest_fallback must be one of {LATEST_FALLBACKS}, got {fallback!r}"
        )

    strategies = {}
    for key, value in (resolution.get("strategies") or {}).items():
        if key not in STRATEGY_KEYS:
            raise ValueError(f"Unknown resolution strategy {key!r}")
        strategies[key] = parse_strategy(value)

    commission_rate = parse_decimal(ledger["default_commission_rate"], "default_commission_rate")
    if commission_rate > 1:
        raise ValueError(f"default_commission_rate must be <= 1, got {commission_rate}")

    return LedgerConfig(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        currency=ledger["currency"],
        amount_tolerance=parse_decimal(ledger["amount_tolerance"], "amount_tolerance"),
        default_commission_rate=commission_rate,
        auto_reduce_latest_fallback=fallback,
        conversion_payment_method=resolution.get(
            "conversion_payment_method", "credit_conversion"
        ),
        strategies=strategies,
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
