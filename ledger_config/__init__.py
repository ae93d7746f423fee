"""
ledger_config -- single public entrypoint for reconciliation configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain settings at runtime.
    It loads the YAML file, parses it into a frozen ``LedgerConfig`` and
    emits a ``LEDGER_CONFIG_TRACE`` log record carrying the checksum.

Architecture position:
    Configuration -- sits beside the kernel.  The kernel and the engines
    never import this package; ``ledger_services`` translates the settings
    into engine and service arguments.

Failure modes:
    - ``FileNotFoundError`` -- the requested file does not exist.
    - ``ValueError`` / ``KeyError`` -- the file does not parse into a valid
      configuration.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ledger_config.loader import load_yaml_file, parse_config
from ledger_config.schema import LedgerConfig, StrategyLabelDef

_logger = logging.getLogger("ledger_kernel.config")

_DEFAULT_CONFIG_FILE = Path(__file__).parent / "defaults.yaml"


def get_active_config(config_path: Path | None = None) -> LedgerConfig:
    """
    The ONLY public configuration entrypoint.

    Args:
        config_path: Override path to a settings file.  Defaults to the
            packaged ``defaults.yaml``.
    """
    path = config_path or _DEFAULT_CONFIG_FILE
    config = parse_config(load_yaml_file(path))

    _logger.info(
        "LEDGER_CONFIG_TRACE",
        extra={
            "trace_type": "LEDGER_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "currency": config.currency,
            "auto_reduce_latest_fallback": config.auto_reduce_latest_fallback,
        },
    )
    return config


__all__ = ["LedgerConfig", "StrategyLabelDef", "get_active_config"]
