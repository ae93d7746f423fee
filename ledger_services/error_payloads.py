"""
Structured payloads for typed kernel exceptions.

Every ``LedgerKernelError`` carries its details as public attributes; this
module turns them into plain dicts for preview error lists and API bodies,
so callers never parse messages.
"""

from __future__ import annotations

from typing import Any

from ledger_kernel.exceptions import LedgerKernelError


def error_details(exc: LedgerKernelError) -> dict[str, Any]:
    """Public attributes of an exception, with nested objects flattened."""
    details: dict[str, Any] = {}
    for key, value in vars(exc).items():
        if key.startswith("_") or key == "args":
            continue
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        details[key] = value
    return details


def error_payload(exc: LedgerKernelError) -> dict[str, Any]:
    return {
        "code": exc.code.lower(),
        "message": str(exc),
        "details": error_details(exc),
    }
