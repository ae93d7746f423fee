"""
Ledger Kernel - client/employee money ledger with checked mutations.

Tracks what is billed (receivables), what is paid (payments), standing
client balances (credits) and the links between them (allocations), with:
- Derived paid/remaining/status fields recomputed on every commit
- Optimistic concurrency on every mutable record
- Atomic cascades into commissions and account balances
"""

__version__ = "0.1.0"
