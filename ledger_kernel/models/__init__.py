"""Domain models for the ledger kernel."""

from ledger_kernel.models.credit import Allocation, Credit
from ledger_kernel.models.party import Party
from ledger_kernel.models.receivable import Payment, Receivable
from ledger_kernel.models.task import Commission, Task
from ledger_kernel.models.transaction import LedgerTransaction

__all__ = [
    "Party",
    "Credit",
    "Allocation",
    "Receivable",
    "Payment",
    "Task",
    "Commission",
    "LedgerTransaction",
]
