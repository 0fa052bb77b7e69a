"""
Rewards Ledger

This package provides:
- Accounts with a non-negative balance and an append-only transaction log
- Atomic balance mutation (in-memory per-account locks or a SQL backend)
- Pending deposit / withdrawal lifecycle: pending → completed / failed
- Read-only reconciliation for admin oversight

The façade (``ledger.service.LedgerService``) and the HTTP app
(``ledger.api``) build on the ``settlement`` package and are imported
from their modules directly.
"""

from .errors import LedgerError
from .models import (
    Account,
    AggregateStats,
    BankAccount,
    Task,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from .store import InMemoryLedgerStore, LedgerStore

__all__ = [
    "LedgerError",
    "Account",
    "AggregateStats",
    "BankAccount",
    "Task",
    "Transaction",
    "TransactionKind",
    "TransactionStatus",
    "InMemoryLedgerStore",
    "LedgerStore",
]
