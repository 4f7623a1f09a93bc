"""
Storage back-ends for the reconciliation core.

This package provides:
- The BaseLedger interface used by the resolver, gate and linker
- An in-memory ledger for tests and single-process tooling
- A SQL ledger on SQLAlchemy (SQLite by default)
"""

from .base_ledger import BaseLedger
from .memory_ledger import InMemoryLedger
from .sql_ledger import SQLLedger, create_ledger_engine

__all__ = [
    "BaseLedger",
    "InMemoryLedger",
    "SQLLedger",
    "create_ledger_engine"
]
