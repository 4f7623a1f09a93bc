"""
Factura Reconciliation System

Reconciles data extracted from uploaded Argentine invoices ("facturas")
against an expected-invoice ledger imported from AFIP/ARCA exports.

This package provides:
- Core data models and the error taxonomy
- Exact and partial matching with invoice-number proximity scoring
- A confidence gate that auto-links, auto-creates or queues for review
- Transactional commit of confirmed matches
- In-memory and SQL ledgers
- Expected-ledger import from Excel/CSV exports
- Configuration management
"""

from .models import (
    # Core data models
    ExtractedRecord,
    ExpectedInvoice,
    NewExpectedInvoice,
    FinalizedInvoice,
    InvoiceFields,
    NaturalKey,
    MatchCandidate,
    ProcessingOutcome,
    SourceFile,
    Emitter,
    ImportBatch,

    # Configuration models
    ReconciliationSettings,

    # Enums
    ExpectedStatus,
    FileStatus,
    Decision,
    PersonType,

    # Exceptions
    InvoiceReconciliationError,
    ValidationError,
    ConflictError,
    NotFoundError,
    StorageError,
    ConfigurationError
)

__version__ = "1.0.0"
__author__ = "Invoice Processing System"

__all__ = [
    # Core data models
    "ExtractedRecord",
    "ExpectedInvoice",
    "NewExpectedInvoice",
    "FinalizedInvoice",
    "InvoiceFields",
    "NaturalKey",
    "MatchCandidate",
    "ProcessingOutcome",
    "SourceFile",
    "Emitter",
    "ImportBatch",

    # Configuration models
    "ReconciliationSettings",

    # Enums
    "ExpectedStatus",
    "FileStatus",
    "Decision",
    "PersonType",

    # Exceptions
    "InvoiceReconciliationError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "StorageError",
    "ConfigurationError"
]
