"""
Importers that load external exports into the expected ledger.
"""

from .excel_import import ExpectedInvoiceImporter, ImportResult

__all__ = [
    "ExpectedInvoiceImporter",
    "ImportResult"
]
