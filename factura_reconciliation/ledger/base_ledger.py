"""
Base ledger interface for reconciliation storage.

Defines the narrow interface the reconciliation core uses to read and update
the expected-invoice ledger, the finalized invoices, uploaded source files and
emitters. Implementations must enforce natural-key uniqueness and make the
conditional updates (mark matched, link file) atomic.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from factura_reconciliation.models import (
    Emitter, ExpectedInvoice, ExpectedStatus, ExtractedRecord, FileStatus,
    FinalizedInvoice, ImportBatch, InvoiceFields, NaturalKey, NewExpectedInvoice,
    OPEN_STATUSES, SourceFile
)

logger = logging.getLogger(__name__)


class BaseLedger(ABC):
    """
    Abstract base class for reconciliation storage back-ends.

    Write methods called inside ``transaction()`` are applied together or
    not at all. Outside a transaction every write is committed on its own.
    """

    def __init__(self, ledger_id: str):
        """
        Initialize base ledger.

        Args:
            ledger_id: Name used in log messages
        """
        self.ledger_id = ledger_id
        self.logger = logging.getLogger(f"{__name__}.{ledger_id}")

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Group writes into one atomic unit.

        Any exception raised inside the block rolls back every write made in
        it and is re-raised. Nested calls join the outer transaction.
        """
        yield

    # -- expected ledger -------------------------------------------------

    @abstractmethod
    def add_expected(self, invoice: NewExpectedInvoice,
                     import_batch_id: Optional[int] = None) -> ExpectedInvoice:
        """
        Insert an expected invoice with status pending.

        Raises:
            ConflictError: If the natural key already exists
        """
        pass

    @abstractmethod
    def get_expected(self, expected_id: int) -> Optional[ExpectedInvoice]:
        pass

    @abstractmethod
    def find_expected_by_key(self, key: NaturalKey,
                             statuses: Sequence[ExpectedStatus] = OPEN_STATUSES) -> Optional[ExpectedInvoice]:
        """Row with exactly this natural key and one of the given statuses."""
        pass

    @abstractmethod
    def search_expected(self, statuses: Sequence[ExpectedStatus] = OPEN_STATUSES,
                        cuit: Optional[str] = None,
                        invoice_type: Optional[str] = None,
                        point_of_sale: Optional[int] = None,
                        invoice_number: Optional[int] = None) -> List[ExpectedInvoice]:
        """
        Rows matching every given field and one of the statuses.

        Returns:
            Expected invoices ordered by ascending id
        """
        pass

    @abstractmethod
    def mark_expected_matched(self, expected_id: int, file_id: int,
                              invoice_id: int, match_score: int) -> bool:
        """
        Transition an expected invoice to matched if it is not matched yet.

        Returns:
            True if the row was updated, False if it was already matched or
            does not exist
        """
        pass

    @abstractmethod
    def update_expected_status(self, expected_id: int, status: ExpectedStatus,
                               notes: Optional[str] = None) -> bool:
        """
        Change the status of an expected invoice that is not matched.

        Returns:
            True if the row was updated, False otherwise
        """
        pass

    @abstractmethod
    def count_expected_by_status(self) -> Dict[ExpectedStatus, int]:
        pass

    @abstractmethod
    def create_import_batch(self, filename: str) -> ImportBatch:
        pass

    @abstractmethod
    def save_import_batch(self, batch: ImportBatch) -> ImportBatch:
        pass

    # -- finalized invoices ----------------------------------------------

    @abstractmethod
    def create_invoice(self, fields: InvoiceFields, file_id: Optional[int] = None,
                       expected_invoice_id: Optional[int] = None,
                       extraction_confidence: Optional[float] = None,
                       requires_review: bool = False) -> FinalizedInvoice:
        """
        Insert a finalized invoice.

        Raises:
            ConflictError: If an invoice with the same natural key exists
        """
        pass

    @abstractmethod
    def get_invoice(self, invoice_id: int) -> Optional[FinalizedInvoice]:
        pass

    @abstractmethod
    def find_invoice_by_key(self, key: NaturalKey) -> Optional[FinalizedInvoice]:
        pass

    @abstractmethod
    def set_invoice_category(self, invoice_id: int, category: Optional[str]) -> Optional[FinalizedInvoice]:
        pass

    @abstractmethod
    def set_invoice_emitter(self, invoice_id: int, emitter_cuit: str) -> Optional[FinalizedInvoice]:
        """
        Reassign an invoice to another emitter.

        Raises:
            ConflictError: If the new natural key is already taken
        """
        pass

    # -- source files ----------------------------------------------------

    @abstractmethod
    def add_file(self, original_filename: str) -> SourceFile:
        pass

    @abstractmethod
    def get_file(self, file_id: int) -> Optional[SourceFile]:
        pass

    @abstractmethod
    def save_extraction(self, file_id: int, extracted: Optional[ExtractedRecord],
                        status: FileStatus, error_message: Optional[str] = None) -> Optional[SourceFile]:
        """Replace the stored extraction of a file and set its status."""
        pass

    @abstractmethod
    def link_file(self, file_id: int, invoice_id: int) -> bool:
        """
        Link a file to an invoice if it is not linked yet.

        Returns:
            True if the file was linked, False if it was already linked or
            does not exist
        """
        pass

    # -- emitters --------------------------------------------------------

    @abstractmethod
    def get_emitter(self, cuit: str) -> Optional[Emitter]:
        pass

    @abstractmethod
    def add_emitter(self, emitter: Emitter) -> Emitter:
        """
        Raises:
            ConflictError: If the CUIT is already registered
        """
        pass

    @abstractmethod
    def delete_emitter(self, cuit: str) -> bool:
        pass

    @abstractmethod
    def count_invoices_for_emitter(self, cuit: str) -> int:
        pass

    @abstractmethod
    def count_open_expected_for_emitter(self, cuit: str) -> int:
        pass

    @abstractmethod
    def count_unlinked_files_for_emitter(self, cuit: str) -> int:
        """Files with no linked invoice whose extracted CUIT is this one."""
        pass

    @abstractmethod
    def get_ledger_info(self) -> Dict[str, Any]:
        """
        Get information about the storage back-end.

        Returns:
            Dictionary containing ledger metadata
        """
        pass

    def _log_operation(self, operation: str, success: bool, details: Optional[str] = None):
        """
        Log a ledger operation with its status.

        Args:
            operation: Name of the operation
            success: Whether operation succeeded
            details: Additional details to log
        """
        status = "SUCCESS" if success else "REJECTED"
        message = f"{operation} {status}"

        if details:
            message += f" - {details}"

        if success:
            self.logger.info(message)
        else:
            self.logger.warning(message)
