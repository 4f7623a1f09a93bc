"""
Linking and commit operations.

Every operation that touches more than one record (finalized invoice, source
file, expected invoice, emitter) runs inside a single ledger transaction, so a
rejected commit leaves no partial writes behind.
"""

from typing import Dict, Optional, Union

from factura_reconciliation.cuit import format_cuit, normalize_cuit, person_type
from factura_reconciliation.ledger.base_ledger import BaseLedger
from factura_reconciliation.models import (
    ConflictError, Emitter, ExpectedInvoice, ExpectedStatus, ExtractedRecord,
    FinalizedInvoice, InvoiceFields, NotFoundError, ReconciliationSettings,
    ValidationError
)

import logging
logger = logging.getLogger(__name__)


class InvoiceLinker:
    """Creates finalized invoices and links them to files and expected invoices."""

    def __init__(self, ledger: BaseLedger, settings: Optional[ReconciliationSettings] = None):
        self.ledger = ledger
        self.settings = settings or ReconciliationSettings()
        self.logger = logging.getLogger(f"{__name__}.InvoiceLinker")

    def commit_match(self, expected_invoice_id: int, file_id: int,
                     fields: Optional[Union[InvoiceFields, ExtractedRecord]] = None,
                     match_score: int = 100,
                     extraction_confidence: Optional[float] = None) -> FinalizedInvoice:
        """
        Confirm that a file satisfies an expected invoice.

        Creates the finalized invoice, links the file to it and marks the
        expected invoice matched, all or nothing.

        Args:
            expected_invoice_id: Expected invoice being consumed
            file_id: Source file that satisfies it
            fields: Invoice fields to store; the expected invoice's own
                fields are used when omitted
            match_score: Score recorded on the expected invoice
            extraction_confidence: Confidence stored on the invoice
                (defaults to the exact-match confidence setting)

        Returns:
            The created FinalizedInvoice

        Raises:
            NotFoundError: If the expected invoice or the file does not exist
            ConflictError: If the expected invoice is already matched, the
                file is already linked or the invoice key already exists
            ValidationError: If the fields lack a natural key or issue date
        """
        if extraction_confidence is None:
            extraction_confidence = self.settings.exact_match_confidence

        try:
            with self.ledger.transaction():
                expected = self._get_expected(expected_invoice_id)
                if expected.status == ExpectedStatus.MATCHED:
                    raise ConflictError(
                        f"Expected invoice {expected_invoice_id} is already matched "
                        f"to invoice {expected.matched_invoice_id}"
                    )

                invoice_fields = self._resolve_fields(expected, fields)
                invoice = self._create_and_link(invoice_fields, file_id,
                                                expected_invoice_id=expected.id,
                                                extraction_confidence=extraction_confidence,
                                                emitter_name=expected.emitter_name)

                if not self.ledger.mark_expected_matched(expected.id, file_id, invoice.id, match_score):
                    raise ConflictError(f"Expected invoice {expected_invoice_id} was matched concurrently")
        except ConflictError as e:
            _log_result(self.logger, "commit_match", False, f"expected {expected_invoice_id}, file {file_id}: {e}")
            raise

        _log_result(
            self.logger, "commit_match", True,
            f"expected {expected_invoice_id} -> invoice {invoice.id} ({invoice.full_number}), "
            f"file {file_id}, score {match_score}"
        )
        return invoice

    def create_from_extraction(self, file_id: int, record: ExtractedRecord) -> FinalizedInvoice:
        """
        Create a finalized invoice from extracted fields, with no expected invoice.

        Raises:
            NotFoundError: If the file does not exist
            ConflictError: If the file is already linked or the key exists
            ValidationError: If the record lacks a natural key or issue date
        """
        fields = InvoiceFields.from_extracted(record, currency=self.settings.default_currency)
        try:
            with self.ledger.transaction():
                invoice = self._create_and_link(fields, file_id,
                                                extraction_confidence=record.extraction_confidence)
        except ConflictError as e:
            _log_result(self.logger, "create_from_extraction", False, f"file {file_id}: {e}")
            raise

        _log_result(self.logger, "create_from_extraction", True,
                    f"file {file_id} -> invoice {invoice.id} ({invoice.full_number})")
        return invoice

    def ensure_emitter(self, cuit: str, name: Optional[str] = None) -> Emitter:
        """Return the emitter for a CUIT, registering it when unknown."""
        digits = normalize_cuit(cuit)
        emitter = self.ledger.get_emitter(digits)
        if emitter is not None:
            return emitter

        emitter = Emitter(
            cuit=digits,
            name=name or f"Emisor {format_cuit(digits)}",
            person_type=person_type(digits),
        )
        self.logger.info(f"Registering new emitter {format_cuit(digits)} ({emitter.name})")
        return self.ledger.add_emitter(emitter)

    def set_expected_status(self, expected_invoice_id: int, status: ExpectedStatus,
                            notes: Optional[str] = None) -> ExpectedInvoice:
        """
        Mark an open expected invoice as manual, ignored, discrepancy or pending.

        Raises:
            ValidationError: If the target status is matched
            NotFoundError: If the expected invoice does not exist
            ConflictError: If the expected invoice is already matched
        """
        if status == ExpectedStatus.MATCHED:
            raise ValidationError("Expected invoices can only become matched through commit_match")

        with self.ledger.transaction():
            expected = self._get_expected(expected_invoice_id)
            if expected.status == ExpectedStatus.MATCHED:
                raise ConflictError(f"Expected invoice {expected_invoice_id} is matched and can not change status")
            if not self.ledger.update_expected_status(expected_invoice_id, status, notes):
                raise ConflictError(f"Expected invoice {expected_invoice_id} was matched concurrently")

        self.logger.info(f"Expected invoice {expected_invoice_id}: {expected.status.value} -> {status.value}")
        return self.ledger.get_expected(expected_invoice_id)

    def recategorize(self, invoice_id: int, category: Optional[str]) -> FinalizedInvoice:
        """Set or clear (None) the category of a finalized invoice."""
        if category is not None:
            if not isinstance(category, str):
                raise ValidationError(f"Category must be text, got {category!r}")
            category = category.strip() or None
        invoice = self.ledger.set_invoice_category(invoice_id, category)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        self.logger.info(f"Invoice {invoice_id} category set to {category!r}")
        return invoice

    def reassign_emitter(self, invoice_id: int, cuit: str) -> FinalizedInvoice:
        """
        Move a finalized invoice to another emitter.

        Raises:
            NotFoundError: If the invoice does not exist
            ConflictError: If the emitter already has an invoice with this
                type, point of sale and number
        """
        digits = normalize_cuit(cuit)
        with self.ledger.transaction():
            if self.ledger.get_invoice(invoice_id) is None:
                raise NotFoundError(f"Invoice {invoice_id} not found")
            self.ensure_emitter(digits)
            invoice = self.ledger.set_invoice_emitter(invoice_id, digits)

        self.logger.info(f"Invoice {invoice_id} reassigned to emitter {format_cuit(digits)}")
        return invoice

    def _create_and_link(self, fields: InvoiceFields, file_id: int,
                         expected_invoice_id: Optional[int] = None,
                         extraction_confidence: Optional[float] = None,
                         emitter_name: Optional[str] = None) -> FinalizedInvoice:
        source = self.ledger.get_file(file_id)
        if source is None:
            raise NotFoundError(f"File {file_id} not found")
        if source.invoice_id is not None:
            raise ConflictError(f"File {file_id} is already linked to invoice {source.invoice_id}")

        self.ensure_emitter(fields.emitter_cuit, emitter_name)
        invoice = self.ledger.create_invoice(
            fields,
            file_id=file_id,
            expected_invoice_id=expected_invoice_id,
            extraction_confidence=extraction_confidence,
            requires_review=False,
        )
        if not self.ledger.link_file(file_id, invoice.id):
            raise ConflictError(f"File {file_id} was linked concurrently")
        return invoice

    def _get_expected(self, expected_invoice_id: int) -> ExpectedInvoice:
        expected = self.ledger.get_expected(expected_invoice_id)
        if expected is None:
            raise NotFoundError(f"Expected invoice {expected_invoice_id} not found")
        return expected

    def _resolve_fields(self, expected: ExpectedInvoice,
                        fields: Optional[Union[InvoiceFields, ExtractedRecord]]) -> InvoiceFields:
        if fields is None:
            return InvoiceFields.from_expected(expected)
        if isinstance(fields, ExtractedRecord):
            return InvoiceFields.from_extracted(fields, currency=expected.currency)
        return InvoiceFields(
            emitter_cuit=normalize_cuit(fields.emitter_cuit),
            invoice_type=fields.invoice_type,
            point_of_sale=fields.point_of_sale,
            invoice_number=fields.invoice_number,
            issue_date=fields.issue_date,
            total=fields.total,
            currency=fields.currency,
        )


class EmitterGuard:
    """Deletes emitters only when nothing references them."""

    def __init__(self, ledger: BaseLedger):
        self.ledger = ledger
        self.logger = logging.getLogger(f"{__name__}.EmitterGuard")

    def reference_counts(self, cuit: str) -> Dict[str, int]:
        """Count the records that still reference an emitter, per source."""
        digits = normalize_cuit(cuit)
        return {
            'invoices': self.ledger.count_invoices_for_emitter(digits),
            'expected_invoices': self.ledger.count_open_expected_for_emitter(digits),
            'unlinked_files': self.ledger.count_unlinked_files_for_emitter(digits),
        }

    def delete_emitter(self, cuit: str) -> None:
        """
        Delete an emitter with no remaining references.

        Raises:
            NotFoundError: If the emitter does not exist
            ConflictError: If any invoice, open expected invoice or unlinked
                file references it; ``details`` holds the breakdown
        """
        digits = normalize_cuit(cuit)
        with self.ledger.transaction():
            if self.ledger.get_emitter(digits) is None:
                raise NotFoundError(f"Emitter {format_cuit(digits)} not found")

            counts = self.reference_counts(digits)
            total = sum(counts.values())
            if total > 0:
                _log_result(self.logger, "delete_emitter", False, f"{format_cuit(digits)} has {total} references")
                raise ConflictError(
                    f"Emitter {format_cuit(digits)} is referenced by {counts['invoices']} invoices, "
                    f"{counts['expected_invoices']} expected invoices and "
                    f"{counts['unlinked_files']} unlinked files",
                    details={**counts, 'total': total},
                )
            self.ledger.delete_emitter(digits)

        _log_result(self.logger, "delete_emitter", True, format_cuit(digits))


def _log_result(log: logging.Logger, operation: str, success: bool, details: Optional[str] = None):
    """Log an operation at info when it succeeds and at warning when rejected."""
    status = "SUCCESS" if success else "REJECTED"
    message = f"{operation} {status}"
    if details:
        message += f" - {details}"

    if success:
        log.info(message)
    else:
        log.warning(message)
