"""
Unit tests for linking and commit operations.

Tests commit_match atomicity, expected-invoice status changes, invoice
recategorization, emitter reassignment and guarded emitter deletion.
"""

import pytest
from datetime import date
from decimal import Decimal

from factura_reconciliation.ledger import InMemoryLedger
from factura_reconciliation.linking import EmitterGuard, InvoiceLinker
from factura_reconciliation.models import (
    ConflictError, ExpectedStatus, ExtractedRecord, FileStatus, InvoiceFields,
    NewExpectedInvoice, NotFoundError, PersonType, ValidationError
)

CUIT = '20102000537'
OTHER_CUIT = '30712345671'


def _expected(invoice_number=99152, cuit=CUIT, issue_date=date(2024, 3, 1)):
    return NewExpectedInvoice(
        cuit=cuit,
        invoice_type='A',
        point_of_sale=2056,
        invoice_number=invoice_number,
        issue_date=issue_date,
        total=Decimal('1210.00'),
        currency='USD',
    )


class TestCommitMatch:
    """Test cases for InvoiceLinker.commit_match."""

    def setup_method(self):
        """Setup test environment."""
        self.ledger = InMemoryLedger()
        self.linker = InvoiceLinker(self.ledger)
        self.expected = self.ledger.add_expected(_expected())
        self.file = self.ledger.add_file('factura.pdf')

    def test_commit_links_all_records(self):
        """Test a successful commit from the expected invoice's fields."""
        invoice = self.linker.commit_match(self.expected.id, self.file.id, match_score=83)

        assert invoice.emitter_cuit == CUIT
        assert invoice.full_number == 'A-02056-00099152'
        assert invoice.total == Decimal('1210.00')
        assert invoice.currency == 'USD'
        assert invoice.extraction_confidence == 95.0
        assert invoice.requires_review is False

        expected = self.ledger.get_expected(self.expected.id)
        assert expected.status == ExpectedStatus.MATCHED
        assert expected.match_score == 83
        assert expected.matched_invoice_id == invoice.id
        assert expected.matched_file_id == self.file.id

        source = self.ledger.get_file(self.file.id)
        assert source.invoice_id == invoice.id
        assert source.status == FileStatus.PROCESSED

    def test_commit_registers_emitter(self):
        """Test that an unknown emitter is created on commit."""
        self.linker.commit_match(self.expected.id, self.file.id)

        emitter = self.ledger.get_emitter(CUIT)
        assert emitter.name == 'Emisor 20-10200053-7'
        assert emitter.person_type == PersonType.FISICA

    def test_commit_with_extracted_fields(self):
        """Test committing with fields corrected by a reviewer."""
        record = ExtractedRecord(cuit=CUIT, issue_date=date(2024, 3, 5), invoice_type='A',
                                 point_of_sale=2056, invoice_number=99152,
                                 total=Decimal('1200.00'), extraction_confidence=70)

        invoice = self.linker.commit_match(self.expected.id, self.file.id, fields=record,
                                           extraction_confidence=70)

        assert invoice.issue_date == date(2024, 3, 5)
        assert invoice.total == Decimal('1200.00')
        assert invoice.currency == 'USD'
        assert invoice.extraction_confidence == 70

    def test_commit_with_invoice_fields(self):
        """Test committing with explicit invoice fields."""
        fields = InvoiceFields(emitter_cuit='20-10200053-7', invoice_type='A', point_of_sale=2056,
                               invoice_number=99152, issue_date=date(2024, 3, 1))

        invoice = self.linker.commit_match(self.expected.id, self.file.id, fields=fields)

        assert invoice.emitter_cuit == CUIT
        assert invoice.total is None

    def test_double_commit_is_rejected(self):
        """Test that an expected invoice is consumed only once."""
        self.linker.commit_match(self.expected.id, self.file.id)
        other_file = self.ledger.add_file('copia.pdf')

        with pytest.raises(ConflictError):
            self.linker.commit_match(self.expected.id, other_file.id)

        assert self.ledger.get_file(other_file.id).invoice_id is None

    def test_linked_file_is_rejected(self):
        """Test that a file already linked can not satisfy another row."""
        self.linker.commit_match(self.expected.id, self.file.id)
        second = self.ledger.add_expected(_expected(invoice_number=99153))

        with pytest.raises(ConflictError):
            self.linker.commit_match(second.id, self.file.id)

        assert self.ledger.get_expected(second.id).status == ExpectedStatus.PENDING
        assert self.ledger.find_invoice_by_key(self.ledger.get_expected(second.id).natural_key) is None

    def test_duplicate_invoice_leaves_no_partial_writes(self):
        """Test that a key collision rolls back the whole commit."""
        first_file = self.ledger.add_file('primera.pdf')
        self.linker.create_from_extraction(first_file.id, ExtractedRecord(
            cuit=CUIT, issue_date=date(2024, 3, 1), invoice_type='A',
            point_of_sale=2056, invoice_number=99152, extraction_confidence=90,
        ))

        with pytest.raises(ConflictError):
            self.linker.commit_match(self.expected.id, self.file.id)

        expected = self.ledger.get_expected(self.expected.id)
        assert expected.status == ExpectedStatus.PENDING
        assert expected.matched_invoice_id is None
        assert self.ledger.get_file(self.file.id).invoice_id is None

    def test_missing_expected_invoice(self):
        """Test committing against an unknown expected invoice."""
        with pytest.raises(NotFoundError):
            self.linker.commit_match(999, self.file.id)

    def test_missing_file(self):
        """Test committing an unknown file."""
        with pytest.raises(NotFoundError):
            self.linker.commit_match(self.expected.id, 999)

        assert self.ledger.get_expected(self.expected.id).status == ExpectedStatus.PENDING
        assert self.ledger.get_emitter(CUIT) is None

    def test_undated_expected_invoice(self):
        """Test that an expected invoice without issue date needs explicit fields."""
        undated = self.ledger.add_expected(_expected(invoice_number=5, issue_date=None))

        with pytest.raises(ValidationError):
            self.linker.commit_match(undated.id, self.file.id)

    def test_ignored_row_can_still_be_matched(self):
        """Test that non-matched statuses remain open for commits."""
        self.ledger.update_expected_status(self.expected.id, ExpectedStatus.IGNORED)

        self.linker.commit_match(self.expected.id, self.file.id)

        assert self.ledger.get_expected(self.expected.id).status == ExpectedStatus.MATCHED


class TestExpectedStatus:
    """Test cases for InvoiceLinker.set_expected_status."""

    def setup_method(self):
        """Setup test environment."""
        self.ledger = InMemoryLedger()
        self.linker = InvoiceLinker(self.ledger)
        self.expected = self.ledger.add_expected(_expected())

    def test_set_status_with_notes(self):
        """Test moving a row to discrepancy."""
        updated = self.linker.set_expected_status(self.expected.id, ExpectedStatus.DISCREPANCY,
                                                  notes='Total differs')

        assert updated.status == ExpectedStatus.DISCREPANCY
        assert updated.notes == 'Total differs'

    def test_matched_is_not_a_manual_status(self):
        """Test that matched is reserved for commits."""
        with pytest.raises(ValidationError):
            self.linker.set_expected_status(self.expected.id, ExpectedStatus.MATCHED)

    def test_matched_row_is_final(self):
        """Test that a matched row can not be reopened."""
        file = self.ledger.add_file('f.pdf')
        self.linker.commit_match(self.expected.id, file.id)

        with pytest.raises(ConflictError):
            self.linker.set_expected_status(self.expected.id, ExpectedStatus.PENDING)

    def test_unknown_row(self):
        """Test changing the status of an unknown row."""
        with pytest.raises(NotFoundError):
            self.linker.set_expected_status(999, ExpectedStatus.IGNORED)


class TestInvoiceMaintenance:
    """Test cases for recategorize and reassign_emitter."""

    def setup_method(self):
        """Setup test environment."""
        self.ledger = InMemoryLedger()
        self.linker = InvoiceLinker(self.ledger)
        self.file = self.ledger.add_file('f.pdf')
        self.invoice = self.linker.create_from_extraction(self.file.id, ExtractedRecord(
            cuit=CUIT, issue_date=date(2024, 3, 1), invoice_type='B',
            point_of_sale=3, invoice_number=10, extraction_confidence=90,
        ))

    def test_recategorize(self):
        """Test setting and clearing a category."""
        assert self.linker.recategorize(self.invoice.id, ' Servicios ').category == 'Servicios'
        assert self.linker.recategorize(self.invoice.id, None).category is None
        assert self.linker.recategorize(self.invoice.id, '  ').category is None

    def test_recategorize_invalid(self):
        """Test invalid category values and unknown invoices."""
        with pytest.raises(ValidationError):
            self.linker.recategorize(self.invoice.id, 12)
        with pytest.raises(NotFoundError):
            self.linker.recategorize(999, 'Servicios')

    def test_reassign_emitter(self):
        """Test moving an invoice to a new emitter."""
        invoice = self.linker.reassign_emitter(self.invoice.id, '30-71234567-1')

        assert invoice.emitter_cuit == OTHER_CUIT
        assert self.ledger.get_emitter(OTHER_CUIT).person_type == PersonType.JURIDICA

    def test_reassign_emitter_collision(self):
        """Test that the target emitter can not already hold the same number."""
        other_file = self.ledger.add_file('g.pdf')
        self.linker.create_from_extraction(other_file.id, ExtractedRecord(
            cuit=OTHER_CUIT, issue_date=date(2024, 3, 1), invoice_type='B',
            point_of_sale=3, invoice_number=10, extraction_confidence=90,
        ))

        with pytest.raises(ConflictError):
            self.linker.reassign_emitter(self.invoice.id, OTHER_CUIT)

        assert self.ledger.get_invoice(self.invoice.id).emitter_cuit == CUIT

    def test_reassign_unknown_invoice(self):
        """Test reassigning an unknown invoice."""
        with pytest.raises(NotFoundError):
            self.linker.reassign_emitter(999, OTHER_CUIT)

        assert self.ledger.get_emitter(OTHER_CUIT) is None


class TestEmitterGuard:
    """Test cases for EmitterGuard."""

    def setup_method(self):
        """Setup test environment."""
        self.ledger = InMemoryLedger()
        self.linker = InvoiceLinker(self.ledger)
        self.guard = EmitterGuard(self.ledger)
        self.linker.ensure_emitter(CUIT, 'Proveedor SA')

    def test_delete_unreferenced_emitter(self):
        """Test that an emitter with no references is deleted."""
        self.guard.delete_emitter('20-10200053-7')

        assert self.ledger.get_emitter(CUIT) is None

    def test_delete_unknown_emitter(self):
        """Test deleting an emitter that does not exist."""
        with pytest.raises(NotFoundError):
            self.guard.delete_emitter(OTHER_CUIT)

    def test_reference_breakdown(self):
        """Test that the conflict reports every kind of reference."""
        expected = self.ledger.add_expected(_expected())
        self.ledger.add_expected(_expected(invoice_number=2))
        linked_file = self.ledger.add_file('a.pdf')
        self.linker.commit_match(expected.id, linked_file.id)
        pending_file = self.ledger.add_file('b.pdf')
        self.ledger.save_extraction(pending_file.id, ExtractedRecord(cuit=CUIT, extraction_confidence=40),
                                    FileStatus.REVIEWING)

        with pytest.raises(ConflictError) as exc_info:
            self.guard.delete_emitter(CUIT)

        assert exc_info.value.details == {
            'invoices': 1, 'expected_invoices': 1, 'unlinked_files': 1, 'total': 3
        }
        assert self.ledger.get_emitter(CUIT) is not None

    def test_matched_rows_do_not_block_deletion(self):
        """Test that only open expected invoices count as references."""
        expected = self.ledger.add_expected(_expected())
        file = self.ledger.add_file('a.pdf')
        self.linker.commit_match(expected.id, file.id)

        assert self.guard.reference_counts(CUIT) == {
            'invoices': 1, 'expected_invoices': 0, 'unlinked_files': 0
        }

    def test_ensure_emitter_is_idempotent(self):
        """Test that an existing emitter keeps its name."""
        emitter = self.linker.ensure_emitter(CUIT, 'Otro nombre')

        assert emitter.name == 'Proveedor SA'
