"""
Unit tests for the SQLAlchemy ledger.

Runs against in-memory SQLite: uniqueness, conditional updates, rollback of
failed transactions, extraction storage and the end-to-end gate flow.
"""

import pytest
from datetime import date
from decimal import Decimal

from factura_reconciliation.gate import ConfidenceGate
from factura_reconciliation.ledger import SQLLedger
from factura_reconciliation.linking import EmitterGuard, InvoiceLinker
from factura_reconciliation.models import (
    ConflictError, Decision, Emitter, ExpectedStatus, ExtractedRecord,
    FileStatus, InvoiceFields, NaturalKey, NewExpectedInvoice, PersonType
)

CUIT = '20102000537'


def _expected(invoice_number=99152):
    return NewExpectedInvoice(
        cuit=CUIT,
        invoice_type='A',
        point_of_sale=2056,
        invoice_number=invoice_number,
        issue_date=date(2024, 3, 1),
        total=Decimal('1000.50'),
        emitter_name='Proveedor SA',
    )


class TestSQLLedger:
    """Test cases for SQLLedger storage operations."""

    def setup_method(self):
        """Setup test environment."""
        self.ledger = SQLLedger("sqlite://")

    def teardown_method(self):
        """Cleanup test environment."""
        self.ledger.close()

    def test_add_and_get_expected(self):
        """Test inserting and reading an expected invoice."""
        row = self.ledger.add_expected(_expected())

        found = self.ledger.get_expected(row.id)
        assert found.status == ExpectedStatus.PENDING
        assert found.natural_key == NaturalKey(CUIT, 'A', 2056, 99152)
        assert found.total == Decimal('1000.50')
        assert found.emitter_name == 'Proveedor SA'

    def test_duplicate_expected_key(self):
        """Test natural-key uniqueness of the expected ledger."""
        self.ledger.add_expected(_expected())

        with pytest.raises(ConflictError):
            self.ledger.add_expected(_expected())

    def test_find_by_key_respects_statuses(self):
        """Test that matched rows are skipped by open-status lookups."""
        row = self.ledger.add_expected(_expected())
        key = NaturalKey(CUIT, 'A', 2056, 99152)

        assert self.ledger.find_expected_by_key(key).id == row.id
        self.ledger.mark_expected_matched(row.id, file_id=1, invoice_id=1, match_score=90)
        assert self.ledger.find_expected_by_key(key) is None

    def test_search_orders_by_id(self):
        """Test that searches return rows in id order."""
        ids = [self.ledger.add_expected(_expected(n)).id for n in (3, 1, 2)]

        rows = self.ledger.search_expected(invoice_type='A')

        assert [r.id for r in rows] == sorted(ids)

    def test_mark_matched_only_once(self):
        """Test the conditional update on the expected invoice."""
        row = self.ledger.add_expected(_expected())

        assert self.ledger.mark_expected_matched(row.id, 1, 1, 100) is True
        assert self.ledger.mark_expected_matched(row.id, 2, 2, 100) is False
        assert self.ledger.get_expected(row.id).matched_file_id == 1

    def test_status_update_skips_matched_rows(self):
        """Test that a matched row keeps its status."""
        row = self.ledger.add_expected(_expected())
        assert self.ledger.update_expected_status(row.id, ExpectedStatus.MANUAL, 'por mail') is True
        self.ledger.mark_expected_matched(row.id, 1, 1, 100)

        assert self.ledger.update_expected_status(row.id, ExpectedStatus.IGNORED) is False
        assert self.ledger.get_expected(row.id).status == ExpectedStatus.MATCHED

    def test_count_by_status(self):
        """Test the per-status breakdown."""
        first = self.ledger.add_expected(_expected(1))
        self.ledger.add_expected(_expected(2))
        self.ledger.update_expected_status(first.id, ExpectedStatus.IGNORED)

        counts = self.ledger.count_expected_by_status()

        assert counts[ExpectedStatus.PENDING] == 1
        assert counts[ExpectedStatus.IGNORED] == 1
        assert counts[ExpectedStatus.MATCHED] == 0

    def test_link_file_only_once(self):
        """Test the conditional update on the source file."""
        self.ledger.add_emitter(Emitter(cuit=CUIT, name='Proveedor SA', person_type=PersonType.FISICA))
        source = self.ledger.add_file('f.pdf')
        invoice = self.ledger.create_invoice(InvoiceFields(CUIT, 'A', 1, 1, date(2024, 1, 1)), file_id=source.id)

        assert self.ledger.link_file(source.id, invoice.id) is True
        assert self.ledger.link_file(source.id, invoice.id) is False
        assert self.ledger.get_file(source.id).status == FileStatus.PROCESSED

    def test_save_extraction(self):
        """Test storing and clearing an extraction."""
        source = self.ledger.add_file('f.pdf')
        record = ExtractedRecord(cuit=CUIT, invoice_type='B', invoice_number=7,
                                 total=Decimal('12.30'), extraction_confidence=42.5)

        self.ledger.save_extraction(source.id, record, FileStatus.REVIEWING)
        stored = self.ledger.get_file(source.id)
        assert stored.status == FileStatus.REVIEWING
        assert stored.extracted.invoice_number == 7
        assert stored.extracted.extraction_confidence == 42.5
        assert stored.extracted_cuit == CUIT

        self.ledger.save_extraction(source.id, None, FileStatus.FAILED, 'unreadable')
        cleared = self.ledger.get_file(source.id)
        assert cleared.extracted is None
        assert cleared.error_message == 'unreadable'

    def test_transaction_rolls_back(self):
        """Test that an exception discards every write in the block."""
        source = self.ledger.add_file('f.pdf')

        with pytest.raises(RuntimeError):
            with self.ledger.transaction():
                self.ledger.add_expected(_expected())
                self.ledger.save_extraction(source.id, ExtractedRecord(cuit=CUIT, extraction_confidence=10),
                                            FileStatus.REVIEWING)
                raise RuntimeError("abort")

        assert self.ledger.search_expected() == []
        assert self.ledger.get_file(source.id).status == FileStatus.PENDING

    def test_duplicate_invoice_key(self):
        """Test natural-key uniqueness of finalized invoices."""
        self.ledger.add_emitter(Emitter(cuit=CUIT, name='Proveedor SA'))
        fields = InvoiceFields(CUIT, 'A', 1, 1, date(2024, 1, 1))
        self.ledger.create_invoice(fields)

        with pytest.raises(ConflictError):
            self.ledger.create_invoice(fields)

    def test_emitter_reference_counts(self):
        """Test the counts used by the emitter guard."""
        self.ledger.add_emitter(Emitter(cuit=CUIT, name='Proveedor SA'))
        self.ledger.add_expected(_expected())
        source = self.ledger.add_file('f.pdf')
        self.ledger.save_extraction(source.id, ExtractedRecord(cuit=CUIT, extraction_confidence=10),
                                    FileStatus.REVIEWING)

        assert self.ledger.count_invoices_for_emitter(CUIT) == 0
        assert self.ledger.count_open_expected_for_emitter(CUIT) == 1
        assert self.ledger.count_unlinked_files_for_emitter(CUIT) == 1

    def test_ledger_info(self):
        """Test ledger metadata."""
        info = self.ledger.get_ledger_info()

        assert info['backend'] == 'sql'
        assert info['dialect'] == 'sqlite'


class TestSQLReconciliationFlow:
    """End-to-end reconciliation on the SQL ledger."""

    def setup_method(self):
        """Setup test environment."""
        self.ledger = SQLLedger("sqlite://")
        self.linker = InvoiceLinker(self.ledger)
        self.gate = ConfidenceGate(self.ledger, linker=self.linker)
        self.expected = self.ledger.add_expected(_expected())

    def teardown_method(self):
        """Cleanup test environment."""
        self.ledger.close()

    def test_auto_link(self):
        """Test an exact match linking through the SQL ledger."""
        source = self.ledger.add_file('f.pdf')

        outcome = self.gate.process_document(source.id, {
            'cuit': CUIT, 'invoice_type': 'A', 'point_of_sale': 2056,
            'invoice_number': 99152, 'confidence': 50,
        })

        assert outcome.decision == Decision.AUTO_LINKED
        assert self.ledger.get_expected(self.expected.id).status == ExpectedStatus.MATCHED
        assert self.ledger.get_file(source.id).invoice_id == outcome.invoice.id
        assert self.ledger.get_emitter(CUIT).name == 'Proveedor SA'

    def test_failed_commit_leaves_no_partial_writes(self):
        """Test rollback when the invoice key already exists."""
        first = self.ledger.add_file('a.pdf')
        self.linker.create_from_extraction(first.id, ExtractedRecord(
            cuit=CUIT, issue_date=date(2024, 3, 1), invoice_type='A',
            point_of_sale=2056, invoice_number=99152, extraction_confidence=90,
        ))
        second = self.ledger.add_file('b.pdf')

        with pytest.raises(ConflictError):
            self.linker.commit_match(self.expected.id, second.id)

        assert self.ledger.get_expected(self.expected.id).status == ExpectedStatus.PENDING
        assert self.ledger.get_file(second.id).invoice_id is None

    def test_second_commit_conflicts(self):
        """Test that an expected invoice is consumed once."""
        self.linker.commit_match(self.expected.id, self.ledger.add_file('a.pdf').id)

        with pytest.raises(ConflictError):
            self.linker.commit_match(self.expected.id, self.ledger.add_file('b.pdf').id)

    def test_review_then_manual_commit(self):
        """Test the review path followed by a reviewer's commit."""
        source = self.ledger.add_file('f.pdf')
        outcome = self.gate.process_document(source.id, ExtractedRecord(
            cuit=CUIT, invoice_type='A', point_of_sale=2056, invoice_number=99157,
            extraction_confidence=40,
        ))
        assert outcome.decision == Decision.PENDING_REVIEW
        assert self.ledger.get_file(source.id).status == FileStatus.REVIEWING

        invoice = self.linker.commit_match(outcome.candidates[0].expected_invoice_id, source.id,
                                           match_score=outcome.candidates[0].match_score)

        assert invoice.invoice_number == 99152
        assert self.ledger.get_expected(self.expected.id).match_score == outcome.candidates[0].match_score

    def test_emitter_guard(self):
        """Test guarded deletion on the SQL ledger."""
        self.linker.commit_match(self.expected.id, self.ledger.add_file('a.pdf').id)
        guard = EmitterGuard(self.ledger)

        with pytest.raises(ConflictError) as exc_info:
            guard.delete_emitter(CUIT)

        assert exc_info.value.details['invoices'] == 1
