"""
In-process ledger implementation.

Keeps every table in dictionaries guarded by a re-entrant lock. Transactions
snapshot the state on entry and restore it if the block raises, so a failed
commit leaves no partial writes behind.

The snapshot is a deep copy of every table taken while the lock is held, so
each outermost transaction costs time proportional to the ledger size. This
is fine for tests and small single-process runs; use SQLLedger for real data.
"""

import copy
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from factura_reconciliation.models import (
    ConflictError, Emitter, ExpectedInvoice, ExpectedStatus, ExtractedRecord,
    FileStatus, FinalizedInvoice, ImportBatch, InvoiceFields, NaturalKey,
    NewExpectedInvoice, OPEN_STATUSES, SourceFile
)
from .base_ledger import BaseLedger


class InMemoryLedger(BaseLedger):
    """Dictionary-backed ledger, used for tests and single-process tooling."""

    def __init__(self, ledger_id: str = "memory"):
        super().__init__(ledger_id)
        self._lock = threading.RLock()
        self._depth = 0
        self._state: Dict[str, Any] = {
            'expected': {},
            'invoices': {},
            'files': {},
            'emitters': {},
            'batches': {},
            'sequences': {'expected': 0, 'invoices': 0, 'files': 0, 'batches': 0},
        }

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            snapshot = copy.deepcopy(self._state) if self._depth == 0 else None
            self._depth += 1
            try:
                yield
            except Exception:
                if snapshot is not None:
                    self._state = snapshot
                    self.logger.info("Transaction rolled back")
                raise
            finally:
                self._depth -= 1

    def _next_id(self, table: str) -> int:
        self._state['sequences'][table] += 1
        return self._state['sequences'][table]

    # -- expected ledger -------------------------------------------------

    def add_expected(self, invoice: NewExpectedInvoice,
                     import_batch_id: Optional[int] = None) -> ExpectedInvoice:
        with self._lock:
            if self._find_expected(invoice.natural_key, list(ExpectedStatus)) is not None:
                raise ConflictError(f"Expected invoice already exists: {invoice.natural_key}")
            row = ExpectedInvoice(
                id=self._next_id('expected'),
                cuit=invoice.cuit,
                invoice_type=invoice.invoice_type,
                point_of_sale=invoice.point_of_sale,
                invoice_number=invoice.invoice_number,
                issue_date=invoice.issue_date,
                total=invoice.total,
                emitter_name=invoice.emitter_name,
                cae=invoice.cae,
                currency=invoice.currency,
                import_batch_id=import_batch_id,
            )
            self._state['expected'][row.id] = row
            return copy.deepcopy(row)

    def get_expected(self, expected_id: int) -> Optional[ExpectedInvoice]:
        with self._lock:
            return copy.deepcopy(self._state['expected'].get(expected_id))

    def find_expected_by_key(self, key: NaturalKey,
                             statuses: Sequence[ExpectedStatus] = OPEN_STATUSES) -> Optional[ExpectedInvoice]:
        with self._lock:
            return copy.deepcopy(self._find_expected(key, statuses))

    def _find_expected(self, key: NaturalKey, statuses: Sequence[ExpectedStatus]) -> Optional[ExpectedInvoice]:
        for row in self._state['expected'].values():
            if row.natural_key == key and row.status in statuses:
                return row
        return None

    def search_expected(self, statuses: Sequence[ExpectedStatus] = OPEN_STATUSES,
                        cuit: Optional[str] = None,
                        invoice_type: Optional[str] = None,
                        point_of_sale: Optional[int] = None,
                        invoice_number: Optional[int] = None) -> List[ExpectedInvoice]:
        with self._lock:
            rows = [
                row for row in self._state['expected'].values()
                if row.status in statuses
                and (cuit is None or row.cuit == cuit)
                and (invoice_type is None or row.invoice_type == invoice_type)
                and (point_of_sale is None or row.point_of_sale == point_of_sale)
                and (invoice_number is None or row.invoice_number == invoice_number)
            ]
            return [copy.deepcopy(row) for row in sorted(rows, key=lambda r: r.id)]

    def mark_expected_matched(self, expected_id: int, file_id: int,
                              invoice_id: int, match_score: int) -> bool:
        with self._lock:
            row = self._state['expected'].get(expected_id)
            if row is None or row.status == ExpectedStatus.MATCHED:
                return False
            row.status = ExpectedStatus.MATCHED
            row.matched_file_id = file_id
            row.matched_invoice_id = invoice_id
            row.match_score = match_score
            return True

    def update_expected_status(self, expected_id: int, status: ExpectedStatus,
                               notes: Optional[str] = None) -> bool:
        with self._lock:
            row = self._state['expected'].get(expected_id)
            if row is None or row.status == ExpectedStatus.MATCHED:
                return False
            row.status = status
            row.notes = notes
            return True

    def count_expected_by_status(self) -> Dict[ExpectedStatus, int]:
        with self._lock:
            counts = {status: 0 for status in ExpectedStatus}
            for row in self._state['expected'].values():
                counts[row.status] += 1
            return counts

    def create_import_batch(self, filename: str) -> ImportBatch:
        with self._lock:
            batch = ImportBatch(id=self._next_id('batches'), filename=filename)
            self._state['batches'][batch.id] = batch
            return copy.deepcopy(batch)

    def save_import_batch(self, batch: ImportBatch) -> ImportBatch:
        with self._lock:
            self._state['batches'][batch.id] = copy.deepcopy(batch)
            return copy.deepcopy(batch)

    # -- finalized invoices ----------------------------------------------

    def create_invoice(self, fields: InvoiceFields, file_id: Optional[int] = None,
                       expected_invoice_id: Optional[int] = None,
                       extraction_confidence: Optional[float] = None,
                       requires_review: bool = False) -> FinalizedInvoice:
        with self._lock:
            if self._find_invoice(fields.natural_key) is not None:
                raise ConflictError(f"Invoice already exists: {fields.natural_key}")
            invoice = FinalizedInvoice(
                id=self._next_id('invoices'),
                emitter_cuit=fields.emitter_cuit,
                invoice_type=fields.invoice_type,
                point_of_sale=fields.point_of_sale,
                invoice_number=fields.invoice_number,
                issue_date=fields.issue_date,
                total=fields.total,
                currency=fields.currency,
                file_id=file_id,
                expected_invoice_id=expected_invoice_id,
                extraction_confidence=extraction_confidence,
                requires_review=requires_review,
            )
            self._state['invoices'][invoice.id] = invoice
            return copy.deepcopy(invoice)

    def get_invoice(self, invoice_id: int) -> Optional[FinalizedInvoice]:
        with self._lock:
            return copy.deepcopy(self._state['invoices'].get(invoice_id))

    def find_invoice_by_key(self, key: NaturalKey) -> Optional[FinalizedInvoice]:
        with self._lock:
            return copy.deepcopy(self._find_invoice(key))

    def _find_invoice(self, key: NaturalKey) -> Optional[FinalizedInvoice]:
        for invoice in self._state['invoices'].values():
            if invoice.natural_key == key:
                return invoice
        return None

    def set_invoice_category(self, invoice_id: int, category: Optional[str]) -> Optional[FinalizedInvoice]:
        with self._lock:
            invoice = self._state['invoices'].get(invoice_id)
            if invoice is None:
                return None
            invoice.category = category
            return copy.deepcopy(invoice)

    def set_invoice_emitter(self, invoice_id: int, emitter_cuit: str) -> Optional[FinalizedInvoice]:
        with self._lock:
            invoice = self._state['invoices'].get(invoice_id)
            if invoice is None:
                return None
            new_key = NaturalKey(emitter_cuit, invoice.invoice_type,
                                 invoice.point_of_sale, invoice.invoice_number)
            existing = self._find_invoice(new_key)
            if existing is not None and existing.id != invoice_id:
                raise ConflictError(f"Invoice already exists: {new_key}")
            invoice.emitter_cuit = emitter_cuit
            return copy.deepcopy(invoice)

    # -- source files ----------------------------------------------------

    def add_file(self, original_filename: str) -> SourceFile:
        with self._lock:
            source = SourceFile(id=self._next_id('files'), original_filename=original_filename)
            self._state['files'][source.id] = source
            return copy.deepcopy(source)

    def get_file(self, file_id: int) -> Optional[SourceFile]:
        with self._lock:
            return copy.deepcopy(self._state['files'].get(file_id))

    def save_extraction(self, file_id: int, extracted: Optional[ExtractedRecord],
                        status: FileStatus, error_message: Optional[str] = None) -> Optional[SourceFile]:
        with self._lock:
            source = self._state['files'].get(file_id)
            if source is None:
                return None
            source.extracted = copy.deepcopy(extracted)
            source.status = status
            source.error_message = error_message
            return copy.deepcopy(source)

    def link_file(self, file_id: int, invoice_id: int) -> bool:
        with self._lock:
            source = self._state['files'].get(file_id)
            if source is None or source.invoice_id is not None:
                return False
            source.invoice_id = invoice_id
            source.status = FileStatus.PROCESSED
            source.error_message = None
            return True

    # -- emitters --------------------------------------------------------

    def get_emitter(self, cuit: str) -> Optional[Emitter]:
        with self._lock:
            return copy.deepcopy(self._state['emitters'].get(cuit))

    def add_emitter(self, emitter: Emitter) -> Emitter:
        with self._lock:
            if emitter.cuit in self._state['emitters']:
                raise ConflictError(f"Emitter already exists: {emitter.cuit}")
            self._state['emitters'][emitter.cuit] = copy.deepcopy(emitter)
            return copy.deepcopy(emitter)

    def delete_emitter(self, cuit: str) -> bool:
        with self._lock:
            return self._state['emitters'].pop(cuit, None) is not None

    def count_invoices_for_emitter(self, cuit: str) -> int:
        with self._lock:
            return sum(1 for inv in self._state['invoices'].values() if inv.emitter_cuit == cuit)

    def count_open_expected_for_emitter(self, cuit: str) -> int:
        with self._lock:
            return sum(
                1 for row in self._state['expected'].values()
                if row.cuit == cuit and row.status != ExpectedStatus.MATCHED
            )

    def count_unlinked_files_for_emitter(self, cuit: str) -> int:
        with self._lock:
            return sum(
                1 for source in self._state['files'].values()
                if source.invoice_id is None and source.extracted_cuit == cuit
            )

    def get_ledger_info(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'ledger_id': self.ledger_id,
                'backend': 'memory',
                'expected_invoices': len(self._state['expected']),
                'invoices': len(self._state['invoices']),
                'files': len(self._state['files']),
                'emitters': len(self._state['emitters']),
            }
