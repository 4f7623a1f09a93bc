"""
SQL ledger implementation on SQLAlchemy.

Uniqueness of natural keys is enforced by table constraints and the
matched / linked transitions are single conditional UPDATE statements, so
two requests confirming the same expected invoice can not both succeed.
"""

import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from factura_reconciliation.models import (
    ConflictError, Emitter, ExpectedInvoice, ExpectedStatus, ExtractedRecord,
    FileStatus, FinalizedInvoice, ImportBatch, InvoiceFields, NaturalKey,
    NewExpectedInvoice, OPEN_STATUSES, PersonType, SourceFile, StorageError
)
from .base_ledger import BaseLedger
from .schema import (
    Base, EmitterRow, ExpectedInvoiceRow, ImportBatchRow, InvoiceRow, SourceFileRow
)


def create_ledger_engine(database_url: str) -> Engine:
    """Create an engine, sharing one connection for in-memory SQLite."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url)


class SQLLedger(BaseLedger):
    """
    Ledger stored in a relational database (SQLite by default).

    Each thread works with its own session; writes outside ``transaction()``
    are committed immediately.
    """

    def __init__(self, database: Union[str, Engine] = "sqlite://",
                 ledger_id: str = "sql", create_schema: bool = True):
        """
        Initialize the SQL ledger.

        Args:
            database: SQLAlchemy URL or an existing Engine
            ledger_id: Name used in log messages
            create_schema: Create missing tables on start-up
        """
        super().__init__(ledger_id)
        self.engine = create_ledger_engine(database) if isinstance(database, str) else database
        self._sessions = scoped_session(sessionmaker(bind=self.engine))
        self._local = threading.local()

        if create_schema:
            try:
                Base.metadata.create_all(self.engine)
            except SQLAlchemyError as e:
                raise StorageError(f"Could not create ledger schema: {e}") from e

        self.logger.info(f"SQL ledger initialized on {self.engine.url.render_as_string(hide_password=True)}")

    @property
    def session(self):
        return self._sessions()

    @property
    def _in_transaction(self) -> bool:
        return getattr(self._local, 'in_transaction', False)

    def close(self):
        """Release the session of the current thread."""
        self._sessions.remove()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._in_transaction:
            yield
            return

        self._local.in_transaction = True
        try:
            yield
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise ConflictError(f"Transaction violates a uniqueness constraint: {e.orig}") from e
        except SQLAlchemyError as e:
            self.session.rollback()
            self.logger.error(f"Transaction failed: {e}", exc_info=True)
            raise StorageError(f"Transaction failed for ledger '{self.ledger_id}': {e}") from e
        except Exception:
            self.session.rollback()
            self.logger.info("Transaction rolled back")
            raise
        finally:
            self._local.in_transaction = False

    @contextmanager
    def _storage_errors(self, operation: str) -> Iterator[None]:
        """Translate driver errors and commit when not inside a transaction."""
        try:
            yield
            if self._in_transaction:
                self.session.flush()
            else:
                self.session.commit()
        except IntegrityError as e:
            if not self._in_transaction:
                self.session.rollback()
            raise ConflictError(f"{operation} violates a uniqueness constraint: {e.orig}") from e
        except SQLAlchemyError as e:
            if not self._in_transaction:
                self.session.rollback()
            self.logger.error(f"{operation} failed: {e}", exc_info=True)
            raise StorageError(f"{operation} failed for ledger '{self.ledger_id}': {e}") from e

    @contextmanager
    def _reading(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as e:
            self.logger.error(f"{operation} failed: {e}", exc_info=True)
            raise StorageError(f"{operation} failed for ledger '{self.ledger_id}': {e}") from e

    # -- row conversion --------------------------------------------------

    @staticmethod
    def _to_expected(row: ExpectedInvoiceRow) -> ExpectedInvoice:
        return ExpectedInvoice(
            id=row.id,
            cuit=row.cuit,
            invoice_type=row.invoice_type,
            point_of_sale=row.point_of_sale,
            invoice_number=row.invoice_number,
            issue_date=row.issue_date,
            total=row.total,
            emitter_name=row.emitter_name,
            cae=row.cae,
            currency=row.currency or "ARS",
            status=ExpectedStatus(row.status),
            matched_file_id=row.matched_file_id,
            matched_invoice_id=row.matched_invoice_id,
            match_score=row.match_score,
            import_batch_id=row.import_batch_id,
            notes=row.notes,
        )

    @staticmethod
    def _to_invoice(row: InvoiceRow) -> FinalizedInvoice:
        return FinalizedInvoice(
            id=row.id,
            emitter_cuit=row.emitter_cuit,
            invoice_type=row.invoice_type,
            point_of_sale=row.point_of_sale,
            invoice_number=row.invoice_number,
            issue_date=row.issue_date,
            total=row.total,
            currency=row.currency or "ARS",
            file_id=row.file_id,
            expected_invoice_id=row.expected_invoice_id,
            extraction_confidence=row.extraction_confidence,
            requires_review=bool(row.requires_review),
            category=row.category,
        )

    @staticmethod
    def _to_file(row: SourceFileRow) -> SourceFile:
        extracted = None
        if row.extraction_confidence is not None:
            extracted = ExtractedRecord(
                cuit=row.extracted_cuit,
                issue_date=row.extracted_date,
                invoice_type=row.extracted_type,
                point_of_sale=row.extracted_point_of_sale,
                invoice_number=row.extracted_invoice_number,
                total=row.extracted_total,
                extraction_confidence=row.extraction_confidence,
            )
        return SourceFile(
            id=row.id,
            original_filename=row.original_filename,
            status=FileStatus(row.status),
            extracted=extracted,
            invoice_id=row.invoice_id,
            error_message=row.error_message,
        )

    @staticmethod
    def _to_batch(row: ImportBatchRow) -> ImportBatch:
        return ImportBatch(
            id=row.id,
            filename=row.filename,
            total_rows=row.total_rows or 0,
            imported_rows=row.imported_rows or 0,
            skipped_rows=row.skipped_rows or 0,
            error_rows=row.error_rows or 0,
        )

    # -- expected ledger -------------------------------------------------

    def add_expected(self, invoice: NewExpectedInvoice,
                     import_batch_id: Optional[int] = None) -> ExpectedInvoice:
        if self.find_expected_by_key(invoice.natural_key, list(ExpectedStatus)) is not None:
            raise ConflictError(f"Expected invoice already exists: {invoice.natural_key}")

        row = ExpectedInvoiceRow(
            import_batch_id=import_batch_id,
            cuit=invoice.cuit,
            invoice_type=invoice.invoice_type,
            point_of_sale=invoice.point_of_sale,
            invoice_number=invoice.invoice_number,
            issue_date=invoice.issue_date,
            total=invoice.total,
            emitter_name=invoice.emitter_name,
            cae=invoice.cae,
            currency=invoice.currency,
            status=ExpectedStatus.PENDING.value,
        )
        with self._storage_errors("add_expected"):
            self.session.add(row)
        return self._to_expected(row)

    def get_expected(self, expected_id: int) -> Optional[ExpectedInvoice]:
        with self._reading("get_expected"):
            row = self.session.get(ExpectedInvoiceRow, expected_id, populate_existing=True)
            return self._to_expected(row) if row else None

    def find_expected_by_key(self, key: NaturalKey,
                             statuses: Sequence[ExpectedStatus] = OPEN_STATUSES) -> Optional[ExpectedInvoice]:
        stmt = select(ExpectedInvoiceRow).where(
            ExpectedInvoiceRow.cuit == key.cuit,
            ExpectedInvoiceRow.invoice_type == key.invoice_type,
            ExpectedInvoiceRow.point_of_sale == key.point_of_sale,
            ExpectedInvoiceRow.invoice_number == key.invoice_number,
            ExpectedInvoiceRow.status.in_([s.value for s in statuses]),
        ).execution_options(populate_existing=True)
        with self._reading("find_expected_by_key"):
            row = self.session.execute(stmt).scalars().first()
            return self._to_expected(row) if row else None

    def search_expected(self, statuses: Sequence[ExpectedStatus] = OPEN_STATUSES,
                        cuit: Optional[str] = None,
                        invoice_type: Optional[str] = None,
                        point_of_sale: Optional[int] = None,
                        invoice_number: Optional[int] = None) -> List[ExpectedInvoice]:
        conditions = [ExpectedInvoiceRow.status.in_([s.value for s in statuses])]
        if cuit is not None:
            conditions.append(ExpectedInvoiceRow.cuit == cuit)
        if invoice_type is not None:
            conditions.append(ExpectedInvoiceRow.invoice_type == invoice_type)
        if point_of_sale is not None:
            conditions.append(ExpectedInvoiceRow.point_of_sale == point_of_sale)
        if invoice_number is not None:
            conditions.append(ExpectedInvoiceRow.invoice_number == invoice_number)

        stmt = (select(ExpectedInvoiceRow)
                .where(*conditions)
                .order_by(ExpectedInvoiceRow.id)
                .execution_options(populate_existing=True))
        with self._reading("search_expected"):
            return [self._to_expected(row) for row in self.session.execute(stmt).scalars()]

    def mark_expected_matched(self, expected_id: int, file_id: int,
                              invoice_id: int, match_score: int) -> bool:
        stmt = (update(ExpectedInvoiceRow)
                .where(ExpectedInvoiceRow.id == expected_id,
                       ExpectedInvoiceRow.status != ExpectedStatus.MATCHED.value)
                .values(status=ExpectedStatus.MATCHED.value,
                        matched_file_id=file_id,
                        matched_invoice_id=invoice_id,
                        match_score=match_score)
                .execution_options(synchronize_session=False))
        with self._storage_errors("mark_expected_matched"):
            result = self.session.execute(stmt)
        matched = result.rowcount == 1
        self._log_operation("mark_expected_matched", matched, f"expected {expected_id}, invoice {invoice_id}")
        return matched

    def update_expected_status(self, expected_id: int, status: ExpectedStatus,
                               notes: Optional[str] = None) -> bool:
        stmt = (update(ExpectedInvoiceRow)
                .where(ExpectedInvoiceRow.id == expected_id,
                       ExpectedInvoiceRow.status != ExpectedStatus.MATCHED.value)
                .values(status=status.value, notes=notes)
                .execution_options(synchronize_session=False))
        with self._storage_errors("update_expected_status"):
            result = self.session.execute(stmt)
        return result.rowcount == 1

    def count_expected_by_status(self) -> Dict[ExpectedStatus, int]:
        stmt = select(ExpectedInvoiceRow.status, func.count()).group_by(ExpectedInvoiceRow.status)
        counts = {status: 0 for status in ExpectedStatus}
        with self._reading("count_expected_by_status"):
            for status, count in self.session.execute(stmt):
                counts[ExpectedStatus(status)] = count
        return counts

    def create_import_batch(self, filename: str) -> ImportBatch:
        row = ImportBatchRow(filename=filename, total_rows=0, imported_rows=0,
                             skipped_rows=0, error_rows=0)
        with self._storage_errors("create_import_batch"):
            self.session.add(row)
        return self._to_batch(row)

    def save_import_batch(self, batch: ImportBatch) -> ImportBatch:
        with self._storage_errors("save_import_batch"):
            row = self.session.get(ImportBatchRow, batch.id, populate_existing=True)
            if row is None:
                row = ImportBatchRow(id=batch.id, filename=batch.filename)
                self.session.add(row)
            row.filename = batch.filename
            row.total_rows = batch.total_rows
            row.imported_rows = batch.imported_rows
            row.skipped_rows = batch.skipped_rows
            row.error_rows = batch.error_rows
        return self._to_batch(row)

    # -- finalized invoices ----------------------------------------------

    def create_invoice(self, fields: InvoiceFields, file_id: Optional[int] = None,
                       expected_invoice_id: Optional[int] = None,
                       extraction_confidence: Optional[float] = None,
                       requires_review: bool = False) -> FinalizedInvoice:
        if self.find_invoice_by_key(fields.natural_key) is not None:
            raise ConflictError(f"Invoice already exists: {fields.natural_key}")

        row = InvoiceRow(
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
        with self._storage_errors("create_invoice"):
            self.session.add(row)
        return self._to_invoice(row)

    def get_invoice(self, invoice_id: int) -> Optional[FinalizedInvoice]:
        with self._reading("get_invoice"):
            row = self.session.get(InvoiceRow, invoice_id, populate_existing=True)
            return self._to_invoice(row) if row else None

    def find_invoice_by_key(self, key: NaturalKey) -> Optional[FinalizedInvoice]:
        stmt = select(InvoiceRow).where(
            InvoiceRow.emitter_cuit == key.cuit,
            InvoiceRow.invoice_type == key.invoice_type,
            InvoiceRow.point_of_sale == key.point_of_sale,
            InvoiceRow.invoice_number == key.invoice_number,
        ).execution_options(populate_existing=True)
        with self._reading("find_invoice_by_key"):
            row = self.session.execute(stmt).scalars().first()
            return self._to_invoice(row) if row else None

    def set_invoice_category(self, invoice_id: int, category: Optional[str]) -> Optional[FinalizedInvoice]:
        with self._storage_errors("set_invoice_category"):
            row = self.session.get(InvoiceRow, invoice_id, populate_existing=True)
            if row is not None:
                row.category = category
        return self._to_invoice(row) if row else None

    def set_invoice_emitter(self, invoice_id: int, emitter_cuit: str) -> Optional[FinalizedInvoice]:
        current = self.get_invoice(invoice_id)
        if current is None:
            return None
        new_key = NaturalKey(emitter_cuit, current.invoice_type,
                             current.point_of_sale, current.invoice_number)
        existing = self.find_invoice_by_key(new_key)
        if existing is not None and existing.id != invoice_id:
            raise ConflictError(f"Invoice already exists: {new_key}")

        with self._storage_errors("set_invoice_emitter"):
            row = self.session.get(InvoiceRow, invoice_id, populate_existing=True)
            row.emitter_cuit = emitter_cuit
        return self._to_invoice(row)

    # -- source files ----------------------------------------------------

    def add_file(self, original_filename: str) -> SourceFile:
        row = SourceFileRow(original_filename=original_filename, status=FileStatus.PENDING.value)
        with self._storage_errors("add_file"):
            self.session.add(row)
        return self._to_file(row)

    def get_file(self, file_id: int) -> Optional[SourceFile]:
        with self._reading("get_file"):
            row = self.session.get(SourceFileRow, file_id, populate_existing=True)
            return self._to_file(row) if row else None

    def save_extraction(self, file_id: int, extracted: Optional[ExtractedRecord],
                        status: FileStatus, error_message: Optional[str] = None) -> Optional[SourceFile]:
        with self._storage_errors("save_extraction"):
            row = self.session.get(SourceFileRow, file_id, populate_existing=True)
            if row is not None:
                row.extracted_cuit = extracted.cuit if extracted else None
                row.extracted_date = extracted.issue_date if extracted else None
                row.extracted_type = extracted.invoice_type if extracted else None
                row.extracted_point_of_sale = extracted.point_of_sale if extracted else None
                row.extracted_invoice_number = extracted.invoice_number if extracted else None
                row.extracted_total = extracted.total if extracted else None
                row.extraction_confidence = extracted.extraction_confidence if extracted else None
                row.status = status.value
                row.error_message = error_message
        return self._to_file(row) if row else None

    def link_file(self, file_id: int, invoice_id: int) -> bool:
        stmt = (update(SourceFileRow)
                .where(SourceFileRow.id == file_id, SourceFileRow.invoice_id.is_(None))
                .values(invoice_id=invoice_id,
                        status=FileStatus.PROCESSED.value,
                        error_message=None)
                .execution_options(synchronize_session=False))
        with self._storage_errors("link_file"):
            result = self.session.execute(stmt)
        linked = result.rowcount == 1
        self._log_operation("link_file", linked, f"file {file_id}, invoice {invoice_id}")
        return linked

    # -- emitters --------------------------------------------------------

    def get_emitter(self, cuit: str) -> Optional[Emitter]:
        with self._reading("get_emitter"):
            row = self.session.get(EmitterRow, cuit, populate_existing=True)
            if row is None:
                return None
            return Emitter(
                cuit=row.cuit,
                name=row.name,
                person_type=PersonType(row.person_type) if row.person_type else None,
            )

    def add_emitter(self, emitter: Emitter) -> Emitter:
        if self.get_emitter(emitter.cuit) is not None:
            raise ConflictError(f"Emitter already exists: {emitter.cuit}")
        row = EmitterRow(
            cuit=emitter.cuit,
            name=emitter.name,
            person_type=emitter.person_type.value if emitter.person_type else None,
        )
        with self._storage_errors("add_emitter"):
            self.session.add(row)
        return emitter

    def delete_emitter(self, cuit: str) -> bool:
        with self._storage_errors("delete_emitter"):
            row = self.session.get(EmitterRow, cuit, populate_existing=True)
            if row is not None:
                self.session.delete(row)
        return row is not None

    def _count(self, operation: str, stmt) -> int:
        with self._reading(operation):
            return self.session.execute(stmt).scalar_one()

    def count_invoices_for_emitter(self, cuit: str) -> int:
        stmt = select(func.count()).select_from(InvoiceRow).where(InvoiceRow.emitter_cuit == cuit)
        return self._count("count_invoices_for_emitter", stmt)

    def count_open_expected_for_emitter(self, cuit: str) -> int:
        stmt = select(func.count()).select_from(ExpectedInvoiceRow).where(
            ExpectedInvoiceRow.cuit == cuit,
            ExpectedInvoiceRow.status != ExpectedStatus.MATCHED.value,
        )
        return self._count("count_open_expected_for_emitter", stmt)

    def count_unlinked_files_for_emitter(self, cuit: str) -> int:
        stmt = select(func.count()).select_from(SourceFileRow).where(
            SourceFileRow.extracted_cuit == cuit,
            SourceFileRow.invoice_id.is_(None),
        )
        return self._count("count_unlinked_files_for_emitter", stmt)

    def get_ledger_info(self) -> Dict[str, Any]:
        return {
            'ledger_id': self.ledger_id,
            'backend': 'sql',
            'dialect': self.engine.dialect.name,
            'url': self.engine.url.render_as_string(hide_password=True),
        }
