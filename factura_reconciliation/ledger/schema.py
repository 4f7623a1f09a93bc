"""SQLAlchemy tables backing the SQL ledger."""

from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean, Date, Float, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class EmitterRow(Base):
    __tablename__ = "emisores"

    cuit: Mapped[str] = mapped_column(String(11), primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    person_type: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)


class ImportBatchRow(Base):
    __tablename__ = "import_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    filename: Mapped[str] = mapped_column(String, nullable=False)
    total_rows: Mapped[int] = mapped_column(Integer, default=0)
    imported_rows: Mapped[int] = mapped_column(Integer, default=0)
    skipped_rows: Mapped[int] = mapped_column(Integer, default=0)
    error_rows: Mapped[int] = mapped_column(Integer, default=0)


class ExpectedInvoiceRow(Base):
    __tablename__ = "expected_invoices"
    __table_args__ = (
        UniqueConstraint("cuit", "invoice_type", "point_of_sale", "invoice_number",
                         name="uq_expected_natural_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    import_batch_id: Mapped[Optional[int]] = mapped_column(ForeignKey("import_batches.id"), nullable=True)
    cuit: Mapped[str] = mapped_column(String(11), nullable=False, index=True)
    invoice_type: Mapped[str] = mapped_column(String(1), nullable=False)
    point_of_sale: Mapped[int] = mapped_column(Integer, nullable=False)
    invoice_number: Mapped[int] = mapped_column(Integer, nullable=False)
    issue_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    total: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    emitter_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    cae: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="ARS")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    matched_file_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    matched_invoice_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    match_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class InvoiceRow(Base):
    __tablename__ = "facturas"
    __table_args__ = (
        UniqueConstraint("emitter_cuit", "invoice_type", "point_of_sale", "invoice_number",
                         name="uq_factura_natural_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    emitter_cuit: Mapped[str] = mapped_column(ForeignKey("emisores.cuit"), nullable=False, index=True)
    invoice_type: Mapped[str] = mapped_column(String(1), nullable=False)
    point_of_sale: Mapped[int] = mapped_column(Integer, nullable=False)
    invoice_number: Mapped[int] = mapped_column(Integer, nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    total: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="ARS")
    file_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    expected_invoice_id: Mapped[Optional[int]] = mapped_column(ForeignKey("expected_invoices.id"), nullable=True)
    extraction_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    requires_review: Mapped[bool] = mapped_column(Boolean, default=False)
    category: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class SourceFileRow(Base):
    __tablename__ = "source_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    original_filename: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    extracted_cuit: Mapped[Optional[str]] = mapped_column(String(11), nullable=True, index=True)
    extracted_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    extracted_type: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    extracted_point_of_sale: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    extracted_invoice_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    extracted_total: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    extraction_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    invoice_id: Mapped[Optional[int]] = mapped_column(ForeignKey("facturas.id"), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
