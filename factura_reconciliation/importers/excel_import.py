"""
Bulk import of expected invoices from AFIP/ARCA exports.

Reads the "Mis Comprobantes" spreadsheet (XLSX) or its CSV variant with
pandas, detects the relevant columns from their headers and loads every valid
row into the expected ledger under a new import batch.
"""

import os
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Optional, Union

import pandas as pd

from factura_reconciliation.afip_codes import parse_invoice_type
from factura_reconciliation.cuit import format_cuit, is_valid_cuit, normalize_cuit
from factura_reconciliation.ledger.base_ledger import BaseLedger
from factura_reconciliation.models import (
    ConflictError, ImportBatch, NewExpectedInvoice, ValidationError, parse_amount,
    parse_issue_date, validate_invoice_number, validate_point_of_sale
)

import logging
logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ('.csv', '.xlsx', '.xls')

REQUIRED_COLUMNS = ('cuit', 'issue_date', 'invoice_type', 'point_of_sale', 'invoice_number')

# Header keywords per field, most specific first. Headers are compared
# lower-cased and without accents.
COLUMN_PATTERNS = {
    'cuit': ['cuit', 'nro. doc. emisor', 'nro doc emisor', 'numero de cuit'],
    'issue_date': ['fecha de emision', 'fecha emision', 'fecha'],
    'invoice_type': ['tipo de comprobante', 'tipo comprobante', 'tipo', 'comprobante'],
    'point_of_sale': ['punto de venta', 'punto venta', 'pto. vta', 'pto venta'],
    'invoice_number': ['numero desde', 'nro comprobante', 'numero comprobante', 'numero'],
    'total': ['imp. total', 'importe total', 'total', 'importe', 'monto'],
    'emitter_name': ['denominacion emisor', 'razon social', 'denominacion', 'nombre', 'emisor', 'proveedor'],
    'cae': ['cod. autorizacion', 'codigo autorizacion', 'cae'],
}

_ARGENTINE_AMOUNT = re.compile(r'^-?\d{1,3}(\.\d{3})+,\d+$|^-?\d+,\d+$')


def _normalize_header(header: Any) -> str:
    text = unicodedata.normalize('NFKD', str(header)).encode('ascii', 'ignore').decode('ascii')
    return ' '.join(text.lower().split())


def _cell_text(value: Any) -> str:
    """Cell value as trimmed text; NaN and None become ''."""
    if value is None:
        return ''
    if not isinstance(value, str) and pd.isna(value):
        return ''
    text = str(value).strip()
    if re.match(r'^-?\d+\.0+$', text):
        text = text.split('.')[0]
    return text


def _parse_total(text: str):
    if not text or text == '0':
        return None
    if _ARGENTINE_AMOUNT.match(text):
        text = text.replace('.', '').replace(',', '.')
    return parse_amount(text)


@dataclass
class ImportResult:
    """Outcome of an import: counts plus one entry per rejected row."""
    batch_id: int
    filename: str
    total_rows: int = 0
    imported: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'success': self.success,
            'batch_id': self.batch_id,
            'filename': self.filename,
            'total_rows': self.total_rows,
            'imported': self.imported,
            'skipped': self.skipped,
            'errors': self.errors,
        }


class ExpectedInvoiceImporter:
    """Loads AFIP/ARCA exports into the expected ledger."""

    def __init__(self, ledger: BaseLedger, default_currency: str = "ARS"):
        self.ledger = ledger
        self.default_currency = default_currency
        self.logger = logging.getLogger(f"{__name__}.ExpectedInvoiceImporter")

    def import_file(self, source: Union[str, BinaryIO], filename: Optional[str] = None,
                    column_mapping: Optional[Dict[str, str]] = None) -> ImportResult:
        """
        Import an XLSX or CSV export.

        Args:
            source: Path or binary file object
            filename: Name used for the extension check and the batch record
                (defaults to the path's base name)
            column_mapping: Field name to header overrides; missing fields
                are auto-detected

        Raises:
            ValidationError: If the format is unsupported, the file is empty
                or required columns can not be found
        """
        if filename is None:
            if not isinstance(source, str):
                raise ValidationError("A filename is required when importing from a stream")
            filename = os.path.basename(source)

        extension = os.path.splitext(filename)[1].lower()
        if extension not in SUPPORTED_EXTENSIONS:
            raise ValidationError(f"Unsupported file format: '{extension}'. Use .xlsx, .xls or .csv")

        self.logger.info(f"Importing expected invoices from {filename}")
        try:
            if extension == '.csv':
                df = pd.read_csv(source, dtype=str, sep=None, engine='python')
            else:
                df = pd.read_excel(source, sheet_name=0, dtype=str)
        except pd.errors.EmptyDataError:
            raise ValidationError(f"File '{filename}' is empty")
        except (ValueError, OSError) as e:
            raise ValidationError(f"Could not read '{filename}': {e}")

        return self.import_dataframe(df, filename, column_mapping)

    def import_dataframe(self, df: pd.DataFrame, filename: str,
                         column_mapping: Optional[Dict[str, str]] = None) -> ImportResult:
        """
        Import rows of an already loaded export.

        Rows that fail to parse are reported with their spreadsheet row
        number (the header is row 1). Rows whose natural key is already in
        the ledger are counted as skipped.
        """
        df = df.rename(columns=lambda column: str(column).strip())
        headers = list(df.columns)
        mapping = self.detect_columns(headers, column_mapping)
        self.logger.debug(f"Column mapping for {filename}: {mapping}")

        batch = self.ledger.create_import_batch(filename)
        result = ImportResult(batch_id=batch.id, filename=filename)

        for position, (_, row) in enumerate(df.iterrows()):
            row_number = position + 2
            if all(_cell_text(value) == '' for value in row.values):
                continue
            result.total_rows += 1

            try:
                invoice = self.parse_row(row, mapping)
            except ValidationError as e:
                result.errors.append({'row': row_number, 'error': str(e)})
                continue

            try:
                self.ledger.add_expected(invoice, import_batch_id=batch.id)
                result.imported += 1
            except ConflictError:
                self.logger.debug(f"Row {row_number}: {invoice.natural_key} already in ledger, skipped")
                result.skipped += 1

        self.ledger.save_import_batch(ImportBatch(
            id=batch.id,
            filename=filename,
            total_rows=result.total_rows,
            imported_rows=result.imported,
            skipped_rows=result.skipped,
            error_rows=len(result.errors),
        ))

        self.logger.info(
            f"Import of {filename} finished (batch {batch.id}): {result.imported} imported, "
            f"{result.skipped} skipped, {len(result.errors)} errors out of {result.total_rows} rows"
        )
        return result

    def detect_columns(self, headers: List[str],
                       overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Map field names to column headers.

        An exact header match beats a partial one, and earlier keywords beat
        later ones.

        Raises:
            ValidationError: If a required column can not be found
        """
        overrides = overrides or {}
        normalized = [_normalize_header(header) for header in headers]
        mapping: Dict[str, str] = {}
        used = set()

        for field_name, patterns in COLUMN_PATTERNS.items():
            if field_name in overrides:
                if overrides[field_name] not in headers:
                    raise ValidationError(f"Column not found: '{overrides[field_name]}'")
                mapping[field_name] = overrides[field_name]
                used.add(overrides[field_name])
                continue

            found = self._find_header(headers, normalized, patterns, used)
            if found is not None:
                mapping[field_name] = found
                used.add(found)

        missing = [name for name in REQUIRED_COLUMNS if name not in mapping]
        if missing:
            raise ValidationError(f"Required columns not found: {', '.join(missing)}")
        return mapping

    @staticmethod
    def _find_header(headers: List[str], normalized: List[str], patterns: List[str], used: set) -> Optional[str]:
        for pattern in patterns:
            for header, text in zip(headers, normalized):
                if text == pattern and header not in used:
                    return header
        for pattern in patterns:
            for header, text in zip(headers, normalized):
                if pattern in text and header not in used:
                    return header
        return None

    def parse_row(self, row: pd.Series, mapping: Dict[str, str]) -> NewExpectedInvoice:
        """
        Build an expected invoice from one export row.

        Raises:
            ValidationError: If a required field is missing or malformed
        """
        def cell(field_name: str) -> str:
            column = mapping.get(field_name)
            return _cell_text(row[column]) if column else ''

        raw_cuit = cell('cuit')
        if not raw_cuit:
            raise ValidationError("CUIT is empty")
        cuit = normalize_cuit(raw_cuit)
        if not is_valid_cuit(cuit):
            raise ValidationError(f"CUIT fails check digit validation: {format_cuit(cuit)}")

        issue_date = parse_issue_date(cell('issue_date'))
        if issue_date is None:
            raise ValidationError("Issue date is empty")

        raw_type = cell('invoice_type')
        invoice_type = parse_invoice_type(raw_type)
        if invoice_type is None:
            raise ValidationError(f"Could not detect invoice type in '{raw_type}'")

        point_of_sale = validate_point_of_sale(cell('point_of_sale'))
        invoice_number = validate_invoice_number(cell('invoice_number'))
        if point_of_sale is None or invoice_number is None:
            raise ValidationError("Point of sale and invoice number are required")

        cae = cell('cae')
        return NewExpectedInvoice(
            cuit=cuit,
            invoice_type=invoice_type,
            point_of_sale=point_of_sale,
            invoice_number=invoice_number,
            issue_date=issue_date,
            total=_parse_total(cell('total')),
            emitter_name=cell('emitter_name') or None,
            cae=cae if cae and cae != '0' else None,
            currency=self.default_currency,
        )
