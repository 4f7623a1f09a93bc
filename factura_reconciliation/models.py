"""
Core data models for the factura reconciliation system.

This module defines the value objects exchanged between the field extractor,
the expected-invoice ledger and the reconciliation core: extracted records,
expected and finalized invoices, match candidates, processing outcomes and
the settings that drive matching.
"""

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import math
import re


INVOICE_TYPES = ('A', 'B', 'C', 'E', 'M', 'X')

POINT_OF_SALE_RANGE = (1, 99999)
INVOICE_NUMBER_RANGE = (1, 99999999)


class ExpectedStatus(Enum):
    """Lifecycle states of an expected invoice."""
    PENDING = "pending"
    MATCHED = "matched"
    DISCREPANCY = "discrepancy"
    MANUAL = "manual"
    IGNORED = "ignored"


# Statuses whose rows are still available for matching
OPEN_STATUSES = (
    ExpectedStatus.PENDING,
    ExpectedStatus.DISCREPANCY,
    ExpectedStatus.MANUAL,
    ExpectedStatus.IGNORED,
)


class FileStatus(Enum):
    """Processing states of an uploaded source file."""
    PENDING = "pending"
    REVIEWING = "reviewing"
    PROCESSED = "processed"
    FAILED = "failed"


class Decision(Enum):
    """Outcome of the confidence gate for a single document."""
    AUTO_LINKED = "auto_linked"
    AUTO_CREATED = "auto_created"
    PENDING_REVIEW = "pending_review"
    FAILED = "failed"


class PersonType(Enum):
    """Kind of taxpayer encoded in the CUIT prefix."""
    FISICA = "FISICA"
    JURIDICA = "JURIDICA"


def parse_issue_date(value: Any) -> Optional[date]:
    """
    Parse an issue date from ISO (YYYY-MM-DD) or Argentine (DD/MM/YYYY) text.

    Raises:
        ValidationError: If the value cannot be interpreted as a date
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    try:
        if re.match(r'^\d{4}-\d{2}-\d{2}', text):
            return date.fromisoformat(text[:10])
        match = re.match(r'^(\d{1,2})[/-](\d{1,2})[/-](\d{4})$', text)
        if match:
            day, month, year = (int(part) for part in match.groups())
            return date(year, month, day)
    except ValueError as e:
        raise ValidationError(f"Invalid issue date '{value}': {e}")
    raise ValidationError(f"Invalid issue date format: '{value}'")


def parse_amount(value: Any) -> Optional[Decimal]:
    """Convert an amount to Decimal, accepting strings with currency symbols."""
    if value is None or value == '':
        return None
    try:
        if isinstance(value, Decimal):
            return value
        if isinstance(value, float):
            return Decimal(str(value))
        if isinstance(value, str):
            return Decimal(value.replace('$', '').replace(',', '').strip())
        return Decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid amount: '{value}'")


def validate_invoice_type(value: Any) -> Optional[str]:
    """Normalize an invoice letter, rejecting anything outside A, B, C, E, M, X."""
    if value is None or value == '':
        return None
    letter = str(value).strip().upper()
    if letter not in INVOICE_TYPES:
        raise ValidationError(f"Invalid invoice type: '{value}'")
    return letter


def validate_point_of_sale(value: Any) -> Optional[int]:
    return _validate_int_range('point_of_sale', value, POINT_OF_SALE_RANGE)


def validate_invoice_number(value: Any) -> Optional[int]:
    return _validate_int_range('invoice_number', value, INVOICE_NUMBER_RANGE)


def _validate_int_range(name: str, value: Any, bounds: Tuple[int, int]) -> Optional[int]:
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {name}: {value!r}")
    try:
        number = int(value)
    except (ValueError, TypeError):
        raise ValidationError(f"Invalid {name}: {value!r}")
    if isinstance(value, float) and number != value:
        raise ValidationError(f"Invalid {name}: {value!r}")
    low, high = bounds
    if number < low or number > high:
        raise ValidationError(f"{name} out of range ({low}-{high}): {number}")
    return number


@dataclass(frozen=True)
class NaturalKey:
    """Business-unique identifier of an invoice."""
    cuit: str
    invoice_type: str
    point_of_sale: int
    invoice_number: int

    def __str__(self) -> str:
        return f"{self.cuit} {self.invoice_type}-{self.point_of_sale:05d}-{self.invoice_number:08d}"


@dataclass
class ExtractedRecord:
    """
    Best-effort structured data produced by the field extractor.

    Any field may be missing. The CUIT is kept as 11 digits without
    separators; callers should build instances through ``from_dict`` so that
    raw extractor output is validated at the edge.
    """
    cuit: Optional[str] = None
    issue_date: Optional[date] = None
    invoice_type: Optional[str] = None
    point_of_sale: Optional[int] = None
    invoice_number: Optional[int] = None
    total: Optional[Decimal] = None
    extraction_confidence: float = 0.0

    def has_full_key(self) -> bool:
        """True when all four natural-key fields are present."""
        return (
            self.cuit is not None
            and self.invoice_type is not None
            and self.point_of_sale is not None
            and self.invoice_number is not None
        )

    def is_empty(self) -> bool:
        """True when the extractor produced no usable field at all."""
        return all(
            value is None for value in (
                self.cuit, self.issue_date, self.invoice_type,
                self.point_of_sale, self.invoice_number, self.total,
            )
        )

    def natural_key(self) -> Optional[NaturalKey]:
        if not self.has_full_key():
            return None
        return NaturalKey(self.cuit, self.invoice_type, self.point_of_sale, self.invoice_number)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'cuit': self.cuit,
            'issue_date': self.issue_date.isoformat() if self.issue_date else None,
            'invoice_type': self.invoice_type,
            'point_of_sale': self.point_of_sale,
            'invoice_number': self.invoice_number,
            'total': str(self.total) if self.total is not None else None,
            'extraction_confidence': self.extraction_confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExtractedRecord':
        """
        Create a validated ExtractedRecord from raw extractor output.

        Raises:
            ValidationError: If any present field is malformed
        """
        # Imported here: cuit.py depends on this module for ValidationError
        from factura_reconciliation.cuit import normalize_cuit

        if not isinstance(data, dict):
            raise ValidationError(f"Extraction must be an object, got {type(data).__name__}")

        raw_cuit = data.get('cuit')
        confidence = data.get('extraction_confidence', data.get('confidence', 0)) or 0
        try:
            confidence = float(confidence)
        except (ValueError, TypeError):
            raise ValidationError(f"Invalid extraction confidence: {confidence!r}")
        if not math.isfinite(confidence) or confidence < 0 or confidence > 100:
            raise ValidationError(f"Extraction confidence out of range (0-100): {confidence}")

        return cls(
            cuit=normalize_cuit(raw_cuit) if raw_cuit else None,
            issue_date=parse_issue_date(data.get('issue_date', data.get('date'))),
            invoice_type=validate_invoice_type(data.get('invoice_type')),
            point_of_sale=validate_point_of_sale(data.get('point_of_sale')),
            invoice_number=validate_invoice_number(data.get('invoice_number')),
            total=parse_amount(data.get('total')),
            extraction_confidence=confidence,
        )


@dataclass
class ExpectedInvoice:
    """
    A row of the expected-invoice ledger, imported from an AFIP/ARCA export.

    The natural key never changes once the row is matched, and a matched row
    can not be matched a second time.
    """
    id: int
    cuit: str
    invoice_type: str
    point_of_sale: int
    invoice_number: int
    issue_date: Optional[date] = None
    total: Optional[Decimal] = None
    emitter_name: Optional[str] = None
    cae: Optional[str] = None
    currency: str = "ARS"
    status: ExpectedStatus = ExpectedStatus.PENDING
    matched_file_id: Optional[int] = None
    matched_invoice_id: Optional[int] = None
    match_score: Optional[int] = None
    import_batch_id: Optional[int] = None
    notes: Optional[str] = None

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(self.cuit, self.invoice_type, self.point_of_sale, self.invoice_number)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'cuit': self.cuit,
            'invoice_type': self.invoice_type,
            'point_of_sale': self.point_of_sale,
            'invoice_number': self.invoice_number,
            'issue_date': self.issue_date.isoformat() if self.issue_date else None,
            'total': str(self.total) if self.total is not None else None,
            'emitter_name': self.emitter_name,
            'cae': self.cae,
            'currency': self.currency,
            'status': self.status.value,
            'matched_file_id': self.matched_file_id,
            'matched_invoice_id': self.matched_invoice_id,
            'match_score': self.match_score,
            'import_batch_id': self.import_batch_id,
            'notes': self.notes,
        }


@dataclass
class NewExpectedInvoice:
    """Expected invoice data before it is assigned an id by the ledger."""
    cuit: str
    invoice_type: str
    point_of_sale: int
    invoice_number: int
    issue_date: Optional[date] = None
    total: Optional[Decimal] = None
    emitter_name: Optional[str] = None
    cae: Optional[str] = None
    currency: str = "ARS"

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(self.cuit, self.invoice_type, self.point_of_sale, self.invoice_number)


@dataclass
class InvoiceFields:
    """Fields used to create a finalized invoice."""
    emitter_cuit: str
    invoice_type: str
    point_of_sale: int
    invoice_number: int
    issue_date: date
    total: Optional[Decimal] = None
    currency: str = "ARS"

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(self.emitter_cuit, self.invoice_type, self.point_of_sale, self.invoice_number)

    @classmethod
    def from_expected(cls, expected: ExpectedInvoice) -> 'InvoiceFields':
        if expected.issue_date is None:
            raise ValidationError(f"Expected invoice {expected.id} has no issue date")
        return cls(
            emitter_cuit=expected.cuit,
            invoice_type=expected.invoice_type,
            point_of_sale=expected.point_of_sale,
            invoice_number=expected.invoice_number,
            issue_date=expected.issue_date,
            total=expected.total,
            currency=expected.currency or "ARS",
        )

    @classmethod
    def from_extracted(cls, record: ExtractedRecord, currency: str = "ARS") -> 'InvoiceFields':
        if not record.has_full_key() or record.issue_date is None:
            raise ValidationError("Extracted record is missing fields required for an invoice")
        return cls(
            emitter_cuit=record.cuit,
            invoice_type=record.invoice_type,
            point_of_sale=record.point_of_sale,
            invoice_number=record.invoice_number,
            issue_date=record.issue_date,
            total=record.total,
            currency=currency,
        )


@dataclass
class FinalizedInvoice:
    """The system's authoritative record of a confirmed invoice."""
    id: int
    emitter_cuit: str
    invoice_type: str
    point_of_sale: int
    invoice_number: int
    issue_date: date
    total: Optional[Decimal] = None
    currency: str = "ARS"
    file_id: Optional[int] = None
    expected_invoice_id: Optional[int] = None
    extraction_confidence: Optional[float] = None
    requires_review: bool = False
    category: Optional[str] = None

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(self.emitter_cuit, self.invoice_type, self.point_of_sale, self.invoice_number)

    @property
    def full_number(self) -> str:
        return f"{self.invoice_type}-{self.point_of_sale:05d}-{self.invoice_number:08d}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'emitter_cuit': self.emitter_cuit,
            'invoice_type': self.invoice_type,
            'point_of_sale': self.point_of_sale,
            'invoice_number': self.invoice_number,
            'full_number': self.full_number,
            'issue_date': self.issue_date.isoformat(),
            'total': str(self.total) if self.total is not None else None,
            'currency': self.currency,
            'file_id': self.file_id,
            'expected_invoice_id': self.expected_invoice_id,
            'extraction_confidence': self.extraction_confidence,
            'requires_review': self.requires_review,
            'category': self.category,
        }


@dataclass
class SourceFile:
    """An uploaded document and the last extraction stored for it."""
    id: int
    original_filename: str
    status: FileStatus = FileStatus.PENDING
    extracted: Optional[ExtractedRecord] = None
    invoice_id: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def extracted_cuit(self) -> Optional[str]:
        return self.extracted.cuit if self.extracted else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'original_filename': self.original_filename,
            'status': self.status.value,
            'extracted': self.extracted.to_dict() if self.extracted else None,
            'invoice_id': self.invoice_id,
            'error_message': self.error_message,
        }


@dataclass
class Emitter:
    """An invoice emitter identified by its CUIT."""
    cuit: str
    name: str
    person_type: Optional[PersonType] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cuit': self.cuit,
            'name': self.name,
            'person_type': self.person_type.value if self.person_type else None,
        }


@dataclass
class ImportBatch:
    """Summary of one bulk import into the expected ledger."""
    id: int
    filename: str
    total_rows: int = 0
    imported_rows: int = 0
    skipped_rows: int = 0
    error_rows: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'filename': self.filename,
            'total_rows': self.total_rows,
            'imported_rows': self.imported_rows,
            'skipped_rows': self.skipped_rows,
            'error_rows': self.error_rows,
        }


@dataclass
class MatchCandidate:
    """
    A ranked partial match between an extracted record and an expected invoice.

    Produced by the resolver and consumed immediately; never persisted.
    """
    expected_invoice_id: int
    match_score: int
    matched_fields: List[str]
    expected_invoice: Optional[ExpectedInvoice] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'expected_invoice_id': self.expected_invoice_id,
            'match_score': self.match_score,
            'matched_fields': self.matched_fields,
            'expected_invoice': self.expected_invoice.to_dict() if self.expected_invoice else None,
        }


@dataclass
class ProcessingOutcome:
    """Result of running one document through the confidence gate."""
    file_id: int
    decision: Decision
    confidence: float
    requires_review: bool
    invoice: Optional[FinalizedInvoice] = None
    matched_expected_invoice_id: Optional[int] = None
    candidates: List[MatchCandidate] = field(default_factory=list)
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'file_id': self.file_id,
            'decision': self.decision.value,
            'confidence': self.confidence,
            'requires_review': self.requires_review,
            'invoice': self.invoice.to_dict() if self.invoice else None,
            'matched_expected_invoice_id': self.matched_expected_invoice_id,
            'candidates': [c.to_dict() for c in self.candidates],
            'error_message': self.error_message,
        }


@dataclass
class ReconciliationSettings:
    """Configuration for matching and the confidence gate."""
    auto_create_threshold: float = 80.0  # extractor confidence, 0 to 100
    exact_match_confidence: float = 95.0
    invoice_number_tolerance: int = 10
    default_candidate_limit: int = 20
    review_candidate_limit: int = 5
    default_currency: str = "ARS"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'auto_create_threshold': self.auto_create_threshold,
            'exact_match_confidence': self.exact_match_confidence,
            'invoice_number_tolerance': self.invoice_number_tolerance,
            'default_candidate_limit': self.default_candidate_limit,
            'review_candidate_limit': self.review_candidate_limit,
            'default_currency': self.default_currency,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReconciliationSettings':
        """Create ReconciliationSettings from dictionary."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        return cls(**data)


# Custom exceptions for reconciliation
class InvoiceReconciliationError(Exception):
    """Base exception for reconciliation operations."""
    pass


class ValidationError(InvoiceReconciliationError):
    """Raised when key fields are malformed or out of range."""
    pass


class ConflictError(InvoiceReconciliationError):
    """Raised on duplicate natural keys or double linking."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(InvoiceReconciliationError):
    """Raised when a referenced invoice, file or emitter does not exist."""
    pass


class StorageError(InvoiceReconciliationError):
    """Raised when the persistence layer fails."""
    pass


class ConfigurationError(InvoiceReconciliationError):
    """Raised when configuration is invalid or missing."""
    pass
