"""
Exact matching of invoice key fields.

Provides field-by-field equality checks for the natural key of an invoice
(CUIT, invoice type, point of sale, invoice number), with CUIT compared on
digits only and the invoice letter compared case-insensitively.
"""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass

from factura_reconciliation.cuit import normalize_cuit
from factura_reconciliation.models import ExpectedInvoice, NaturalKey, ValidationError

import logging
logger = logging.getLogger(__name__)


@dataclass
class ExactMatchResult:
    """Result of an exact match operation on one field."""
    field_name: str
    matches: bool
    expected_value: Any
    actual_value: Any
    match_type: str  # 'exact', 'digits_only', 'case_insensitive', 'missing'
    confidence: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'field_name': self.field_name,
            'matches': self.matches,
            'expected_value': str(self.expected_value),
            'actual_value': str(self.actual_value),
            'match_type': self.match_type,
            'confidence': self.confidence
        }


class ExactMatcher:
    """
    Performs exact matching operations on invoice key fields.

    A missing value on either side never matches; it is reported with
    match type 'missing' so callers can tell absence from disagreement.
    """

    def __init__(self):
        """Initialize exact matcher."""
        self.logger = logging.getLogger(f"{__name__}.ExactMatcher")

    def match_cuit(self, expected: Optional[str], actual: Optional[str]) -> ExactMatchResult:
        """
        Match CUITs on their digits, ignoring dashes and spaces.

        Raises:
            ValidationError: If either CUIT cannot be normalized
        """
        if not expected or not actual:
            return self._missing('cuit', expected, actual)

        matches = normalize_cuit(expected) == normalize_cuit(actual)
        self.logger.debug(f"CUIT match: {expected} vs {actual} = {matches}")
        return ExactMatchResult(
            field_name='cuit',
            matches=matches,
            expected_value=expected,
            actual_value=actual,
            match_type='digits_only',
            confidence=1.0 if matches else 0.0
        )

    def match_invoice_type(self, expected: Optional[str], actual: Optional[str]) -> ExactMatchResult:
        """Match invoice letters case-insensitively."""
        if not expected or not actual:
            return self._missing('invoice_type', expected, actual)

        matches = str(expected).strip().upper() == str(actual).strip().upper()
        return ExactMatchResult(
            field_name='invoice_type',
            matches=matches,
            expected_value=expected,
            actual_value=actual,
            match_type='case_insensitive',
            confidence=1.0 if matches else 0.0
        )

    def match_number(self, field_name: str, expected: Optional[int],
                     actual: Optional[int]) -> ExactMatchResult:
        """Match integer fields (point of sale, invoice number)."""
        if expected is None or actual is None:
            return self._missing(field_name, expected, actual)

        matches = int(expected) == int(actual)
        return ExactMatchResult(
            field_name=field_name,
            matches=matches,
            expected_value=expected,
            actual_value=actual,
            match_type='exact',
            confidence=1.0 if matches else 0.0
        )

    def match_key(self, key: NaturalKey, candidate: ExpectedInvoice) -> List[ExactMatchResult]:
        """
        Match every natural-key field of a candidate against a key.

        Returns:
            One ExactMatchResult per key field, in key order
        """
        results = [
            self.match_cuit(key.cuit, candidate.cuit),
            self.match_invoice_type(key.invoice_type, candidate.invoice_type),
            self.match_number('point_of_sale', key.point_of_sale, candidate.point_of_sale),
            self.match_number('invoice_number', key.invoice_number, candidate.invoice_number),
        ]
        self.logger.debug(
            f"Key match {key} vs expected {candidate.id}: "
            f"{sum(1 for r in results if r.matches)}/{len(results)} fields matched"
        )
        return results

    def is_key_match(self, key: NaturalKey, candidate: ExpectedInvoice) -> bool:
        """True when all four key fields match."""
        return all(result.matches for result in self.match_key(key, candidate))

    def _missing(self, field_name: str, expected: Any, actual: Any) -> ExactMatchResult:
        return ExactMatchResult(
            field_name=field_name,
            matches=False,
            expected_value=expected,
            actual_value=actual,
            match_type='missing',
            confidence=0.0
        )
