"""
Match resolution against the expected-invoice ledger.

The resolver answers two questions for an extracted record: is there an open
expected invoice with exactly this natural key, and if not, which open
expected invoices come closest. Candidate scores combine per-field exact
matches with proximity credit on the invoice number.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional, Union

from factura_reconciliation.cuit import normalize_cuit
from factura_reconciliation.models import (
    ExpectedInvoice, MatchCandidate, NaturalKey, OPEN_STATUSES,
    ReconciliationSettings, ValidationError, validate_invoice_number,
    validate_invoice_type, validate_point_of_sale
)
from factura_reconciliation.ledger.base_ledger import BaseLedger
from .exact_matcher import ExactMatcher
from .tolerance_matcher import ToleranceMatcher

import logging
logger = logging.getLogger(__name__)

FIELD_POINTS = 100
MAX_SCORE = 100
PROXIMITY_MARKER = '~'


class MatchResolver:
    """
    Finds exact and partial matches for extracted invoice data.

    The resolver holds no per-request state, so one instance can serve
    concurrent requests as long as the ledger does.
    """

    def __init__(self, ledger: BaseLedger, settings: Optional[ReconciliationSettings] = None):
        """
        Initialize match resolver.

        Args:
            ledger: Expected ledger to query
            settings: Matching settings (defaults when omitted)
        """
        self.ledger = ledger
        self.settings = settings or ReconciliationSettings()
        self.exact_matcher = ExactMatcher()
        self.tolerance_matcher = ToleranceMatcher(self.settings.invoice_number_tolerance)
        self.logger = logging.getLogger(f"{__name__}.MatchResolver")

    def find_exact_match(self, key: Union[NaturalKey, Mapping[str, Any]]) -> Optional[ExpectedInvoice]:
        """
        Look up the open expected invoice with exactly this natural key.

        Args:
            key: NaturalKey or mapping with cuit, invoice_type, point_of_sale
                and invoice_number, all present

        Returns:
            The matching ExpectedInvoice, or None if no open row has the key

        Raises:
            ValidationError: If any key field is missing or malformed
        """
        normalized = self._normalize_key(key)
        expected = self.ledger.find_expected_by_key(normalized, OPEN_STATUSES)
        # Re-check the returned row field by field
        if expected is not None and not self.exact_matcher.is_key_match(normalized, expected):
            self.logger.warning(f"Ledger returned expected invoice {expected.id} for {normalized} "
                                f"but its key differs, ignoring it")
            expected = None

        if expected:
            self.logger.debug(f"Exact match for {normalized}: expected invoice {expected.id}")
        else:
            self.logger.debug(f"No exact match for {normalized}")
        return expected

    def find_candidates(self, cuit: Optional[str] = None,
                        invoice_type: Optional[str] = None,
                        point_of_sale: Optional[int] = None,
                        invoice_number: Optional[int] = None,
                        limit: Optional[int] = None) -> List[MatchCandidate]:
        """
        Rank open expected invoices by similarity to the given criteria.

        Every supplied field is worth 100 points; the invoice number earns
        partial credit within the tolerance window. The score is the average
        over the compared fields, where CUIT counts only when supplied.
        With no criteria at all, every open row is returned with score 0.

        Args:
            cuit: Emitter CUIT, with or without separators; None excludes it
            invoice_type: Invoice letter
            point_of_sale: Point of sale number
            invoice_number: Invoice number
            limit: Maximum number of candidates (default from settings)

        Returns:
            Candidates sorted by score descending, then expected invoice id

        Raises:
            ValidationError: If a supplied field or the limit is malformed
        """
        if limit is None:
            limit = self.settings.default_candidate_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError(f"Candidate limit must be a positive integer, got {limit!r}")

        criteria = {
            'cuit': normalize_cuit(cuit) if cuit else None,
            'invoice_type': validate_invoice_type(invoice_type),
            'point_of_sale': validate_point_of_sale(point_of_sale),
            'invoice_number': validate_invoice_number(invoice_number),
        }

        open_rows = self.ledger.search_expected(OPEN_STATUSES)

        if all(value is None for value in criteria.values()):
            self.logger.debug(f"No criteria supplied, listing {len(open_rows)} open expected invoices")
            return [
                MatchCandidate(expected_invoice_id=row.id, match_score=0,
                               matched_fields=[], expected_invoice=row)
                for row in open_rows[:limit]
            ]

        candidates = [self._score(row, criteria) for row in open_rows]
        candidates.sort(key=lambda c: (-c.match_score, c.expected_invoice_id))

        self.logger.debug(
            f"Scored {len(candidates)} open expected invoices for {self._describe(criteria)}; "
            f"top score {candidates[0].match_score if candidates else 0}"
        )
        return candidates[:limit]

    def _score(self, row: ExpectedInvoice, criteria: Dict[str, Any]) -> MatchCandidate:
        matched_fields: List[str] = []
        points = 0
        fields_compared = 3

        if criteria['cuit'] is not None:
            fields_compared += 1
            if self.exact_matcher.match_cuit(criteria['cuit'], row.cuit).matches:
                points += FIELD_POINTS
                matched_fields.append('cuit')

        if self.exact_matcher.match_invoice_type(criteria['invoice_type'], row.invoice_type).matches:
            points += FIELD_POINTS
            matched_fields.append('invoice_type')

        if self.exact_matcher.match_number('point_of_sale', criteria['point_of_sale'],
                                           row.point_of_sale).matches:
            points += FIELD_POINTS
            matched_fields.append('point_of_sale')

        number = self.tolerance_matcher.match_invoice_number(criteria['invoice_number'], row.invoice_number)
        if number.matches:
            points += FIELD_POINTS
            matched_fields.append('invoice_number')
        elif number.is_proximity:
            points += number.points
            matched_fields.append('invoice_number' + PROXIMITY_MARKER)

        score = (Decimal(points) / Decimal(fields_compared)).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
        return MatchCandidate(
            expected_invoice_id=row.id,
            match_score=min(int(score), MAX_SCORE),
            matched_fields=matched_fields,
            expected_invoice=row,
        )

    def _normalize_key(self, key: Union[NaturalKey, Mapping[str, Any]]) -> NaturalKey:
        if isinstance(key, NaturalKey):
            raw = {
                'cuit': key.cuit,
                'invoice_type': key.invoice_type,
                'point_of_sale': key.point_of_sale,
                'invoice_number': key.invoice_number,
            }
        else:
            raw = dict(key)

        missing = [name for name in ('cuit', 'invoice_type', 'point_of_sale', 'invoice_number')
                   if raw.get(name) in (None, '')]
        if missing:
            raise ValidationError(f"Exact match requires every key field; missing: {', '.join(missing)}")

        return NaturalKey(
            cuit=normalize_cuit(raw['cuit']),
            invoice_type=validate_invoice_type(raw['invoice_type']),
            point_of_sale=validate_point_of_sale(raw['point_of_sale']),
            invoice_number=validate_invoice_number(raw['invoice_number']),
        )

    @staticmethod
    def _describe(criteria: Dict[str, Any]) -> str:
        return ", ".join(f"{name}={value}" for name, value in criteria.items() if value is not None) or "no criteria"
