"""
Tolerance-based matching for invoice numbers.

Extracted invoice numbers are frequently off by a few units (a misread digit,
the wrong line of a multi-page document). Numbers within the tolerance window
earn partial credit that decays linearly with the distance.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional
from dataclasses import dataclass

import logging
logger = logging.getLogger(__name__)

FULL_POINTS = 100


@dataclass
class ToleranceMatchResult:
    """Result of a tolerance-based match operation."""
    field_name: str
    matches: bool  # True only for an exact match
    within_tolerance: bool
    expected_value: Any
    actual_value: Any
    tolerance_value: int
    actual_variance: Optional[int]
    points: int  # 0 to 100

    @property
    def is_proximity(self) -> bool:
        """True when credit was given for a near miss rather than equality."""
        return not self.matches and self.points > 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'field_name': self.field_name,
            'matches': self.matches,
            'within_tolerance': self.within_tolerance,
            'expected_value': str(self.expected_value),
            'actual_value': str(self.actual_value),
            'tolerance_value': self.tolerance_value,
            'actual_variance': self.actual_variance,
            'points': self.points
        }


class ToleranceMatcher:
    """
    Scores invoice numbers by proximity.

    Exact equality is worth 100 points. A distance d with 0 < d < tolerance
    is worth round(100 * (1 - d / tolerance)); anything farther is worth 0.
    With the default window of 10, a distance of 5 gives 50 points.
    """

    def __init__(self, tolerance: int = 10):
        """
        Initialize tolerance matcher.

        Args:
            tolerance: Width of the proximity window; distances at or beyond
                it earn no points
        """
        if tolerance < 1:
            raise ValueError(f"Tolerance must be positive, got {tolerance}")
        self.logger = logging.getLogger(f"{__name__}.ToleranceMatcher")
        self.tolerance = tolerance

    def proximity_points(self, distance: int) -> int:
        """Points for an absolute distance between two invoice numbers."""
        if distance == 0:
            return FULL_POINTS
        if distance >= self.tolerance:
            return 0
        points = Decimal(FULL_POINTS) * (1 - Decimal(distance) / Decimal(self.tolerance))
        return int(points.quantize(Decimal('1'), rounding=ROUND_HALF_UP))

    def match_invoice_number(self, expected: Optional[int],
                             actual: Optional[int]) -> ToleranceMatchResult:
        """
        Match invoice numbers with proximity credit.

        Args:
            expected: Invoice number from the extracted record
            actual: Invoice number of the expected-ledger row

        Returns:
            ToleranceMatchResult with the awarded points
        """
        if expected is None or actual is None:
            return ToleranceMatchResult(
                field_name='invoice_number',
                matches=False,
                within_tolerance=False,
                expected_value=expected,
                actual_value=actual,
                tolerance_value=self.tolerance,
                actual_variance=None,
                points=0
            )

        distance = abs(int(expected) - int(actual))
        points = self.proximity_points(distance)

        result = ToleranceMatchResult(
            field_name='invoice_number',
            matches=distance == 0,
            within_tolerance=distance < self.tolerance,
            expected_value=expected,
            actual_value=actual,
            tolerance_value=self.tolerance,
            actual_variance=distance,
            points=points
        )

        self.logger.debug(f"Invoice number tolerance match: {expected} vs {actual} "
                          f"(window {self.tolerance}) = {points} points (variance: {distance})")
        return result
