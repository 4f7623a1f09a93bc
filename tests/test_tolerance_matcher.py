"""
Unit tests for invoice-number proximity matching.

Tests the linear decay of points over the tolerance window.
"""

import pytest

from factura_reconciliation.matching.tolerance_matcher import ToleranceMatcher, ToleranceMatchResult


class TestToleranceMatcher:
    """Test cases for ToleranceMatcher class."""

    def setup_method(self):
        """Setup test environment."""
        self.matcher = ToleranceMatcher()

    def test_exact_number(self):
        """Test that equal numbers earn full points."""
        result = self.matcher.match_invoice_number(99152, 99152)

        assert result.matches is True
        assert result.within_tolerance is True
        assert result.actual_variance == 0
        assert result.points == 100
        assert result.is_proximity is False

    def test_distance_five_gives_half_points(self):
        """Test the reference point of the decay."""
        result = self.matcher.match_invoice_number(99157, 99152)

        assert result.matches is False
        assert result.within_tolerance is True
        assert result.actual_variance == 5
        assert result.points == 50
        assert result.is_proximity is True

    def test_linear_decay(self):
        """Test points for every distance inside the window."""
        assert [self.matcher.proximity_points(d) for d in range(0, 11)] == [
            100, 90, 80, 70, 60, 50, 40, 30, 20, 10, 0
        ]

    def test_outside_window(self):
        """Test that distances at or past the window earn nothing."""
        result = self.matcher.match_invoice_number(100, 150)

        assert result.matches is False
        assert result.within_tolerance is False
        assert result.points == 0
        assert result.is_proximity is False

    def test_custom_window_rounding(self):
        """Test half-up rounding with a window that does not divide 100."""
        matcher = ToleranceMatcher(tolerance=8)

        # 100 * (1 - 3/8) = 62.5
        assert matcher.proximity_points(3) == 63
        assert matcher.proximity_points(8) == 0

    def test_monotonic(self):
        """Test that closer numbers never score lower."""
        points = [self.matcher.proximity_points(d) for d in range(0, 30)]

        assert all(points[i] >= points[i + 1] for i in range(len(points) - 1))

    def test_missing_values(self):
        """Test that a missing number earns nothing."""
        result = self.matcher.match_invoice_number(None, 99152)

        assert isinstance(result, ToleranceMatchResult)
        assert result.points == 0
        assert result.actual_variance is None

    def test_invalid_tolerance(self):
        """Test that the window must be positive."""
        with pytest.raises(ValueError):
            ToleranceMatcher(tolerance=0)
