"""
Unit tests for AFIP/ARCA voucher code parsing.
"""

from factura_reconciliation.afip_codes import invoice_type_from_code, parse_invoice_type


class TestAfipCodes:
    """Test cases for voucher code helpers."""

    def test_invoice_type_from_code(self):
        """Test mapping numeric codes to letters."""
        assert invoice_type_from_code(1) == 'A'
        assert invoice_type_from_code('006') == 'B'
        assert invoice_type_from_code(13) == 'C'
        assert invoice_type_from_code(51) == 'M'

    def test_electronic_credit_invoice_codes(self):
        """Test that the 201-299 range maps like its base code."""
        assert invoice_type_from_code(201) == 'A'
        assert invoice_type_from_code(211) == 'C'

    def test_unknown_code(self):
        """Test codes without a mapping."""
        assert invoice_type_from_code(99) is None
        assert invoice_type_from_code('abc') is None

    def test_parse_code_with_description(self):
        """Test the "11 - Factura C" export format."""
        assert parse_invoice_type("11 - Factura C") == 'C'
        assert parse_invoice_type("1 - Factura A") == 'A'
        assert parse_invoice_type("6") == 'B'

    def test_parse_description_only(self):
        """Test descriptions without a code."""
        assert parse_invoice_type("Factura A") == 'A'
        assert parse_invoice_type("fc b") == 'B'
        assert parse_invoice_type("NC C") == 'C'

    def test_parse_bare_letter(self):
        """Test a bare letter."""
        assert parse_invoice_type("e") == 'E'
        assert parse_invoice_type("X") == 'X'

    def test_parse_unrecognized(self):
        """Test values with no invoice type."""
        assert parse_invoice_type("") is None
        assert parse_invoice_type(None) is None
        assert parse_invoice_type("Recibo") is None
