"""
AFIP/ARCA voucher codes.

Maps the numeric voucher codes that appear in AFIP/ARCA exports to the
invoice letter used throughout the system. Codes 201-299 are the electronic
credit invoice (FCE) variants and map like their code minus 200.
"""

import re
from typing import Optional

# code -> (letter, kind)
AFIP_CODES = {
    1: ('A', 'FAC'), 2: ('A', 'NDB'), 3: ('A', 'NCR'),
    6: ('B', 'FAC'), 7: ('B', 'NDB'), 8: ('B', 'NCR'),
    11: ('C', 'FAC'), 12: ('C', 'NDB'), 13: ('C', 'NCR'),
    19: ('E', 'FAC'), 20: ('E', 'NDB'), 21: ('E', 'NCR'),
    51: ('M', 'FAC'), 52: ('M', 'NDB'), 53: ('M', 'NCR'),
}


def invoice_type_from_code(code) -> Optional[str]:
    """Invoice letter for an AFIP code such as 11, '011' or '211'."""
    try:
        number = int(str(code).strip())
    except (ValueError, TypeError):
        return None
    if 201 <= number <= 299:
        number -= 200
    entry = AFIP_CODES.get(number)
    return entry[0] if entry else None


def parse_invoice_type(raw) -> Optional[str]:
    """
    Invoice letter from the voucher column of an export.

    Handles "11 - Factura C", a bare code, "Factura A" / "FC B" / "NC A",
    and a bare letter.
    """
    if raw is None:
        return None
    text = str(raw).strip().upper()
    if not text:
        return None

    code_match = re.match(r'^(\d{1,3})(?:\s*[-–]\s*|$)', text)
    if code_match:
        return invoice_type_from_code(code_match.group(1))

    letter_match = re.search(r'(?:FACTURA|FC|NC|ND)\s+([ABCEMX])\b', text)
    if not letter_match:
        letter_match = re.search(r'\b([ABCEMX])\b', text)
    return letter_match.group(1) if letter_match else None
