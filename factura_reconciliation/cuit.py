"""
CUIT (Argentine tax id) normalization and validation.

A CUIT has 11 digits, written XX-XXXXXXXX-X: a two digit person-type prefix,
an eight digit document or sequence number and a module-11 check digit.
Inside the system CUITs are always kept as the bare 11 digits.
"""

import re
from typing import Optional

from factura_reconciliation.models import PersonType, ValidationError

import logging
logger = logging.getLogger(__name__)

CHECK_DIGIT_WEIGHTS = (5, 4, 3, 2, 7, 6, 5, 4, 3, 2)

_SEPARATORS = re.compile(r'[-\s.]')


def normalize_cuit(value: str) -> str:
    """
    Reduce a CUIT to its 11 digits.

    Args:
        value: CUIT with or without dashes, spaces or dots

    Returns:
        The 11 digit string

    Raises:
        ValidationError: If the value does not contain exactly 11 digits
    """
    if value is None:
        raise ValidationError("CUIT is required")
    cleaned = _SEPARATORS.sub('', str(value).strip())
    if len(cleaned) != 11 or not cleaned.isdigit():
        raise ValidationError(f"Invalid CUIT: '{value}'")
    return cleaned


def check_digit(base: str) -> int:
    """Module-11 check digit for the first ten digits of a CUIT."""
    total = sum(int(digit) * weight for digit, weight in zip(base, CHECK_DIGIT_WEIGHTS))
    remainder = total % 11
    if remainder == 0:
        return 0
    if remainder == 1:
        return 9
    return 11 - remainder


def is_valid_cuit(value: str) -> bool:
    """True when the value normalizes to 11 digits with a correct check digit."""
    try:
        digits = normalize_cuit(value)
    except ValidationError:
        return False
    return check_digit(digits[:10]) == int(digits[10])


def format_cuit(value: str) -> str:
    """Render a CUIT as XX-XXXXXXXX-X."""
    digits = normalize_cuit(value)
    return f"{digits[:2]}-{digits[2:10]}-{digits[10]}"


def person_type(value: str) -> Optional[PersonType]:
    """Taxpayer kind from the CUIT prefix, None for unknown prefixes."""
    prefix = normalize_cuit(value)[:2]
    if prefix in ('20', '23', '24', '27'):
        return PersonType.FISICA
    if prefix in ('30', '33', '34'):
        return PersonType.JURIDICA
    logger.debug(f"Unknown CUIT prefix: {prefix}")
    return None
