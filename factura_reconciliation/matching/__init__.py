"""
Match resolution for extracted invoice data against the expected ledger.

Provides exact key matching, invoice-number proximity scoring and the
resolver that combines them into ranked candidates.
"""

from .exact_matcher import ExactMatcher, ExactMatchResult
from .tolerance_matcher import ToleranceMatcher, ToleranceMatchResult
from .resolver import MatchResolver

__all__ = [
    "ExactMatcher",
    "ExactMatchResult",
    "ToleranceMatcher",
    "ToleranceMatchResult",
    "MatchResolver"
]
