"""
Settings validation.

Checks reconciliation settings before they are used, with detailed error
reporting instead of failing on the first problem.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from factura_reconciliation.models import ReconciliationSettings

import logging
logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of settings validation."""
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def add_error(self, message: str):
        """Add an error message."""
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str):
        """Add a warning message."""
        self.warnings.append(message)

    def add_suggestion(self, message: str):
        """Add a suggestion message."""
        self.suggestions.append(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'is_valid': self.is_valid,
            'errors': self.errors,
            'warnings': self.warnings,
            'suggestions': self.suggestions
        }


class SettingsValidator:
    """Validates reconciliation settings."""

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.SettingsValidator")

    def validate_settings(self, settings: ReconciliationSettings) -> ValidationResult:
        """
        Validate reconciliation settings.

        Args:
            settings: Settings to validate

        Returns:
            ValidationResult with errors, warnings and suggestions
        """
        result = ValidationResult()

        for name in ('auto_create_threshold', 'exact_match_confidence'):
            value = getattr(settings, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                result.add_error(f"{name} must be a number")
            elif value < 0 or value > 100:
                result.add_error(f"{name} must be between 0 and 100")

        for name in ('invoice_number_tolerance', 'default_candidate_limit', 'review_candidate_limit'):
            value = getattr(settings, name)
            if not isinstance(value, int) or isinstance(value, bool):
                result.add_error(f"{name} must be an integer")
            elif value < 1:
                result.add_error(f"{name} must be positive")

        if not settings.default_currency or len(settings.default_currency) != 3:
            result.add_error("default_currency must be a three letter currency code")

        if result.is_valid:
            if settings.review_candidate_limit > settings.default_candidate_limit:
                result.add_warning("review_candidate_limit is larger than default_candidate_limit")
            if settings.auto_create_threshold < 50:
                result.add_warning("auto_create_threshold below 50 creates invoices from unreliable extractions")
                result.add_suggestion("Keep auto_create_threshold at 80 unless the extractor is well calibrated")
            if settings.invoice_number_tolerance > 100:
                result.add_suggestion("A large invoice_number_tolerance gives credit to unrelated invoices")

        self.logger.debug(f"Settings validation: {len(result.errors)} errors, {len(result.warnings)} warnings")
        return result
