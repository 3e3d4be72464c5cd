"""
Field normalizer for turning resolved string values into typed values.
"""

import re
from datetime import datetime, date
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from .config import EngineConfig


_CURRENCY_SYMBOLS = ('£', '$', '€', 'GBP', 'USD', 'EUR')
_TOKEN_PATTERN = re.compile(r'[A-Za-z0-9]+|[^A-Za-z0-9]+')


class FieldNormalizer:
    """Parse amounts, dates and references out of resolved field values."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def parse_amount(self, value: Any) -> Optional[Decimal]:
        """
        Parse a monetary value.

        Args:
            value: Raw string such as "£1,250.00" or "(45.10)"

        Returns:
            Decimal amount, or None if the value is not a finite number of
            plausible size
        """
        if value is None:
            return None
        if isinstance(value, Decimal):
            return self._bounded(value)
        if isinstance(value, (int, float)):
            value = str(value)

        clean = str(value).strip()
        for symbol in _CURRENCY_SYMBOLS:
            clean = clean.replace(symbol, '')
        clean = clean.replace(',', '').replace(' ', '')
        if clean.startswith('(') and clean.endswith(')'):
            clean = '-' + clean[1:-1]
        if not clean:
            return None

        try:
            amount = Decimal(clean)
        except InvalidOperation:
            return None
        return self._bounded(amount)

    def _bounded(self, amount: Decimal) -> Optional[Decimal]:
        # NaN, Infinity and run-on digits are not amounts
        if not amount.is_finite():
            return None
        if not amount.is_zero() and amount.adjusted() >= self.config.max_amount_digits:
            return None
        return amount

    def parse_date(self, value: Any) -> Optional[date]:
        """Parse a date using the configured formats, first match wins."""
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value

        text = str(value).strip()
        for fmt in self.config.date_formats:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
        return None

    def normalize_reference(self, value: Any) -> Optional[str]:
        """Canonical form of a document reference for duplicate checks."""
        if value is None:
            return None
        text = re.sub(r'\s+', '', str(value)).upper()
        return text or None


def is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def tokenize(value: str) -> List[str]:
    """Split a value into alternating alphanumeric and separator runs."""
    return _TOKEN_PATTERN.findall(value)


def is_alnum_token(token: str) -> bool:
    return token.isalnum()
