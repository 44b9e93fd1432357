"""
Value Normalizers Module.

Locale-aware parsing of the cell and text values the parsers meet:
    - Currency amounts with either decimal convention
    - Dates in common invoice and bank-statement formats

Author: ML Engineering Team
"""

import math
import re
from datetime import datetime
from typing import Iterable, List, Optional

from dateutil import parser as date_parser

from config import get_config
from vat_extraction.utils.logger import get_logger

# Initialize module logger
logger = get_logger(__name__)


class AmountNormalizer:
    """
    Converts amount strings to floats.

    Handles currency symbols and codes, thousands separators, accounting
    negatives in parentheses, and both "1,234.56" and "1.234,56" styles.
    When the decimal separator of a column is already known it can be
    passed explicitly.

    Example:
        >>> normalizer = AmountNormalizer()
        >>> normalizer.to_float("€1.234,56")
        1234.56
        >>> normalizer.to_float("$1,234.56")
        1234.56
        >>> normalizer.to_float("12,50", decimal_separator=",")
        12.5
    """

    CURRENCY_SYMBOLS = ['€', '£', '$', '¥', '₹']
    CURRENCY_CODES = ['EUR', 'GBP', 'USD', 'JPY', 'INR', 'CAD', 'AUD', 'CHF']

    _CODE_RE = re.compile(r'\b(?:' + '|'.join(CURRENCY_CODES) + r')\b', re.IGNORECASE)
    _STRIP_RE = re.compile(r'[^\d,.\-()]')

    def to_float(self, value, decimal_separator: Optional[str] = None) -> Optional[float]:
        """
        Parse an amount.

        Args:
            value: String or number.
            decimal_separator: '.' or ',' if known, otherwise inferred.

        Returns:
            Float value, or None if the value is not an amount.
        """
        if value is None:
            return None
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            value = float(value)
            return value if math.isfinite(value) else None

        text = str(value).strip()
        if not text:
            return None

        for symbol in self.CURRENCY_SYMBOLS:
            text = text.replace(symbol, '')
        text = self._CODE_RE.sub('', text)
        text = text.replace('\u00a0', '').replace(' ', '').replace("'", '')

        if not re.search(r'\d', text):
            return None
        if re.search(r'[^\d,.\-()+]', text):
            return None

        negative = False
        if text.startswith('(') and text.endswith(')'):
            negative = True
            text = text[1:-1]
        if text.startswith('-'):
            negative = True
            text = text[1:]
        elif text.endswith('-'):
            negative = True
            text = text[:-1]
        text = text.lstrip('+')

        if not re.fullmatch(r'[\d,.]+', text):
            return None

        separator = decimal_separator or self.infer_decimal_separator(text)
        if separator == ',':
            text = text.replace('.', '').replace(',', '.')
        else:
            text = text.replace(',', '')

        if text.count('.') > 1:
            return None

        try:
            amount = float(text)
        except ValueError:
            logger.debug(f"Could not parse amount: {value!r}")
            return None
        return -amount if negative else amount

    @staticmethod
    def infer_decimal_separator(text: str) -> Optional[str]:
        """
        Guess the decimal separator of a single number string.

        Returns:
            '.', ',' or None when the string gives no evidence
            (e.g. "1234" or "1,234").
        """
        last_dot = text.rfind('.')
        last_comma = text.rfind(',')

        if last_dot >= 0 and last_comma >= 0:
            return '.' if last_dot > last_comma else ','

        for sep in ('.', ','):
            pos = text.rfind(sep)
            if pos < 0:
                continue
            digits_after = len(text) - pos - 1
            if text.count(sep) > 1:
                # Repeated separator can only be grouping
                return ',' if sep == '.' else '.'
            if digits_after == 3:
                return None
            return sep
        return None

    def vote_decimal_separator(self, values: Iterable[str]) -> str:
        """
        Decide a column's decimal separator by majority over its cells.

        Ties and columns without evidence default to '.'.
        """
        votes = {'.': 0, ',': 0}
        for value in values:
            cleaned = re.sub(r'[^\d,.]', '', str(value or ''))
            sep = self.infer_decimal_separator(cleaned) if cleaned else None
            if sep:
                votes[sep] += 1
        return ',' if votes[','] > votes['.'] else '.'


class DateNormalizer:
    """
    Recognises date cells.

    Explicit formats are tried first; python-dateutil is the fallback for
    values that already look like dates.

    Example:
        >>> normalizer = DateNormalizer()
        >>> normalizer.parse("15/01/2026").date().isoformat()
        '2026-01-15'
    """

    DEFAULT_FORMATS = [
        "%Y-%m-%d",
        "%d/%m/%Y",
        "%d/%m/%y",
        "%d-%m-%Y",
        "%d.%m.%Y",
        "%m/%d/%Y",
        "%d %b %Y",
        "%d %B %Y",
        "%b %d, %Y",
        "%Y-%m-%d %H:%M:%S",
    ]

    _DATE_SHAPE = re.compile(
        r'^\d{1,4}[/\-.]\d{1,2}[/\-.]\d{1,4}(?:[ T]\d{1,2}:\d{2}(?::\d{2})?)?$'
        r'|^\d{1,2}\s+[A-Za-z]{3,9}\.?\s+\d{2,4}$'
        r'|^[A-Za-z]{3,9}\.?\s+\d{1,2},?\s+\d{2,4}$'
    )

    def __init__(self, input_formats: Optional[List[str]] = None) -> None:
        self.input_formats = input_formats or get_config(
            "structured_parser.date_formats", self.DEFAULT_FORMATS
        )

    def parse(self, value) -> Optional[datetime]:
        """Parse a date string, returning None if it is not a date."""
        if isinstance(value, datetime):
            return value
        if value is None:
            return None
        text = ' '.join(str(value).split())
        if not text or not self._DATE_SHAPE.match(text):
            return None

        for fmt in self.input_formats:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue

        try:
            return date_parser.parse(text, dayfirst=True, fuzzy=False)
        except (ValueError, OverflowError):
            return None

    def is_date(self, value) -> bool:
        return self.parse(value) is not None
