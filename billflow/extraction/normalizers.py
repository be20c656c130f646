"""
Value Normalizers Module.

Typed parsing of token text for the format-parse signal:
    - Dates (explicit formats first, dateutil as fallback)
    - Currency amounts (symbols, codes, thousand separators, comma decimals)
    - Quantities
    - Currency detection and identifier shapes
"""

import re
from datetime import date, datetime
from typing import List, Optional

from dateutil import parser as date_parser

from config import get_config
from billflow.utils.logger import get_logger

logger = get_logger(__name__)

CURRENCY_SYMBOLS = {'$': 'USD', '€': 'EUR', '£': 'GBP', '¥': 'JPY', '₹': 'INR'}
CURRENCY_CODES = ['USD', 'EUR', 'GBP', 'JPY', 'INR', 'CAD', 'AUD', 'CHF', 'MXN']


class DateNormalizer:
    """
    Parses date strings into ``datetime.date``.

    Only strings that look like a date (one of DATE_PATTERNS) are handed to
    the parsers, so arbitrary numbers never turn into dates.

    Example:
        >>> normalizer = DateNormalizer()
        >>> normalizer.parse("01/15/2026")
        datetime.date(2026, 1, 15)
        >>> normalizer.parse("January 15, 2026")
        datetime.date(2026, 1, 15)
    """

    DATE_PATTERNS = [
        # MM/DD/YYYY or DD/MM/YYYY
        r'\b(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})\b',
        # YYYY-MM-DD
        r'\b(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})\b',
        # Month DD, YYYY
        r'\b((?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{2,4})\b',
        # DD Month YYYY
        r'\b(\d{1,2})(?:st|nd|rd|th)?\s+((?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*)\.?,?\s+(\d{2,4})\b',
    ]

    def __init__(self) -> None:
        self.input_formats = get_config(
            "extraction.date.input_formats",
            [
                "%Y-%m-%d",
                "%m/%d/%Y",
                "%d/%m/%Y",
                "%m/%d/%y",
                "%B %d, %Y",
                "%b %d, %Y",
                "%B %d %Y",
                "%d %B %Y",
                "%d %b %Y",
                "%m-%d-%Y",
                "%d.%m.%Y",
            ]
        )
        self.dayfirst = get_config("extraction.date.dayfirst", False)

    def parse(self, text: str) -> Optional[date]:
        """
        Parse the first date found in a string.

        Returns:
            The date, or None when the text holds no recognizable date.
        """
        if not text:
            return None

        for pattern in self.DATE_PATTERNS:
            match = re.search(pattern, text, re.IGNORECASE)
            if match:
                parsed = self._parse_exact(match.group(0))
                if parsed is not None:
                    return parsed
        return None

    def _parse_exact(self, date_str: str) -> Optional[date]:
        date_str = re.sub(r'(\d+)(st|nd|rd|th)', r'\1', ' '.join(date_str.split()), flags=re.IGNORECASE)
        date_str = date_str.replace('.,', ',').rstrip('.')

        for fmt in self.input_formats:
            try:
                return datetime.strptime(date_str, fmt).date()
            except ValueError:
                continue

        try:
            return date_parser.parse(date_str, dayfirst=self.dayfirst).date()
        except (ValueError, OverflowError):
            logger.debug(f"Could not parse date: {date_str}")
            return None


class AmountNormalizer:
    """
    Parses currency amounts to floats rounded to cents.

    Example:
        >>> normalizer = AmountNormalizer()
        >>> normalizer.parse("$1,234.56")
        1234.56
        >>> normalizer.parse("€ 1.234,56")
        1234.56
    """

    AMOUNT_PATTERN = re.compile(
        r'(?<![\w.])[\$€£¥₹]?\s?-?\(?\d{1,3}(?:[,.\s]\d{3})*(?:[.,]\d{1,2})?\)?(?![\w])'
        r'|(?<![\w.])[\$€£¥₹]?\s?-?\d+(?:[.,]\d{1,2})?(?![\w])'
    )

    def parse(self, text: str) -> Optional[float]:
        """
        Parse an amount string.

        Returns:
            The value rounded to 2 decimals, or None.
        """
        if not text:
            return None

        amount_str = ' '.join(text.split())
        negative = amount_str.startswith('(') and amount_str.endswith(')')

        for symbol in CURRENCY_SYMBOLS:
            amount_str = amount_str.replace(symbol, '')
        for code in CURRENCY_CODES:
            amount_str = re.sub(rf'\b{code}\b', '', amount_str, flags=re.IGNORECASE)

        amount_str = re.sub(r'[^\d,.\-]', '', amount_str)
        if not amount_str or not re.search(r'\d', amount_str):
            return None

        amount_str = self._handle_european_format(amount_str)
        amount_str = amount_str.replace(',', '')

        try:
            value = float(amount_str)
        except ValueError:
            logger.debug(f"Could not parse amount: {text}")
            return None
        return round(-abs(value) if negative else value, 2)

    @staticmethod
    def _handle_european_format(amount_str: str) -> str:
        """Convert comma-decimal notation (1.234,56) to dot-decimal."""
        if amount_str.count(',') == 1:
            comma_pos = amount_str.rfind(',')
            if comma_pos > amount_str.rfind('.'):
                after_comma = amount_str[comma_pos + 1:]
                if len(after_comma) <= 2 and after_comma.isdigit():
                    amount_str = amount_str.replace('.', '').replace(',', '.')
        return amount_str

    def find_amounts(self, text: str) -> List[str]:
        """Substrings of ``text`` that look like amounts, left to right."""
        return [m.group(0).strip() for m in self.AMOUNT_PATTERN.finditer(text or "") if m.group(0).strip()]

    @staticmethod
    def is_amount_shaped(text: str) -> bool:
        """True for tokens such as ``108.25``, ``$1,200.00`` or ``(5.00)``."""
        cleaned = (text or "").strip()
        return bool(re.fullmatch(r'[\$€£¥₹]?\(?-?[\d,.]*\d[.,]\d{2}\)?', cleaned))


def parse_quantity(text: str) -> Optional[float]:
    """Parse a quantity token such as ``2``, ``1.5`` or ``12x``."""
    match = re.fullmatch(r'(\d+(?:[.,]\d+)?)\s*[xX]?', (text or "").strip())
    if not match:
        return None
    return float(match.group(1).replace(',', '.'))


def detect_currency(text: str) -> Optional[str]:
    """ISO code of the first currency symbol or code found in ``text``."""
    if not text:
        return None
    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code
    for code in CURRENCY_CODES:
        if re.search(rf'\b{code}\b', text, re.IGNORECASE):
            return code
    return None


def looks_like_identifier(text: str) -> bool:
    """Invoice/PO number shape: at least 3 characters and one digit."""
    cleaned = (text or "").strip().strip(':#')
    return len(cleaned) >= 3 and bool(re.search(r'\d', cleaned)) and bool(
        re.fullmatch(r'[A-Za-z0-9][A-Za-z0-9\-/#.]*', cleaned)
    )
