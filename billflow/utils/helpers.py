"""
Helper Utilities Module.

Small generic helpers shared across the engine.

Functions:
    - ensure_directory: Create directory if it doesn't exist
    - generate_id: Prefixed unique identifiers
    - utc_now / to_iso / from_iso: Timestamp handling
    - normalize_sku: Canonical form used by matching and aliases
    - count_ambiguous_chars: OCR look-alike characters in a value
    - vendor_slug: Vendor id from a vendor name
    - round_money: Currency rounding
"""

import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union


# Characters that OCR engines commonly confuse with each other
AMBIGUOUS_CHARACTERS = set("0OoQD1lIi|5S2Z8B6G")


def ensure_directory(path: Union[str, Path]) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path to ensure exists.

    Returns:
        Path object pointing to the directory.
    """
    dir_path = Path(path)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path


def generate_id(prefix: str) -> str:
    """
    Generate a short unique identifier with a readable prefix.

    Example:
        >>> generate_id("bill")
        'bill_3f2a9c0d51e84b6f'
    """
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def normalize_sku(value: Optional[str]) -> str:
    """
    Canonical SKU form: uppercase alphanumerics only.

    Example:
        >>> normalize_sku(" abc-123 ")
        'ABC123'
    """
    if not value:
        return ""
    return re.sub(r'[^A-Z0-9]', '', value.upper())


def count_ambiguous_chars(text: str) -> int:
    """Count characters that OCR commonly misreads (0/O, 1/l, 5/S...)."""
    return sum(1 for ch in text or "" if ch in AMBIGUOUS_CHARACTERS)


def vendor_slug(name: Optional[str]) -> Optional[str]:
    """
    Vendor id derived from a printed vendor name.

    Example:
        >>> vendor_slug("ACME Supply Co.")
        'acme-supply-co'
    """
    if not name:
        return None
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    return slug or None


def round_money(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return round(float(value), 2)
