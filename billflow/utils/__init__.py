"""
Utility Module for BillFlow.

Common utilities used across all other modules:
    - Logging configuration
    - Typed exceptions
    - Identifier, timestamp and SKU helpers
"""

from .logger import setup_logger, get_logger
from .helpers import ensure_directory, generate_id, utc_now, normalize_sku

__all__ = [
    'setup_logger',
    'get_logger',
    'ensure_directory',
    'generate_id',
    'utc_now',
    'normalize_sku'
]
