"""
Utility Module for the VAT Extraction Pipeline.

This module provides common utilities used across all other modules:
    - Logging configuration
    - Error taxonomy
    - Fingerprints and identifiers
"""

from .logger import setup_logger, setup_logger_from_config, get_logger
from .helpers import (
    compute_fingerprint,
    generate_id,
    guess_media_type,
    round_amount,
    format_file_size,
)
from .exceptions import ErrorCategory, VATExtractionError

__all__ = [
    'setup_logger',
    'setup_logger_from_config',
    'get_logger',
    'compute_fingerprint',
    'generate_id',
    'guess_media_type',
    'round_amount',
    'format_file_size',
    'ErrorCategory',
    'VATExtractionError',
]
