"""
Structured Parser Module.

Header-heuristic extraction of VAT amounts from tabular documents.

Main Classes:
    - StructuredParser: Tax column detection and amount reading
    - AmountNormalizer: Locale-aware amount parsing
    - DateNormalizer: Date cell recognition
"""

from .parser import StructuredParser, EXPLICIT, LABELLED, HEURISTIC
from .normalizers import AmountNormalizer, DateNormalizer

__all__ = [
    'StructuredParser',
    'AmountNormalizer',
    'DateNormalizer',
    'EXPLICIT',
    'LABELLED',
    'HEURISTIC',
]
