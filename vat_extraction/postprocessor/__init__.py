"""
Post-Processing Module.

Multi-source reconciliation of extraction candidates.
"""

from .validator import MultiSourceValidator

__all__ = ['MultiSourceValidator']
