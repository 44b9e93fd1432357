"""
Input Handler Module.

Normalizes uploaded documents (PDF, images, CSV, XLSX, plain text) into
extraction-ready pages.

Main Classes:
    - DocumentNormalizer: Entry point dispatching on media type
    - PDFProcessor: PDF rendering and text layer capture
    - ImageProcessor: Image decoding and orientation
    - SpreadsheetProcessor: CSV decoding and workbook reading
"""

from .handler import (
    DocumentNormalizer,
    NormalizedDocument,
    PageContent,
    SUPPORTED_MEDIA_TYPES,
    TABULAR,
    VISUAL,
)
from .pdf_processor import PDFProcessor
from .image_processor import ImageProcessor
from .spreadsheet_processor import SpreadsheetProcessor

__all__ = [
    'DocumentNormalizer',
    'NormalizedDocument',
    'PageContent',
    'SUPPORTED_MEDIA_TYPES',
    'TABULAR',
    'VISUAL',
    'PDFProcessor',
    'ImageProcessor',
    'SpreadsheetProcessor',
]
