"""
Document Normalizer Module.

This module provides DocumentNormalizer, the entry point that turns raw
upload bytes plus a declared media type into a canonical form:

    - Tabular documents (CSV, XLSX) become delimited text, one page per sheet.
    - Visual documents (PDF, images) become rendered RGB pages, each with
      the text layer the format carries (PDF only).
    - Plain text becomes a single text-only page.

No OCR is performed; scanned documents are read by the vision model.

Usage:
    from vat_extraction.input_handler import DocumentNormalizer

    normalizer = DocumentNormalizer()
    document = normalizer.normalize(data, "application/pdf")
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from PIL import Image

from config import get_config
from vat_extraction.utils.logger import get_logger
from vat_extraction.utils.exceptions import (
    CorruptedDocumentError,
    UnsupportedMediaTypeError,
)

from .pdf_processor import PDFProcessor
from .image_processor import ImageProcessor
from .spreadsheet_processor import SpreadsheetProcessor

# Initialize module logger
logger = get_logger(__name__)

TABULAR = "tabular"
VISUAL = "visual"

CSV_TYPES = {"text/csv", "application/csv", "text/comma-separated-values"}
XLSX_TYPES = {"application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"}
PDF_TYPES = {"application/pdf"}
IMAGE_TYPES = {
    "image/png", "image/jpeg", "image/jpg", "image/tiff",
    "image/bmp", "image/webp",
}
TEXT_TYPES = {"text/plain"}

SUPPORTED_MEDIA_TYPES = CSV_TYPES | XLSX_TYPES | PDF_TYPES | IMAGE_TYPES | TEXT_TYPES


@dataclass
class PageContent:
    """
    One extraction unit of a normalized document.

    Attributes:
        index: Zero-based page (or sheet) number.
        image: Rendered page, None for text-only units.
        text: Text layer or delimited sheet text.
        label: Sheet name for workbooks.
    """
    index: int
    image: Optional[Image.Image] = None
    text: str = ""
    label: Optional[str] = None

    @property
    def has_image(self) -> bool:
        return self.image is not None


@dataclass
class NormalizedDocument:
    """
    Canonical extraction-ready form of a document.

    Attributes:
        kind: 'tabular' or 'visual'.
        media_type: Declared media type after normalisation.
        pages: Extraction units in document order.
        metadata: Format-specific details (encoding, page counts, renderer).
    """
    kind: str
    media_type: str
    pages: List[PageContent] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """All page text joined by blank lines."""
        return "\n\n".join(page.text for page in self.pages if page.text)

    @property
    def images(self) -> List[Image.Image]:
        return [page.image for page in self.pages if page.image is not None]

    @property
    def is_tabular(self) -> bool:
        return self.kind == TABULAR

    @property
    def page_count(self) -> int:
        return len(self.pages)

    def __repr__(self) -> str:
        return (
            f"NormalizedDocument(kind='{self.kind}', media_type='{self.media_type}', "
            f"pages={self.page_count}, text_chars={len(self.text)})"
        )


class DocumentNormalizer:
    """
    Normalizes raw uploads for the extraction engines.

    Attributes:
        max_file_size: Largest accepted payload in bytes.
        pdf_processor: PDFProcessor for PDF documents.
        image_processor: ImageProcessor for image documents.
        spreadsheet_processor: SpreadsheetProcessor for CSV/XLSX documents.

    Example:
        >>> normalizer = DocumentNormalizer()
        >>> doc = normalizer.normalize(open("receipt.png", "rb").read(), "image/png")
        >>> doc.kind
        'visual'
    """

    def __init__(
        self,
        max_file_size: Optional[int] = None,
        pdf_processor: Optional[PDFProcessor] = None,
        image_processor: Optional[ImageProcessor] = None,
        spreadsheet_processor: Optional[SpreadsheetProcessor] = None
    ) -> None:
        self.max_file_size = max_file_size or get_config(
            "input.max_file_size_bytes", 25 * 1024 * 1024
        )
        self.pdf_processor = pdf_processor or PDFProcessor()
        self.image_processor = image_processor or ImageProcessor()
        self.spreadsheet_processor = spreadsheet_processor or SpreadsheetProcessor()

        logger.debug(f"DocumentNormalizer initialized ({len(SUPPORTED_MEDIA_TYPES)} media types)")

    @staticmethod
    def canonical_media_type(media_type: str) -> str:
        """Lower-case a media type and strip parameters such as charset."""
        return (media_type or "").split(";")[0].strip().lower()

    def is_supported(self, media_type: str) -> bool:
        return self.canonical_media_type(media_type) in SUPPORTED_MEDIA_TYPES

    def normalize(self, data: bytes, media_type: str) -> NormalizedDocument:
        """
        Normalize raw bytes according to their declared media type.

        Args:
            data: Raw document bytes.
            media_type: Declared media type, e.g. "application/pdf".

        Returns:
            NormalizedDocument ready for extraction.

        Raises:
            UnsupportedMediaTypeError: If the media type is not supported.
            CorruptedDocumentError: If the payload is empty, too large or
                                    cannot be decoded as the declared type.
        """
        media = self.canonical_media_type(media_type)
        if media not in SUPPORTED_MEDIA_TYPES:
            raise UnsupportedMediaTypeError(media_type, list(SUPPORTED_MEDIA_TYPES))

        if not data:
            raise CorruptedDocumentError("document is empty", source=media)
        if len(data) > self.max_file_size:
            raise CorruptedDocumentError(
                f"document exceeds {self.max_file_size} bytes", source=media
            )

        if media in CSV_TYPES:
            sheets, metadata = self.spreadsheet_processor.process_csv(data)
            document = self._tabular(media, sheets, metadata)
        elif media in XLSX_TYPES:
            sheets, metadata = self.spreadsheet_processor.process_xlsx(data)
            document = self._tabular(media, sheets, metadata)
        elif media in PDF_TYPES:
            rendered, metadata = self.pdf_processor.process(data)
            pages = [
                PageContent(index=i, image=image, text=text.strip())
                for i, (image, text) in enumerate(rendered)
            ]
            document = NormalizedDocument(VISUAL, media, pages, metadata)
        elif media in IMAGE_TYPES:
            images, metadata = self.image_processor.process(data)
            pages = [PageContent(index=i, image=image) for i, image in enumerate(images)]
            document = NormalizedDocument(VISUAL, media, pages, metadata)
        else:
            document = self._plain_text(media, data)

        document.metadata['size_bytes'] = len(data)
        logger.info(f"Normalized {document!r}")
        return document

    def _tabular(self, media: str, sheets, metadata: Dict[str, Any]) -> NormalizedDocument:
        pages = [
            PageContent(index=i, text=text, label=name)
            for i, (name, text) in enumerate(sheets)
        ]
        return NormalizedDocument(TABULAR, media, pages, metadata)

    def _plain_text(self, media: str, data: bytes) -> NormalizedDocument:
        sheets, metadata = self.spreadsheet_processor.process_csv(data)
        _, text = sheets[0]
        return NormalizedDocument(
            VISUAL, media, [PageContent(index=0, text=text.strip())], metadata
        )
