"""
PDF Processor Module.

This module turns PDF bytes into extraction-ready pages:
    - Page rendering to RGB images
    - Text layer capture per page
    - Page count limiting

PyMuPDF is the default renderer. pdf2image (Poppler) with pdfplumber for
the text layer can be selected with input.pdf.renderer.

Author: ML Engineering Team
"""

import io
from typing import Any, Dict, List, Optional, Tuple

import fitz  # PyMuPDF
from PIL import Image

from config import get_config
from vat_extraction.utils.logger import get_logger
from vat_extraction.utils.exceptions import CorruptedDocumentError, InputError

# Initialize module logger
logger = get_logger(__name__)

PDF_MAGIC = b"%PDF-"


class PDFProcessor:
    """
    Processor for PDF documents held in memory.

    Attributes:
        dpi: Resolution for page rendering.
        max_pages: Maximum number of pages to keep.
        renderer: 'pymupdf' or 'pdf2image'.

    Example:
        >>> processor = PDFProcessor()
        >>> pages, metadata = processor.process(pdf_bytes)
        >>> print(f"Rendered {len(pages)} pages")
    """

    RENDERERS = ('pymupdf', 'pdf2image')

    def __init__(
        self,
        dpi: Optional[int] = None,
        max_pages: Optional[int] = None,
        renderer: Optional[str] = None
    ) -> None:
        self.dpi = dpi or get_config("input.pdf.dpi", 200)
        self.max_pages = max_pages or get_config("input.max_pages", 10)
        self.renderer = (renderer or get_config("input.pdf.renderer", "pymupdf")).lower()

        if self.renderer not in self.RENDERERS:
            raise InputError(
                f"Unknown PDF renderer '{self.renderer}'",
                {"supported": list(self.RENDERERS)}
            )

        self._check_dependencies()

        logger.debug(
            f"PDFProcessor initialized (DPI={self.dpi}, max_pages={self.max_pages}, "
            f"renderer={self.renderer})"
        )

    def _check_dependencies(self) -> None:
        """
        Import the Poppler-based stack when it is the selected renderer.

        Raises:
            InputError: If pdf2image or pdfplumber is not installed.
        """
        self._pdf2image = None
        self._pdfplumber = None
        if self.renderer != 'pdf2image':
            return

        try:
            import pdf2image
            import pdfplumber
        except ImportError as e:
            raise InputError(
                "pdf2image renderer selected but its dependencies are missing. "
                "Install with: pip install pdf2image pdfplumber",
                {"error": str(e)}
            )
        self._pdf2image = pdf2image
        self._pdfplumber = pdfplumber

    def process(self, data: bytes) -> Tuple[List[Tuple[Image.Image, str]], Dict[str, Any]]:
        """
        Render a PDF into (image, text) pairs.

        Args:
            data: Raw PDF bytes.

        Returns:
            Tuple of (list of (PIL Image, page text), metadata dictionary).

        Raises:
            CorruptedDocumentError: If the bytes are not a readable PDF.
        """
        if PDF_MAGIC not in data[:1024]:
            raise CorruptedDocumentError("missing %PDF- header", source="pdf")

        if self.renderer == 'pdf2image':
            pages, metadata = self._process_with_pdf2image(data)
        else:
            pages, metadata = self._process_with_pymupdf(data)

        if not pages:
            raise CorruptedDocumentError("PDF contains no pages", source="pdf")

        metadata['page_count'] = len(pages)
        metadata['text_chars'] = sum(len(text) for _, text in pages)
        logger.info(
            f"Rendered PDF: {len(pages)}/{metadata['total_pages']} page(s), "
            f"{metadata['text_chars']} text chars"
        )
        return pages, metadata

    def _process_with_pymupdf(self, data: bytes) -> Tuple[List[Tuple[Image.Image, str]], Dict[str, Any]]:
        pages = []
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            logger.error(f"PyMuPDF could not open document: {e}")
            raise CorruptedDocumentError(str(e), source="pdf")

        try:
            if doc.needs_pass:
                raise CorruptedDocumentError("PDF is password protected", source="pdf")

            total_pages = len(doc)
            if total_pages > self.max_pages:
                logger.warning(f"PDF has {total_pages} pages, limiting to {self.max_pages}")

            # Default PDF resolution is 72 DPI
            zoom = self.dpi / 72.0
            matrix = fitz.Matrix(zoom, zoom)

            for page_num in range(min(total_pages, self.max_pages)):
                page = doc.load_page(page_num)
                pix = page.get_pixmap(matrix=matrix)
                image = Image.open(io.BytesIO(pix.tobytes("png")))
                if image.mode != 'RGB':
                    image = image.convert('RGB')
                pages.append((image, page.get_text("text") or ""))

            metadata = {
                'renderer': 'pymupdf',
                'source_dpi': self.dpi,
                'total_pages': total_pages,
                'pdf_title': (doc.metadata or {}).get('title', ''),
                'pdf_creator': (doc.metadata or {}).get('creator', ''),
            }
        except CorruptedDocumentError:
            raise
        except Exception as e:
            logger.error(f"PyMuPDF rendering failed: {e}")
            raise CorruptedDocumentError(str(e), source="pdf")
        finally:
            doc.close()

        return pages, metadata

    def _process_with_pdf2image(self, data: bytes) -> Tuple[List[Tuple[Image.Image, str]], Dict[str, Any]]:
        try:
            with self._pdfplumber.open(io.BytesIO(data)) as pdf:
                total_pages = len(pdf.pages)
                texts = [
                    page.extract_text() or ""
                    for page in pdf.pages[:self.max_pages]
                ]

            images = self._pdf2image.convert_from_bytes(
                data,
                dpi=self.dpi,
                first_page=1,
                last_page=min(total_pages, self.max_pages),
                fmt='png'
            )
        except Exception as e:
            logger.error(f"pdf2image conversion failed: {e}")
            raise CorruptedDocumentError(str(e), source="pdf")

        images = [img.convert('RGB') if img.mode != 'RGB' else img for img in images]
        metadata = {
            'renderer': 'pdf2image',
            'source_dpi': self.dpi,
            'total_pages': total_pages,
        }
        return list(zip(images, texts)), metadata
