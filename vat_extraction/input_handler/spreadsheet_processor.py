"""
Spreadsheet Processor Module.

Converts tabular uploads into delimited text for the structured parser:
    - CSV decoding with BOM handling and legacy encodings
    - XLSX workbooks read with openpyxl, one text block per sheet

Author: ML Engineering Team
"""

import csv
import io
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from openpyxl import load_workbook

from config import get_config
from vat_extraction.utils.logger import get_logger
from vat_extraction.utils.exceptions import CorruptedDocumentError

# Initialize module logger
logger = get_logger(__name__)

XLSX_MAGIC = b"PK\x03\x04"


class SpreadsheetProcessor:
    """
    Processor for CSV and XLSX documents.

    Example:
        >>> processor = SpreadsheetProcessor()
        >>> sheets, metadata = processor.process_csv(csv_bytes)
        >>> name, text = sheets[0]
    """

    def __init__(self, encodings: Optional[List[str]] = None) -> None:
        self.encodings = encodings or get_config(
            "input.spreadsheet.encodings", ["utf-8-sig", "cp1252", "latin-1"]
        )
        self.delimiter = get_config("input.spreadsheet.delimiter", ",")

    def process_csv(self, data: bytes) -> Tuple[List[Tuple[str, str]], Dict[str, Any]]:
        """
        Decode CSV bytes.

        Args:
            data: Raw CSV bytes.

        Returns:
            Tuple of ([("csv", text)], metadata).

        Raises:
            CorruptedDocumentError: If no configured encoding decodes the data
                                    or the file holds no text.
        """
        text, encoding = self._decode(data)
        if not text.strip():
            raise CorruptedDocumentError("CSV file contains no data", source="csv")
        if "\x00" in text:
            raise CorruptedDocumentError("CSV file contains binary data", source="csv")

        line_count = len(text.splitlines())
        logger.info(f"Decoded CSV ({encoding}, {line_count} lines)")
        return [("csv", text)], {'encoding': encoding, 'line_count': line_count}

    def process_xlsx(self, data: bytes) -> Tuple[List[Tuple[str, str]], Dict[str, Any]]:
        """
        Read every worksheet of an XLSX workbook as delimited text.

        Args:
            data: Raw workbook bytes.

        Returns:
            Tuple of ([(sheet name, text), ...], metadata). Empty sheets are
            skipped.

        Raises:
            CorruptedDocumentError: If the workbook cannot be opened or is empty.
        """
        if not data.startswith(XLSX_MAGIC):
            raise CorruptedDocumentError("not a zip-based workbook", source="xlsx")

        try:
            workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        except Exception as e:
            logger.error(f"openpyxl could not open workbook: {e}")
            raise CorruptedDocumentError(f"unreadable workbook: {e}", source="xlsx")

        sheets = []
        try:
            for worksheet in workbook.worksheets:
                text = self._sheet_to_text(worksheet)
                if text.strip():
                    sheets.append((worksheet.title, text))
        finally:
            workbook.close()

        if not sheets:
            raise CorruptedDocumentError("workbook contains no data", source="xlsx")

        logger.info(f"Read workbook with {len(sheets)} non-empty sheet(s)")
        return sheets, {'sheet_names': [name for name, _ in sheets]}

    def _decode(self, data: bytes) -> Tuple[str, str]:
        for encoding in self.encodings:
            try:
                return data.decode(encoding), encoding
            except UnicodeDecodeError:
                continue
        raise CorruptedDocumentError(
            f"could not decode with any of {self.encodings}", source="csv"
        )

    def _sheet_to_text(self, worksheet) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, delimiter=self.delimiter, lineterminator="\n")
        for row in worksheet.iter_rows(values_only=True):
            cells = [self._format_cell(value) for value in row]
            # Trailing empty cells are formatting noise in most exports
            while cells and cells[-1] == "":
                cells.pop()
            if cells:
                writer.writerow(cells)
        return buffer.getvalue()

    @staticmethod
    def _format_cell(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (datetime, date)):
            return value.strftime("%Y-%m-%d")
        if isinstance(value, float):
            return f"{value:.2f}" if round(value, 2) == value else repr(value)
        return str(value).strip()
