"""
Structured Parser Module.

Reads VAT amounts from tabular text (CSV exports, workbook sheets) with
header heuristics:

    - dialect sniffing for , ; tab and | delimited text
    - header row detection within the first rows
    - tax column selection by header tokens, graded as
        explicit   "VAT Amount", "Tax Amount", "Net Total Tax", ...
        labelled   any other VAT/tax header that is not a rate, number or id
        heuristic  no tax header, but an amount/total column
    - decimal separator detection by majority vote over the column
    - date column detection
    - a row labelled "Total" supplies the stated total

When no header or tax/amount column is recognisable the parser returns
None instead of guessing.

Author: ML Engineering Team
"""

import csv
import io
import re
from typing import List, Optional, Sequence, Tuple

from config import get_config
from vat_extraction.input_handler.handler import NormalizedDocument
from vat_extraction.model_inference.extraction_result import StructuredCandidate
from vat_extraction.utils.logger import get_logger

from .normalizers import AmountNormalizer, DateNormalizer

# Initialize module logger
logger = get_logger(__name__)

EXPLICIT = "explicit"
LABELLED = "labelled"
HEURISTIC = "heuristic"

_STRENGTH_ORDER = {EXPLICIT: 3, LABELLED: 2, HEURISTIC: 1}


def _normalize_header(cell: str) -> str:
    return ' '.join(str(cell or '').strip().lower().replace('_', ' ').split())


class StructuredParser:
    """
    Column-heuristic VAT parser for tabular text.

    Attributes:
        header_scan_rows: How many leading rows may hold the header.
        strength_confidence: Confidence per match strength.

    Example:
        >>> parser = StructuredParser()
        >>> candidate = parser.parse("Date,Description,VAT Amount\\n2026-01-02,Fuel,4.60\\n")
        >>> candidate.line_amounts, candidate.match_strength
        ((4.6,), 'explicit')
    """

    DELIMITERS = ",;\t|"

    def __init__(
        self,
        header_scan_rows: Optional[int] = None,
        explicit_confidence: Optional[float] = None,
        labelled_confidence: Optional[float] = None,
        heuristic_confidence: Optional[float] = None
    ) -> None:
        self.header_scan_rows = header_scan_rows or get_config(
            "structured_parser.header_scan_rows", 10
        )
        self.strength_confidence = {
            EXPLICIT: explicit_confidence or get_config("structured_parser.confidence.explicit", 0.95),
            LABELLED: labelled_confidence or get_config("structured_parser.confidence.labelled", 0.80),
            HEURISTIC: heuristic_confidence or get_config("structured_parser.confidence.heuristic", 0.35),
        }
        self.explicit_headers = {
            _normalize_header(h) for h in get_config(
                "structured_parser.explicit_headers",
                ["vat amount", "vat", "tax amount", "net total tax", "total tax", "total vat"],
            )
        }
        self.tax_token_re = self._token_pattern(
            get_config("structured_parser.tax_tokens", ["vat", "tax", "gst"])
        )
        self.excluded_re = self._token_pattern(
            get_config(
                "structured_parser.excluded_tokens",
                ["rate", "%", "percent", "number", "no.", "id", "reg", "code"],
            )
        )
        self.amount_re = self._token_pattern(
            get_config("structured_parser.amount_tokens", ["amount", "total", "value"])
        )
        self.total_labels = {
            _normalize_header(label) for label in get_config(
                "structured_parser.total_labels",
                ["total", "totals", "grand total", "total vat", "total tax", "vat total",
                 "tax total", "total amount", "total amount vat"]
            )
        }

        self.amounts = AmountNormalizer()
        self.dates = DateNormalizer()

    @staticmethod
    def _token_pattern(tokens: Sequence[str]):
        parts = []
        for token in tokens:
            escaped = re.escape(token.lower())
            if token[0].isalnum() and token[-1].isalnum():
                parts.append(rf'\b{escaped}\b')
            else:
                parts.append(escaped)
        return re.compile('|'.join(parts))

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def parse_document(self, document: NormalizedDocument) -> Optional[StructuredCandidate]:
        """
        Parse every tabular page and keep the strongest candidate.

        Returns:
            Best StructuredCandidate, or None when no page has structure.
        """
        best = None
        for page in document.pages:
            candidate = self.parse(page.text)
            if candidate is None:
                continue
            if best is None or (candidate.confidence, candidate.rows_used) > (best.confidence, best.rows_used):
                best = candidate
        return best

    def parse(self, text: str) -> Optional[StructuredCandidate]:
        """
        Extract tax amounts from one delimited table.

        Args:
            text: Delimited text with a header row.

        Returns:
            StructuredCandidate, or None when no recognisable structure exists.
        """
        rows = self._read_rows(text)
        if len(rows) < 2:
            logger.debug("Structured parse: fewer than two rows")
            return None

        located = self._locate_header(rows)
        if located is None:
            logger.debug("Structured parse: no tax or amount header found")
            return None
        header_index, column, strength = located

        header = rows[header_index]
        data_rows = [row for row in rows[header_index + 1:] if any(cell for cell in row)]
        column_values = [row[column] for row in data_rows if column < len(row)]

        separator = self.amounts.vote_decimal_separator(column_values)
        date_columns = self._date_columns(header, data_rows)

        line_amounts: List[float] = []
        stated_total = None
        rows_used = 0
        skipped_negative = 0

        for row in data_rows:
            if column >= len(row):
                continue
            value = self.amounts.to_float(row[column], decimal_separator=separator)
            if value is None:
                continue
            if value < 0:
                skipped_negative += 1
                continue
            if self._is_total_row(row, column):
                stated_total = value
            else:
                line_amounts.append(value)
            rows_used += 1

        if not line_amounts and stated_total is None:
            logger.debug(f"Structured parse: column '{header[column]}' holds no amounts")
            return None

        if skipped_negative:
            logger.debug(f"Skipped {skipped_negative} negative (credit) rows")

        candidate = StructuredCandidate(
            line_amounts=tuple(line_amounts),
            stated_total=stated_total,
            confidence=self.strength_confidence[strength],
            tax_column=header[column],
            match_strength=strength,
            decimal_separator=separator,
            date_columns=tuple(header[i] for i in date_columns),
            rows_used=rows_used,
        )
        logger.info(
            f"Structured parse: column='{header[column]}' ({strength}), "
            f"rows={rows_used}, total={candidate.total:.2f}"
        )
        return candidate

    # -------------------------------------------------------------------------
    # Table reading
    # -------------------------------------------------------------------------

    def _read_rows(self, text: str) -> List[List[str]]:
        if not text or not text.strip():
            return []
        sample = text[:4096]
        try:
            dialect = csv.Sniffer().sniff(sample, delimiters=self.DELIMITERS)
            delimiter = dialect.delimiter
        except csv.Error:
            delimiter = ','
        reader = csv.reader(io.StringIO(text), delimiter=delimiter)
        return [[cell.strip() for cell in row] for row in reader]

    def classify_header(self, cell: str) -> Optional[str]:
        """Match strength of a single header cell, or None."""
        name = _normalize_header(cell)
        if not name:
            return None
        # "VAT Amount (EUR)" counts as "VAT Amount"
        bare = re.sub(r'\(.*?\)', '', name).strip()
        if name in self.explicit_headers or bare in self.explicit_headers:
            return EXPLICIT
        has_tax = bool(self.tax_token_re.search(name))
        if has_tax and not self.excluded_re.search(name):
            return LABELLED
        if not has_tax and self.amount_re.search(name) and not self.excluded_re.search(name):
            return HEURISTIC
        return None

    def _locate_header(self, rows: List[List[str]]) -> Optional[Tuple[int, int, str]]:
        """Return (header row index, tax column index, match strength)."""
        best = None
        for index, row in enumerate(rows[:self.header_scan_rows]):
            if not self._looks_like_header(row):
                continue
            for column, cell in enumerate(row):
                strength = self.classify_header(cell)
                if strength is None:
                    continue
                rank = _STRENGTH_ORDER[strength]
                if best is None or rank > _STRENGTH_ORDER[best[2]]:
                    best = (index, column, strength)
            if best is not None and best[2] != HEURISTIC:
                break
        return best

    def _looks_like_header(self, row: List[str]) -> bool:
        cells = [cell for cell in row if cell]
        if len(cells) < 2:
            return False
        numeric = sum(1 for cell in cells if self.amounts.to_float(cell) is not None)
        return numeric * 2 < len(cells)

    def _is_total_row(self, row: List[str], column: int) -> bool:
        for index, cell in enumerate(row):
            if index == column or not cell:
                continue
            label = _normalize_header(cell).rstrip(':')
            if label in self.total_labels:
                return True
        return False

    def _date_columns(self, header: List[str], rows: List[List[str]]) -> List[int]:
        columns = []
        for index, name in enumerate(header):
            if 'date' in _normalize_header(name):
                columns.append(index)
                continue
            values = [row[index] for row in rows if index < len(row) and row[index]]
            if values and sum(1 for v in values if self.dates.is_date(v)) * 10 >= len(values) * 6:
                columns.append(index)
        return columns
