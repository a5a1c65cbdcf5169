"""
Extractor Registry
══════════════════

Maps a MIME type to a function  bytes -> str  that produces the plain text
of a document. Adding a format means registering one callable; the worker
never branches on MIME type itself.

Failure classification
──────────────────────
  no extractor registered         → UnsupportedMimeType  (permanent)
  extractor raises CorruptDocument → propagated as-is     (permanent)
  extractor raises anything else  → ExtractionFailed     (transient)

Built-in formats
────────────────
  text/plain, text/markdown, text/csv   UTF-8 (BOM stripped), latin-1 fallback
  application/pdf                       pypdf, pages joined by blank lines
  DOCX                                  python-docx, one line per paragraph
  XLSX                                  openpyxl (read-only), sheet title then one
                                        tab-separated line per non-empty row
"""

from __future__ import annotations

import io
import logging
import time
import zipfile
from typing import Callable

from docindex.core.errors import CorruptDocument, ExtractionFailed, UnsupportedMimeType

logger = logging.getLogger(__name__)

Extractor = Callable[[bytes], str]

DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def normalize_mime_type(mime_type: str) -> str:
    """'Text/Plain; charset=UTF-8' → 'text/plain'"""
    return mime_type.split(";", 1)[0].strip().lower()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ExtractorRegistry:

    def __init__(self) -> None:
        self._extractors: dict[str, Extractor] = {}

    def register(self, mime_type: str, extractor: Extractor) -> None:
        self._extractors[normalize_mime_type(mime_type)] = extractor

    def lookup(self, mime_type: str) -> Extractor | None:
        return self._extractors.get(normalize_mime_type(mime_type))

    def supported_mime_types(self) -> list[str]:
        return sorted(self._extractors)

    def extract(self, mime_type: str, data: bytes) -> str:
        extractor = self.lookup(mime_type)
        if extractor is None:
            raise UnsupportedMimeType(normalize_mime_type(mime_type))

        t0 = time.monotonic()
        try:
            text = extractor(data)
        except CorruptDocument:
            raise
        except Exception as exc:
            logger.warning(
                "Extractor error | mime=%s error_type=%s error=%s",
                mime_type, type(exc).__name__, exc,
            )
            raise ExtractionFailed(exc) from exc

        logger.debug(
            "Extracted | mime=%s bytes=%d chars=%d elapsed_ms=%.1f",
            mime_type, len(data), len(text), (time.monotonic() - t0) * 1000,
        )
        return text


# ---------------------------------------------------------------------------
# Built-in extractors
# ---------------------------------------------------------------------------

def extract_plain_text(data: bytes) -> str:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = data.decode("latin-1")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def extract_pdf(data: bytes) -> str:
    from pypdf import PdfReader
    from pypdf.errors import PdfReadError

    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            raise CorruptDocument("PDF is password-protected")
        pages = [page.extract_text() or "" for page in reader.pages]
    except PdfReadError as exc:
        raise CorruptDocument(f"unreadable PDF ({exc})") from exc
    return "\n\n".join(pages)


def extract_docx(data: bytes) -> str:
    import docx
    from docx.opc.exceptions import PackageNotFoundError

    try:
        document = docx.Document(io.BytesIO(data))
    except (zipfile.BadZipFile, PackageNotFoundError) as exc:
        raise CorruptDocument("unreadable DOCX package") from exc
    return "\n".join(para.text for para in document.paragraphs if para.text.strip())


def _cell_text(value) -> str:
    return "" if value is None else str(value)


def extract_xlsx(data: bytes) -> str:
    from openpyxl import load_workbook
    from openpyxl.utils.exceptions import InvalidFileException

    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError) as exc:
        raise CorruptDocument("unreadable XLSX workbook") from exc

    sheets = []
    try:
        for sheet in workbook.worksheets:
            rows = []
            for row in sheet.iter_rows(values_only=True):
                cells = [_cell_text(value) for value in row]
                if any(cell.strip() for cell in cells):
                    rows.append("\t".join(cells).rstrip("\t"))
            if rows:
                sheets.append("\n".join([sheet.title, *rows]))
    finally:
        workbook.close()
    return "\n\n".join(sheets)


def default_registry() -> ExtractorRegistry:
    registry = ExtractorRegistry()
    for mime in ("text/plain", "text/markdown", "text/csv"):
        registry.register(mime, extract_plain_text)
    registry.register("application/pdf", extract_pdf)
    registry.register(DOCX_MIME_TYPE, extract_docx)
    registry.register(XLSX_MIME_TYPE, extract_xlsx)
    return registry
