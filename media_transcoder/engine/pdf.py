"""PyPDF2 helpers used as in-process library calls."""

import io
import logging

from PyPDF2 import PdfReader, PdfWriter
from PyPDF2.errors import PyPdfError

from media_transcoder.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Failures PyPDF2 raises on damaged or unreadable documents
PDF_ERRORS = (PyPdfError, OSError, ValueError, KeyError)


def _reader(data: bytes) -> PdfReader:
    reader = PdfReader(io.BytesIO(data), strict=False)
    if reader.is_encrypted:
        # Try the empty password before giving up on "encrypted" files
        try:
            reader.decrypt("")
        except Exception as e:
            raise ValueError(f"PDF is password-protected or locked ({e})") from e
    return reader


def count_pages(data: bytes) -> int:
    """Page count, raising ValidationError for documents PyPDF2 cannot open."""
    try:
        return len(_reader(data).pages)
    except PDF_ERRORS as e:
        logger.warning("PDF page count failed: %s", e)
        raise ValidationError("This PDF is damaged or locked and cannot be processed.") from e


def resave_pdf(data: bytes) -> bytes:
    """Rewrite the document with compressed content streams and shared objects."""
    reader = _reader(data)
    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)
    for page in writer.pages:
        page.compress_content_streams()
    writer.add_metadata({"/Producer": "media-transcoder"})

    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()
