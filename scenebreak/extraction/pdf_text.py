"""
Page-description (PDF) text extraction using PyMuPDF.

This is the CPU and memory heavy step that the extraction queue offloads to
its worker pool. Everything here is synchronous and side-effect free so it
can run in a thread or a separate process.
"""

from typing import List, NamedTuple

import fitz  # PyMuPDF

from scenebreak.parsing.normalize import normalize_text
from scenebreak.utils.errors import EmptyDocumentError, MalformedStructureError
from scenebreak.utils.logging import get_logger

logger = get_logger(__name__)

# Documents with less extractable text than this are treated as image-only
MIN_TEXT_PER_DOCUMENT = 50


class PDFText(NamedTuple):
    text: str
    page_count: int


def extract_pdf_text(data: bytes, filename: str = "document.pdf") -> PDFText:
    """
    Extract and normalise the text of every page.

    Args:
        data: PDF bytes
        filename: Name used in log and error messages

    Returns:
        Normalised text and page count

    Raises:
        MalformedStructureError: If the bytes are not a readable PDF
        EmptyDocumentError: If no text can be extracted (image-only PDF)
    """
    if not data:
        raise EmptyDocumentError(f"PDF '{filename}' is empty")

    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (fitz.FileDataError, RuntimeError, ValueError) as e:
        raise MalformedStructureError(
            f"PDF '{filename}' is corrupted or not a PDF: {e}",
            {"filename": filename},
        )

    with doc:
        if doc.needs_pass:
            raise MalformedStructureError(
                f"PDF '{filename}' is password-protected and cannot be parsed",
                {"filename": filename},
            )

        page_texts: List[str] = []
        for page in doc:
            page_texts.append(page.get_text())
        page_count = doc.page_count

    text = normalize_text("\n".join(page_texts))
    if len(text) < MIN_TEXT_PER_DOCUMENT:
        raise EmptyDocumentError(
            f"PDF '{filename}' contains no extractable text; it may be a scanned image",
            {"filename": filename, "page_count": page_count, "text_length": len(text)},
        )

    logger.debug(f"Extracted {len(text)} chars from {page_count} pages of {filename}")
    return PDFText(text=text, page_count=page_count)
