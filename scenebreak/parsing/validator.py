"""
Pre-submission validation.

Two levels, mirroring when information becomes available:

- file checks (extension allow-list, size bounds) run on every submission
  before anything is queued or parsed;
- content checks (minimum length, scene heading presence, formatting
  warnings) run on text as soon as text exists: immediately for plain text
  and Final Draft, after extraction for PDFs.

Every error found is reported, not just the first.
"""

import re
from pathlib import PurePath
from typing import Optional

from scenebreak.config import Settings, get_settings
from scenebreak.models import Document, DocumentFormat, ValidationReport
from scenebreak.parsing.format_parser import count_fdx_headings, render_fdx_text
from scenebreak.parsing.headings import count_headings
from scenebreak.parsing.normalize import decode_text, normalize_text
from scenebreak.utils.errors import FormatError, SubmissionRejectedError
from scenebreak.utils.logging import get_logger

logger = get_logger(__name__)

CHARS_PER_PAGE = 3000
SCANNED_TEXT_RATIO = 0.01
SCANNED_LARGE_FILE_BYTES = 100_000
SCANNED_MIN_TEXT_CHARS = 500

_ALL_CAPS_RE = re.compile(r"[A-Z]{10,}")
_PARENTHETICAL_RE = re.compile(r"\([A-Za-z\s]+\)")
_CHARACTER_CUE_RE = re.compile(r"\n[A-Z\s]{2,}\n")


def _format_size(size: int) -> str:
    return f"{size / (1024 * 1024):.2f} MB"


class DocumentValidator:
    """File-level and content-level screenplay checks."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def check_file(self, filename: str, size: int) -> ValidationReport:
        """Extension allow-list and size bounds."""
        report = ValidationReport(file_info={"name": filename, "size": size})

        extension = PurePath(filename).suffix.lower()
        allowed = [f".{ext}" for ext in DocumentFormat.supported()]
        if extension not in allowed:
            report.valid = False
            report.errors.append(
                f"Unsupported file type: '{extension or filename}'. "
                f"Please upload one of: {', '.join(allowed)}"
            )
        else:
            report.file_info["type"] = extension

        settings = self.settings
        if size < settings.min_document_bytes:
            report.valid = False
            report.errors.append(
                f"File is too small ({size} bytes); it appears to be empty or corrupted"
            )
        elif size > settings.max_document_bytes:
            report.valid = False
            report.errors.append(
                f"File is too large ({_format_size(size)}); maximum size is "
                f"{_format_size(settings.max_document_bytes)}"
            )
        elif size > settings.warn_document_bytes:
            report.warnings.append(f"Large file ({_format_size(size)}) may take longer to process")

        return report

    def check_content(
        self, text: str, filename: str, scene_count: Optional[int] = None
    ) -> ValidationReport:
        """
        Minimum length, scene heading presence and formatting warnings.

        `scene_count` overrides heading detection in `text`, for formats whose
        headings are marked structurally rather than by convention.
        """
        report = ValidationReport()
        settings = self.settings

        if len(text.strip()) < settings.min_content_chars:
            report.valid = False
            report.errors.append(
                f"File content is too short ({len(text.strip())} characters); minimum "
                f"{settings.min_content_chars} required. The file may be empty, a scanned "
                "image or corrupted"
            )
            return report

        if scene_count is None:
            scene_count = count_headings(text)
        report.file_info.update(
            {
                "text_length": len(text),
                "estimated_pages": -(-len(text) // CHARS_PER_PAGE),
                "scene_headers": scene_count,
            }
        )

        if scene_count == 0:
            report.valid = False
            report.errors.append(
                f"No scene headers detected in '{filename}'. Screenplays must include "
                "headings like 'INT. LOCATION - DAY' or 'EXT. LOCATION - NIGHT'"
            )
            return report

        if scene_count < settings.recommended_min_scenes:
            noun = "scene" if scene_count == 1 else "scenes"
            report.warnings.append(
                f"Only {scene_count} {noun} detected; check that this is the complete screenplay"
            )
        if not _ALL_CAPS_RE.search(text):
            report.warnings.append(
                "No character names in ALL CAPS detected; ensure proper screenplay formatting"
            )
        if not _PARENTHETICAL_RE.search(text) and not _CHARACTER_CUE_RE.search(text):
            report.warnings.append(
                "No dialogue detected; this may not be a standard screenplay format"
            )
        return report

    @staticmethod
    def looks_scanned(text: str, file_size: int) -> bool:
        """Heuristic for image-only PDFs: far too little text for the file size."""
        if file_size <= 0:
            return False
        if len(text) / file_size < SCANNED_TEXT_RATIO:
            return True
        return file_size > SCANNED_LARGE_FILE_BYTES and len(text) < SCANNED_MIN_TEXT_CHARS

    def document_text(self, document: Document) -> Optional[str]:
        """Text of a light-format document, or None for formats that need extraction."""
        if document.format == DocumentFormat.PLAIN_TEXT:
            return normalize_text(decode_text(document.payload))
        if document.format == DocumentFormat.FINAL_DRAFT:
            return render_fdx_text(document.payload)
        return None

    def validate(self, document: Document) -> ValidationReport:
        """All checks that can run on a document as submitted."""
        report = self.check_file(document.filename, document.size)
        if not report.valid:
            return report

        if document.format == DocumentFormat.PDF and not document.payload.startswith(b"%PDF"):
            report.valid = False
            report.errors.append(f"'{document.filename}' is not a PDF document")
            return report

        scene_count: Optional[int] = None
        try:
            text = self.document_text(document)
            if document.format == DocumentFormat.FINAL_DRAFT:
                scene_count = count_fdx_headings(document.payload)
        except FormatError as e:
            report.valid = False
            report.errors.append(e.message)
            return report

        if text is not None:
            report = report.merge(self.check_content(text, document.filename, scene_count))
        return report

    def ensure_valid(self, document: Document) -> ValidationReport:
        """
        Validate and raise on failure.

        Raises:
            SubmissionRejectedError: Carrying every error and warning found
        """
        report = self.validate(document)
        if not report.valid:
            logger.warning(f"Rejected '{document.filename}': {'; '.join(report.errors)}")
            raise SubmissionRejectedError(document.filename, report.errors, report.warnings)
        for warning in report.warnings:
            logger.info(f"'{document.filename}': {warning}")
        return report
