"""
Tests for pre-submission validation.
"""

import pytest

from scenebreak.config import Settings
from scenebreak.models import Document
from scenebreak.parsing.validator import DocumentValidator
from scenebreak.utils.errors import SubmissionRejectedError


class TestFileChecks:
    """Test extension and size checks."""

    @pytest.fixture
    def validator(self, settings):
        return DocumentValidator(settings=settings)

    def test_accepts_supported_extensions(self, validator):
        for name in ("script.txt", "script.PDF", "script.fdx"):
            assert validator.check_file(name, 2000).valid

    def test_rejects_unknown_extension(self, validator):
        report = validator.check_file("script.docx", 2000)

        assert not report.valid
        assert "Unsupported file type" in report.errors[0]

    def test_rejects_tiny_file(self, validator):
        report = validator.check_file("script.txt", 50)

        assert not report.valid
        assert "too small" in report.errors[0]

    def test_rejects_oversized_file(self, validator):
        report = validator.check_file("script.pdf", 11 * 1024 * 1024)

        assert not report.valid
        assert "too large" in report.errors[0]

    def test_warns_on_large_file(self, validator):
        report = validator.check_file("script.pdf", 6 * 1024 * 1024)

        assert report.valid
        assert any("Large file" in w for w in report.warnings)

    def test_reports_every_error(self, validator):
        report = validator.check_file("script.doc", 10)

        assert len(report.errors) == 2

    def test_bounds_come_from_settings(self):
        settings = Settings(min_document_bytes=10, warn_document_bytes=20, max_document_bytes=30)
        validator = DocumentValidator(settings=settings)

        assert validator.check_file("a.txt", 15).valid
        assert not validator.check_file("a.txt", 31).valid


class TestContentChecks:
    """Test content-level checks."""

    @pytest.fixture
    def validator(self, settings):
        return DocumentValidator(settings=settings)

    def test_valid_screenplay(self, validator, sample_screenplay_text):
        report = validator.check_content(sample_screenplay_text, "script.txt")

        assert report.valid
        assert report.file_info["scene_headers"] == 3
        assert report.warnings == []

    def test_too_short(self, validator):
        report = validator.check_content("INT. HOUSE - DAY\nHello.", "script.txt")

        assert not report.valid
        assert "too short" in report.errors[0]

    def test_requires_scene_header(self, validator):
        report = validator.check_content("A long treatment with no headings. " * 10, "notes.txt")

        assert not report.valid
        assert "No scene headers" in report.errors[0]

    def test_warnings_for_thin_screenplay(self, validator):
        text = "INT. HOUSE - DAY\n" + "a quiet morning passes slowly in the house. " * 5

        report = validator.check_content(text, "script.txt")

        assert report.valid
        assert any("Only 1 scene" in w for w in report.warnings)
        assert any("ALL CAPS" in w for w in report.warnings)
        assert any("No dialogue" in w for w in report.warnings)


class TestScannedHeuristic:
    """Test the scanned PDF heuristic."""

    def test_low_text_ratio(self):
        assert DocumentValidator.looks_scanned("x" * 50, 10_000)

    def test_large_file_with_little_text(self):
        assert DocumentValidator.looks_scanned("x" * 400, 30_000) is False
        assert DocumentValidator.looks_scanned("x" * 450, 120_000)

    def test_text_rich_pdf(self):
        assert not DocumentValidator.looks_scanned("x" * 5_000, 50_000)

    def test_zero_size(self):
        assert not DocumentValidator.looks_scanned("", 0)


class TestDocumentValidation:
    """Test whole-document validation and rejection."""

    @pytest.fixture
    def validator(self, settings):
        return DocumentValidator(settings=settings)

    def test_plain_text_document(self, validator, sample_screenplay_text):
        document = Document.from_upload(sample_screenplay_text.encode("utf-8"), "shift.txt")

        assert validator.ensure_valid(document).valid

    def test_fdx_document_content_is_checked(self, validator, fdx_builder):
        data = fdx_builder(
            [
                ("Scene Heading", "INT. HOUSE - DAY"),
                ("Action", "The kettle screams on the stove while ANNABELLE reads."),
                ("Character", "ANNABELLE"),
                ("Dialogue", "Not now."),
                ("Scene Heading", "EXT. GARDEN - DAY"),
                ("Action", "Roses sag in the heat."),
            ]
        )
        document = Document.from_upload(data, "house.fdx")

        report = validator.validate(document)

        assert report.valid
        assert report.file_info["scene_headers"] == 2

    def test_fdx_headings_counted_by_paragraph_type(self, validator, fdx_builder):
        data = fdx_builder(
            [
                ("Scene Heading", "KITCHEN - NIGHT"),
                ("Action", "Pots steam on the stove while MARGE stirs a sauce."),
                ("Character", "MARGE"),
                ("Dialogue", "Taste this."),
                ("Scene Heading", "LIVING ROOM - LATER"),
                ("Action", "The television flickers over an empty couch."),
            ]
        )
        document = Document.from_upload(data, "kitchen.fdx")

        report = validator.validate(document)

        assert report.valid
        assert report.file_info["scene_headers"] == 2

    def test_pdf_magic_bytes_checked(self, validator):
        document = Document.from_upload(b"not a pdf at all " * 20, "fake.pdf")

        report = validator.validate(document)

        assert not report.valid
        assert "not a PDF" in report.errors[0]

    def test_pdf_content_deferred_until_extraction(self, validator, pdf_builder, sample_screenplay_text):
        document = Document.from_upload(pdf_builder(sample_screenplay_text), "shift.pdf")

        report = validator.validate(document)

        assert report.valid
        assert "scene_headers" not in report.file_info

    def test_ensure_valid_raises_with_all_errors(self, validator):
        document = Document.from_upload(b"tiny", "script.txt")

        with pytest.raises(SubmissionRejectedError) as exc_info:
            validator.ensure_valid(document)

        assert exc_info.value.errors
        assert "too small" in exc_info.value.errors[0]
