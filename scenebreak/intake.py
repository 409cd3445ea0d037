"""
Submission and job status interfaces.

Light formats (plain text, Final Draft) are validated and parsed inline and
come back with their scene list (200). PDFs are validated at the file level
and queued for extraction (202); callers poll job_status() and, once the
job completes, turn its text into scenes with scenes_for_job().
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from scenebreak.config import Settings, get_settings
from scenebreak.extraction.queue import ExtractionQueue
from scenebreak.models import Document, DocumentFormat, JobStatus, JobStatusReport, ParsedScreenplay
from scenebreak.parsing.format_parser import FormatParser, review_parse
from scenebreak.parsing.validator import DocumentValidator
from scenebreak.utils.errors import ExtractionError, SubmissionRejectedError
from scenebreak.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

STATUS_OK = 200
STATUS_ACCEPTED = 202


class SubmissionResult(BaseModel):
    """Response to a document submission."""

    status_code: int = Field(..., description="200 when parsed inline, 202 when queued")
    filename: str
    format: DocumentFormat
    visual_style: Optional[str] = None
    job_id: Optional[str] = None
    screenplay: Optional[ParsedScreenplay] = None
    warnings: List[str] = Field(default_factory=list)

    @property
    def queued(self) -> bool:
        return self.status_code == STATUS_ACCEPTED


class ScreenplayIntake:
    """Front door for screenplay documents."""

    def __init__(
        self,
        queue: ExtractionQueue,
        parser: Optional[FormatParser] = None,
        validator: Optional[DocumentValidator] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.queue = queue
        self.parser = parser or FormatParser(settings=settings)
        self.validator = validator or DocumentValidator(settings=settings)

    async def submit(
        self,
        payload: bytes,
        filename: str,
        format_hint: Optional[str] = None,
        visual_style: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Validate a document, then parse it inline or queue it for extraction.

        Raises:
            UnrecognizedFormatError: Format cannot be determined or is unsupported
            SubmissionRejectedError: Any validation check failed
            FormatError: Inline parsing failed
            QueueClosedError: Heavy document submitted while the queue is closed
        """
        document = Document.from_upload(payload, filename, format_hint)
        with LogContext(filename=filename):
            report = self.validator.ensure_valid(document)

            if document.format.is_heavy:
                job_id = await self.queue.enqueue(document)
                return SubmissionResult(
                    status_code=STATUS_ACCEPTED,
                    filename=filename,
                    format=document.format,
                    visual_style=visual_style,
                    job_id=job_id,
                    warnings=report.warnings,
                )

            screenplay = self.parser.parse(document.payload, document.format)
            return SubmissionResult(
                status_code=STATUS_OK,
                filename=filename,
                format=document.format,
                visual_style=visual_style,
                screenplay=screenplay,
                warnings=report.warnings + review_parse(screenplay),
            )

    def job_status(self, job_id: str) -> JobStatusReport:
        return self.queue.status(job_id)

    def scenes_for_job(self, job_id: str) -> ParsedScreenplay:
        """
        Parse the text of a completed extraction job.

        Content checks run here, on the extracted text, before parsing.

        Raises:
            JobNotFoundError: Unknown job id
            ExtractionError: Job has not completed
            SubmissionRejectedError: Extracted text fails content checks
        """
        job = self.queue.get(job_id)
        if job.status != JobStatus.COMPLETED or job.result is None:
            raise ExtractionError(
                f"Job {job_id} has not completed (status: {job.status.value})",
                {"job_id": job_id, "status": job.status.value, "error": job.last_error},
            )

        text = job.result.extracted_text
        report = self.validator.check_content(text, job.payload.filename)
        if not report.valid:
            raise SubmissionRejectedError(job.payload.filename, report.errors, report.warnings)
        return self.parser.parse_text(text, job.payload.format)
