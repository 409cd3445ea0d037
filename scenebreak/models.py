"""
Core data models for the scenebreak screenplay analysis system.

This module defines the Pydantic models used throughout the application
for data validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from scenebreak.utils.errors import SceneStateError, UnrecognizedFormatError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class DocumentFormat(str, Enum):
    """Supported screenplay encodings."""

    PLAIN_TEXT = "txt"
    PDF = "pdf"
    FINAL_DRAFT = "fdx"

    @property
    def is_heavy(self) -> bool:
        """Formats whose text extraction goes through the extraction queue."""
        return self is DocumentFormat.PDF

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @classmethod
    def supported(cls) -> List[str]:
        return [member.value for member in cls]

    @classmethod
    def from_hint(cls, hint: Any) -> "DocumentFormat":
        """
        Resolve a declared format tag.

        Accepts enum members, bare tags ("txt", "PDF"), extensions (".fdx")
        and the common MIME types for each format.
        """
        if isinstance(hint, cls):
            return hint
        if not isinstance(hint, str) or not hint.strip():
            raise UnrecognizedFormatError(hint, cls.supported())

        normalized = hint.strip().lower().lstrip(".")
        aliases = {
            "txt": cls.PLAIN_TEXT,
            "text": cls.PLAIN_TEXT,
            "plain-text": cls.PLAIN_TEXT,
            "text/plain": cls.PLAIN_TEXT,
            "pdf": cls.PDF,
            "application/pdf": cls.PDF,
            "fdx": cls.FINAL_DRAFT,
            "final-draft": cls.FINAL_DRAFT,
            "application/xml": cls.FINAL_DRAFT,
            "text/xml": cls.FINAL_DRAFT,
        }
        if normalized not in aliases:
            raise UnrecognizedFormatError(hint, cls.supported())
        return aliases[normalized]

    @classmethod
    def from_filename(cls, filename: str) -> "DocumentFormat":
        suffix = PurePath(filename).suffix
        if not suffix:
            raise UnrecognizedFormatError(filename, cls.supported())
        return cls.from_hint(suffix)


class SceneStatus(str, Enum):
    """Status of a scene in the analysis state machine."""

    PENDING = "PENDING"
    ANALYZING = "ANALYZING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"


_SCENE_TRANSITIONS: Dict[SceneStatus, Tuple[SceneStatus, ...]] = {
    SceneStatus.PENDING: (SceneStatus.ANALYZING, SceneStatus.SKIPPED),
    SceneStatus.ANALYZING: (
        SceneStatus.COMPLETED,
        SceneStatus.ERROR,
        SceneStatus.PENDING,
    ),
    SceneStatus.ERROR: (SceneStatus.ANALYZING,),
    SceneStatus.COMPLETED: (),
    SceneStatus.SKIPPED: (),
}


class JobStatus(str, Enum):
    """Status of an extraction job."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SceneComplexity(str, Enum):
    """Request-shaping signal for the shot-count policy."""

    SIMPLE = "simple"
    COMPLEX = "complex"


# =============================================================================
# Document Models
# =============================================================================


class Document(BaseModel):
    """A submitted screenplay document. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    payload: bytes = Field(..., description="Raw document bytes")
    format: DocumentFormat = Field(..., description="Declared document format")
    filename: str = Field(..., min_length=1, description="Original filename")

    @property
    def size(self) -> int:
        return len(self.payload)

    @classmethod
    def from_upload(
        cls,
        payload: bytes,
        filename: str,
        format_hint: Any = None,
    ) -> "Document":
        """Build a document, inferring the format from the filename when no hint is given."""
        doc_format = (
            DocumentFormat.from_hint(format_hint)
            if format_hint is not None
            else DocumentFormat.from_filename(filename)
        )
        return cls(payload=payload, format=doc_format, filename=filename)


class SceneHeading(BaseModel):
    """Decomposed scene heading (slugline)."""

    raw: str = Field(..., description="Heading text as it appears in the script")
    int_ext: Optional[str] = Field(None, description="INT, EXT or INT./EXT.")
    location: str = Field("UNKNOWN LOCATION", description="Location portion of the heading")
    time_of_day: str = Field("", description="Time-of-day portion of the heading")


class SceneBlock(BaseModel):
    """One scene produced by the format parser."""

    model_config = ConfigDict(frozen=True)

    scene_number: int = Field(..., ge=1, description="1-based position in parse order")
    header: str = Field(..., description="Scene heading text")
    heading: SceneHeading = Field(..., description="Decomposed scene heading")
    text: str = Field(..., description="Scene body without the heading")
    auto_skip: bool = Field(False, description="Body is below the minimum analysable length")

    @property
    def full_text(self) -> str:
        if self.text:
            return f"{self.header}\n{self.text}"
        return self.header


class ParsedScreenplay(BaseModel):
    """Result of parsing one document."""

    title: str = Field("Untitled Screenplay", description="Screenplay title")
    format: DocumentFormat = Field(..., description="Source format")
    scenes: List[SceneBlock] = Field(default_factory=list, description="Ordered scene blocks")

    @property
    def total_scenes(self) -> int:
        return len(self.scenes)


class ValidationReport(BaseModel):
    """Outcome of pre-submission validation."""

    valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    file_info: Dict[str, Any] = Field(default_factory=dict)

    def merge(self, other: "ValidationReport") -> "ValidationReport":
        return ValidationReport(
            valid=self.valid and other.valid,
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
            file_info={**self.file_info, **other.file_info},
        )


# =============================================================================
# Extraction Queue Models
# =============================================================================


class JobPayload(BaseModel):
    """Work carried by an extraction job."""

    model_config = ConfigDict(frozen=True)

    data: bytes = Field(..., description="Document bytes")
    filename: str = Field(..., description="Original filename")
    format: DocumentFormat = Field(DocumentFormat.PDF, description="Document format")


class ExtractionResult(BaseModel):
    """What a worker reports for a successful job."""

    extracted_text: str = Field(..., description="Normalized document text")
    estimated_scene_count: int = Field(..., ge=0, description="Scene headings detected")
    page_count: Optional[int] = Field(None, ge=0, description="Pages in the source document")
    warnings: List[str] = Field(default_factory=list)


class ExtractionJob(BaseModel):
    """A unit of deferred extraction work."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Job ID")
    payload: JobPayload
    attempts: int = Field(0, ge=0, description="Processing attempts started")
    max_attempts: int = Field(3, ge=1, description="Retry ceiling")
    status: JobStatus = Field(JobStatus.QUEUED)
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    available_at: float = Field(0.0, description="Queue clock time the job may next be dequeued")
    worker_id: Optional[str] = None
    last_error: Optional[str] = None
    error_history: List[str] = Field(default_factory=list)
    result: Optional[ExtractionResult] = None


class JobStatusReport(BaseModel):
    """Polling view of an extraction job."""

    job_id: str
    status: JobStatus
    attempts: int
    extracted_text: Optional[str] = None
    estimated_scene_count: Optional[int] = None
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_job(cls, job: ExtractionJob) -> "JobStatusReport":
        result = job.result
        return cls(
            job_id=job.id,
            status=job.status,
            attempts=job.attempts,
            extracted_text=result.extracted_text if result else None,
            estimated_scene_count=result.estimated_scene_count if result else None,
            error=job.last_error if job.status == JobStatus.FAILED else None,
            warnings=list(result.warnings) if result else [],
        )


# =============================================================================
# Analysis Models
# =============================================================================


class Shot(BaseModel):
    """One camera setup recommendation."""

    model_config = ConfigDict(extra="allow")

    shot_type: str = Field(..., min_length=1)
    subject: str
    visual: str
    rationale: str
    image_prompt: str


class AnalysisResult(BaseModel):
    """Validated four-section scene analysis. Sections are otherwise opaque."""

    model_config = ConfigDict(extra="allow")

    story_analysis: Dict[str, Any]
    producing_logistics: Dict[str, Any]
    directing_vision: Dict[str, Any]
    shot_list: List[Shot]


class AnalysisRequest(BaseModel):
    """Payload sent to the external analysis service."""

    model_config = ConfigDict(populate_by_name=True)

    scene_text: str = Field(..., alias="sceneText", min_length=1)
    scene_number: int = Field(..., alias="sceneNumber", ge=1)
    total_scenes: int = Field(..., alias="totalScenes", ge=1)
    visual_style: Optional[str] = Field(None, alias="visualStyle")
    custom_instructions: Optional[str] = Field(None, alias="customInstructions")
    characters: List[str] = Field(default_factory=list)
    scene_complexity: SceneComplexity = Field(SceneComplexity.SIMPLE, alias="sceneComplexity")
    target_shot_range: Tuple[int, int] = Field((5, 8), alias="targetShotRange")

    @field_validator("target_shot_range")
    @classmethod
    def validate_shot_range(cls, v: Tuple[int, int]) -> Tuple[int, int]:
        if v[0] < 1 or v[0] > v[1]:
            raise ValueError("target_shot_range must be an ascending pair of positive integers")
        return v

    def to_wire(self) -> Dict[str, Any]:
        """JSON body in the service's camelCase contract."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Scene Models
# =============================================================================


class Scene(BaseModel):
    """A scene owned by the orchestrator while a project is processed."""

    scene_number: int = Field(..., ge=1)
    header: str
    raw_text: str
    status: SceneStatus = SceneStatus.PENDING
    retry_count: int = Field(0, ge=0, le=3)
    analysis: Optional[AnalysisResult] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_block(cls, block: SceneBlock) -> "Scene":
        return cls(scene_number=block.scene_number, header=block.header, raw_text=block.text)

    @property
    def full_text(self) -> str:
        if self.raw_text:
            return f"{self.header}\n{self.raw_text}"
        return self.header

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000

    @property
    def effective_analysis(self) -> Optional[AnalysisResult]:
        """Stored analysis, or the not-applicable payload for skipped scenes."""
        if self.status == SceneStatus.SKIPPED:
            from scenebreak.analysis.schema import skipped_analysis

            return skipped_analysis()
        return self.analysis

    def transition(self, new_status: SceneStatus) -> None:
        if new_status not in _SCENE_TRANSITIONS[self.status]:
            raise SceneStateError(self.scene_number, self.status.value, new_status.value)
        self.status = new_status


class ProjectProgress(BaseModel):
    """Derived project-level progress. Never stored."""

    total_scenes: int = Field(..., ge=0)
    completed_count: int = Field(0, ge=0)
    error_count: int = Field(0, ge=0)
    skipped_count: int = Field(0, ge=0)
    pending_count: int = Field(0, ge=0)
    analyzing_count: int = Field(0, ge=0)
    progress_percent: float = Field(0.0, ge=0.0, le=100.0)
    remaining: int = Field(0, ge=0)
    average_scene_time_ms: float = Field(..., ge=0.0)
    eta_ms: Optional[float] = Field(None, ge=0.0)
