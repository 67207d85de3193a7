"""
Core data structures for the Lesson Intelligence System.

This module defines the enums and dataclasses shared by the pipeline: jobs,
per-stage units, stage artifacts, and the structured lesson content produced
by the Structure and Enrich stages.

Enums:
    Stage: Pipeline stages in execution order.
    JobStatus: Lifecycle states of a job.
    UnitStatus: Lifecycle states of a unit of stage work.
    FailurePolicy: How a failed unit affects its stage.
    EnrichmentType: Kind of enrichment requested for a job.

Classes:
    JobOptions: Per-job processing options.
    Job: Durable record of one document processing job.
    Unit: One independently executable piece of stage work.
    StageArtifact: Durable output of one unit.
    ArtifactPayload: Output returned by a stage executor before persistence.
    RasterizedPage: PNG rendering of one document page.
    Section: Topic section detected in a document.
    QuizQuestion: Multiple choice question generated for a section.
    VoiceParams: Speech synthesis voice selection.
    StageResult: Outcome of running one stage for one job.
    JobStatusReport: Polling view of a job.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Stage(Enum):
    """Pipeline stages, in execution order."""

    INGEST = "ingest"
    TRANSCRIBE = "transcribe"
    STRUCTURE = "structure"
    ENRICH = "enrich"
    ASSEMBLE = "assemble"


PIPELINE_STAGES: List[Stage] = [
    Stage.INGEST,
    Stage.TRANSCRIBE,
    Stage.STRUCTURE,
    Stage.ENRICH,
    Stage.ASSEMBLE,
]

# Relative share of overall progress per stage; sums to 100.
STAGE_WEIGHTS: Dict[Stage, int] = {
    Stage.INGEST: 5,
    Stage.TRANSCRIBE: 40,
    Stage.STRUCTURE: 10,
    Stage.ENRICH: 40,
    Stage.ASSEMBLE: 5,
}


class JobStatus(Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    READY = "ready"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.READY, JobStatus.ERROR)


class UnitStatus(Enum):
    """Unit lifecycle states."""

    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class FailurePolicy(Enum):
    """Effect of a terminally failed unit on its stage."""

    FATAL = "fatal"
    TOLERABLE = "tolerable"


STAGE_FAILURE_POLICY: Dict[Stage, FailurePolicy] = {
    Stage.INGEST: FailurePolicy.FATAL,
    Stage.TRANSCRIBE: FailurePolicy.TOLERABLE,
    Stage.STRUCTURE: FailurePolicy.FATAL,
    Stage.ENRICH: FailurePolicy.TOLERABLE,
    Stage.ASSEMBLE: FailurePolicy.FATAL,
}


class EnrichmentType(Enum):
    """Enrichment produced per section."""

    QUIZ = "quiz"
    AUDIO = "audio"
    NONE = "none"


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class JobOptions:
    """
    Processing options chosen at submission time.

    Attributes:
        enrichment: Enrichment kind generated for every section.
        language: ISO 639-1 code of the document language (e.g. 'en', 'fr').
        voice: Narration voice gender used for audio enrichment.
    """

    enrichment: EnrichmentType = EnrichmentType.QUIZ
    language: str = "en"
    voice: str = "female"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enrichment": self.enrichment.value,
            "language": self.language,
            "voice": self.voice,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobOptions":
        data = data or {}
        return cls(
            enrichment=EnrichmentType(data.get("enrichment", EnrichmentType.QUIZ.value)),
            language=data.get("language", "en"),
            voice=data.get("voice", "female"),
        )


@dataclass
class Job:
    """
    Durable record of one document processing job.

    Attributes:
        job_id: Unique job identifier.
        user_id: Owner of the job.
        document_keys: Blob keys of the source PDFs, in reading order. Pages
            are numbered continuously across the documents.
        options: Processing options.
        status: Lifecycle status.
        current_stage: Stage most recently entered, None before the first.
        progress_percent: Overall progress in [0, 100], never decreasing.
        message: Human readable progress message.
        error_message: Failure detail for jobs in ERROR.
        total_units: Unit count of the current stage.
        completed_units: Settled unit count of the current stage.
        eta_seconds: Estimated seconds left in the current stage, None when
            unknown.
        completed_stages: Stages whose durable state is complete.
        result: Final assembled record, set when Assemble completes.
        retry_of: Job ID of the errored job this job retries.
        lease_owner: Runner currently holding the job lease.
        lease_expires_at: Expiry of the current lease (ISO 8601).
        created_at: Creation timestamp (ISO 8601).
        updated_at: Last update timestamp (ISO 8601).
    """

    job_id: str
    user_id: str
    document_keys: List[str]
    options: JobOptions = field(default_factory=JobOptions)
    status: JobStatus = JobStatus.PENDING
    current_stage: Optional[Stage] = None
    progress_percent: float = 0.0
    message: str = ""
    error_message: Optional[str] = None
    total_units: int = 0
    completed_units: int = 0
    eta_seconds: Optional[float] = None
    completed_stages: List[Stage] = field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    retry_of: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class Unit:
    """
    One independently executable, independently retryable piece of stage work.

    Attributes:
        job_id: Owning job.
        stage: Stage the unit belongs to.
        unit_index: Stable 1-based index within the stage.
        status: Unit status.
        payload_ref: Blob key or artifact reference of the unit output.
        error_message: Terminal error of a failed unit.
        attempts: Number of executions that settled the unit.
        updated_at: Last update timestamp (ISO 8601).
    """

    job_id: str
    stage: Stage
    unit_index: int
    status: UnitStatus = UnitStatus.PENDING
    payload_ref: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 0
    updated_at: str = field(default_factory=utc_now)


@dataclass
class StageArtifact:
    """Durable output of one unit, keyed by (job_id, stage, unit_index)."""

    job_id: str
    stage: Stage
    unit_index: int
    data: Dict[str, Any] = field(default_factory=dict)
    blob_key: Optional[str] = None
    content_type: Optional[str] = None
    created_at: str = field(default_factory=utc_now)


@dataclass
class ArtifactPayload:
    """
    Unit output returned by a stage executor.

    The batch coordinator stores `blob` (when present) under a deterministic
    key and then records `data` as the unit's StageArtifact.

    Attributes:
        data: JSON-serializable artifact content.
        blob: Optional binary payload (page image, narration audio).
        content_type: MIME type of `blob`.
        extension: File extension used for the blob key.
    """

    data: Dict[str, Any]
    blob: Optional[bytes] = None
    content_type: Optional[str] = None
    extension: Optional[str] = None


@dataclass
class RasterizedPage:
    """PNG rendering of a single document page."""

    page_number: int
    image: bytes
    width: int
    height: int
    content_type: str = "image/png"


@dataclass
class Section:
    """
    Topic section of a document.

    Attributes:
        title: Section title.
        start_page: First page of the section (1-based, inclusive).
        end_page: Last page of the section (inclusive).
        summary: Short summary of the section content.
        key_points: Main ideas of the section.
    """

    title: str
    start_page: int
    end_page: int
    summary: str = ""
    key_points: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "start_page": self.start_page,
            "end_page": self.end_page,
            "summary": self.summary,
            "key_points": list(self.key_points),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Section":
        return cls(
            title=data["title"],
            start_page=int(data["start_page"]),
            end_page=int(data["end_page"]),
            summary=data.get("summary", ""),
            key_points=list(data.get("key_points", [])),
        )


@dataclass
class QuizQuestion:
    """Multiple choice question with exactly four choices."""

    question: str
    choices: List[str]
    correct_index: int
    explanation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "choices": list(self.choices),
            "correct_index": self.correct_index,
            "explanation": self.explanation,
        }


@dataclass
class VoiceParams:
    """Voice selection for speech synthesis."""

    language: str = "en"
    gender: str = "female"


@dataclass
class StageResult:
    """
    Outcome of running one stage of one job.

    Attributes:
        stage: Stage that was run.
        total_units: Number of enumerated units.
        completed_units: Units in DONE state after the run.
        failed_units: Indices of units in FAILED state after the run.
        fatal: Whether the stage failed under a fatal policy.
        error_message: Failure message when `fatal` is set.
        duration_seconds: Wall clock time of the run.
    """

    stage: Stage
    total_units: int = 0
    completed_units: int = 0
    failed_units: List[int] = field(default_factory=list)
    fatal: bool = False
    error_message: Optional[str] = None
    duration_seconds: float = 0.0


@dataclass
class JobStatusReport:
    """Polling view of a job, safe to hand to API consumers."""

    job_id: str
    status: JobStatus
    stage: Optional[Stage]
    progress_percent: float
    message: str
    error_message: Optional[str]
    total_units: int
    completed_units: int
    failed_units: List[Dict[str, Any]] = field(default_factory=list)
    eta_seconds: Optional[float] = None
    retry_of: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "stage": self.stage.value if self.stage else None,
            "progress_percent": self.progress_percent,
            "message": self.message,
            "error_message": self.error_message,
            "total_units": self.total_units,
            "completed_units": self.completed_units,
            "failed_units": list(self.failed_units),
            "eta_seconds": self.eta_seconds,
            "retry_of": self.retry_of,
            "updated_at": self.updated_at,
        }
