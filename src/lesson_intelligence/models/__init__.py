"""Data models for lesson intelligence system."""

from .data_structures import (
    PIPELINE_STAGES,
    STAGE_FAILURE_POLICY,
    STAGE_WEIGHTS,
    ArtifactPayload,
    EnrichmentType,
    FailurePolicy,
    Job,
    JobOptions,
    JobStatus,
    JobStatusReport,
    QuizQuestion,
    RasterizedPage,
    Section,
    Stage,
    StageArtifact,
    StageResult,
    Unit,
    UnitStatus,
    VoiceParams,
)

__all__ = [
    "PIPELINE_STAGES",
    "STAGE_FAILURE_POLICY",
    "STAGE_WEIGHTS",
    "ArtifactPayload",
    "EnrichmentType",
    "FailurePolicy",
    "Job",
    "JobOptions",
    "JobStatus",
    "JobStatusReport",
    "QuizQuestion",
    "RasterizedPage",
    "Section",
    "Stage",
    "StageArtifact",
    "StageResult",
    "Unit",
    "UnitStatus",
    "VoiceParams",
]
