"""
Orchestration module for the lesson pipeline.
"""

from .pipeline_orchestrator import PipelineOrchestrator
from .batch_coordinator import BatchCoordinator, StageSettings, UnitOutcome
from .progress_tracker import ProgressTracker
from .stage_executors import (
    StageExecutor,
    IngestExecutor,
    TranscribeExecutor,
    StructureExecutor,
    EnrichExecutor,
    AssembleExecutor,
    build_executors,
)


__all__ = [
    # Pipeline Orchestrator
    "PipelineOrchestrator",
    # Batch Coordinator
    "BatchCoordinator",
    "StageSettings",
    "UnitOutcome",
    # Progress Tracker
    "ProgressTracker",
    # Stage Executors
    "StageExecutor",
    "IngestExecutor",
    "TranscribeExecutor",
    "StructureExecutor",
    "EnrichExecutor",
    "AssembleExecutor",
    "build_executors",
]
