"""
Lesson Intelligence System

Turns PDF course documents into structured lessons: page images, page
transcripts, topic sections and per-section quizzes or narrations.
"""

__version__ = "0.1.0"
__author__ = "Lesson Intelligence Team"

# Core exports
from .service import JobService
from .orchestration import PipelineOrchestrator
from .database import DatabaseManager
from .models import Job, JobOptions, JobStatus, Stage

__all__ = [
    "JobService",
    "PipelineOrchestrator",
    "DatabaseManager",
    "Job",
    "JobOptions",
    "JobStatus",
    "Stage",
    "__version__",
]
