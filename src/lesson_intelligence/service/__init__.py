"""Job submission, polling and retry API."""

from .job_service import JobService

__all__ = ["JobService"]
