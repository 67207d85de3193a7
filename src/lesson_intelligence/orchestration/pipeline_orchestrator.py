"""
Pipeline Orchestrator Module

Drives a job through the ordered stages, applies the stage failure policy
and settles the job in a terminal status. All durable state lives in the
database, so a job interrupted at any point resumes from its first
incomplete stage and never re-executes a finished unit.

Classes:
    PipelineOrchestrator: Runs jobs end to end.
"""

import logging
from typing import List, Optional

from ..database.database_manager import DatabaseManager
from ..models.data_structures import (
    PIPELINE_STAGES,
    Job,
    JobStatus,
    Stage,
    UnitStatus,
)
from ..utils.error_handlers import JobNotFoundError, PipelineError
from ..utils.file_utils import generate_unique_id
from .batch_coordinator import BatchCoordinator
from .job_locks import JobLocks
from .progress_tracker import ProgressTracker

logger: logging.Logger = logging.getLogger(__name__)


class OrchestratorConfig:
    """Configuration constants for the pipeline orchestrator."""

    DEFAULT_LEASE_TTL_SECONDS: int = 1800


class PipelineOrchestrator:
    """
    Runs jobs through Ingest, Transcribe, Structure, Enrich and Assemble.

    Only one runner works on a job at a time: runners in this process
    serialize on a per-job lock, and runners in other processes are kept out
    by a lease stored on the job row.

    Attributes:
        db: Row store for jobs, units and artifacts.
        coordinator: Executes the units of a stage.
        progress_tracker: Single writer of job status and progress.
        stages: Ordered stages to run.
        lease_ttl_seconds: Lifetime of the job lease between heartbeats.
        owner_id: Identity of this runner in job leases.
    """

    def __init__(
        self,
        db: DatabaseManager,
        coordinator: BatchCoordinator,
        progress_tracker: ProgressTracker,
        stages: Optional[List[Stage]] = None,
        lease_ttl_seconds: int = OrchestratorConfig.DEFAULT_LEASE_TTL_SECONDS,
        owner_id: Optional[str] = None,
    ) -> None:
        self.db = db
        self.coordinator = coordinator
        self.progress_tracker = progress_tracker
        self.stages = list(stages or PIPELINE_STAGES)
        self.lease_ttl_seconds = lease_ttl_seconds
        self.owner_id = owner_id or generate_unique_id("RUNNER")

        self._run_locks = JobLocks()

        logger.info(f"PipelineOrchestrator initialized (runner {self.owner_id})")

    def _load(self, job_id: str) -> Job:
        job = self.db.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def run_job(self, job_id: str) -> Job:
        """
        Run a job until it is ready or errored.

        Terminal jobs are returned untouched. When another runner holds the
        job's lease the call returns the job as it currently is.

        Args:
            job_id: Job to run.

        Returns:
            The job as stored after the run.

        Raises:
            JobNotFoundError: If the job does not exist.
            Exception: Unexpected failures are re-raised after the job is
                moved to error.
        """
        job = self._load(job_id)
        if job.is_terminal:
            return job

        with self._run_locks.hold(job_id):
            job = self._load(job_id)
            if job.is_terminal:
                return job

            if not self.db.acquire_lease(job_id, self.owner_id, self.lease_ttl_seconds):
                logger.info(
                    f"Job {job_id} is leased by another runner, skipping",
                    extra={"job_id": job_id},
                )
                return job

            try:
                self._run_stages(job_id)
            except Exception as e:
                logger.exception(
                    f"Unexpected failure while processing job {job_id}: {e}",
                    extra={"job_id": job_id},
                )
                try:
                    self.progress_tracker.set_status(
                        job_id,
                        JobStatus.ERROR,
                        message="Processing failed unexpectedly",
                        error=f"{type(e).__name__}: {e}",
                    )
                except PipelineError as status_error:
                    logger.error(
                        f"Could not mark job {job_id} as errored: {status_error}",
                        extra={"job_id": job_id},
                    )
                raise
            finally:
                self.db.release_lease(job_id, self.owner_id)

        return self._load(job_id)

    def _run_stages(self, job_id: str) -> None:
        self.progress_tracker.set_status(job_id, JobStatus.RUNNING, message="Processing")

        for stage in self.stages:
            job = self._load(job_id)
            if self._stage_complete(job, stage):
                logger.debug(
                    f"Job {job_id}: stage {stage.value} already complete",
                    extra={"job_id": job_id, "stage": stage.value},
                )
                self.progress_tracker.complete_stage(job_id, stage)
                continue

            result = self.coordinator.run_stage(
                job, stage, heartbeat=lambda: self._heartbeat(job_id)
            )
            if result.fatal:
                self.progress_tracker.set_status(
                    job_id,
                    JobStatus.ERROR,
                    message=f"Failed during {stage.value}",
                    error=result.error_message,
                )
                return

            self.progress_tracker.complete_stage(job_id, stage)

        self._finish(job_id)

    def _stage_complete(self, job: Job, stage: Stage) -> bool:
        """A stage is complete once recorded, or once all of its units are done."""
        if stage in job.completed_stages:
            return True
        units = self.db.get_units(job.job_id, stage)
        return bool(units) and all(u.status == UnitStatus.DONE for u in units)

    def _finish(self, job_id: str) -> None:
        artifact = None
        if Stage.ASSEMBLE in self.stages:
            artifact = self.db.get_artifact(job_id, Stage.ASSEMBLE, 1)
            if artifact is None:
                self.progress_tracker.set_status(
                    job_id,
                    JobStatus.ERROR,
                    message="Failed during assemble",
                    error="Assembled lesson record is missing",
                )
                return
            self.progress_tracker.record_result(job_id, artifact.data)

        gaps = len(artifact.data.get("gaps", [])) if artifact else 0
        message = "Lesson ready"
        if gaps:
            message += f" ({gaps} parts could not be generated)"
        self.progress_tracker.set_status(job_id, JobStatus.READY, message=message)

    def _heartbeat(self, job_id: str) -> None:
        if not self.db.renew_lease(job_id, self.owner_id, self.lease_ttl_seconds):
            logger.warning(
                f"Runner {self.owner_id} lost the lease on job {job_id}",
                extra={"job_id": job_id},
            )
