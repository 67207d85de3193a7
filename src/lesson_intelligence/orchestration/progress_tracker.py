"""
Progress tracking for pipeline jobs.

The ProgressTracker is the only component that writes a job's status and
progress fields while the job runs. Each write is a read-modify-write of the
job row performed under a per-job lock and an immediate SQLite transaction,
so concurrent writers for the same job are serialized and the stored
percentage can only grow.

Classes:
    ProgressTracker: Single writer of job progress and status.
"""

import logging
from typing import Any, Dict, Optional

from ..database.database_manager import DatabaseManager
from ..models.data_structures import (
    PIPELINE_STAGES,
    STAGE_WEIGHTS,
    JobStatus,
    Stage,
)
from ..utils.error_handlers import JobNotFoundError, JobStateError
from .job_locks import JobLocks

logger = logging.getLogger(__name__)


class ProgressTracker:
    """
    Serialized writer of job progress.

    Attributes:
        db: Row store holding the job records.
        stage_weights: Share of overall progress per stage (sums to 100).
    """

    def __init__(
        self,
        db: DatabaseManager,
        stage_weights: Optional[Dict[Stage, int]] = None,
    ) -> None:
        self.db = db
        self.stage_weights = dict(stage_weights or STAGE_WEIGHTS)
        self._locks = JobLocks()

    def compute_percent(self, stage: Stage, completed: int, total: int) -> float:
        """
        Overall percentage after `completed` of `total` units of `stage`.

        Weights of all earlier stages count in full; a stage with no units
        counts as complete.
        """
        earlier = sum(
            self.stage_weights[s]
            for s in PIPELINE_STAGES[: PIPELINE_STAGES.index(stage)]
        )
        fraction = 1.0 if total <= 0 else min(max(completed, 0), total) / total
        return round(min(earlier + self.stage_weights[stage] * fraction, 100.0), 2)

    def update_progress(
        self,
        job_id: str,
        stage: Stage,
        completed: int,
        total: int,
        message: str = "",
        eta_seconds: Optional[float] = None,
    ) -> float:
        """
        Record progress within a stage.

        Writes against a terminal job are ignored.

        Args:
            eta_seconds: Estimated time left in the current stage, or None
                when no estimate is available yet.

        Returns:
            The stored progress percentage after the update.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        with self._locks.hold(job_id):
            with self.db.transaction():
                job = self.db.get_job(job_id)
                if job is None:
                    raise JobNotFoundError(job_id)
                if job.is_terminal:
                    logger.debug(
                        f"Ignoring progress update for terminal job {job_id}",
                        extra={"job_id": job_id, "stage": stage.value},
                    )
                    return job.progress_percent

                percent = max(
                    job.progress_percent, self.compute_percent(stage, completed, total)
                )
                eta = None if eta_seconds is None else round(max(eta_seconds, 0.0), 1)
                self.db.update_job(
                    job_id,
                    current_stage=stage,
                    progress_percent=percent,
                    total_units=total,
                    completed_units=completed,
                    message=message,
                    eta_seconds=eta,
                )
                return percent

    def begin_stage(
        self, job_id: str, stage: Stage, total: int, message: str, completed: int = 0
    ) -> float:
        """Record entry into a stage whose units may already be partly settled."""
        logger.info(
            f"Job {job_id}: entering stage {stage.value} ({total} units)",
            extra={"job_id": job_id, "stage": stage.value},
        )
        return self.update_progress(job_id, stage, completed, total, message)

    def complete_stage(self, job_id: str, stage: Stage) -> None:
        """
        Record that a stage's durable state is complete.

        Raises:
            DatabaseError: If the job does not exist.
        """
        with self._locks.hold(job_id):
            self.db.mark_stage_complete(job_id, stage)
        logger.debug(
            f"Job {job_id}: stage {stage.value} complete",
            extra={"job_id": job_id, "stage": stage.value},
        )

    def set_status(
        self,
        job_id: str,
        status: JobStatus,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Change a job's lifecycle status.

        Setting the current terminal status again is a no-op. READY sets the
        progress to 100.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobStateError: If the job is terminal and a different status, or
                a non-terminal status, is requested.
        """
        with self._locks.hold(job_id):
            with self.db.transaction():
                job = self.db.get_job(job_id)
                if job is None:
                    raise JobNotFoundError(job_id)

                if job.is_terminal:
                    if job.status == status:
                        logger.debug(
                            f"Job {job_id} already {status.value}",
                            extra={"job_id": job_id},
                        )
                        return
                    raise JobStateError(
                        f"Job {job_id} is {job.status.value}; "
                        f"cannot change status to {status.value}",
                        job_id=job_id,
                        current_status=job.status.value,
                        requested_status=status.value,
                    )

                fields: Dict[str, Any] = {"status": status}
                if status.is_terminal:
                    fields["eta_seconds"] = None
                if message is not None:
                    fields["message"] = message
                if error is not None:
                    fields["error_message"] = error
                if status == JobStatus.READY:
                    fields["progress_percent"] = 100.0
                    fields["completed_units"] = job.total_units
                self.db.update_job(job_id, **fields)

        log = logger.error if status == JobStatus.ERROR else logger.info
        log(
            f"Job {job_id} status -> {status.value}"
            + (f": {error}" if error else ""),
            extra={"job_id": job_id},
        )

    def record_result(self, job_id: str, result: Dict[str, Any]) -> None:
        """
        Attach the assembled lesson record to a running job.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobStateError: If the job is already terminal.
        """
        with self._locks.hold(job_id):
            with self.db.transaction():
                job = self.db.get_job(job_id)
                if job is None:
                    raise JobNotFoundError(job_id)
                if job.is_terminal:
                    raise JobStateError(
                        f"Job {job_id} is {job.status.value}; result is immutable",
                        job_id=job_id,
                        current_status=job.status.value,
                    )
                self.db.update_job(job_id, result=result)
