"""
Batch coordinator.

Runs the units of one stage of one job: units are processed in sequential
batches, and the units of a batch run in parallel on a bounded thread pool.
Each settled unit is persisted (blob first, then artifact and unit status in
one transaction) and reported to the progress tracker, together with an
estimate of the time left in the stage, before the next one is collected.

Classes:
    StageSettings: Batch size and concurrency cap of a stage.
    UnitOutcome: Result of executing one unit.
    BatchCoordinator: Runs a stage to completion.

Functions:
    estimate_remaining_seconds: Time left in a stage from its settle rate.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..database.database_manager import DatabaseManager
from ..models.data_structures import (
    PIPELINE_STAGES,
    ArtifactPayload,
    FailurePolicy,
    Job,
    Stage,
    StageArtifact,
    StageResult,
    UnitStatus,
)
from ..storage.blob_store import BlobStore, artifact_key
from ..utils.error_handlers import (
    ConfigurationError,
    DatabaseError,
    FatalStageError,
    PipelineError,
    is_retriable_error,
    log_error_with_context,
)
from .progress_tracker import ProgressTracker
from .stage_executors import StageExecutor

logger = logging.getLogger(__name__)

# Errors that stop a job no matter which stage raised them.
ALWAYS_FATAL_ERRORS = (ConfigurationError, FatalStageError, DatabaseError)


@dataclass(frozen=True)
class StageSettings:
    """
    Execution settings of a stage.

    Attributes:
        batch_size: Units per batch; batches run one after another.
        max_concurrency: Maximum units of a batch running at the same time.
    """

    batch_size: int = 5
    max_concurrency: int = 5

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_concurrency < 1:
            raise ValueError(
                f"max_concurrency must be >= 1, got {self.max_concurrency}"
            )

    @classmethod
    def from_dict(
        cls, data: Optional[Dict[str, Any]], default: Optional["StageSettings"] = None
    ) -> "StageSettings":
        base = default or cls()
        data = data or {}
        return cls(
            batch_size=int(data.get("batch_size", base.batch_size)),
            max_concurrency=int(data.get("max_concurrency", base.max_concurrency)),
        )


DEFAULT_STAGE_SETTINGS: Dict[Stage, StageSettings] = {
    Stage.INGEST: StageSettings(batch_size=10, max_concurrency=4),
    Stage.TRANSCRIBE: StageSettings(batch_size=5, max_concurrency=5),
    Stage.STRUCTURE: StageSettings(batch_size=1, max_concurrency=1),
    Stage.ENRICH: StageSettings(batch_size=5, max_concurrency=5),
    Stage.ASSEMBLE: StageSettings(batch_size=1, max_concurrency=1),
}


def estimate_remaining_seconds(
    elapsed_seconds: float, settled: int, remaining: int
) -> Optional[float]:
    """
    Time left for `remaining` units at the rate observed so far.

    Returns None until at least one unit has settled in the current run.
    """
    if settled < 1:
        return None
    if remaining <= 0:
        return 0.0
    return elapsed_seconds / settled * remaining


def stage_settings_from_config(
    stages_config: Optional[Dict[str, Any]],
) -> Dict[Stage, StageSettings]:
    """Build per-stage settings from the 'pipeline.stages' config section."""
    stages_config = stages_config or {}
    return {
        stage: StageSettings.from_dict(
            stages_config.get(stage.value), DEFAULT_STAGE_SETTINGS[stage]
        )
        for stage in PIPELINE_STAGES
    }


@dataclass
class UnitOutcome:
    """Settlement of one unit execution."""

    unit_index: int
    succeeded: bool
    error: Optional[str] = None
    fatal: bool = False


class BatchCoordinator:
    """
    Runs the units of a stage in bounded parallel batches.

    Attributes:
        db: Row store for units and artifacts.
        blob_store: Store for binary unit payloads.
        executors: Stage executor per stage.
        progress_tracker: Single writer of job progress.
        stage_settings: Batch size and concurrency cap per stage.
    """

    def __init__(
        self,
        db: DatabaseManager,
        blob_store: BlobStore,
        executors: Dict[Stage, StageExecutor],
        progress_tracker: ProgressTracker,
        stage_settings: Optional[Dict[Stage, StageSettings]] = None,
    ) -> None:
        self.db = db
        self.blob_store = blob_store
        self.executors = executors
        self.progress_tracker = progress_tracker
        self.stage_settings = dict(DEFAULT_STAGE_SETTINGS)
        if stage_settings:
            self.stage_settings.update(stage_settings)

    def run_stage(
        self,
        job: Job,
        stage: Stage,
        heartbeat: Optional[Callable[[], None]] = None,
    ) -> StageResult:
        """
        Execute every unsettled unit of `stage` for `job`.

        Done units are skipped, failed units are attempted again. Under the
        fatal policy the first failed unit stops the stage after its batch.

        Args:
            job: Job being processed.
            stage: Stage to run.
            heartbeat: Optional callback invoked after each settled unit.

        Returns:
            StageResult describing the settled units.
        """
        start = time.monotonic()
        executor = self.executors[stage]
        settings = self.stage_settings[stage]

        try:
            indices = executor.enumerate_units(job)
        except PipelineError as e:
            log_error_with_context(
                e, logger, {"job_id": job.job_id, "stage": stage.value, "step": "enumerate"}
            )
            return StageResult(
                stage=stage,
                fatal=True,
                error_message=f"{executor.progress_label(job)} failed: {e.message}",
                duration_seconds=time.monotonic() - start,
            )

        self.db.ensure_units(job.job_id, stage, indices)
        retried = self.db.reset_failed_units(job.job_id, stage)
        if retried:
            logger.info(
                f"Job {job.job_id}: retrying {retried} failed {stage.value} units",
                extra={"job_id": job.job_id, "stage": stage.value},
            )

        wanted = set(indices)
        units = [u for u in self.db.get_units(job.job_id, stage) if u.unit_index in wanted]
        pending = [u.unit_index for u in units if u.status != UnitStatus.DONE]
        total = len(indices)
        completed = total - len(pending)
        failed = 0
        label = executor.progress_label(job)

        self.progress_tracker.begin_stage(
            job.job_id, stage, total, f"{label} ({completed}/{total})", completed=completed
        )

        run_start = time.monotonic()
        settled_now = 0
        fatal_outcome: Optional[UnitOutcome] = None
        for offset in range(0, len(pending), settings.batch_size):
            batch = pending[offset : offset + settings.batch_size]
            workers = min(settings.max_concurrency, len(batch))

            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix=f"{stage.value}-unit"
            ) as pool:
                futures = {
                    pool.submit(self._run_unit_in_worker, executor, job, index): index
                    for index in batch
                }
                for future in as_completed(futures):
                    outcome = future.result()
                    settled_now += 1
                    if outcome.succeeded:
                        completed += 1
                    else:
                        failed += 1
                        if outcome.fatal and fatal_outcome is None:
                            fatal_outcome = outcome

                    message = f"{label} ({completed}/{total})"
                    if failed:
                        message += f", {failed} failed"
                    eta = estimate_remaining_seconds(
                        time.monotonic() - run_start,
                        settled_now,
                        total - completed - failed,
                    )
                    self.progress_tracker.update_progress(
                        job.job_id, stage, completed + failed, total, message, eta_seconds=eta
                    )
                    if heartbeat is not None:
                        heartbeat()

            if fatal_outcome is not None:
                break

        settled = self.db.get_units(job.job_id, stage)
        result = StageResult(
            stage=stage,
            total_units=total,
            completed_units=sum(
                1 for u in settled if u.unit_index in wanted and u.status == UnitStatus.DONE
            ),
            failed_units=[
                u.unit_index
                for u in settled
                if u.unit_index in wanted and u.status == UnitStatus.FAILED
            ],
            duration_seconds=time.monotonic() - start,
        )
        if fatal_outcome is not None:
            result.fatal = True
            result.error_message = (
                f"{label} failed at {executor.unit_label(fatal_outcome.unit_index)}: "
                f"{fatal_outcome.error}"
            )

        logger.info(
            f"Job {job.job_id}: stage {stage.value} settled "
            f"{result.completed_units}/{total} done, {len(result.failed_units)} failed "
            f"in {result.duration_seconds:.2f}s",
            extra={"job_id": job.job_id, "stage": stage.value},
        )
        return result

    def _run_unit_in_worker(
        self, executor: StageExecutor, job: Job, unit_index: int
    ) -> UnitOutcome:
        try:
            return self._run_unit(executor, job, unit_index)
        finally:
            # Pool threads are discarded after the batch
            self.db.close()

    def _run_unit(self, executor: StageExecutor, job: Job, unit_index: int) -> UnitOutcome:
        """Execute and persist one unit; capability failures settle it as failed."""
        stage = executor.stage
        try:
            payload = executor.execute_unit(job, unit_index)
            self._persist(job, stage, unit_index, payload)
            return UnitOutcome(unit_index=unit_index, succeeded=True)
        except Exception as e:
            if not isinstance(e, PipelineError) and not is_retriable_error(e):
                raise
            error = e.message if isinstance(e, PipelineError) else f"{type(e).__name__}: {e}"
            fatal = executor.failure_policy == FailurePolicy.FATAL or isinstance(
                e, ALWAYS_FATAL_ERRORS
            )
            log_error_with_context(
                e,
                logger,
                {
                    "job_id": job.job_id,
                    "stage": stage.value,
                    "unit": executor.unit_label(unit_index),
                    "fatal": fatal,
                },
            )

        self.db.fail_unit(job.job_id, stage, unit_index, error)
        return UnitOutcome(unit_index=unit_index, succeeded=False, error=error, fatal=fatal)

    def _persist(
        self, job: Job, stage: Stage, unit_index: int, payload: ArtifactPayload
    ) -> None:
        blob_key = None
        if payload.blob is not None:
            blob_key = artifact_key(
                job.job_id, stage, unit_index, payload.extension or "bin"
            )
            self.blob_store.put(
                blob_key, payload.blob, payload.content_type or "application/octet-stream"
            )

        self.db.complete_unit(
            StageArtifact(
                job_id=job.job_id,
                stage=stage,
                unit_index=unit_index,
                data=payload.data,
                blob_key=blob_key,
                content_type=payload.content_type,
            )
        )
