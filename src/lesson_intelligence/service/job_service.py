"""
Job service: the API surface of the lesson pipeline.

Submission stores the source document, creates a pending job and hands the
job to a background worker pool, returning the job ID immediately. Status,
result and retry requests read and write through the same database the
workers use, so any process sharing the database sees the same jobs.

Typical usage example:

    config = Config.load()
    with JobService.from_config(config) as service:
        job_id = service.submit_job("user-1", pdf_bytes, {"enrichment": "quiz"})
        report = service.wait_for(job_id, timeout=600)
        lesson = service.get_result(job_id)
"""

import copy
import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from ..capabilities.pdf_rasterizer import PyMuPDFRasterizer, RasterConfig
from ..capabilities.retry import RetryPolicy
from ..database.database_manager import DatabaseManager
from ..llm.llm_gateway import LLMConfig, LLMGateway
from ..models.data_structures import (
    Job,
    JobOptions,
    JobStatus,
    JobStatusReport,
    UnitStatus,
)
from ..orchestration.batch_coordinator import BatchCoordinator, stage_settings_from_config
from ..orchestration.pipeline_orchestrator import PipelineOrchestrator
from ..orchestration.progress_tracker import ProgressTracker
from ..orchestration.stage_executors import build_executors
from ..storage.blob_store import BlobStore, LocalBlobStore, document_key
from ..utils.config_loader import SystemConfig
from ..utils.error_handlers import ConfigurationError, JobNotFoundError, JobStateError
from ..utils.file_utils import generate_unique_id

logger = logging.getLogger(__name__)

DEFAULT_SIGNING_SECRET_ENV = "LESSON_BLOB_SECRET"


class JobService:
    """
    Submits, runs and reports on lesson jobs.

    Attributes:
        db: Row store shared with the pipeline workers.
        blob_store: Store for source documents and binary artifacts.
        orchestrator: Runs jobs end to end.
        url_ttl_seconds: Lifetime of signed URLs handed out with results.
    """

    def __init__(
        self,
        db: DatabaseManager,
        blob_store: BlobStore,
        orchestrator: PipelineOrchestrator,
        max_workers: int = 2,
        url_ttl_seconds: int = 3600,
        resources: Optional[List[Any]] = None,
    ) -> None:
        self.db = db
        self.blob_store = blob_store
        self.orchestrator = orchestrator
        self.url_ttl_seconds = url_ttl_seconds

        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job")
        self._futures: Dict[str, Future] = {}
        self._futures_lock = threading.Lock()
        self._resources = list(resources or [])

    @classmethod
    def from_config(cls, config: SystemConfig) -> "JobService":
        """
        Build the full service stack from configuration.

        Raises:
            ConfigurationError: If the blob signing secret or a provider API
                key is missing from the environment.
        """
        secret_env = config.storage.get("signing_secret_env", DEFAULT_SIGNING_SECRET_ENV)
        secret = os.getenv(secret_env, "").strip()
        if not secret:
            raise ConfigurationError(
                f"Blob signing secret not found: {secret_env}",
                config_key="storage.signing_secret_env",
            )

        db = DatabaseManager(config.database["path"])
        blob_store = LocalBlobStore(
            config.paths["blob_dir"],
            signing_secret=secret,
            base_url=config.storage.get("base_url", "/blobs"),
        )
        rasterizer = PyMuPDFRasterizer(RasterConfig.from_dict(config.rasterization))
        gateway = LLMGateway(LLMConfig.from_dict(config.llm, speech=config.speech))

        url_ttl_seconds = int(config.storage.get("url_ttl_seconds", 3600))
        executor_options: Dict[str, Any] = {"url_ttl_seconds": url_ttl_seconds}
        executor_options.update(config.pipeline.get("structure") or {})
        executor_options.update(config.pipeline.get("enrichment") or {})

        executors = build_executors(
            db,
            blob_store,
            rasterizer=rasterizer,
            transcriber=gateway,
            generator=gateway,
            synthesizer=gateway,
            retry_policy=RetryPolicy.from_dict(config.pipeline.get("retry")),
            options=executor_options,
        )
        tracker = ProgressTracker(db)
        coordinator = BatchCoordinator(
            db,
            blob_store,
            executors,
            tracker,
            stage_settings=stage_settings_from_config(config.pipeline.get("stages")),
        )
        orchestrator = PipelineOrchestrator(
            db,
            coordinator,
            tracker,
            lease_ttl_seconds=int(config.pipeline.get("lease_ttl_seconds", 1800)),
        )
        return cls(
            db,
            blob_store,
            orchestrator,
            max_workers=int(config.pipeline.get("job_workers", 2)),
            url_ttl_seconds=url_ttl_seconds,
            resources=[gateway],
        )

    # ------------------------------------------------------------------
    # Submission and execution
    # ------------------------------------------------------------------

    def submit_job(
        self,
        user_id: str,
        document: Union[bytes, Sequence[bytes]],
        options: Optional[Union[JobOptions, Dict[str, Any]]] = None,
        run_async: bool = True,
        document_id: Optional[str] = None,
    ) -> str:
        """
        Store one or more documents and create a pending job for them.

        Args:
            user_id: Owner of the job.
            document: PDF bytes, or a sequence of PDFs processed in order as
                one lesson with continuous page numbering.
            options: JobOptions or a dict accepted by JobOptions.from_dict.
            run_async: Schedule the job on the worker pool (default) instead
                of running it before returning.
            document_id: Name of the stored document; defaults to the job ID.
                Documents of a multi-document job get a '-<n>' suffix.

        Returns:
            The new job ID.

        Raises:
            ValueError: If the user ID or a document is empty, or the
                options are invalid.
        """
        if not user_id:
            raise ValueError("user_id is required")
        documents = [document] if isinstance(document, (bytes, bytearray)) else list(document)
        if not documents:
            raise ValueError("At least one document is required")
        for number, data in enumerate(documents, start=1):
            if not data:
                raise ValueError(f"Document {number} is empty")
        if not isinstance(options, JobOptions):
            options = JobOptions.from_dict(options)

        job_id = generate_unique_id("JOB")
        base_id = document_id or job_id
        keys = []
        for number, data in enumerate(documents, start=1):
            name = base_id if len(documents) == 1 else f"{base_id}-{number}"
            key = document_key(user_id, name)
            self.blob_store.put(key, bytes(data), "application/pdf")
            keys.append(key)

        self.db.create_job(
            Job(
                job_id=job_id,
                user_id=user_id,
                document_keys=keys,
                options=options,
                message="Queued",
            )
        )
        logger.info(
            f"Submitted job {job_id} for user {user_id} "
            f"({len(keys)} document(s), {sum(len(d) for d in documents)} bytes)",
            extra={"job_id": job_id},
        )

        if run_async:
            self.schedule(job_id)
        else:
            self.run_job_sync(job_id)
        return job_id

    def schedule(self, job_id: str) -> Future:
        """Run a job on the worker pool; an already scheduled run is reused."""
        with self._futures_lock:
            future = self._futures.get(job_id)
            if future is not None and not future.done():
                return future
            future = self._pool.submit(self._run_safely, job_id)
            self._futures[job_id] = future
        future.add_done_callback(lambda f: self._forget(job_id, f))
        return future

    def _forget(self, job_id: str, future: Future) -> None:
        with self._futures_lock:
            if self._futures.get(job_id) is future:
                del self._futures[job_id]

    def _run_safely(self, job_id: str) -> Optional[Job]:
        try:
            return self.orchestrator.run_job(job_id)
        except Exception as e:
            logger.exception(
                f"Background run of job {job_id} failed: {e}", extra={"job_id": job_id}
            )
            return None
        finally:
            # Worker threads keep their own SQLite connection
            self.db.close()

    def run_job_sync(self, job_id: str) -> Job:
        """Run a job in the calling thread until it settles."""
        return self.orchestrator.run_job(job_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _visible_job(self, job_id: str, user_id: Optional[str]) -> Job:
        job = self.db.get_job(job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise JobNotFoundError(job_id)
        return job

    def get_status(self, job_id: str, user_id: Optional[str] = None) -> JobStatusReport:
        """
        Polling view of a job.

        Raises:
            JobNotFoundError: If the job does not exist or belongs to
                another user.
        """
        job = self._visible_job(job_id, user_id)
        failed_units = [
            {
                "stage": unit.stage.value,
                "unit_index": unit.unit_index,
                "error": unit.error_message,
            }
            for unit in self.db.get_units(job_id)
            if unit.status == UnitStatus.FAILED
        ]
        return JobStatusReport(
            job_id=job.job_id,
            status=job.status,
            stage=job.current_stage,
            progress_percent=job.progress_percent,
            message=job.message,
            error_message=job.error_message,
            total_units=job.total_units,
            completed_units=job.completed_units,
            failed_units=failed_units,
            eta_seconds=job.eta_seconds,
            retry_of=job.retry_of,
            updated_at=job.updated_at,
        )

    def get_result(self, job_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Assembled lesson record of a ready job, with fresh signed URLs.

        Raises:
            JobNotFoundError: If the job is not visible.
            JobStateError: If the job is not ready.
        """
        job = self._visible_job(job_id, user_id)
        if job.status != JobStatus.READY or job.result is None:
            raise JobStateError(
                f"Job {job_id} is {job.status.value}; no result available",
                job_id=job_id,
                current_status=job.status.value,
            )

        result = copy.deepcopy(job.result)
        for page in result.get("pages", []):
            if page.get("image_key"):
                page["image_url"] = self.blob_store.signed_url(
                    page["image_key"], self.url_ttl_seconds
                )
        for section in result.get("sections", []):
            if section.get("audio_key"):
                section["audio_url"] = self.blob_store.signed_url(
                    section["audio_key"], self.url_ttl_seconds
                )
        return result

    def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
    ) -> List[Job]:
        return self.db.list_jobs(user_id=user_id, status=status, limit=limit)

    def wait_for(
        self,
        job_id: str,
        timeout: Optional[float] = None,
        poll_interval: float = 0.5,
        on_update: Optional[Callable[[JobStatusReport], None]] = None,
    ) -> JobStatusReport:
        """
        Poll a job until it is ready or errored.

        Raises:
            TimeoutError: If the job has not settled within `timeout` seconds.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            report = self.get_status(job_id)
            if on_update is not None:
                on_update(report)
            if report.status.is_terminal:
                return report
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"Job {job_id} did not finish within {timeout}s")
            time.sleep(poll_interval)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def retry_job(
        self, job_id: str, user_id: Optional[str] = None, run_async: bool = True
    ) -> str:
        """
        Retry a job.

        A pending or running job is scheduled again and resumes where it
        stopped. An errored job is left as is and a new job, seeded with its
        completed units and artifacts, is created and scheduled.

        Returns:
            ID of the job that will run.

        Raises:
            JobNotFoundError: If the job is not visible.
            JobStateError: If the job is already ready.
        """
        job = self._visible_job(job_id, user_id)
        if job.status == JobStatus.READY:
            raise JobStateError(
                f"Job {job_id} is ready; nothing to retry",
                job_id=job_id,
                current_status=job.status.value,
            )

        target_id = job_id
        if job.status == JobStatus.ERROR:
            target_id = generate_unique_id("JOB")
            with self.db.transaction():
                self.db.create_job(
                    Job(
                        job_id=target_id,
                        user_id=job.user_id,
                        document_keys=list(job.document_keys),
                        options=job.options,
                        message=f"Retry of {job_id}",
                        retry_of=job_id,
                    )
                )
                reused = self.db.clone_job_state(job_id, target_id)
            logger.info(
                f"Job {target_id} retries {job_id}, reusing {reused} completed units",
                extra={"job_id": target_id},
            )

        if run_async:
            self.schedule(target_id)
        else:
            self.run_job_sync(target_id)
        return target_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        for resource in self._resources:
            close = getattr(resource, "close", None)
            if callable(close):
                close()
        self.db.close()

    def __enter__(self) -> "JobService":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.shutdown()
