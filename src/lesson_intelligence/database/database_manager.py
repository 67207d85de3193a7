"""
Database manager for the Lesson Intelligence System.

This module provides the row store of the pipeline: jobs, per-stage units and
stage artifacts. Every write is an upsert keyed by the natural key of the row,
so re-running a unit or a whole job never creates duplicates.

The DatabaseManager uses SQLite with Write-Ahead Logging (WAL) mode for improved
concurrency. Thread safety is ensured via thread-local connections, and write
transactions take the database write lock up front (BEGIN IMMEDIATE) so that
read-modify-write sequences are serialized across threads and processes.

Classes:
    DatabaseManager: Main database operations manager.

Typical usage example:
    with DatabaseManager(db_path="./data/lessons.db") as db:
        db.create_job(job)
        db.ensure_units(job.job_id, Stage.INGEST, [1, 2, 3])
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..models.data_structures import (
    Job,
    JobOptions,
    JobStatus,
    Stage,
    StageArtifact,
    Unit,
    UnitStatus,
    utc_now,
)
from ..utils.error_handlers import DatabaseError

logger = logging.getLogger(__name__)


# Constants
DEFAULT_CONNECTION_TIMEOUT: float = 30.0
DEFAULT_LIST_LIMIT: int = 50

# Job columns that update_job may write, with their serializers
_JOB_FIELD_SERIALIZERS = {
    "status": lambda v: v.value,
    "current_stage": lambda v: v.value if v is not None else None,
    "progress_percent": float,
    "message": str,
    "error_message": lambda v: v,
    "total_units": int,
    "completed_units": int,
    "eta_seconds": lambda v: float(v) if v is not None else None,
    "completed_stages": lambda v: json.dumps([s.value for s in v]),
    "result": lambda v: json.dumps(v) if v is not None else None,
}


class DatabaseManager:
    """
    Manages all database operations for the Lesson Intelligence System.

    Thread Safety:
        This implementation uses thread-local storage for SQLite connections.
        Each worker thread maintains its own connection; WAL mode lets readers
        proceed while a writer holds the lock.

    Context Manager:
        DatabaseManager implements the context manager protocol:

            with DatabaseManager(db_path) as db:
                db.create_job(job)

    Attributes:
        db_path: Path to the SQLite database file.
        schema_path: Path to the SQL schema definition file.

    Raises:
        DatabaseError: For all database operation failures.
    """

    _SQL_INSERT_JOB = """
        INSERT INTO jobs (
            job_id, user_id, document_keys, options, status, current_stage,
            progress_percent, message, error_message, total_units,
            completed_units, completed_stages, result, retry_of,
            created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """

    _SQL_UPSERT_ARTIFACT = """
        INSERT INTO artifacts (
            job_id, stage, unit_index, data, blob_key, content_type, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (job_id, stage, unit_index) DO UPDATE SET
            data = excluded.data,
            blob_key = excluded.blob_key,
            content_type = excluded.content_type,
            created_at = excluded.created_at
    """

    _SQL_COMPLETE_UNIT = """
        INSERT INTO units (
            job_id, stage, unit_index, status, payload_ref, error_message,
            attempts, updated_at
        ) VALUES (?, ?, ?, 'done', ?, NULL, 1, ?)
        ON CONFLICT (job_id, stage, unit_index) DO UPDATE SET
            status = 'done',
            payload_ref = excluded.payload_ref,
            error_message = NULL,
            attempts = units.attempts + 1,
            updated_at = excluded.updated_at
        WHERE units.status != 'done'
    """

    _SQL_FAIL_UNIT = """
        INSERT INTO units (
            job_id, stage, unit_index, status, error_message, attempts, updated_at
        ) VALUES (?, ?, ?, 'failed', ?, 1, ?)
        ON CONFLICT (job_id, stage, unit_index) DO UPDATE SET
            status = 'failed',
            error_message = excluded.error_message,
            attempts = units.attempts + 1,
            updated_at = excluded.updated_at
        WHERE units.status != 'done'
    """

    def __init__(self, db_path: str, schema_path: Optional[str] = None) -> None:
        """
        Initialize database manager and create the schema.

        Args:
            db_path: Path to SQLite database file. Parent directories will be
                created if they don't exist.
            schema_path: Optional path to schema SQL file. Defaults to
                schema.sql next to this module.

        Raises:
            DatabaseError: If connection or schema creation fails.
        """
        self.db_path: str = db_path
        self.schema_path: str = schema_path or str(Path(__file__).parent / "schema.sql")

        self._local: threading.local = threading.local()
        self._lock: threading.Lock = threading.Lock()

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.initialize_database()

    def __enter__(self) -> "DatabaseManager":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - closes connection for current thread."""
        self.close()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get or create thread-local database connection.

        Connections run in autocommit mode; multi-statement writes use
        explicit transactions via _transaction().

        Raises:
            DatabaseError: If connection cannot be established.
        """
        if getattr(self._local, "connection", None) is None:
            try:
                conn = sqlite3.connect(
                    self.db_path,
                    timeout=DEFAULT_CONNECTION_TIMEOUT,
                    check_same_thread=True,
                    isolation_level=None,
                )
                conn.execute("PRAGMA foreign_keys = ON")

                mode = conn.execute("PRAGMA journal_mode = WAL").fetchone()[0]
                if mode.upper() != "WAL":
                    logger.warning(f"Failed to enable WAL mode, using {mode} instead")

                conn.execute("PRAGMA synchronous = NORMAL")
                conn.row_factory = sqlite3.Row
                self._local.connection = conn
            except sqlite3.Error as e:
                raise DatabaseError(
                    message=f"Failed to connect to database: {e}",
                    operation="connect",
                ) from e
        return self._local.connection

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Immediate write transaction on the thread's connection.

        Nested use joins the outer transaction.

        Yields:
            sqlite3.Connection: Database connection with active transaction.
        """
        conn = self._get_connection()
        if conn.in_transaction:
            yield conn
            return

        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Public transaction context manager for multi-step operations.

        Example:
            with db.transaction():
                job = db.get_job(job_id)
                db.update_job(job_id, progress_percent=42.0)
        """
        try:
            with self._transaction() as conn:
                yield conn
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Transaction failed: {e}", operation="transaction"
            ) from e

    def initialize_database(self) -> None:
        """
        Create database tables and indexes from schema file.

        This operation is idempotent; the schema uses IF NOT EXISTS.

        Raises:
            DatabaseError: If schema file is missing or execution fails.
        """
        try:
            with open(self.schema_path, "r", encoding="utf-8") as f:
                schema_sql = f.read()

            with self._lock:
                conn = self._get_connection()
                conn.executescript(schema_sql)
                logger.info(f"Database initialized: {self.db_path}")

        except FileNotFoundError as e:
            raise DatabaseError(
                message=f"Schema file not found: {self.schema_path}",
                operation="initialize",
            ) from e
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to initialize database: {e}",
                operation="initialize",
            ) from e

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, job: Job) -> str:
        """
        Insert a new job record.

        Raises:
            DatabaseError: If the job already exists or insertion fails.
        """
        try:
            with self._transaction() as conn:
                conn.execute(
                    self._SQL_INSERT_JOB,
                    (
                        job.job_id,
                        job.user_id,
                        json.dumps(job.document_keys),
                        json.dumps(job.options.to_dict()),
                        job.status.value,
                        job.current_stage.value if job.current_stage else None,
                        job.progress_percent,
                        job.message,
                        job.error_message,
                        job.total_units,
                        job.completed_units,
                        json.dumps([s.value for s in job.completed_stages]),
                        json.dumps(job.result) if job.result is not None else None,
                        job.retry_of,
                        job.created_at,
                        job.updated_at,
                    ),
                )
            logger.info(f"Created job {job.job_id}", extra={"job_id": job.job_id})
            return job.job_id
        except sqlite3.IntegrityError as e:
            raise DatabaseError(
                message=f"Job already exists or is invalid: {job.job_id} ({e})",
                job_id=job.job_id,
                operation="create_job",
            ) from e
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to create job: {e}",
                job_id=job.job_id,
                operation="create_job",
            ) from e

    def get_job(self, job_id: str) -> Optional[Job]:
        """Load a job, or None if it does not exist."""
        try:
            row = (
                self._get_connection()
                .execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
                .fetchone()
            )
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to load job: {e}", job_id=job_id, operation="get_job"
            ) from e
        return self._row_to_job(row) if row else None

    def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Job]:
        """List jobs, newest first, optionally filtered by owner and status."""
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)

        query = "SELECT * FROM jobs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, job_id DESC LIMIT ?"
        params.append(limit)

        try:
            rows = self._get_connection().execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to list jobs: {e}", operation="list_jobs"
            ) from e
        return [self._row_to_job(row) for row in rows]

    def update_job(self, job_id: str, **fields: Any) -> None:
        """
        Update job columns.

        Only the progress tracker and the orchestrator call this; see
        _JOB_FIELD_SERIALIZERS for the writable columns.

        Raises:
            ValueError: If an unknown column is given.
            DatabaseError: If the update fails.
        """
        unknown = set(fields) - set(_JOB_FIELD_SERIALIZERS)
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        if not fields:
            return

        assignments = [f"{name} = ?" for name in fields]
        params = [_JOB_FIELD_SERIALIZERS[name](value) for name, value in fields.items()]
        assignments.append("updated_at = ?")
        params.extend([utc_now(), job_id])

        try:
            with self._transaction() as conn:
                conn.execute(
                    f"UPDATE jobs SET {', '.join(assignments)} WHERE job_id = ?",
                    params,
                )
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to update job: {e}",
                job_id=job_id,
                operation="update_job",
            ) from e

    def mark_stage_complete(self, job_id: str, stage: Stage) -> None:
        """Record that a stage's durable state is complete."""
        with self.transaction():
            job = self.get_job(job_id)
            if job is None:
                raise DatabaseError(
                    message=f"Job not found: {job_id}",
                    job_id=job_id,
                    operation="mark_stage_complete",
                )
            if stage not in job.completed_stages:
                self.update_job(job_id, completed_stages=job.completed_stages + [stage])

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    def acquire_lease(
        self, job_id: str, owner: str, ttl_seconds: float, now: Optional[datetime] = None
    ) -> bool:
        """
        Take the job lease if it is free, expired or already held by `owner`.

        Returns:
            True if `owner` holds the lease afterwards.
        """
        now = now or datetime.now(timezone.utc)
        expires = (now + timedelta(seconds=ttl_seconds)).isoformat()
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE jobs SET lease_owner = ?, lease_expires_at = ?
                    WHERE job_id = ?
                      AND (lease_owner IS NULL OR lease_owner = ?
                           OR lease_expires_at IS NULL OR lease_expires_at < ?)
                    """,
                    (owner, expires, job_id, owner, now.isoformat()),
                )
                return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to acquire lease: {e}",
                job_id=job_id,
                operation="acquire_lease",
            ) from e

    def renew_lease(self, job_id: str, owner: str, ttl_seconds: float) -> bool:
        """Extend a lease held by `owner`. Returns False if it was lost."""
        expires = (datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)).isoformat()
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "UPDATE jobs SET lease_expires_at = ? "
                    "WHERE job_id = ? AND lease_owner = ?",
                    (expires, job_id, owner),
                )
                return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to renew lease: {e}",
                job_id=job_id,
                operation="renew_lease",
            ) from e

    def release_lease(self, job_id: str, owner: str) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    "UPDATE jobs SET lease_owner = NULL, lease_expires_at = NULL "
                    "WHERE job_id = ? AND lease_owner = ?",
                    (job_id, owner),
                )
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to release lease: {e}",
                job_id=job_id,
                operation="release_lease",
            ) from e

    # ------------------------------------------------------------------
    # Units and artifacts
    # ------------------------------------------------------------------

    def ensure_units(self, job_id: str, stage: Stage, indices: Iterable[int]) -> int:
        """
        Create pending units that do not exist yet.

        Returns:
            Number of newly created units.
        """
        now = utc_now()
        rows = [(job_id, stage.value, index, now) for index in indices]
        if not rows:
            return 0
        try:
            with self._transaction() as conn:
                before = conn.total_changes
                conn.executemany(
                    "INSERT OR IGNORE INTO units (job_id, stage, unit_index, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    rows,
                )
                return conn.total_changes - before
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to create units: {e}",
                job_id=job_id,
                operation="ensure_units",
            ) from e

    def get_units(self, job_id: str, stage: Optional[Stage] = None) -> List[Unit]:
        """Units of a job (optionally one stage), ordered by stage and index."""
        query = "SELECT * FROM units WHERE job_id = ?"
        params: List[Any] = [job_id]
        if stage is not None:
            query += " AND stage = ?"
            params.append(stage.value)
        query += " ORDER BY stage, unit_index"
        try:
            rows = self._get_connection().execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to load units: {e}", job_id=job_id, operation="get_units"
            ) from e
        return [self._row_to_unit(row) for row in rows]

    def get_unit(self, job_id: str, stage: Stage, unit_index: int) -> Optional[Unit]:
        try:
            row = (
                self._get_connection()
                .execute(
                    "SELECT * FROM units WHERE job_id = ? AND stage = ? AND unit_index = ?",
                    (job_id, stage.value, unit_index),
                )
                .fetchone()
            )
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to load unit: {e}", job_id=job_id, operation="get_unit"
            ) from e
        return self._row_to_unit(row) if row else None

    def reset_failed_units(self, job_id: str, stage: Stage) -> int:
        """Move failed units of a stage back to pending for another attempt."""
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "UPDATE units SET status = 'pending', updated_at = ? "
                    "WHERE job_id = ? AND stage = ? AND status = 'failed'",
                    (utc_now(), job_id, stage.value),
                )
                return cursor.rowcount
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to reset units: {e}",
                job_id=job_id,
                operation="reset_failed_units",
            ) from e

    def complete_unit(self, artifact: StageArtifact) -> bool:
        """
        Persist a unit's artifact and mark the unit done, atomically.

        A unit that is already done is left untouched.

        Returns:
            True if the unit transitioned to done.
        """
        now = utc_now()
        payload_ref = artifact.blob_key or (
            f"artifact:{artifact.stage.value}/{artifact.unit_index}"
        )
        try:
            with self._transaction() as conn:
                existing = self.get_unit(artifact.job_id, artifact.stage, artifact.unit_index)
                if existing is not None and existing.status == UnitStatus.DONE:
                    logger.debug(
                        f"Unit {artifact.stage.value}/{artifact.unit_index} already done",
                        extra={"job_id": artifact.job_id, "stage": artifact.stage.value},
                    )
                    return False

                conn.execute(
                    self._SQL_UPSERT_ARTIFACT,
                    (
                        artifact.job_id,
                        artifact.stage.value,
                        artifact.unit_index,
                        json.dumps(artifact.data),
                        artifact.blob_key,
                        artifact.content_type,
                        artifact.created_at,
                    ),
                )
                conn.execute(
                    self._SQL_COMPLETE_UNIT,
                    (
                        artifact.job_id,
                        artifact.stage.value,
                        artifact.unit_index,
                        payload_ref,
                        now,
                    ),
                )
                return True
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise DatabaseError(
                message=f"Failed to store artifact: {e}",
                job_id=artifact.job_id,
                operation="complete_unit",
            ) from e

    def fail_unit(self, job_id: str, stage: Stage, unit_index: int, error: str) -> bool:
        """
        Mark a unit failed with its terminal error. Done units are left untouched.

        Returns:
            True if the unit is now failed.
        """
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    self._SQL_FAIL_UNIT,
                    (job_id, stage.value, unit_index, error, utc_now()),
                )
                return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to record unit failure: {e}",
                job_id=job_id,
                operation="fail_unit",
            ) from e

    def get_artifact(
        self, job_id: str, stage: Stage, unit_index: int
    ) -> Optional[StageArtifact]:
        try:
            row = (
                self._get_connection()
                .execute(
                    "SELECT * FROM artifacts "
                    "WHERE job_id = ? AND stage = ? AND unit_index = ?",
                    (job_id, stage.value, unit_index),
                )
                .fetchone()
            )
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to load artifact: {e}",
                job_id=job_id,
                operation="get_artifact",
            ) from e
        return self._row_to_artifact(row) if row else None

    def get_artifacts(self, job_id: str, stage: Stage) -> List[StageArtifact]:
        """All artifacts of a stage, ordered by unit index."""
        try:
            rows = (
                self._get_connection()
                .execute(
                    "SELECT * FROM artifacts WHERE job_id = ? AND stage = ? "
                    "ORDER BY unit_index",
                    (job_id, stage.value),
                )
                .fetchall()
            )
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to load artifacts: {e}",
                job_id=job_id,
                operation="get_artifacts",
            ) from e
        return [self._row_to_artifact(row) for row in rows]

    def clone_job_state(self, source_job_id: str, target_job_id: str) -> int:
        """
        Seed a retry job with the units and artifacts of an errored job.

        Done units and their artifacts are copied as-is; failed and pending
        units are copied as pending so the retry attempts them again.

        Returns:
            Number of done units copied.
        """
        now = utc_now()
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO units (
                        job_id, stage, unit_index, status, payload_ref,
                        error_message, attempts, updated_at
                    )
                    SELECT ?, stage, unit_index,
                           CASE WHEN status = 'done' THEN 'done' ELSE 'pending' END,
                           CASE WHEN status = 'done' THEN payload_ref ELSE NULL END,
                           NULL, attempts, ?
                    FROM units WHERE job_id = ?
                    """,
                    (target_job_id, now, source_job_id),
                )
                conn.execute(
                    """
                    INSERT OR IGNORE INTO artifacts (
                        job_id, stage, unit_index, data, blob_key, content_type,
                        created_at
                    )
                    SELECT ?, a.stage, a.unit_index, a.data, a.blob_key,
                           a.content_type, a.created_at
                    FROM artifacts a
                    JOIN units u ON u.job_id = a.job_id AND u.stage = a.stage
                                 AND u.unit_index = a.unit_index
                    WHERE a.job_id = ? AND u.status = 'done'
                    """,
                    (target_job_id, source_job_id),
                )
                row = conn.execute(
                    "SELECT COUNT(*) FROM units WHERE job_id = ? AND status = 'done'",
                    (target_job_id,),
                ).fetchone()
                return int(row[0])
        except sqlite3.Error as e:
            raise DatabaseError(
                message=f"Failed to clone job state: {e}",
                job_id=target_job_id,
                operation="clone_job_state",
            ) from e

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        result = row["result"]
        return Job(
            job_id=row["job_id"],
            user_id=row["user_id"],
            document_keys=json.loads(row["document_keys"]),
            options=JobOptions.from_dict(json.loads(row["options"] or "{}")),
            status=JobStatus(row["status"]),
            current_stage=Stage(row["current_stage"]) if row["current_stage"] else None,
            progress_percent=row["progress_percent"],
            message=row["message"],
            error_message=row["error_message"],
            total_units=row["total_units"],
            completed_units=row["completed_units"],
            eta_seconds=row["eta_seconds"],
            completed_stages=[Stage(s) for s in json.loads(row["completed_stages"])],
            result=json.loads(result) if result else None,
            retry_of=row["retry_of"],
            lease_owner=row["lease_owner"],
            lease_expires_at=row["lease_expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_unit(row: sqlite3.Row) -> Unit:
        return Unit(
            job_id=row["job_id"],
            stage=Stage(row["stage"]),
            unit_index=row["unit_index"],
            status=UnitStatus(row["status"]),
            payload_ref=row["payload_ref"],
            error_message=row["error_message"],
            attempts=row["attempts"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_artifact(row: sqlite3.Row) -> StageArtifact:
        return StageArtifact(
            job_id=row["job_id"],
            stage=Stage(row["stage"]),
            unit_index=row["unit_index"],
            data=json.loads(row["data"]),
            blob_key=row["blob_key"],
            content_type=row["content_type"],
            created_at=row["created_at"],
        )

    def close(self) -> None:
        """Close the current thread's connection."""
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            conn.close()
            self._local.connection = None
