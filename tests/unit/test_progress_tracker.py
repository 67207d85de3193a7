"""
Unit tests for progress_tracker module.
"""

import threading

import pytest

from lesson_intelligence.models.data_structures import JobStatus, Stage
from lesson_intelligence.orchestration.progress_tracker import ProgressTracker
from lesson_intelligence.utils.error_handlers import JobNotFoundError, JobStateError


@pytest.fixture
def tracker(test_db):
    return ProgressTracker(test_db)


class TestComputePercent:
    """Tests for the weighted percentage."""

    def test_start_of_pipeline_is_zero(self, tracker):
        assert tracker.compute_percent(Stage.INGEST, 0, 10) == 0.0

    def test_earlier_stages_count_in_full(self, tracker):
        # Ingest 5 + half of Transcribe 40
        assert tracker.compute_percent(Stage.TRANSCRIBE, 5, 10) == 25.0

    def test_stage_without_units_counts_as_complete(self, tracker):
        assert tracker.compute_percent(Stage.ENRICH, 0, 0) == 95.0

    def test_completed_is_clamped_to_total(self, tracker):
        assert tracker.compute_percent(Stage.ASSEMBLE, 7, 1) == 100.0


class TestUpdateProgress:
    """Tests for update_progress."""

    def test_records_stage_and_counts(self, tracker, make_job, test_db):
        job = make_job()

        percent = tracker.update_progress(job.job_id, Stage.TRANSCRIBE, 2, 4, "Transcribing")

        stored = test_db.get_job(job.job_id)
        assert percent == 25.0
        assert stored.progress_percent == 25.0
        assert stored.current_stage == Stage.TRANSCRIBE
        assert stored.completed_units == 2
        assert stored.total_units == 4
        assert stored.message == "Transcribing"

    def test_percent_never_decreases(self, tracker, make_job, test_db):
        job = make_job()
        tracker.update_progress(job.job_id, Stage.STRUCTURE, 1, 1)

        # A late report from an earlier stage must not move progress back
        percent = tracker.update_progress(job.job_id, Stage.TRANSCRIBE, 1, 10)

        assert percent == 55.0
        assert test_db.get_job(job.job_id).progress_percent == 55.0

    def test_update_on_terminal_job_is_ignored(self, tracker, make_job, test_db):
        job = make_job()
        tracker.set_status(job.job_id, JobStatus.ERROR, error="boom")

        tracker.update_progress(job.job_id, Stage.ENRICH, 3, 3, "late")

        stored = test_db.get_job(job.job_id)
        assert stored.progress_percent == 0.0
        assert stored.message != "late"

    def test_eta_is_stored_with_progress(self, tracker, make_job, test_db):
        job = make_job()

        tracker.update_progress(job.job_id, Stage.TRANSCRIBE, 2, 4, eta_seconds=17.34)
        assert test_db.get_job(job.job_id).eta_seconds == 17.3

        # Entering a stage resets the estimate until its first unit settles
        tracker.begin_stage(job.job_id, Stage.STRUCTURE, 1, "Analyzing")
        assert test_db.get_job(job.job_id).eta_seconds is None

    def test_negative_eta_is_clamped(self, tracker, make_job, test_db):
        job = make_job()

        tracker.update_progress(job.job_id, Stage.INGEST, 1, 2, eta_seconds=-3.0)

        assert test_db.get_job(job.job_id).eta_seconds == 0.0

    def test_unknown_job_raises(self, tracker):
        with pytest.raises(JobNotFoundError):
            tracker.update_progress("JOB-missing", Stage.INGEST, 0, 1)

    def test_concurrent_updates_stay_monotonic(self, tracker, make_job, test_db):
        job = make_job()
        observed = []
        lock = threading.Lock()

        def worker(completed):
            percent = tracker.update_progress(job.job_id, Stage.TRANSCRIBE, completed, 20)
            with lock:
                observed.append(percent)
            test_db.close()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(1, 21)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(observed) == 20
        assert test_db.get_job(job.job_id).progress_percent == 45.0


class TestSetStatus:
    """Tests for set_status and record_result."""

    def test_ready_sets_full_progress(self, tracker, make_job, test_db):
        job = make_job()
        tracker.begin_stage(job.job_id, Stage.ASSEMBLE, 1, "Assembling")

        tracker.set_status(job.job_id, JobStatus.READY, message="done")

        stored = test_db.get_job(job.job_id)
        assert stored.status == JobStatus.READY
        assert stored.progress_percent == 100.0
        assert stored.completed_units == stored.total_units == 1

    def test_error_records_message(self, tracker, make_job, test_db):
        job = make_job()

        tracker.set_status(job.job_id, JobStatus.ERROR, message="failed", error="bad pdf")

        stored = test_db.get_job(job.job_id)
        assert stored.status == JobStatus.ERROR
        assert stored.error_message == "bad pdf"

    def test_same_terminal_status_is_noop(self, tracker, make_job, test_db):
        job = make_job()
        tracker.set_status(job.job_id, JobStatus.READY, message="first")

        tracker.set_status(job.job_id, JobStatus.READY, message="second")

        assert test_db.get_job(job.job_id).message == "first"

    def test_leaving_terminal_status_raises(self, tracker, make_job):
        job = make_job()
        tracker.set_status(job.job_id, JobStatus.READY)

        with pytest.raises(JobStateError):
            tracker.set_status(job.job_id, JobStatus.RUNNING)
        with pytest.raises(JobStateError):
            tracker.set_status(job.job_id, JobStatus.ERROR)

    def test_record_result_rejected_after_terminal(self, tracker, make_job, test_db):
        job = make_job()
        tracker.record_result(job.job_id, {"pages": []})
        tracker.set_status(job.job_id, JobStatus.READY)

        with pytest.raises(JobStateError):
            tracker.record_result(job.job_id, {"pages": [1]})
        assert test_db.get_job(job.job_id).result == {"pages": []}

    def test_terminal_status_clears_eta(self, tracker, make_job, test_db):
        job = make_job()
        tracker.update_progress(job.job_id, Stage.ENRICH, 1, 3, eta_seconds=40.0)

        tracker.set_status(job.job_id, JobStatus.ERROR, error="boom")

        assert test_db.get_job(job.job_id).eta_seconds is None


class TestCompleteStage:
    """Tests for complete_stage and lock bookkeeping."""

    def test_records_completed_stage_once(self, tracker, make_job, test_db):
        job = make_job()

        tracker.complete_stage(job.job_id, Stage.INGEST)
        tracker.complete_stage(job.job_id, Stage.INGEST)

        assert test_db.get_job(job.job_id).completed_stages == [Stage.INGEST]

    def test_job_locks_are_released_after_writes(self, tracker, make_job):
        jobs = [make_job() for _ in range(3)]
        for job in jobs:
            tracker.update_progress(job.job_id, Stage.INGEST, 1, 1)
            tracker.complete_stage(job.job_id, Stage.INGEST)
            tracker.set_status(job.job_id, JobStatus.READY)

        assert len(tracker._locks) == 0
