"""
End-to-end pipeline scenarios.

Jobs run through the real orchestrator, coordinator, executors, database and
blob store; only the rasterizer and LLM capabilities are faked (except in the
PyMuPDF scenario).
"""

import threading

import pytest

from lesson_intelligence.capabilities.pdf_rasterizer import PyMuPDFRasterizer
from lesson_intelligence.models.data_structures import (
    EnrichmentType,
    JobOptions,
    JobStatus,
    Stage,
    UnitStatus,
)
from lesson_intelligence.utils.error_handlers import JobNotFoundError, JobStateError


def unit_statuses(db, job_id, stage):
    return {u.unit_index: u.status for u in db.get_units(job_id, stage)}


@pytest.mark.integration
class TestHappyPath:
    """Test documents that process without failures."""

    def test_three_page_document(self, build_pipeline, make_job):
        """Test every stage settles and the lesson is ready."""
        pipeline = build_pipeline()
        job = make_job()

        final = pipeline.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.READY
        assert final.progress_percent == 100.0
        assert final.message == "Lesson ready"
        assert final.completed_stages == list(Stage)
        images = pipeline.db.get_artifacts(job.job_id, Stage.INGEST)
        texts = pipeline.db.get_artifacts(job.job_id, Stage.TRANSCRIBE)
        assert len(images) == 3
        assert len(texts) == 3
        assert all(pipeline.blob_store.exists(a.blob_key) for a in images)
        assert final.result["page_count"] == 3
        assert len(final.result["sections"]) == 2
        assert final.result["gaps"] == []

    def test_audio_enrichment(self, build_pipeline, make_job):
        """Test narrated sections are stored as MP3 blobs."""
        pipeline = build_pipeline()
        job = make_job(options=JobOptions(enrichment=EnrichmentType.AUDIO, voice="male"))

        final = pipeline.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.READY
        for section in final.result["sections"]:
            assert pipeline.blob_store.get(section["audio_key"]).startswith(b"ID3")
        assert pipeline.generator.calls["section_quiz"] == 0

    def test_no_enrichment(self, build_pipeline, make_job):
        """Test a job without enrichment skips quiz and audio generation."""
        pipeline = build_pipeline()
        job = make_job(options=JobOptions(enrichment=EnrichmentType.NONE))

        final = pipeline.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.READY
        assert pipeline.db.get_units(job.job_id, Stage.ENRICH) == []
        assert pipeline.generator.calls["section_quiz"] == 0
        assert pipeline.synthesizer.total_calls == 0
        assert all("questions" not in s for s in final.result["sections"])

    def test_real_pdf_rendering(self, build_pipeline, make_job, fakes):
        """Test the PyMuPDF rasterizer feeds the pipeline."""
        rasterizer = fakes.CountingRasterizer(PyMuPDFRasterizer())
        pipeline = build_pipeline(rasterizer=rasterizer)
        document = fakes.make_pdf(["Cells", "Tissues", "Organs", "Systems"])
        job = make_job(document=document)

        final = pipeline.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.READY
        assert final.result["page_count"] == 4
        assert all(rasterizer.calls[page] == 1 for page in range(1, 5))
        for artifact in pipeline.db.get_artifacts(job.job_id, Stage.INGEST):
            assert pipeline.blob_store.get(artifact.blob_key).startswith(b"\x89PNG")

    def test_multiple_documents_form_one_lesson(self, build_pipeline, make_job, fakes):
        """Test pages of several documents are numbered continuously."""
        pipeline = build_pipeline(rasterizer=fakes.CountingRasterizer(PyMuPDFRasterizer()))
        job = make_job(
            documents=[
                fakes.make_pdf(["Cells", "Tissues"]),
                fakes.make_pdf(["Organs", "Systems", "Body"]),
            ]
        )

        final = pipeline.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.READY
        assert final.result["document_count"] == 2
        assert final.result["page_count"] == 5
        assert [
            (p["page_number"], p["document_index"], p["source_page"])
            for p in final.result["pages"]
        ] == [(1, 1, 1), (2, 1, 2), (3, 2, 1), (4, 2, 2), (5, 2, 3)]
        assert sorted(pipeline.transcriber.calls) == [1, 2, 3, 4, 5]
        assert pipeline.rasterizer.calls["page_count"] == 2


@pytest.mark.integration
class TestFailurePolicies:
    """Test fatal and tolerable stage failures."""

    def test_failed_page_is_a_gap(self, build_pipeline, make_job, fakes):
        """Test a failed transcription leaves the job ready with a gap."""
        pipeline = build_pipeline(transcriber=fakes.Transcriber(fail_pages=[2]))
        job = make_job()

        final = pipeline.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.READY
        assert final.message == "Lesson ready (1 parts could not be generated)"
        assert unit_statuses(pipeline.db, job.job_id, Stage.TRANSCRIBE)[2] == UnitStatus.FAILED
        structure_input = pipeline.generator.texts_for("document_structure")[0]
        assert "[Page 2 could not be transcribed]" in structure_input
        assert final.result["gaps"] == [
            {"stage": "transcribe", "unit_index": 2, "error": "Unreadable page 2"}
        ]

        report = pipeline.service.get_status(job.job_id)
        assert report.failed_units == [
            {"stage": "transcribe", "unit_index": 2, "error": "Unreadable page 2"}
        ]

    def test_corrupt_document_errors_job(self, build_pipeline, make_job, fakes):
        """Test an unreadable document stops the job in Ingest."""
        pipeline = build_pipeline()
        job = make_job(document=fakes.CORRUPT_DOCUMENT)

        final = pipeline.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.ERROR
        assert final.message == "Failed during ingest"
        assert "Cannot open document" in final.error_message
        assert pipeline.db.get_units(job.job_id, Stage.TRANSCRIBE) == []
        assert pipeline.transcriber.total_calls == 0

    def test_structure_failure_errors_job(self, build_pipeline, make_job, fakes):
        """Test a rejected structure request is fatal."""
        pipeline = build_pipeline(generator=fakes.Generator(fail_schemas=["document_structure"]))
        job = make_job()

        final = pipeline.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.ERROR
        assert final.message == "Failed during structure"
        assert pipeline.db.get_units(job.job_id, Stage.ENRICH) == []

    def test_transient_failures_within_budget(self, build_pipeline, make_job, fakes):
        """Test rate limited pages succeed after retries."""
        transcriber = fakes.Transcriber(transient_failures={1: 1, 3: 2})
        pipeline = build_pipeline(transcriber=transcriber)
        job = make_job()

        final = pipeline.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.READY
        assert final.result["gaps"] == []
        assert transcriber.calls[1] == 2
        assert transcriber.calls[3] == 3

    def test_exhausted_retries_leave_gap(self, build_pipeline, make_job, fakes):
        """Test a page that keeps failing transiently becomes a gap."""
        transcriber = fakes.Transcriber(transient_failures={3: 99})
        pipeline = build_pipeline(transcriber=transcriber)
        job = make_job()

        final = pipeline.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.READY
        assert [g["unit_index"] for g in final.result["gaps"]] == [3]
        assert transcriber.calls[3] == 3


@pytest.mark.integration
class TestResume:
    """Test crash recovery and job immutability."""

    def test_resume_after_crash_skips_done_work(self, build_pipeline, make_job, fakes):
        """Test a rerun after a crash in Structure reuses earlier stages."""
        first = build_pipeline(generator=fakes.Generator(crash_schemas=["document_structure"]))
        job = make_job()

        with pytest.raises(fakes.SimulatedCrash):
            first.orchestrator.run_job(job.job_id)

        crashed = first.db.get_job(job.job_id)
        assert crashed.status == JobStatus.RUNNING
        assert Stage.TRANSCRIBE in crashed.completed_stages

        second = build_pipeline()
        final = second.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.READY
        assert second.rasterizer.total_calls == 0
        assert second.transcriber.total_calls == 0
        assert second.generator.calls["document_structure"] == 1
        assert final.progress_percent == 100.0

    def test_crash_mid_stage_resumes_remaining_units(self, build_pipeline, make_job, fakes):
        """Test only unfinished pages are transcribed after a crash."""
        from lesson_intelligence.orchestration.batch_coordinator import StageSettings

        sequential = {Stage.TRANSCRIBE: StageSettings(batch_size=1, max_concurrency=1)}
        first = build_pipeline(
            transcriber=fakes.Transcriber(crash_pages=[3]), stage_settings=sequential
        )
        job = make_job()
        with pytest.raises(fakes.SimulatedCrash):
            first.orchestrator.run_job(job.job_id)

        second = build_pipeline(stage_settings=sequential)
        final = second.orchestrator.run_job(job.job_id)

        assert final.status == JobStatus.READY
        assert dict(second.transcriber.calls) == {3: 1}
        assert second.rasterizer.total_calls == 0

    def test_terminal_job_is_not_run_again(self, build_pipeline, make_job):
        """Test ready jobs are returned untouched."""
        pipeline = build_pipeline()
        job = make_job()
        done = pipeline.orchestrator.run_job(job.job_id)
        calls = pipeline.transcriber.total_calls

        again = pipeline.orchestrator.run_job(job.job_id)

        assert again.status == JobStatus.READY
        assert again.updated_at == done.updated_at
        assert pipeline.transcriber.total_calls == calls
        with pytest.raises(JobStateError):
            pipeline.tracker.set_status(job.job_id, JobStatus.RUNNING)

    def test_leased_job_is_skipped(self, build_pipeline, make_job):
        """Test a job leased by another runner is left alone."""
        pipeline = build_pipeline()
        job = make_job()
        pipeline.db.acquire_lease(job.job_id, "other-runner", 600)

        result = pipeline.orchestrator.run_job(job.job_id)

        assert result.status == JobStatus.PENDING
        assert pipeline.rasterizer.total_calls == 0

    def test_concurrent_runs_execute_units_once(self, build_pipeline, make_job):
        """Test parallel run_job calls on one job converge on one result."""
        pipeline = build_pipeline()
        job = make_job()
        results = []
        errors = []
        lock = threading.Lock()

        def runner():
            try:
                final = pipeline.orchestrator.run_job(job.job_id)
                with lock:
                    results.append(final.status)
            except Exception as e:
                with lock:
                    errors.append(e)
            finally:
                pipeline.db.close()

        threads = [threading.Thread(target=runner) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert results == [JobStatus.READY] * 4
        assert all(pipeline.rasterizer.calls[page] == 1 for page in (1, 2, 3))
        assert all(pipeline.transcriber.calls[page] == 1 for page in (1, 2, 3))
        assert pipeline.generator.calls["document_structure"] == 1

    def test_stage_completion_goes_through_tracker(self, build_pipeline, make_job):
        """Test completed stages are recorded by the progress tracker."""
        pipeline = build_pipeline()
        job = make_job()
        recorded = []
        complete_stage = pipeline.tracker.complete_stage

        def recording_complete_stage(job_id, stage):
            recorded.append(stage)
            complete_stage(job_id, stage)

        pipeline.tracker.complete_stage = recording_complete_stage

        final = pipeline.orchestrator.run_job(job.job_id)

        assert recorded == list(Stage)
        assert final.completed_stages == list(Stage)

    def test_run_locks_are_released(self, build_pipeline, make_job):
        """Test settled jobs leave no per-job locks behind."""
        pipeline = build_pipeline()
        for _ in range(3):
            pipeline.orchestrator.run_job(make_job().job_id)

        assert len(pipeline.orchestrator._run_locks) == 0
        assert len(pipeline.tracker._locks) == 0


@pytest.mark.integration
class TestJobService:
    """Test the service surface."""

    def test_submit_and_wait(self, build_pipeline, fakes):
        """Test an async submission settles and exposes a signed result."""
        pipeline = build_pipeline()
        service = pipeline.service
        updates = []

        job_id = service.submit_job("alice", b"%PDF-1.4 fake", {"enrichment": "quiz"})
        report = service.wait_for(
            job_id, timeout=30, poll_interval=0.05, on_update=updates.append
        )

        assert report.status == JobStatus.READY
        assert report.progress_percent == 100.0
        assert updates
        percents = [u.progress_percent for u in updates]
        assert percents == sorted(percents)

        lesson = service.get_result(job_id, user_id="alice")
        for page in lesson["pages"]:
            assert pipeline.blob_store.verify_signed_url(page["image_url"]) == page["image_key"]
        service.shutdown()

    def test_other_user_cannot_see_job(self, build_pipeline):
        pipeline = build_pipeline()
        job_id = pipeline.service.submit_job("alice", b"%PDF-1.4 fake", run_async=False)

        with pytest.raises(JobNotFoundError):
            pipeline.service.get_status(job_id, user_id="bob")
        with pytest.raises(JobNotFoundError):
            pipeline.service.get_result(job_id, user_id="bob")

    def test_result_of_unfinished_job_raises(self, build_pipeline, make_job):
        pipeline = build_pipeline()
        job = make_job()

        with pytest.raises(JobStateError):
            pipeline.service.get_result(job.job_id)

    def test_submit_rejects_empty_input(self, build_pipeline):
        pipeline = build_pipeline()
        with pytest.raises(ValueError):
            pipeline.service.submit_job("", b"%PDF")
        with pytest.raises(ValueError):
            pipeline.service.submit_job("alice", b"")

    def test_retry_errored_job_reuses_done_units(self, build_pipeline, fakes):
        """Test retrying an errored job creates a new job seeded with finished work."""
        failing = build_pipeline(generator=fakes.Generator(fail_schemas=["document_structure"]))
        job_id = failing.service.submit_job("alice", b"%PDF-1.4 fake", run_async=False)
        assert failing.db.get_job(job_id).status == JobStatus.ERROR

        healthy = build_pipeline()
        retry_id = healthy.service.retry_job(job_id, user_id="alice", run_async=False)

        assert retry_id != job_id
        retried = healthy.db.get_job(retry_id)
        assert retried.status == JobStatus.READY
        assert retried.retry_of == job_id
        assert healthy.rasterizer.total_calls == 0
        assert healthy.transcriber.total_calls == 0
        # The original job keeps its terminal status
        assert healthy.db.get_job(job_id).status == JobStatus.ERROR

    def test_retry_of_ready_job_raises(self, build_pipeline):
        pipeline = build_pipeline()
        job_id = pipeline.service.submit_job("alice", b"%PDF-1.4 fake", run_async=False)

        with pytest.raises(JobStateError):
            pipeline.service.retry_job(job_id)

    def test_retry_of_pending_job_resumes_it(self, build_pipeline, make_job):
        pipeline = build_pipeline()
        job = make_job()

        assert pipeline.service.retry_job(job.job_id, run_async=False) == job.job_id
        assert pipeline.db.get_job(job.job_id).status == JobStatus.READY
