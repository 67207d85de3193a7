"""
Pytest configuration and fixtures.

Capability fakes stand in for the PDF renderer and the LLM providers so that
pipeline tests run offline and can count, fail or crash individual calls.
"""

import threading
from collections import Counter
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional

import fitz
import pytest

from lesson_intelligence.capabilities.base import (
    ContentGenerator,
    Rasterizer,
    SpeechSynthesizer,
    VisionTranscriber,
)
from lesson_intelligence.capabilities.retry import RetryPolicy
from lesson_intelligence.database.database_manager import DatabaseManager
from lesson_intelligence.models.data_structures import (
    Job,
    JobOptions,
    RasterizedPage,
    VoiceParams,
)
from lesson_intelligence.orchestration.batch_coordinator import (
    BatchCoordinator,
    StageSettings,
)
from lesson_intelligence.orchestration.pipeline_orchestrator import PipelineOrchestrator
from lesson_intelligence.orchestration.progress_tracker import ProgressTracker
from lesson_intelligence.orchestration.stage_executors import build_executors
from lesson_intelligence.service.job_service import JobService
from lesson_intelligence.storage.blob_store import LocalBlobStore, document_key
from lesson_intelligence.utils.error_handlers import (
    DocumentParseError,
    PermanentCapabilityError,
    TransientCapabilityError,
)
from lesson_intelligence.utils.file_utils import generate_unique_id

PNG_HEADER = b"\x89PNG\r\n\x1a\n"
CORRUPT_DOCUMENT = b"%PDF-1.4 this is not a real document"


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: end-to-end pipeline tests")
    config.addinivalue_line("markers", "slow: tests that take more than a second")


class SimulatedCrash(BaseException):
    """Stands in for a process dying in the middle of a stage."""


def make_pdf(page_texts: Iterable[str]) -> bytes:
    """Build a PDF with one page per text."""
    doc = fitz.open()
    for text in page_texts:
        page = doc.new_page(width=300, height=400)
        page.insert_text((36, 72), text, fontsize=12)
    data = doc.tobytes()
    doc.close()
    return data


class _CallCounter:
    def __init__(self) -> None:
        self.calls: Counter = Counter()
        self._lock = threading.Lock()

    def _count(self, key: Any) -> int:
        with self._lock:
            self.calls[key] += 1
            return self.calls[key]

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())


class FakeRasterizer(Rasterizer, _CallCounter):
    """
    Renders `page_count` pages; CORRUPT_DOCUMENT fails to open.

    `page_counts` overrides the page count of specific documents, and every
    rendered (document, page) pair is recorded in `rendered`.
    """

    def __init__(
        self,
        page_count: int = 3,
        fail_pages: Optional[Iterable[int]] = None,
        page_counts: Optional[Dict[bytes, int]] = None,
    ):
        _CallCounter.__init__(self)
        self.page_count_value = page_count
        self.fail_pages = set(fail_pages or [])
        self.page_counts = dict(page_counts or {})
        self.rendered: List[Any] = []

    def page_count(self, document: bytes) -> int:
        self._count("page_count")
        if document == CORRUPT_DOCUMENT:
            raise DocumentParseError("Cannot open document: corrupt")
        return self.page_counts.get(document, self.page_count_value)

    def rasterize(self, document: bytes, page_number: int) -> RasterizedPage:
        self._count(page_number)
        with self._lock:
            self.rendered.append((document, page_number))
        if page_number in self.fail_pages:
            raise DocumentParseError(
                f"Cannot render page {page_number}", page_number=page_number
            )
        return RasterizedPage(
            page_number=page_number,
            image=PNG_HEADER + f"page-{page_number}".encode(),
            width=100,
            height=140,
        )


class CountingRasterizer(Rasterizer, _CallCounter):
    """Wraps a real rasterizer and counts its calls."""

    def __init__(self, inner: Rasterizer):
        _CallCounter.__init__(self)
        self.inner = inner

    def page_count(self, document: bytes) -> int:
        self._count("page_count")
        return self.inner.page_count(document)

    def rasterize(self, document: bytes, page_number: int) -> RasterizedPage:
        self._count(page_number)
        return self.inner.rasterize(document, page_number)


class FakeTranscriber(VisionTranscriber, _CallCounter):
    """
    Returns a canned transcript per page.

    Args:
        fail_pages: Pages that always fail with a permanent error.
        transient_failures: Page -> number of transient failures before the
            page succeeds.
        crash_pages: Pages whose call raises SimulatedCrash.
    """

    def __init__(
        self,
        fail_pages: Optional[Iterable[int]] = None,
        transient_failures: Optional[Dict[int, int]] = None,
        crash_pages: Optional[Iterable[int]] = None,
    ):
        _CallCounter.__init__(self)
        self.fail_pages = set(fail_pages or [])
        self.transient_failures = dict(transient_failures or {})
        self.crash_pages = set(crash_pages or [])
        self.languages: List[str] = []

    def transcribe(self, image: bytes, page_number: int, language: str) -> str:
        attempt = self._count(page_number)
        self.languages.append(language)
        if page_number in self.crash_pages:
            raise SimulatedCrash(f"crash on page {page_number}")
        if page_number in self.fail_pages:
            raise PermanentCapabilityError(
                f"Unreadable page {page_number}", capability="fake"
            )
        if attempt <= self.transient_failures.get(page_number, 0):
            raise TransientCapabilityError(
                f"Rate limited on page {page_number}", capability="fake", status_code=429
            )
        return f"Lesson text of page {page_number}. The table lists key facts."


class FakeGenerator(ContentGenerator, _CallCounter):
    """
    Answers 'document_structure' and 'section_quiz' requests.

    Args:
        section_count: Number of sections returned by the structure call.
        fail_schemas: Schema hints that fail with a permanent error.
        crash_schemas: Schema hints whose call raises SimulatedCrash.
        fail_sections: Section titles whose quiz request fails.
    """

    def __init__(
        self,
        section_count: int = 2,
        fail_schemas: Optional[Iterable[str]] = None,
        crash_schemas: Optional[Iterable[str]] = None,
        fail_sections: Optional[Iterable[str]] = None,
    ):
        _CallCounter.__init__(self)
        self.section_count = section_count
        self.fail_schemas = set(fail_schemas or [])
        self.crash_schemas = set(crash_schemas or [])
        self.fail_sections = set(fail_sections or [])
        self.inputs: List[Dict[str, Any]] = []
        self._inputs_lock = threading.Lock()

    def generate_structured(
        self,
        text: str,
        schema_hint: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        variables = variables or {}
        self._count(schema_hint)
        with self._inputs_lock:
            self.inputs.append({"schema": schema_hint, "text": text, **variables})

        if schema_hint in self.crash_schemas:
            raise SimulatedCrash(f"crash in {schema_hint}")
        if schema_hint in self.fail_schemas:
            raise PermanentCapabilityError(f"{schema_hint} rejected", capability="fake")

        if schema_hint == "document_structure":
            page_count = variables["page_count"]
            return {
                "sections": [
                    {
                        "title": f"Topic {i}",
                        "start_page": min(i, page_count),
                        "end_page": page_count if i == self.section_count else min(i, page_count),
                        "summary": f"Summary of topic {i}",
                        "key_points": [f"Point {i}.1", f"Point {i}.2"],
                    }
                    for i in range(1, self.section_count + 1)
                ]
            }

        if schema_hint == "section_quiz":
            if variables.get("title") in self.fail_sections:
                raise PermanentCapabilityError("quiz rejected", capability="fake")
            return {
                "questions": [
                    {
                        "question": f"Question {n} on {variables['title']}?",
                        "choices": ["A", "B", "C", "D"],
                        "correct_index": n % 4,
                        "explanation": "Because.",
                    }
                    for n in range(variables["question_count"])
                ]
            }

        raise PermanentCapabilityError(f"Unknown schema {schema_hint}", capability="fake")

    def texts_for(self, schema_hint: str) -> List[str]:
        return [i["text"] for i in self.inputs if i["schema"] == schema_hint]


class FakeSynthesizer(SpeechSynthesizer, _CallCounter):
    def __init__(self) -> None:
        _CallCounter.__init__(self)
        self.voices: List[VoiceParams] = []

    def synthesize(self, text: str, voice: VoiceParams) -> bytes:
        self._count(voice.language)
        self.voices.append(voice)
        return b"ID3" + text.encode("utf-8")[:32]


@pytest.fixture
def fakes():
    """Capability fake classes and helpers for tests."""
    return SimpleNamespace(
        Rasterizer=FakeRasterizer,
        CountingRasterizer=CountingRasterizer,
        Transcriber=FakeTranscriber,
        Generator=FakeGenerator,
        Synthesizer=FakeSynthesizer,
        SimulatedCrash=SimulatedCrash,
        CORRUPT_DOCUMENT=CORRUPT_DOCUMENT,
        make_pdf=make_pdf,
    )


@pytest.fixture
def fast_retry():
    """Retry policy without delays."""
    return RetryPolicy(
        max_attempts=3, initial_delay_seconds=0.0, max_delay_seconds=0.0, jitter=0.0
    )


@pytest.fixture(scope="function")
def test_db(tmp_path):
    """Create test database."""
    db = DatabaseManager(str(tmp_path / "test.db"))
    yield db
    db.close()


@pytest.fixture(scope="function")
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"), signing_secret="test-secret")


@pytest.fixture
def make_job(test_db, blob_store):
    """Factory storing a document and creating a pending job for it."""

    def _make_job(
        document: bytes = b"%PDF-1.4 fake",
        user_id: str = "user-1",
        options: Optional[JobOptions] = None,
        documents: Optional[List[bytes]] = None,
    ) -> Job:
        job_id = generate_unique_id("JOB")
        sources = documents if documents is not None else [document]
        keys = []
        for number, data in enumerate(sources, start=1):
            key = document_key(user_id, job_id if len(sources) == 1 else f"{job_id}-{number}")
            blob_store.put(key, data, "application/pdf")
            keys.append(key)
        job = Job(
            job_id=job_id,
            user_id=user_id,
            document_keys=keys,
            options=options or JobOptions(),
        )
        test_db.create_job(job)
        return test_db.get_job(job_id)

    return _make_job


@pytest.fixture
def build_pipeline(test_db, blob_store, fast_retry):
    """
    Factory wiring executors, coordinator, orchestrator and service around
    the given capabilities (fakes by default).
    """

    def _build(
        rasterizer: Optional[Rasterizer] = None,
        transcriber: Optional[VisionTranscriber] = None,
        generator: Optional[ContentGenerator] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
        stage_settings: Optional[Dict[Any, StageSettings]] = None,
        options: Optional[Dict[str, Any]] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> SimpleNamespace:
        rasterizer = rasterizer or FakeRasterizer()
        transcriber = transcriber or FakeTranscriber()
        generator = generator or FakeGenerator()
        synthesizer = synthesizer or FakeSynthesizer()

        executors = build_executors(
            test_db,
            blob_store,
            rasterizer=rasterizer,
            transcriber=transcriber,
            generator=generator,
            synthesizer=synthesizer,
            retry_policy=retry_policy or fast_retry,
            options={"questions_per_section": 3, **(options or {})},
        )
        tracker = ProgressTracker(test_db)
        coordinator = BatchCoordinator(
            test_db, blob_store, executors, tracker, stage_settings=stage_settings
        )
        orchestrator = PipelineOrchestrator(test_db, coordinator, tracker)
        service = JobService(test_db, blob_store, orchestrator, max_workers=2)
        return SimpleNamespace(
            db=test_db,
            blob_store=blob_store,
            rasterizer=rasterizer,
            transcriber=transcriber,
            generator=generator,
            synthesizer=synthesizer,
            executors=executors,
            tracker=tracker,
            coordinator=coordinator,
            orchestrator=orchestrator,
            service=service,
        )

    return _build
