"""
Stage executors for the lesson pipeline.

Each executor knows how to enumerate the units of one stage for a job and how
to execute a single unit: read the unit's upstream artifacts, call one
capability through the retry primitive, and return an ArtifactPayload. The
batch coordinator persists the payload; executors never write pipeline state.

Classes:
    StageExecutor: Base class shared by all executors.
    IngestExecutor: One unit per page across all documents; renders it to PNG.
    TranscribeExecutor: One unit per page; transcribes the page image.
    StructureExecutor: One unit per document; detects topic sections.
    EnrichExecutor: One unit per section; generates a quiz or narration.
    AssembleExecutor: One unit per document; builds the final lesson record.

Functions:
    normalize_sections: Clean up generator section output.
    validate_questions: Keep well-formed quiz questions.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from ..capabilities.base import (
    ContentGenerator,
    Rasterizer,
    SpeechSynthesizer,
    VisionTranscriber,
)
from ..capabilities.retry import RetryPolicy, call_with_retry
from ..database.database_manager import DatabaseManager
from ..models.data_structures import (
    STAGE_FAILURE_POLICY,
    ArtifactPayload,
    EnrichmentType,
    FailurePolicy,
    Job,
    QuizQuestion,
    Section,
    Stage,
    StageArtifact,
    VoiceParams,
)
from ..storage.blob_store import BlobStore
from ..utils.error_handlers import FatalStageError, PermanentCapabilityError
from ..utils.text_utils import (
    bound_page_blocks,
    count_words,
    detect_visual_content,
    format_page_block,
    truncate_text,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUIZ_CHOICE_COUNT = 4


class StageExecutor(ABC):
    """
    Base class of the per-stage executors.

    Attributes:
        stage: Stage implemented by the executor.
        db: Row store, read for upstream artifacts.
        blob_store: Blob store, read for upstream binary payloads.
        retry_policy: Retry budget applied to every capability call.
    """

    stage: Stage

    def __init__(
        self,
        db: DatabaseManager,
        blob_store: BlobStore,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.db = db
        self.blob_store = blob_store
        self.retry_policy = retry_policy or RetryPolicy()

    @property
    def failure_policy(self) -> FailurePolicy:
        return STAGE_FAILURE_POLICY[self.stage]

    @abstractmethod
    def enumerate_units(self, job: Job) -> List[int]:
        """Deterministically list the 1-based unit indices of this stage."""
        pass

    @abstractmethod
    def execute_unit(self, job: Job, unit_index: int) -> ArtifactPayload:
        """Produce the artifact of one unit.

        Raises:
            TransientCapabilityError: Retry budget exhausted.
            PermanentCapabilityError: Capability rejected the input or output.
            FatalStageError: Upstream state is missing or inconsistent.
        """
        pass

    def progress_label(self, job: Job) -> str:
        return self.stage.value.capitalize()

    def unit_label(self, unit_index: int) -> str:
        return f"unit {unit_index}"

    def _call(
        self, func: Callable[[], T], description: str, job: Job, unit_index: int
    ) -> T:
        return call_with_retry(
            func,
            self.retry_policy,
            description=description,
            context={
                "job_id": job.job_id,
                "stage": self.stage.value,
                "unit_index": unit_index,
            },
        )

    def _require_artifact(self, job: Job, stage: Stage, unit_index: int) -> StageArtifact:
        artifact = self.db.get_artifact(job.job_id, stage, unit_index)
        if artifact is None:
            raise FatalStageError(
                f"Missing {stage.value} artifact {unit_index}",
                job_id=job.job_id,
                stage=self.stage.value,
                unit_index=unit_index,
            )
        return artifact

    def _page_numbers(self, job: Job) -> List[int]:
        return [u.unit_index for u in self.db.get_units(job.job_id, Stage.INGEST)]

    def _transcripts(self, job: Job) -> Dict[int, Dict[str, Any]]:
        """Transcribe artifacts of successfully transcribed pages, by page."""
        return {
            a.unit_index: a.data for a in self.db.get_artifacts(job.job_id, Stage.TRANSCRIBE)
        }

    def _sections(self, job: Job) -> List[Section]:
        artifact = self._require_artifact(job, Stage.STRUCTURE, 1)
        return [Section.from_dict(s) for s in artifact.data.get("sections", [])]


class IngestExecutor(StageExecutor):
    """
    Renders every page of the source documents to a PNG image.

    Pages are numbered continuously across the job's documents in their
    submitted order, so page 1 of the second document follows the last page
    of the first one.
    """

    stage = Stage.INGEST

    def __init__(
        self,
        db: DatabaseManager,
        blob_store: BlobStore,
        rasterizer: Rasterizer,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        super().__init__(db, blob_store, retry_policy)
        self.rasterizer = rasterizer
        self._cache_lock = threading.Lock()
        self._cached_job_id: Optional[str] = None
        self._documents: Dict[str, bytes] = {}
        self._page_map: Optional[List[Tuple[int, int]]] = None

    def _reset_cache(self, job: Job) -> None:
        # Caller holds _cache_lock
        if self._cached_job_id != job.job_id:
            self._cached_job_id = job.job_id
            self._documents = {}
            self._page_map = None

    def _document(self, job: Job, key: str) -> bytes:
        with self._cache_lock:
            self._reset_cache(job)
            cached = self._documents.get(key)
        if cached is not None:
            return cached

        data = self.blob_store.get(key)
        with self._cache_lock:
            self._reset_cache(job)
            return self._documents.setdefault(key, data)

    def page_map(self, job: Job) -> List[Tuple[int, int]]:
        """
        (document_index, source_page) of every global page, in order.

        Both values are 1-based; entry i describes global page i + 1.

        Raises:
            FatalStageError: If a document has no pages.
        """
        with self._cache_lock:
            self._reset_cache(job)
            cached = self._page_map
        if cached is not None:
            return cached

        pages: List[Tuple[int, int]] = []
        for number, key in enumerate(job.document_keys, start=1):
            document = self._document(job, key)
            count = self._call(
                lambda: self.rasterizer.page_count(document),
                f"page count of document {number}",
                job,
                0,
            )
            if count < 1:
                raise FatalStageError(
                    f"Document {number} has no pages",
                    job_id=job.job_id,
                    stage=self.stage.value,
                )
            pages.extend((number, page) for page in range(1, count + 1))

        with self._cache_lock:
            self._reset_cache(job)
            self._page_map = pages
        return pages

    def enumerate_units(self, job: Job) -> List[int]:
        existing = self._page_numbers(job)
        if existing:
            return existing

        pages = self.page_map(job)
        logger.info(
            f"Job {job.job_id} has {len(pages)} pages in "
            f"{len(job.document_keys)} document(s)",
            extra={"job_id": job.job_id, "stage": self.stage.value},
        )
        return list(range(1, len(pages) + 1))

    def execute_unit(self, job: Job, unit_index: int) -> ArtifactPayload:
        pages = self.page_map(job)
        if not 1 <= unit_index <= len(pages):
            raise FatalStageError(
                f"Page {unit_index} does not exist",
                job_id=job.job_id,
                stage=self.stage.value,
                unit_index=unit_index,
            )
        document_index, source_page = pages[unit_index - 1]
        document = self._document(job, job.document_keys[document_index - 1])
        page = self._call(
            lambda: self.rasterizer.rasterize(document, source_page),
            f"rasterize page {unit_index}",
            job,
            unit_index,
        )
        return ArtifactPayload(
            data={
                "page_number": unit_index,
                "document_index": document_index,
                "source_page": source_page,
                "width": page.width,
                "height": page.height,
            },
            blob=page.image,
            content_type=page.content_type,
            extension="png",
        )

    def progress_label(self, job: Job) -> str:
        return "Rendering pages"

    def unit_label(self, unit_index: int) -> str:
        return f"page {unit_index}"


class TranscribeExecutor(StageExecutor):
    """Transcribes each page image to text."""

    stage = Stage.TRANSCRIBE

    def __init__(
        self,
        db: DatabaseManager,
        blob_store: BlobStore,
        transcriber: VisionTranscriber,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        super().__init__(db, blob_store, retry_policy)
        self.transcriber = transcriber

    def enumerate_units(self, job: Job) -> List[int]:
        return self._page_numbers(job)

    def execute_unit(self, job: Job, unit_index: int) -> ArtifactPayload:
        page = self._require_artifact(job, Stage.INGEST, unit_index)
        image = self.blob_store.get(page.blob_key)

        text = self._call(
            lambda: self.transcriber.transcribe(image, unit_index, job.options.language),
            f"transcribe page {unit_index}",
            job,
            unit_index,
        )
        if not text or not text.strip():
            raise PermanentCapabilityError(
                f"Empty transcription for page {unit_index}",
                capability="transcriber",
                job_id=job.job_id,
                stage=self.stage.value,
            )

        return ArtifactPayload(
            data={
                "page_number": unit_index,
                "text": text,
                "has_visual_content": detect_visual_content(text),
                "word_count": count_words(text),
            }
        )

    def progress_label(self, job: Job) -> str:
        return "Transcribing pages"

    def unit_label(self, unit_index: int) -> str:
        return f"page {unit_index}"


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def normalize_sections(raw: Any, page_count: int) -> List[Section]:
    """
    Turn generator output into valid sections.

    Entries that are not objects are dropped. Missing titles get a numbered
    default, page ranges are clamped to [1, page_count] and ordered.

    Args:
        raw: The 'sections' value returned by the generator.
        page_count: Number of pages of the document.

    Returns:
        List of sections (possibly empty).
    """
    if not isinstance(raw, list):
        return []

    last_page = max(page_count, 1)
    sections: List[Section] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        number = len(sections) + 1
        title = str(item.get("title") or "").strip() or f"Section {number}"

        start = min(max(_as_int(item.get("start_page"), 1), 1), last_page)
        end = min(max(_as_int(item.get("end_page"), start), 1), last_page)
        if end < start:
            start, end = end, start

        key_points = item.get("key_points") or []
        if not isinstance(key_points, list):
            key_points = [key_points]

        sections.append(
            Section(
                title=title,
                start_page=start,
                end_page=end,
                summary=str(item.get("summary") or "").strip(),
                key_points=[str(p).strip() for p in key_points if str(p).strip()],
            )
        )
    return sections


class StructureExecutor(StageExecutor):
    """Splits the whole transcript into topic sections (single unit)."""

    stage = Stage.STRUCTURE

    def __init__(
        self,
        db: DatabaseManager,
        blob_store: BlobStore,
        generator: ContentGenerator,
        retry_policy: Optional[RetryPolicy] = None,
        max_input_chars: int = 60000,
    ) -> None:
        super().__init__(db, blob_store, retry_policy)
        self.generator = generator
        self.max_input_chars = max_input_chars

    def enumerate_units(self, job: Job) -> List[int]:
        return [1]

    def build_input(self, job: Job) -> Dict[str, Any]:
        """Assemble the bounded document text sent to the generator."""
        pages = self._page_numbers(job)
        transcripts = self._transcripts(job)
        blocks = [
            format_page_block(p, transcripts[p]["text"] if p in transcripts else None)
            for p in pages
        ]
        text, truncated = bound_page_blocks(blocks, self.max_input_chars)
        if truncated:
            logger.warning(
                f"Transcript of job {job.job_id} truncated to {len(text)} characters",
                extra={"job_id": job.job_id, "stage": self.stage.value},
            )
        return {"text": text, "truncated": truncated, "page_count": len(pages)}

    def execute_unit(self, job: Job, unit_index: int) -> ArtifactPayload:
        prepared = self.build_input(job)
        page_count = prepared["page_count"]

        result = self._call(
            lambda: self.generator.generate_structured(
                prepared["text"],
                "document_structure",
                {"page_count": page_count, "language": job.options.language},
            ),
            "document structure",
            job,
            unit_index,
        )
        sections = normalize_sections(result.get("sections"), page_count)
        if not sections:
            raise PermanentCapabilityError(
                "Document structure analysis returned no sections",
                capability="generator",
                job_id=job.job_id,
                stage=self.stage.value,
            )

        return ArtifactPayload(
            data={
                "page_count": page_count,
                "sections": [s.to_dict() for s in sections],
                "input_chars": len(prepared["text"]),
                "truncated": prepared["truncated"],
            }
        )

    def progress_label(self, job: Job) -> str:
        return "Analyzing document structure"

    def unit_label(self, unit_index: int) -> str:
        return "document"


def validate_questions(raw: Any) -> List[QuizQuestion]:
    """
    Keep well-formed questions from generator output.

    A question needs non-empty text, exactly four non-empty choices and an
    integer correct index in [0, 3].
    """
    if not isinstance(raw, list):
        return []

    questions: List[QuizQuestion] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        text = str(item.get("question") or "").strip()
        choices = item.get("choices")
        index = item.get("correct_index")
        if not text or not isinstance(choices, list):
            continue
        choices = [str(c).strip() for c in choices]
        if len(choices) != QUIZ_CHOICE_COUNT or not all(choices):
            continue
        if isinstance(index, bool) or not isinstance(index, int):
            continue
        if not 0 <= index < QUIZ_CHOICE_COUNT:
            continue
        questions.append(
            QuizQuestion(
                question=text,
                choices=choices,
                correct_index=index,
                explanation=str(item.get("explanation") or "").strip(),
            )
        )
    return questions


class EnrichExecutor(StageExecutor):
    """Generates a quiz or an audio narration for each section."""

    stage = Stage.ENRICH

    def __init__(
        self,
        db: DatabaseManager,
        blob_store: BlobStore,
        generator: ContentGenerator,
        synthesizer: SpeechSynthesizer,
        retry_policy: Optional[RetryPolicy] = None,
        questions_per_section: int = 5,
        max_tts_chars: int = 10000,
        max_section_chars: int = 12000,
    ) -> None:
        super().__init__(db, blob_store, retry_policy)
        self.generator = generator
        self.synthesizer = synthesizer
        self.questions_per_section = questions_per_section
        self.max_tts_chars = max_tts_chars
        self.max_section_chars = max_section_chars

    def enumerate_units(self, job: Job) -> List[int]:
        if job.options.enrichment == EnrichmentType.NONE:
            return []
        return list(range(1, len(self._sections(job)) + 1))

    def _section(self, job: Job, unit_index: int) -> Section:
        sections = self._sections(job)
        if not 1 <= unit_index <= len(sections):
            raise FatalStageError(
                f"Section {unit_index} does not exist",
                job_id=job.job_id,
                stage=self.stage.value,
                unit_index=unit_index,
            )
        return sections[unit_index - 1]

    def execute_unit(self, job: Job, unit_index: int) -> ArtifactPayload:
        section = self._section(job, unit_index)
        if job.options.enrichment == EnrichmentType.AUDIO:
            return self._narrate(job, unit_index, section)
        return self._quiz(job, unit_index, section)

    def section_text(self, job: Job, section: Section) -> str:
        """Summary, key points and page transcripts of a section, bounded."""
        transcripts = self._transcripts(job)
        blocks = []
        header = section.summary
        if section.key_points:
            header += "\n" + "\n".join(f"- {p}" for p in section.key_points)
        if header.strip():
            blocks.append(header.strip())
        for page in range(section.start_page, section.end_page + 1):
            if page in transcripts:
                blocks.append(format_page_block(page, transcripts[page]["text"]))
        text, _ = bound_page_blocks(blocks, self.max_section_chars)
        return text

    def _quiz(self, job: Job, unit_index: int, section: Section) -> ArtifactPayload:
        text = self.section_text(job, section)
        result = self._call(
            lambda: self.generator.generate_structured(
                text,
                "section_quiz",
                {
                    "title": section.title,
                    "question_count": self.questions_per_section,
                    "language": job.options.language,
                },
            ),
            f"quiz for section {unit_index}",
            job,
            unit_index,
        )
        questions = validate_questions(result.get("questions"))
        if len(questions) < self.questions_per_section:
            raise PermanentCapabilityError(
                f"Section {unit_index}: {len(questions)} valid questions, "
                f"{self.questions_per_section} required",
                capability="generator",
                job_id=job.job_id,
                stage=self.stage.value,
            )

        return ArtifactPayload(
            data={
                "section_index": unit_index,
                "title": section.title,
                "questions": [
                    q.to_dict() for q in questions[: self.questions_per_section]
                ],
            }
        )

    def _narrate(self, job: Job, unit_index: int, section: Section) -> ArtifactPayload:
        narration = truncate_text(
            f"{section.title}. {section.summary}".strip(), self.max_tts_chars, suffix=""
        )
        voice = VoiceParams(language=job.options.language, gender=job.options.voice)
        audio = self._call(
            lambda: self.synthesizer.synthesize(narration, voice),
            f"narration for section {unit_index}",
            job,
            unit_index,
        )
        return ArtifactPayload(
            data={
                "section_index": unit_index,
                "title": section.title,
                "narration_chars": len(narration),
            },
            blob=audio,
            content_type="audio/mpeg",
            extension="mp3",
        )

    def progress_label(self, job: Job) -> str:
        if job.options.enrichment == EnrichmentType.AUDIO:
            return "Narrating sections"
        return "Generating quizzes"

    def unit_label(self, unit_index: int) -> str:
        return f"section {unit_index}"


class AssembleExecutor(StageExecutor):
    """Builds the final lesson record from all earlier artifacts."""

    stage = Stage.ASSEMBLE

    def __init__(
        self,
        db: DatabaseManager,
        blob_store: BlobStore,
        retry_policy: Optional[RetryPolicy] = None,
        url_ttl_seconds: int = 3600,
    ) -> None:
        super().__init__(db, blob_store, retry_policy)
        self.url_ttl_seconds = url_ttl_seconds

    def enumerate_units(self, job: Job) -> List[int]:
        return [1]

    def execute_unit(self, job: Job, unit_index: int) -> ArtifactPayload:
        return ArtifactPayload(data=self.build_record(job))

    def build_record(self, job: Job) -> Dict[str, Any]:
        """
        Final lesson record.

        Failed transcriptions and enrichments appear as gaps; the rest of
        the record is unaffected by them.
        """
        gaps: List[Dict[str, Any]] = []
        units = {
            (u.stage, u.unit_index): u
            for u in self.db.get_units(job.job_id)
            if u.stage in (Stage.TRANSCRIBE, Stage.ENRICH)
        }

        images = {a.unit_index: a for a in self.db.get_artifacts(job.job_id, Stage.INGEST)}
        transcripts = self._transcripts(job)
        pages = []
        for page_number in self._page_numbers(job):
            image = images.get(page_number)
            transcript = transcripts.get(page_number)
            page: Dict[str, Any] = {
                "page_number": page_number,
                "document_index": image.data.get("document_index", 1) if image else None,
                "source_page": image.data.get("source_page", page_number) if image else None,
                "image_key": image.blob_key if image else None,
                "image_url": self._url(image.blob_key if image else None),
                "text": transcript["text"] if transcript else None,
                "has_visual_content": bool(transcript and transcript["has_visual_content"]),
            }
            unit = units.get((Stage.TRANSCRIBE, page_number))
            if transcript is None:
                error = unit.error_message if unit else "not transcribed"
                page["error"] = error
                gaps.append(
                    {"stage": Stage.TRANSCRIBE.value, "unit_index": page_number, "error": error}
                )
            pages.append(page)

        enrichments = {a.unit_index: a for a in self.db.get_artifacts(job.job_id, Stage.ENRICH)}
        enrichment_type = job.options.enrichment
        sections = []
        for index, section in enumerate(self._sections(job), start=1):
            entry: Dict[str, Any] = {"index": index, **section.to_dict()}
            if enrichment_type != EnrichmentType.NONE:
                artifact = enrichments.get(index)
                if artifact is None:
                    unit = units.get((Stage.ENRICH, index))
                    error = unit.error_message if unit else "not enriched"
                    entry["error"] = error
                    gaps.append(
                        {"stage": Stage.ENRICH.value, "unit_index": index, "error": error}
                    )
                elif enrichment_type == EnrichmentType.QUIZ:
                    entry["questions"] = artifact.data.get("questions", [])
                else:
                    entry["audio_key"] = artifact.blob_key
                    entry["audio_url"] = self._url(artifact.blob_key)
            sections.append(entry)

        return {
            "job_id": job.job_id,
            "language": job.options.language,
            "enrichment": enrichment_type.value,
            "document_count": len(job.document_keys),
            "page_count": len(pages),
            "pages": pages,
            "sections": sections,
            "gaps": gaps,
        }

    def _url(self, key: Optional[str]) -> Optional[str]:
        if not key:
            return None
        return self.blob_store.signed_url(key, self.url_ttl_seconds)

    def progress_label(self, job: Job) -> str:
        return "Assembling lesson"

    def unit_label(self, unit_index: int) -> str:
        return "lesson"


def build_executors(
    db: DatabaseManager,
    blob_store: BlobStore,
    rasterizer: Rasterizer,
    transcriber: VisionTranscriber,
    generator: ContentGenerator,
    synthesizer: SpeechSynthesizer,
    retry_policy: Optional[RetryPolicy] = None,
    options: Optional[Dict[str, Any]] = None,
) -> Dict[Stage, StageExecutor]:
    """
    Create one executor per stage.

    Args:
        options: Optional tuning with keys 'max_input_chars',
            'questions_per_section', 'max_tts_chars', 'max_section_chars'
            and 'url_ttl_seconds'.
    """
    options = options or {}
    return {
        Stage.INGEST: IngestExecutor(db, blob_store, rasterizer, retry_policy),
        Stage.TRANSCRIBE: TranscribeExecutor(db, blob_store, transcriber, retry_policy),
        Stage.STRUCTURE: StructureExecutor(
            db,
            blob_store,
            generator,
            retry_policy,
            max_input_chars=int(options.get("max_input_chars", 60000)),
        ),
        Stage.ENRICH: EnrichExecutor(
            db,
            blob_store,
            generator,
            synthesizer,
            retry_policy,
            questions_per_section=int(options.get("questions_per_section", 5)),
            max_tts_chars=int(options.get("max_tts_chars", 10000)),
            max_section_chars=int(options.get("max_section_chars", 12000)),
        ),
        Stage.ASSEMBLE: AssembleExecutor(
            db,
            blob_store,
            retry_policy,
            url_ttl_seconds=int(options.get("url_ttl_seconds", 3600)),
        ),
    }
