"""Resolution pipeline: quality check, extraction, matching and routing.

One :class:`ResolutionJob` drives one input through an explicit state
machine::

    CREATED -> QC_RUNNING -> QC_FAILED | QC_PASSED
    QC_PASSED -> EXTRACTION_RUNNING -> EXTRACTION_FAILED | EXTRACTION_DONE
    EXTRACTION_DONE -> MATCHING_RUNNING -> MATCHED | NO_MATCH -> ROUTING
    ROUTING -> AUTO_COMMITTED | PENDING_REVIEW | AI_SEARCH_FALLBACK

Manually entered fields enter at EXTRACTION_DONE. A job can be abandoned
between stages, never while a stage is running.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping

from resolver import (
    ExtractedFields,
    ImageBuffer,
    MatchCandidate,
    MatchQuery,
    MatchResult,
    QualityMetrics,
    QualityReport,
    Tier,
)
from resolver.errors import CatalogError, ExtractionError, FailureKind, IllegalTransitionError
from resolver.extraction import (
    Extracted,
    ExtractionFailed,
    ExtractionResult,
    Extractor,
    parse_extraction,
    validate_extracted,
)
from resolver.matching import DEFAULT_THRESHOLD, EXACT_CONFIDENCE, match
from resolver.quality import (
    DECODE_FAILED_REASON,
    QC_ERROR_MESSAGE,
    QCConfig,
    decode_image,
    evaluate,
    qc_tips,
)
from resolver.repository import CatalogRepository, ReviewQueue

log = logging.getLogger(__name__)

EXTRACTION_FAILED_MESSAGE = (
    'The label could not be read. Please type in the vintage, producer and wine name.'
)
REVIEW_MESSAGE = 'Wine submitted for moderation. You will be notified when it is approved.'


class JobState(str, Enum):
    CREATED = 'CREATED'
    QC_RUNNING = 'QC_RUNNING'
    QC_FAILED = 'QC_FAILED'
    QC_PASSED = 'QC_PASSED'
    EXTRACTION_RUNNING = 'EXTRACTION_RUNNING'
    EXTRACTION_FAILED = 'EXTRACTION_FAILED'
    EXTRACTION_DONE = 'EXTRACTION_DONE'
    MATCHING_RUNNING = 'MATCHING_RUNNING'
    MATCHED = 'MATCHED'
    NO_MATCH = 'NO_MATCH'
    ROUTING = 'ROUTING'
    AUTO_COMMITTED = 'AUTO_COMMITTED'
    PENDING_REVIEW = 'PENDING_REVIEW'
    AI_SEARCH_FALLBACK = 'AI_SEARCH_FALLBACK'
    ABANDONED = 'ABANDONED'


TERMINAL_STATES = frozenset({
    JobState.QC_FAILED,
    JobState.EXTRACTION_FAILED,
    JobState.AUTO_COMMITTED,
    JobState.PENDING_REVIEW,
    JobState.AI_SEARCH_FALLBACK,
    JobState.ABANDONED,
})

RUNNING_STATES = frozenset({
    JobState.QC_RUNNING,
    JobState.EXTRACTION_RUNNING,
    JobState.MATCHING_RUNNING,
    JobState.ROUTING,
})

TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.CREATED: frozenset({JobState.QC_RUNNING, JobState.EXTRACTION_DONE}),
    JobState.QC_RUNNING: frozenset({JobState.QC_FAILED, JobState.QC_PASSED}),
    JobState.QC_PASSED: frozenset({JobState.EXTRACTION_RUNNING}),
    JobState.EXTRACTION_RUNNING: frozenset({JobState.EXTRACTION_FAILED, JobState.EXTRACTION_DONE}),
    JobState.EXTRACTION_DONE: frozenset({JobState.MATCHING_RUNNING}),
    JobState.MATCHING_RUNNING: frozenset({JobState.MATCHED, JobState.NO_MATCH}),
    JobState.MATCHED: frozenset({JobState.ROUTING}),
    JobState.NO_MATCH: frozenset({JobState.ROUTING}),
    JobState.ROUTING: frozenset({
        JobState.AUTO_COMMITTED, JobState.PENDING_REVIEW, JobState.AI_SEARCH_FALLBACK,
    }),
}


def can_transition(current: JobState, target: JobState) -> bool:
    """Whether ``current -> target`` is an edge of the job state machine."""
    if target is JobState.ABANDONED:
        return current not in TERMINAL_STATES and current not in RUNNING_STATES
    return target in TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class RoutingPolicy:
    """Knobs of the routing decision.

    The 0.70 / 0.80 defaults are empirical and not yet calibrated.
    """

    auto_commit_confidence: float = EXACT_CONFIDENCE
    accept_likely_matches: bool = False
    allow_enrichment: bool = True
    threshold: float = DEFAULT_THRESHOLD


@dataclass(frozen=True)
class ReviewPayload:
    """Everything a moderator needs to decide without re-running the job."""

    job_id: str
    extracted_fields: ExtractedFields
    candidates: tuple[MatchCandidate, ...]
    quality_metrics: QualityMetrics | None
    proposal: str  # 'choose_candidate' or 'new_entity'
    issues: tuple[str, ...] = ()


@dataclass(frozen=True)
class Decision:
    """Terminal outcome of a job."""

    state: JobState
    kind: FailureKind | None
    message: str
    catalog_id: int | None = None
    tips: tuple[str, ...] = ()
    review: ReviewPayload | None = None
    review_id: int | None = None
    search_text: str | None = None


@dataclass
class ResolutionJob:
    """State machine instance for one input."""

    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.CREATED
    quality: QualityReport | None = None
    extracted: ExtractedFields | None = None
    extraction_issues: list[str] = field(default_factory=list)
    match_result: MatchResult | None = None
    outcome: Decision | None = None
    history: list[tuple[JobState, datetime]] = field(default_factory=list)

    def __post_init__(self):
        self.history.append((self.state, datetime.now(timezone.utc)))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, target: JobState) -> None:
        """Move to ``target``.

        Raises:
            IllegalTransitionError: If the edge does not exist.
        """
        if not can_transition(self.state, target):
            raise IllegalTransitionError(self.state, target)
        log.debug("Job %s: %s -> %s", self.job_id, self.state.value, target.value)
        self.state = target
        self.history.append((target, datetime.now(timezone.utc)))

    def abandon(self) -> None:
        self.advance(JobState.ABANDONED)
        self.outcome = Decision(
            state=JobState.ABANDONED, kind=None, message='Job abandoned',
        )


def route(result: MatchResult, policy: RoutingPolicy) -> tuple[JobState, MatchCandidate | None]:
    """Pick the terminal state for a match result.

    Args:
        result: Output of the matcher.
        policy: Routing knobs.

    Returns:
        The terminal state and, for AUTO_COMMITTED, the candidate to commit.
    """
    top = result.top
    if result.tier is Tier.EXACT_MATCH and top.confidence >= policy.auto_commit_confidence:
        return JobState.AUTO_COMMITTED, top
    if result.tier is Tier.LIKELY_MATCH and policy.accept_likely_matches:
        return JobState.AUTO_COMMITTED, top
    if result.tier is Tier.NO_MATCH and policy.allow_enrichment:
        return JobState.AI_SEARCH_FALLBACK, None
    return JobState.PENDING_REVIEW, None


def enrichment_search_text(fields: ExtractedFields) -> str:
    text = f"{fields.producer} {fields.wine_name}"
    if fields.vintage:
        text += f" {fields.vintage}"
    return text


class ResolutionPipeline:
    """Runs resolution jobs against injected collaborators.

    Jobs share nothing but the catalog, so one pipeline can serve several
    threads. Extraction runs on a worker pool and is bounded by
    ``extraction_timeout``; a timeout is handled like any other extraction
    failure.
    """

    def __init__(
        self,
        catalog: CatalogRepository,
        extractor: Extractor | None = None,
        review_queue: ReviewQueue | None = None,
        qc_config: QCConfig | None = None,
        policy: RoutingPolicy | None = None,
        extraction_timeout: float = 30.0,
        owner_id: str | None = None,
        max_workers: int = 4,
    ):
        self.catalog = catalog
        self.extractor = extractor
        self.review_queue = review_queue
        self.qc_config = qc_config or QCConfig()
        self.policy = policy or RoutingPolicy()
        self.extraction_timeout = extraction_timeout
        self.owner_id = owner_id
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix='extraction',
        )

    def close(self) -> None:
        # Do not wait for a hung extractor
        self._executor.shutdown(wait=False)

    def __enter__(self) -> 'ResolutionPipeline':
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # --- entry points -------------------------------------------------

    def run_bytes(
        self,
        data: bytes,
        mime_type: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ResolutionJob:
        """Decode an uploaded image and resolve it."""
        try:
            buffer = decode_image(data, mime_type)
        except ValueError as exc:
            log.warning("Image could not be decoded: %s", exc)
            job = ResolutionJob()
            job.advance(JobState.QC_RUNNING)
            job.quality = QualityReport(reasons=(DECODE_FAILED_REASON,), metrics=None)
            self._reject_quality(job)
            return job
        return self.run_image(buffer, cancel)

    def run_image(self, buffer: ImageBuffer, cancel: threading.Event | None = None) -> ResolutionJob:
        """Resolve a decoded label photograph."""
        job = ResolutionJob()

        job.advance(JobState.QC_RUNNING)
        job.quality = evaluate(buffer, self.qc_config)
        if not job.quality.passed:
            self._reject_quality(job)
            return job
        job.advance(JobState.QC_PASSED)
        if self._abandoned(job, cancel):
            return job

        job.advance(JobState.EXTRACTION_RUNNING)
        result = self._extract(buffer)
        if isinstance(result, ExtractionFailed):
            log.warning("Job %s: extraction failed: %s", job.job_id, result.reason)
            job.advance(JobState.EXTRACTION_FAILED)
            job.outcome = Decision(
                state=JobState.EXTRACTION_FAILED,
                kind=FailureKind.RECOVERABLE_INPUT,
                message=EXTRACTION_FAILED_MESSAGE,
            )
            return job
        job.extracted = result.fields
        job.advance(JobState.EXTRACTION_DONE)
        if self._abandoned(job, cancel):
            return job

        return self._match_and_route(job, cancel)

    def run_fields(self, fields: ExtractedFields, cancel: threading.Event | None = None) -> ResolutionJob:
        """Resolve manually entered fields (no photo, no extraction)."""
        job = ResolutionJob()
        job.extracted = fields
        job.advance(JobState.EXTRACTION_DONE)
        return self._match_and_route(job, cancel)

    # --- stages ---------------------------------------------------------

    def _abandoned(self, job: ResolutionJob, cancel: threading.Event | None) -> bool:
        if cancel is not None and cancel.is_set():
            log.info("Job %s abandoned in state %s", job.job_id, job.state.value)
            job.abandon()
            return True
        return False

    def _reject_quality(self, job: ResolutionJob) -> None:
        job.advance(JobState.QC_FAILED)
        job.outcome = Decision(
            state=JobState.QC_FAILED,
            kind=FailureKind.RECOVERABLE_INPUT,
            message=QC_ERROR_MESSAGE,
            tips=tuple(qc_tips(job.quality)),
        )

    def _extract(self, buffer: ImageBuffer) -> ExtractionResult:
        if self.extractor is None:
            return ExtractionFailed('No extractor configured')

        future = self._executor.submit(self.extractor.extract, buffer)
        try:
            result = future.result(timeout=self.extraction_timeout)
        except FutureTimeout:
            future.cancel()
            return ExtractionFailed(f"Extraction timed out after {self.extraction_timeout}s")
        except ExtractionError as exc:
            return ExtractionFailed(str(exc))
        except Exception as exc:  # collaborator failures all mean "fall back"
            log.exception("Extractor raised")
            return ExtractionFailed(f"Extractor error: {exc}")

        if isinstance(result, Mapping):
            result = parse_extraction(result)
        if not isinstance(result, (Extracted, ExtractionFailed)):
            return ExtractionFailed(f"Unexpected extractor result: {type(result).__name__}")
        return result

    def _match(self, fields: ExtractedFields) -> MatchResult:
        query = MatchQuery(
            producer=fields.producer, wine_name=fields.wine_name, vintage=fields.vintage,
        )
        try:
            pool = self.catalog.search(f"{fields.producer} {fields.wine_name}")
            return match(query, pool, self.policy.threshold)
        except CatalogError as exc:
            log.warning("Catalog unavailable, treating as no match: %s", exc)
            return MatchResult(candidates=(), tier=Tier.NO_MATCH)
        except Exception:
            log.exception("Catalog search raised, treating as no match")
            return MatchResult(candidates=(), tier=Tier.NO_MATCH)

    def _match_and_route(self, job: ResolutionJob, cancel: threading.Event | None) -> ResolutionJob:
        fields = job.extracted
        job.extraction_issues = validate_extracted(fields)
        if job.extraction_issues:
            log.info("Job %s: extraction issues: %s", job.job_id, '; '.join(job.extraction_issues))

        job.advance(JobState.MATCHING_RUNNING)
        job.match_result = self._match(fields)
        if job.match_result.tier is Tier.NO_MATCH:
            job.advance(JobState.NO_MATCH)
        else:
            job.advance(JobState.MATCHED)
        if self._abandoned(job, cancel):
            return job

        job.advance(JobState.ROUTING)
        target, candidate = route(job.match_result, self.policy)

        if target is JobState.AUTO_COMMITTED:
            try:
                self._commit(job, candidate)
                return job
            except CatalogError as exc:
                log.warning("Job %s: commit failed, sending to review: %s", job.job_id, exc)
                target = JobState.PENDING_REVIEW

        if target is JobState.AI_SEARCH_FALLBACK:
            job.advance(JobState.AI_SEARCH_FALLBACK)
            job.outcome = Decision(
                state=JobState.AI_SEARCH_FALLBACK,
                kind=FailureKind.MISSING_MATCH,
                message='No catalog match found; searching external sources.',
                search_text=enrichment_search_text(fields),
            )
        else:
            self._submit_review(job)

        log.info("Job %s finished: %s", job.job_id, job.state.value)
        return job

    def _commit(self, job: ResolutionJob, candidate: MatchCandidate) -> None:
        if self.owner_id is not None:
            self.catalog.upsert_item(
                self.owner_id, candidate.catalog_id,
                {'quantity': 1, 'status': 'stored', 'source': 'label_scan'},
            )
        job.advance(JobState.AUTO_COMMITTED)
        job.outcome = Decision(
            state=JobState.AUTO_COMMITTED,
            kind=None,
            message=f"Matched catalog entry {candidate.catalog_id}",
            catalog_id=candidate.catalog_id,
        )
        log.info(
            "Job %s auto-committed to %d (confidence %.2f)",
            job.job_id, candidate.catalog_id, candidate.confidence,
        )

    def _submit_review(self, job: ResolutionJob) -> None:
        result = job.match_result
        no_match = result.tier is Tier.NO_MATCH
        payload = ReviewPayload(
            job_id=job.job_id,
            extracted_fields=job.extracted,
            candidates=result.candidates,
            quality_metrics=job.quality.metrics if job.quality else None,
            proposal='new_entity' if no_match else 'choose_candidate',
            issues=tuple(job.extraction_issues),
        )
        review_id = None
        if self.review_queue is not None:
            try:
                review_id = self.review_queue.submit(payload)
            except Exception:
                log.exception("Review queue rejected job %s", job.job_id)
        job.advance(JobState.PENDING_REVIEW)
        job.outcome = Decision(
            state=JobState.PENDING_REVIEW,
            kind=FailureKind.MISSING_MATCH if no_match else FailureKind.AMBIGUOUS_MATCH,
            message=REVIEW_MESSAGE,
            review=payload,
            review_id=review_id,
        )
