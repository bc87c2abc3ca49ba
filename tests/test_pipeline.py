"""Tests for resolver.pipeline module."""

import io
import threading

import pytest
from PIL import Image

from resolver import CatalogEntry, ExtractedFields, MatchQuery, MatchResult, Tier
from resolver.errors import CatalogError, ExtractionError, FailureKind, IllegalTransitionError
from resolver.extraction import Extracted, ExtractionFailed, StaticExtractor
from resolver.matching import match
from resolver.pipeline import (
    JobState,
    ResolutionJob,
    ResolutionPipeline,
    RoutingPolicy,
    can_transition,
    enrichment_search_text,
    route,
)
from resolver.quality import QC_ERROR_MESSAGE
from resolver.repository import InMemoryCatalog, InMemoryReviewQueue


def _fields(**kwargs) -> ExtractedFields:
    """Create ExtractedFields with defaults."""
    defaults = dict(
        producer='Château Margaux', wine_name='Château Margaux', vintage=2015,
        confidence={'producer': 0.9, 'wine_name': 0.9, 'vintage': 0.8},
    )
    defaults.update(kwargs)
    return ExtractedFields(**defaults)


class RecordingExtractor:
    """Extractor that counts calls and returns a fixed result."""

    def __init__(self, result):
        self.result = result
        self.calls = 0

    def extract(self, buffer):
        self.calls += 1
        return self.result


class RaisingExtractor:

    def __init__(self, exc=None):
        self.exc = exc or RuntimeError('model unavailable')

    def extract(self, buffer):
        raise self.exc


class HangingExtractor:
    """Extractor that blocks until released."""

    def __init__(self):
        self.release = threading.Event()

    def extract(self, buffer):
        self.release.wait(5)
        return Extracted(_fields())


class OfflineCatalog(InMemoryCatalog):

    def search(self, text):
        raise CatalogError('catalog offline')


class ReadOnlyCatalog(InMemoryCatalog):

    def upsert_item(self, owner_id, catalog_id, payload):
        raise CatalogError('write rejected')


class ResettingCatalog(InMemoryCatalog):

    def search(self, text):
        raise ConnectionError('connection reset')


class BrokenQueue(InMemoryReviewQueue):

    def submit(self, payload):
        raise OSError('queue unavailable')


@pytest.fixture
def queue() -> InMemoryReviewQueue:
    return InMemoryReviewQueue()


def _pipeline(catalog, extractor=None, queue=None, **kwargs) -> ResolutionPipeline:
    return ResolutionPipeline(catalog, extractor=extractor, review_queue=queue, **kwargs)


class TestStateMachine:
    """Tests for the job transition table."""

    def test_happy_path_edges(self):
        job = ResolutionJob()
        for state in (JobState.QC_RUNNING, JobState.QC_PASSED, JobState.EXTRACTION_RUNNING,
                      JobState.EXTRACTION_DONE, JobState.MATCHING_RUNNING, JobState.MATCHED,
                      JobState.ROUTING, JobState.AUTO_COMMITTED):
            job.advance(state)
        assert job.is_terminal
        assert len(job.history) == 9

    def test_illegal_transition(self):
        job = ResolutionJob()
        with pytest.raises(IllegalTransitionError, match='CREATED -> MATCHED'):
            job.advance(JobState.MATCHED)
        assert job.state is JobState.CREATED

    def test_terminal_states_are_final(self):
        job = ResolutionJob()
        job.advance(JobState.QC_RUNNING)
        job.advance(JobState.QC_FAILED)
        with pytest.raises(IllegalTransitionError):
            job.advance(JobState.QC_RUNNING)
        with pytest.raises(IllegalTransitionError):
            job.abandon()

    def test_no_abandon_while_running(self):
        assert not can_transition(JobState.EXTRACTION_RUNNING, JobState.ABANDONED)
        assert can_transition(JobState.QC_PASSED, JobState.ABANDONED)

    def test_manual_entry_edge(self):
        assert can_transition(JobState.CREATED, JobState.EXTRACTION_DONE)


class TestRoute:
    """Tests for the routing decision."""

    def _result(self, catalog_entries, producer, wine_name, vintage=None) -> MatchResult:
        return match(MatchQuery(producer, wine_name, vintage), catalog_entries)

    def test_exact_auto_commits(self, catalog_entries):
        result = self._result(catalog_entries, 'Penfolds', 'Grange', 2017)
        state, candidate = route(result, RoutingPolicy())
        assert state is JobState.AUTO_COMMITTED
        assert candidate.catalog_id == 5

    def test_exact_below_auto_commit_confidence(self, catalog_entries):
        result = self._result(catalog_entries, 'Château Margaux', 'Pavillon Rouge')
        assert result.tier is Tier.EXACT_MATCH
        state, _ = route(result, RoutingPolicy(auto_commit_confidence=0.9))
        assert state is JobState.PENDING_REVIEW

    def test_no_match_enrichment(self):
        empty = MatchResult(candidates=(), tier=Tier.NO_MATCH)
        assert route(empty, RoutingPolicy())[0] is JobState.AI_SEARCH_FALLBACK
        assert route(empty, RoutingPolicy(allow_enrichment=False))[0] is JobState.PENDING_REVIEW

    def test_search_text(self):
        assert enrichment_search_text(_fields(vintage=None)) == 'Château Margaux Château Margaux'


class TestRunImage:
    """Tests for the full label photo path."""

    def test_auto_commit(self, catalog, good_image, queue):
        extractor = RecordingExtractor(Extracted(_fields()))
        with _pipeline(catalog, extractor, queue, owner_id='u1') as pipeline:
            job = pipeline.run_image(good_image)
        assert job.state is JobState.AUTO_COMMITTED
        assert job.outcome.catalog_id == 1
        assert job.outcome.kind is None
        assert catalog.items[('u1', 1)]['quantity'] == 1
        assert [state for state, _ in job.history] == [
            JobState.CREATED, JobState.QC_RUNNING, JobState.QC_PASSED,
            JobState.EXTRACTION_RUNNING, JobState.EXTRACTION_DONE,
            JobState.MATCHING_RUNNING, JobState.MATCHED, JobState.ROUTING,
            JobState.AUTO_COMMITTED,
        ]

    def test_quality_failure_skips_extraction(self, catalog, dark_image):
        extractor = RecordingExtractor(Extracted(_fields()))
        with _pipeline(catalog, extractor) as pipeline:
            job = pipeline.run_image(dark_image)
        assert job.state is JobState.QC_FAILED
        assert job.outcome.kind is FailureKind.RECOVERABLE_INPUT
        assert job.outcome.message == QC_ERROR_MESSAGE
        assert 'Increase lighting or move to a brighter area' in job.outcome.tips
        assert extractor.calls == 0

    def test_extraction_failed(self, catalog, good_image):
        extractor = RecordingExtractor(ExtractionFailed('unreadable'))
        with _pipeline(catalog, extractor) as pipeline:
            job = pipeline.run_image(good_image)
        assert job.state is JobState.EXTRACTION_FAILED
        assert job.outcome.kind is FailureKind.RECOVERABLE_INPUT

    def test_extractor_exception(self, catalog, good_image):
        with _pipeline(catalog, RaisingExtractor()) as pipeline:
            job = pipeline.run_image(good_image)
        assert job.state is JobState.EXTRACTION_FAILED

    def test_extraction_error(self, catalog, good_image):
        with _pipeline(catalog, RaisingExtractor(ExtractionError('glare'))) as pipeline:
            job = pipeline.run_image(good_image)
        assert job.state is JobState.EXTRACTION_FAILED
        assert job.outcome.kind is FailureKind.RECOVERABLE_INPUT

    def test_extractor_timeout(self, catalog, good_image):
        extractor = HangingExtractor()
        try:
            with _pipeline(catalog, extractor, extraction_timeout=0.05) as pipeline:
                job = pipeline.run_image(good_image)
        finally:
            extractor.release.set()
        assert job.state is JobState.EXTRACTION_FAILED

    def test_mapping_result_parsed(self, catalog, good_image):
        payload = {'producer': 'Penfolds', 'wine_name': 'Grange', 'vintage': '2017'}
        with _pipeline(catalog, RecordingExtractor(payload)) as pipeline:
            job = pipeline.run_image(good_image)
        assert job.extracted.vintage == 2017
        assert job.outcome.catalog_id == 5

    def test_missing_extracted_fields(self, catalog, good_image):
        with _pipeline(catalog, RecordingExtractor({'producer': 'Penfolds'})) as pipeline:
            job = pipeline.run_image(good_image)
        assert job.state is JobState.EXTRACTION_FAILED

    def test_cancelled_after_quality_check(self, catalog, good_image):
        extractor = RecordingExtractor(Extracted(_fields()))
        cancel = threading.Event()
        cancel.set()
        with _pipeline(catalog, extractor) as pipeline:
            job = pipeline.run_image(good_image, cancel)
        assert job.state is JobState.ABANDONED
        assert extractor.calls == 0

    def test_undecodable_bytes(self, catalog):
        with _pipeline(catalog, StaticExtractor(_fields())) as pipeline:
            job = pipeline.run_bytes(b'not an image', 'image/jpeg')
        assert job.state is JobState.QC_FAILED
        assert job.quality.metrics is None

    def test_small_upload_fails_quality(self, catalog):
        out = io.BytesIO()
        Image.new('RGB', (200, 200), (128, 128, 128)).save(out, format='PNG')
        with _pipeline(catalog, StaticExtractor(_fields())) as pipeline:
            job = pipeline.run_bytes(out.getvalue(), 'image/png')
        assert job.state is JobState.QC_FAILED
        assert job.quality.metrics.width == 200


class TestRunFields:
    """Tests for manually entered fields."""

    def test_enters_at_extraction_done(self, catalog):
        with _pipeline(catalog) as pipeline:
            job = pipeline.run_fields(_fields())
        assert [state for state, _ in job.history][:2] == [
            JobState.CREATED, JobState.EXTRACTION_DONE,
        ]
        assert job.state is JobState.AUTO_COMMITTED

    def test_no_owner_means_no_item(self, catalog):
        with _pipeline(catalog) as pipeline:
            pipeline.run_fields(_fields())
        assert catalog.items == {}

    def test_likely_match_goes_to_review(self, queue):
        catalog = InMemoryCatalog([
            CatalogEntry(catalog_id=10, producer='Penfolds', wine_name='Grange Hermitage',
                         vintage=1990),
        ])
        with _pipeline(catalog, queue=queue) as pipeline:
            job = pipeline.run_fields(_fields(producer='Penfolds', wine_name='Grange',
                                              vintage=None))
        assert job.state is JobState.PENDING_REVIEW
        assert job.outcome.kind is FailureKind.AMBIGUOUS_MATCH
        assert job.outcome.review.proposal == 'choose_candidate'
        assert job.outcome.review.candidates[0].catalog_id == 10
        assert job.outcome.review_id == 1
        assert queue.items == [job.outcome.review]

    def test_likely_match_accepted(self):
        catalog = InMemoryCatalog([
            CatalogEntry(catalog_id=10, producer='Penfolds', wine_name='Grange Hermitage'),
        ])
        policy = RoutingPolicy(accept_likely_matches=True)
        with _pipeline(catalog, policy=policy) as pipeline:
            job = pipeline.run_fields(_fields(producer='Penfolds', wine_name='Grange',
                                              vintage=None))
        assert job.state is JobState.AUTO_COMMITTED
        assert job.outcome.catalog_id == 10

    def test_no_match_enrichment(self, catalog):
        fields = _fields(producer='Nobody Winery', wine_name='Mystery Red', vintage=2020)
        with _pipeline(catalog) as pipeline:
            job = pipeline.run_fields(fields)
        assert job.state is JobState.AI_SEARCH_FALLBACK
        assert job.outcome.kind is FailureKind.MISSING_MATCH
        assert job.outcome.search_text == 'Nobody Winery Mystery Red 2020'

    def test_no_match_review(self, catalog, queue):
        fields = _fields(producer='Nobody Winery', wine_name='Mystery Red', vintage=2020)
        policy = RoutingPolicy(allow_enrichment=False)
        with _pipeline(catalog, queue=queue, policy=policy) as pipeline:
            job = pipeline.run_fields(fields)
        assert job.state is JobState.PENDING_REVIEW
        assert job.outcome.review.proposal == 'new_entity'
        assert job.outcome.kind is FailureKind.MISSING_MATCH

    def test_catalog_failure_is_no_match(self, catalog_entries):
        with _pipeline(OfflineCatalog(catalog_entries)) as pipeline:
            job = pipeline.run_fields(_fields())
        assert job.match_result.tier is Tier.NO_MATCH
        assert job.state is JobState.AI_SEARCH_FALLBACK

    def test_unexpected_catalog_error_is_no_match(self, catalog_entries):
        with _pipeline(ResettingCatalog(catalog_entries)) as pipeline:
            job = pipeline.run_fields(_fields())
        assert job.is_terminal
        assert job.match_result.tier is Tier.NO_MATCH
        assert job.state is JobState.AI_SEARCH_FALLBACK

    def test_review_submit_failure_still_pending(self, catalog):
        fields = _fields(producer='Nobody Winery', wine_name='Mystery Red', vintage=2020)
        policy = RoutingPolicy(allow_enrichment=False)
        with _pipeline(catalog, queue=BrokenQueue(), policy=policy) as pipeline:
            job = pipeline.run_fields(fields)
        assert job.state is JobState.PENDING_REVIEW
        assert job.outcome.review_id is None

    def test_rejected_write_goes_to_review(self, catalog_entries, queue):
        catalog = ReadOnlyCatalog(catalog_entries)
        with _pipeline(catalog, queue=queue, owner_id='u1') as pipeline:
            job = pipeline.run_fields(_fields())
        assert job.state is JobState.PENDING_REVIEW
        assert len(queue.items) == 1

    def test_low_confidence_recorded(self, catalog):
        fields = _fields(confidence={'producer': 0.2})
        with _pipeline(catalog) as pipeline:
            job = pipeline.run_fields(fields)
        assert 'Overall confidence too low - manual entry recommended' in job.extraction_issues

    def test_concurrent_jobs(self, catalog):
        with _pipeline(catalog, owner_id='u1') as pipeline:
            threads = [
                threading.Thread(target=pipeline.run_fields, args=(_fields(),))
                for _ in range(8)
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
        assert catalog.items[('u1', 1)]['quantity'] == 1
