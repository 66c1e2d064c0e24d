"""
Tests for the discovery pipeline (one enrichment unit end to end).

Generation is stubbed; deduplication and resolution run for real against
a recording engine and fake providers. The pipeline's own engine answers
the lock, unit-state and transition statements.

Run with: pytest tests/test_discovery_pipeline.py -v
"""
from unittest.mock import MagicMock

import pytest

from errors import DataConflict, LockNotAcquired
from fakes import FakeEngine, FakeIsbnResolver, FakeRedis, FakeResult, make_registry
from providers.capabilities import GeneratedBook, ResolutionResult
from services.deduplication import DeduplicationEngine
from services.discovery_pipeline import DiscoveryPipeline, unit_from_message
from services.generation_orchestrator import GenerationResult, ProviderGenerationStats
from services.job_status import JOB_COMPLETE, JOB_FAILED, JOB_PROCESSING, JobStatusStore
from services.resolution_orchestrator import ResolutionOrchestrator

JOB_ID = 'a6f3c2d0-0000-4000-8000-000000000001'

TITLES = [
    'Normal People', 'Milkman', 'The Overstory', 'Circe', 'Educated',
    'There There', 'Washington Black', 'Less', 'Transcription', 'Kudos',
    'Warlight', 'Asymmetry', 'Severance', 'Florida', 'Heavy',
    'Calypso', 'Frankenstein in Baghdad', 'Flights', 'Sabrina', 'Outline',
]


def isbn13(n):
    """Valid ISBN-13 for a small serial number."""
    body = f"978{n:09d}"
    total = sum(int(d) * (1 if i % 2 == 0 else 3) for i, d in enumerate(body))
    return body + str((10 - total % 10) % 10)


def candidates(count=20, known=0):
    """Generated books; the first `known` carry a key already in the catalog."""
    books = []
    for i, title in enumerate(TITLES[:count]):
        books.append(GeneratedBook(
            title=title, author=f'Author {i}', publication_year=2018,
            isbn=isbn13(900 + i) if i < known else None, source='gemini',
        ))
    return books


def resolution(title, serial, source):
    return ResolutionResult(isbn=isbn13(serial), confidence=90, source=source, title=title)


def unit_engine(status='processing', job_id=JOB_ID, lock_free=True, retry_count=0):
    def respond(sql, params):
        if 'pg_try_advisory_lock' in sql:
            return [{'acquired': lock_free}]
        if 'pg_advisory_unlock' in sql:
            return [{'released': True}]
        if 'SELECT status, job_id FROM enrichment_units' in sql:
            return [{'status': status, 'job_id': job_id}]
        if 'SELECT id, status, retry_count' in sql:
            return [{'id': params['id'], 'status': status, 'retry_count': retry_count, 'started_at': None}]
        return FakeResult(rowcount=1)
    return FakeEngine(respond)


def catalog_engine(known_isbns=()):
    def respond(sql, params):
        if 'isbn = ANY' in sql:
            return [{'isbn': k} for k in params['isbns'] if k in known_isbns]
        return None
    return FakeEngine(respond)


def stub_generator(books, provider='gemini'):
    generator = MagicMock()
    generator.generate_candidates.return_value = GenerationResult(
        candidates=list(books),
        providers=[ProviderGenerationStats(provider, 'ok', len(books))],
        total_generated=len(books),
    )
    return generator


def build_pipeline(engine=None, generator=None, resolver=None, known_isbns=(), merger=None):
    store = JobStatusStore(FakeRedis())
    queue = MagicMock()
    pipeline = DiscoveryPipeline(
        engine=engine or unit_engine(),
        generator=generator or stub_generator([]),
        deduplicator=DeduplicationEngine(catalog_engine(known_isbns)),
        resolver=resolver or ResolutionOrchestrator(make_registry()),
        merger=merger or MagicMock(),
        job_store=store,
        enrichment_queue=queue,
    )
    return pipeline, store, queue


def period_message(**overrides):
    message = {'job_id': JOB_ID, 'unit_id': 7, 'year': 2019, 'month': 5,
               'batch_size': 20, 'prompt_variant': 'baseline'}
    message.update(overrides)
    return message


# =============================================================================
# Full unit
# =============================================================================

class TestPeriodUnit:

    def test_known_candidates_skip_resolution(self):
        """20 generated, 5 already known, 12 resolved by the primary, 3 by the fallback."""
        books = candidates(20, known=5)
        to_resolve = [b.title for b in books[5:]]
        primary = FakeIsbnResolver('isbndb', provider_type='paid', results={
            t: resolution(t, 100 + i, 'isbndb') for i, t in enumerate(to_resolve[:12])
        })
        fallback = FakeIsbnResolver('google-books', results={
            t: resolution(t, 200 + i, 'google-books') for i, t in enumerate(to_resolve[12:])
        })
        resolver = ResolutionOrchestrator(make_registry(primary, fallback))
        known = {b.isbn for b in books[:5]}

        pipeline, store, queue = build_pipeline(
            generator=stub_generator(books), resolver=resolver, known_isbns=known,
        )
        result = pipeline.process(period_message())

        assert result.success
        assert result.generated == 20
        assert result.known == 5
        assert result.resolved == 15
        assert result.unresolved == 0
        assert result.resolution_rate == 100.0
        assert result.queued == 15
        assert result.unit_status == 'completed'
        assert result.provider_calls == {'gemini': 1, 'isbndb': 15, 'google-books': 3}
        # known candidates never reach the resolver
        assert not set(primary.calls) & {b.title for b in books[:5]}

        bodies = queue.send_batch.call_args.args[0]
        assert len(bodies) == 1
        assert len(bodies[0]['isbns']) == 15
        assert bodies[0]['source'] == 'backfill-2019-05'
        assert bodies[0]['priority'] == 'low'
        assert bodies[0]['job_id'] == JOB_ID

        job = store.get(JOB_ID)
        assert job['status'] == JOB_COMPLETE
        assert job['stats']['resolution_rate'] == 100.0

    def test_completion_metrics_written(self):
        books = candidates(3)
        primary = FakeIsbnResolver('isbndb', results={b.title: resolution(b.title, 300 + i, 'isbndb')
                                                      for i, b in enumerate(books)})
        engine = unit_engine()
        pipeline, _, _ = build_pipeline(
            engine=engine, generator=stub_generator(books),
            resolver=ResolutionOrchestrator(make_registry(primary)),
        )
        pipeline.process(period_message())

        params = engine.statements("SET status = 'completed'")[0][1]
        assert params['generated'] == 3
        assert params['resolved'] == 3
        assert params['queued'] == 3
        assert params['known'] == 0

    def test_prompt_built_from_message(self):
        generator = stub_generator([])
        pipeline, _, _ = build_pipeline(generator=generator)
        pipeline.process(period_message(prompt_variant='diversity-emphasis', batch_size=12))

        prompt, count = generator.generate_candidates.call_args.args
        assert 'May 2019' in prompt
        assert 'exactly 12' in prompt
        assert count == 12

    def test_unresolved_become_synthetic_works(self):
        books = candidates(2)
        merger = MagicMock()
        merger.persist_synthetic_work.side_effect = ['/works/syn-a', '/works/syn-b']
        registry = make_registry(
            FakeIsbnResolver('isbndb', available=False),
            FakeIsbnResolver('google-books', available=False),
        )
        pipeline, store, queue = build_pipeline(
            generator=stub_generator(books), resolver=ResolutionOrchestrator(registry), merger=merger,
        )
        result = pipeline.process(period_message())

        assert result.success
        assert result.unresolved == 2
        assert result.synthetic_works == ['/works/syn-a', '/works/syn-b']
        assert result.resolution_rate == 0.0
        assert merger.persist_synthetic_work.call_count == 2
        queue.send_batch.assert_not_called()
        assert store.get(JOB_ID)['status'] == JOB_COMPLETE

    def test_supplied_valid_isbn_used_directly(self):
        book = GeneratedBook(title='Milkman', author='Anna Burns', isbn=isbn13(55))
        primary = FakeIsbnResolver('isbndb')
        pipeline, _, queue = build_pipeline(
            generator=stub_generator([book]), resolver=ResolutionOrchestrator(make_registry(primary)),
        )
        result = pipeline.process(period_message())

        assert result.resolved == 1
        assert primary.calls == []
        assert queue.send_batch.call_args.args[0][0]['isbns'] == [isbn13(55)]

    def test_no_candidates_completes(self):
        pipeline, store, _ = build_pipeline()
        result = pipeline.process(period_message())

        assert result.success
        assert result.generated == 0
        assert result.resolution_rate is None
        assert store.get(JOB_ID)['status'] == JOB_COMPLETE


# =============================================================================
# ISBN batch unit
# =============================================================================

class TestIsbnBatchUnit:

    def test_new_keys_queued(self):
        known = isbn13(1)
        pipeline, _, queue = build_pipeline(known_isbns={known})
        result = pipeline.process({
            'job_id': JOB_ID, 'unit_id': 12,
            'isbns': [known, isbn13(2), isbn13(2), 'not-an-isbn', '0-306-40615-2'],
        })

        assert result.generated == 3
        assert result.known == 1
        assert result.resolved == 2
        body = queue.send_batch.call_args.args[0][0]
        assert body['isbns'] == [isbn13(2), '9780306406157']
        assert body['source'] == 'isbn-batch-12'

    def test_lock_key_from_unit_id(self):
        engine = unit_engine()
        pipeline, _, _ = build_pipeline(engine=engine)
        pipeline.process({'job_id': JOB_ID, 'unit_id': 12, 'isbns': [isbn13(1)]})
        assert engine.statements('pg_try_advisory_lock')[0][1]['key'] == 1_000_000_012

    def test_unit_from_message(self):
        assert unit_from_message({'unit_id': 3, 'isbns': ['x']}) == {'id': 3, 'unit_type': 'isbn_batch'}
        assert unit_from_message(period_message())['unit_type'] == 'period'


# =============================================================================
# Locking and state
# =============================================================================

class TestUnitGuards:

    def test_busy_lock_raises(self):
        engine = unit_engine(lock_free=False)
        generator = stub_generator([])
        pipeline, _, _ = build_pipeline(engine=engine, generator=generator)

        with pytest.raises(LockNotAcquired):
            pipeline.process(period_message())
        generator.generate_candidates.assert_not_called()
        assert engine.statements('pg_advisory_unlock') == []

    def test_lock_released_after_processing(self):
        engine = unit_engine()
        pipeline, _, _ = build_pipeline(engine=engine)
        pipeline.process(period_message())

        sqls = [sql for sql, _ in engine.executed]
        assert 'pg_try_advisory_lock' in sqls[0]
        assert 'pg_advisory_unlock' in sqls[-1]
        assert engine.statements('pg_advisory_unlock')[0][1]['key'] == 201905

    @pytest.mark.parametrize('status', ['completed', 'pending', 'failed'])
    def test_unit_not_processing_is_skipped(self, status):
        generator = stub_generator([])
        pipeline, _, _ = build_pipeline(engine=unit_engine(status=status), generator=generator)
        result = pipeline.process(period_message())

        assert result.skipped
        generator.generate_candidates.assert_not_called()

    def test_reclaimed_under_other_job_is_skipped(self):
        pipeline, _, _ = build_pipeline(engine=unit_engine(job_id='another-job'))
        assert pipeline.process(period_message()).skipped

    def test_lock_session_committed_before_work(self):
        seen = {}
        base = unit_engine()

        def respond(sql, params):
            if 'SELECT status, job_id' in sql:
                seen['commits'] = engine.commits
            return base.responder(sql, params)

        engine = FakeEngine(respond)
        pipeline, _, _ = build_pipeline(engine=engine)
        pipeline.process(period_message())

        assert seen['commits'] == 1

    def test_pickup_stamps_started_at(self):
        engine = unit_engine()
        pipeline, _, _ = build_pipeline(engine=engine)
        pipeline.process(period_message())

        started = engine.statements('SET started_at = NOW()')
        assert [params for _, params in started] == [{'id': 7}]
        status_sql = engine.statements('SELECT status, job_id')[0][0]
        assert 'FOR UPDATE' in status_sql

    def test_skipped_unit_not_stamped(self):
        engine = unit_engine(status='completed')
        pipeline, _, _ = build_pipeline(engine=engine)
        pipeline.process(period_message())
        assert engine.statements('SET started_at = NOW()') == []


# =============================================================================
# Failures
# =============================================================================

class TestFailures:

    def test_error_moves_unit_to_retry(self):
        generator = MagicMock()
        generator.generate_candidates.side_effect = RuntimeError('generation backend exploded')
        engine = unit_engine()
        pipeline, store, _ = build_pipeline(engine=engine, generator=generator)
        result = pipeline.process(period_message())

        assert not result.success
        assert result.unit_status == 'retry'
        assert result.error_message == 'RuntimeError: generation backend exploded'
        params = engine.statements('SET status = :target')[0][1]
        assert params['error'] == 'RuntimeError: generation backend exploded'
        job = store.get(JOB_ID)
        assert job['status'] == JOB_PROCESSING
        assert job['error'] == 'RuntimeError: generation backend exploded'

    def test_exhausted_retries_fail_unit_and_job(self):
        generator = MagicMock()
        generator.generate_candidates.side_effect = RuntimeError('still broken')
        pipeline, store, _ = build_pipeline(engine=unit_engine(retry_count=4), generator=generator)
        result = pipeline.process(period_message())

        assert result.unit_status == 'failed'
        assert store.get(JOB_ID)['status'] == JOB_FAILED

    def test_data_conflict_is_permanent(self):
        merger = MagicMock()
        merger.persist_synthetic_work.side_effect = DataConflict('bad work', raw='chk_works_title')
        pipeline, store, _ = build_pipeline(
            generator=stub_generator(candidates(1)), merger=merger,
        )
        result = pipeline.process(period_message())

        assert result.unit_status == 'failed'
        assert result.error_message == 'DataConflict: chk_works_title'
        assert store.get(JOB_ID)['error'] == 'DataConflict: chk_works_title'

    def test_lock_released_after_failure(self):
        generator = MagicMock()
        generator.generate_candidates.side_effect = RuntimeError('boom')
        engine = unit_engine()
        pipeline, _, _ = build_pipeline(engine=engine, generator=generator)
        pipeline.process(period_message())
        assert len(engine.statements('pg_advisory_unlock')) == 1
