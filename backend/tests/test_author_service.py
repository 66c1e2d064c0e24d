"""
Tests for author find-or-create, biography merge records and privacy erasure.

Run with: pytest tests/test_author_service.py -v
"""
from unittest.mock import MagicMock

from fakes import FakeBiographyProvider, FakeEngine, FakeResult, make_registry
from models.author import BIOGRAPHICAL_FIELDS, build_author_key
from providers.capabilities import AuthorBiography
from services.author_service import (
    biography_record,
    enrich_author_biographies,
    erase_author_privacy,
    find_or_create_author,
    find_or_create_authors,
    link_work_authors,
)
from utils.normalize import normalize_author_name

LE_GUIN = 'Ursula K. Le Guin'


def existing_authors(known):
    """Responder: SELECT by normalized name answers from `known`."""
    def respond(sql, params):
        if 'SELECT author_key FROM enriched_authors' in sql:
            key = known.get(params['n'])
            return [{'author_key': key}] if key else None
        return None
    return respond


# =============================================================================
# Find / create / link
# =============================================================================

class TestFindOrCreate:

    def test_existing_author_reused(self):
        normalized = normalize_author_name(LE_GUIN)
        engine = FakeEngine(existing_authors({normalized: '/authors/OL31120A'}))
        with engine.connect() as conn:
            assert find_or_create_author(conn, LE_GUIN, 'isbndb') == '/authors/OL31120A'
        assert engine.statements('INSERT INTO enriched_authors') == []

    def test_new_author_gets_deterministic_key(self):
        engine = FakeEngine(existing_authors({}))
        with engine.connect() as conn:
            key = find_or_create_author(conn, f"  {LE_GUIN} ", 'google-books')

        assert key == build_author_key(normalize_author_name(LE_GUIN))
        (_, params), = engine.statements('INSERT INTO enriched_authors')
        assert params['name'] == LE_GUIN
        assert params['contributors'] == ['google-books']

    def test_blank_name(self):
        engine = FakeEngine()
        with engine.connect() as conn:
            assert find_or_create_author(conn, '   ', 'isbndb') is None
        assert engine.executed == []

    def test_credit_list_deduplicated(self):
        engine = FakeEngine(existing_authors({}))
        with engine.connect() as conn:
            keys = find_or_create_authors(conn, [LE_GUIN, None, 'ursula k. le guin', 'Octavia E. Butler'], 'isbndb')
        assert len(keys) == 2

    def test_links_in_credit_order(self):
        engine = FakeEngine()
        with engine.connect() as conn:
            link_work_authors(conn, '/works/OL59863W', ['/authors/a', '/authors/b'])

        links = engine.statements('INSERT INTO work_authors_enriched')
        assert [p['author_order'] for _, p in links] == [1, 2]
        (_, refresh), = engine.statements('book_count')
        assert refresh['keys'] == ['/authors/a', '/authors/b']

    def test_no_links(self):
        engine = FakeEngine()
        with engine.connect() as conn:
            link_work_authors(conn, '/works/OL59863W', [])
        assert engine.executed == []


# =============================================================================
# Biography
# =============================================================================

class TestBiographyRecord:

    def biography(self, **overrides):
        values = {
            'name': LE_GUIN,
            'source': 'wikidata',
            'bio': 'American author of speculative fiction.',
            'birth_year': 1929,
            'death_year': 2018,
            'photo_url': 'https://commons.example.org/le-guin.jpg',
            'external_ids': {'wikidata_id': 'Q181659', 'goodreads_author_ids': ('874602',)},
        }
        values.update(overrides)
        return AuthorBiography(**values)

    def test_columns_and_sources(self):
        record = biography_record('/authors/a', self.biography())

        assert record['author_photo_url'] == 'https://commons.example.org/le-guin.jpg'
        assert record['bio_source'] == 'wikidata'
        assert record['wikidata_id'] == 'Q181659'
        assert record['goodreads_author_ids'] == ['874602']
        assert record['field_sources'] == {
            'bio': 'wikidata', 'birth_year': 'wikidata', 'death_year': 'wikidata', 'photo_url': 'wikidata',
        }

    def test_absent_facts_not_written(self):
        record = biography_record('/authors/a', self.biography(bio=None, nationality='', external_ids={}))

        assert 'bio' not in record
        assert 'bio_source' not in record
        assert 'nationality' not in record
        assert 'wikidata_id' not in record


class TestEnrichBiographies:

    ROWS = {
        '/authors/a': {'name': LE_GUIN, 'privacy_erased_at': None, 'wikidata_id': None},
        '/authors/erased': {'name': 'Private Person', 'privacy_erased_at': '2024-01-01', 'wikidata_id': None},
        '/authors/done': {'name': 'Octavia E. Butler', 'privacy_erased_at': None, 'wikidata_id': 'Q235071'},
    }

    def responder(self, sql, params):
        if 'SELECT name, privacy_erased_at' in sql:
            row = self.ROWS.get(params['key'])
            return [row] if row else None
        return None

    def test_only_eligible_authors_fetched(self):
        wikidata = FakeBiographyProvider('wikidata', results={
            LE_GUIN: AuthorBiography(name=LE_GUIN, source='wikidata', birth_year=1929),
        })
        merger = MagicMock()
        updated = enrich_author_biographies(
            FakeEngine(self.responder),
            ['/authors/a', '/authors/erased', '/authors/done', '/authors/missing'],
            registry=make_registry(wikidata),
            merger=merger,
        )

        assert updated == 1
        assert wikidata.calls == [LE_GUIN]
        conn, entity, record, source = merger.merge.call_args.args
        assert entity == 'authors'
        assert record['birth_year'] == 1929
        assert source == 'wikidata'

    def test_not_found(self):
        wikidata = FakeBiographyProvider('wikidata')
        merger = MagicMock()
        assert enrich_author_biographies(
            FakeEngine(self.responder), ['/authors/a'], registry=make_registry(wikidata), merger=merger,
        ) == 0
        merger.merge.assert_not_called()


# =============================================================================
# Privacy erasure
# =============================================================================

class TestPrivacyErasure:

    def test_clears_biographical_fields(self):
        engine = FakeEngine(lambda sql, params: FakeResult(rowcount=1) if 'UPDATE enriched_authors' in sql else None)
        with engine.connect() as conn:
            assert erase_author_privacy(conn, '/authors/a') is True

        (sql, params), = engine.statements('UPDATE enriched_authors')
        for column in BIOGRAPHICAL_FIELDS:
            assert f"{column} = NULL" in sql
        assert 'privacy_erased_at = NOW()' in sql
        assert params == {'key': '/authors/a'}

        (_, audit), = engine.statements('enrichment_log')
        assert audit['operation'] == 'erase'
        assert audit['provider'] == 'privacy-request'

    def test_unknown_author(self):
        engine = FakeEngine(lambda sql, params: FakeResult(rowcount=0))
        with engine.connect() as conn:
            assert erase_author_privacy(conn, '/authors/nobody') is False
        assert engine.statements('enrichment_log') == []
