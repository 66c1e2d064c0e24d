"""
Tests for the concrete provider adapters.

The HTTP client is mocked; these tests pin response parsing, confidence
scoring and the capability each adapter declares.
"""

import json
from unittest.mock import MagicMock

import pytest

from constants import (
    CAPABILITY_AUTHOR_BIOGRAPHY,
    CAPABILITY_BOOK_GENERATION,
    CAPABILITY_COVERS,
    CAPABILITY_ISBN_RESOLUTION,
    CAPABILITY_METADATA,
    CAPABILITY_SUBJECTS,
)
from errors import ProviderRefusal, ProviderResponseError
from fakes import make_registry
from providers.adapters import (
    ArchiveOrgProvider,
    GeminiProvider,
    GoogleBooksProvider,
    ISBNdbProvider,
    OpenLibraryProvider,
    WikidataProvider,
    XaiProvider,
    build_default_providers,
)
from providers.adapters.generative import parse_generated_books
from providers.adapters.google_books import title_match_points
from providers.adapters.wikidata import sanitize_sparql_literal
from services.resolution_orchestrator import ResolutionOrchestrator
from utils.isbn import normalize_isbn


def make(provider_cls, response=None, api_key='test-key'):
    http = MagicMock()
    http.get_json.return_value = response
    http.post_json.return_value = response
    return provider_cls(api_key=api_key, http_client=http), http


# =============================================================================
# Capabilities
# =============================================================================

class TestDeclaredCapabilities:
    """Each adapter implements exactly its contracts."""

    def test_isbndb(self):
        provider, _ = make(ISBNdbProvider)
        assert provider.capabilities == [CAPABILITY_ISBN_RESOLUTION, CAPABILITY_METADATA, CAPABILITY_COVERS]
        assert provider.provider_type == 'paid'

    def test_google_books(self):
        provider, _ = make(GoogleBooksProvider)
        assert CAPABILITY_SUBJECTS in provider.capabilities
        assert CAPABILITY_BOOK_GENERATION not in provider.capabilities

    def test_wikidata(self):
        provider, _ = make(WikidataProvider)
        assert provider.capabilities == [CAPABILITY_AUTHOR_BIOGRAPHY]

    def test_generators(self):
        for cls in (GeminiProvider, XaiProvider):
            provider, _ = make(cls)
            assert provider.capabilities == [CAPABILITY_BOOK_GENERATION]
            assert provider.provider_type == 'ai'

    def test_keyed_provider_without_key_unavailable(self):
        provider, _ = make(ISBNdbProvider, api_key='')
        assert provider.is_available() is False

    def test_google_books_key_optional(self):
        provider, _ = make(GoogleBooksProvider, api_key='')
        assert provider.is_available() is True

    def test_default_provider_set(self, fake_redis):
        providers = build_default_providers(fake_redis)
        names = [p.name for p in providers]
        assert names == ['isbndb', 'google-books', 'open-library', 'archive-org', 'wikidata', 'gemini', 'xai']
        by_name = {p.name: p for p in providers}
        assert by_name['isbndb'].quota_manager is not None
        assert by_name['isbndb'].quota_manager.daily_limit == 15000
        assert by_name['google-books'].quota_manager is None


# =============================================================================
# ISBNdb
# =============================================================================

ISBNDB_BOOK = {
    'isbn13': '9780306406157',
    'isbn': '0306406152',
    'isbn10': '0306406152',
    'title': 'The Overstory',
    'title_long': 'The Overstory: A Novel',
    'authors': ['Richard Powers'],
    'publisher': 'W. W. Norton',
    'date_published': '2018-04-03',
    'pages': 512,
    'binding': 'Hardcover',
    'language': 'en',
    'synopsis': 'An epic about trees.',
    'subjects': ['Fiction'],
    'image': 'https://images.isbndb.com/covers/61/57/9780306406157.jpg',
    'related': {'ePub': '9780306406164'},
}


class TestISBNdb:
    """Tests for ISBNdbProvider"""

    def test_resolve_full_confidence(self):
        provider, http = make(ISBNdbProvider, {'books': [ISBNDB_BOOK]})
        result = provider.resolve_isbn('The Overstory', 'Richard Powers')

        assert result.isbn == '9780306406157'
        assert result.confidence == 100
        assert result.confidence_level == 'high'
        assert http.get_json.call_args.kwargs['headers'] == {'Authorization': 'test-key'}


    def test_resolve_keeps_best_match_not_first(self):
        other = dict(ISBNDB_BOOK, isbn13='9780141439518', title='Overstory Study Guide',
                     title_long='Overstory Study Guide', authors=['Course Hero'])
        provider, _ = make(ISBNdbProvider, {'books': [other, ISBNDB_BOOK]})
        result = provider.resolve_isbn('The Overstory', 'Richard Powers')

        assert result.isbn == '9780306406157'
        assert result.title == 'The Overstory: A Novel'

    def test_match_score_weights_title_over_author(self):
        same_title = ISBNdbProvider.match_score({'title': 'Beloved', 'authors': ['Someone Else']}, 'Beloved', 'Toni Morrison')
        same_author = ISBNdbProvider.match_score({'title': 'Jazz', 'authors': ['Toni Morrison']}, 'Beloved', 'Toni Morrison')
        assert same_title > same_author

    def test_subtitled_title_resolves_through_cascade(self):
        provider, _ = make(ISBNdbProvider, {'books': [ISBNDB_BOOK]})
        provider.is_available = lambda: True
        outcome = ResolutionOrchestrator(make_registry(provider)).resolve(
            CAPABILITY_ISBN_RESOLUTION, {'title': 'The Overstory', 'author': 'Richard Powers'},
        )

        assert outcome.found
        assert outcome.result.isbn == '9780306406157'
        assert outcome.attempts[0].error is None
    def test_confidence_base_only(self):
        assert ISBNdbProvider.calculate_confidence({'title': 'Other', 'authors': ['Someone']}, 'Beloved', 'Toni Morrison') == 60

    def test_resolve_skips_books_without_isbn(self):
        provider, _ = make(ISBNdbProvider, {'books': [{'title': 'x'}]})
        assert provider.resolve_isbn('x') is None

    def test_metadata_mapping(self):
        provider, _ = make(ISBNdbProvider, {'book': ISBNDB_BOOK})
        metadata = provider.fetch_metadata('978-0-306-40615-7')

        assert metadata.isbn == '9780306406157'
        assert metadata.title == 'The Overstory: A Novel'
        assert metadata.format == 'Hardcover'
        assert metadata.page_count == 512
        assert metadata.cover_urls == {'large': ISBNDB_BOOK['image']}
        assert metadata.alternate_isbns == ['0306406152']
        assert metadata.related_isbns == {'9780306406164': 'epub'}

    def test_invalid_isbn_makes_no_call(self):
        provider, http = make(ISBNdbProvider)
        assert provider.fetch_metadata('not-an-isbn') is None
        http.get_json.assert_not_called()

    def test_batch_is_one_post(self):
        second = dict(ISBNDB_BOOK, isbn13='9780141439518', isbn='0141439513', isbn10='0141439513')
        provider, http = make(ISBNdbProvider, {'data': [ISBNDB_BOOK, second]})

        results = provider.fetch_metadata_batch(['9780306406157', '9780141439518', '9780000000002'])

        assert set(results) == {'9780306406157', '9780141439518'}
        assert http.post_json.call_count == 1
        assert http.post_json.call_args.args[1] == {'isbns': ['9780306406157', '9780141439518', '9780000000002']}

    def test_batch_truncated_to_limit(self):
        provider, http = make(ISBNdbProvider, {'data': []})
        keys = [f"978{i:010d}" for i in range(150)]

        provider.fetch_metadata_batch(keys)

        assert len(http.post_json.call_args.args[1]['isbns']) == 100

    def test_fresh_cover_bypasses_cache(self):
        provider, http = make(ISBNdbProvider, {'book': ISBNDB_BOOK})

        cover = provider.fetch_cover('9780306406157', fresh=True)

        assert cover.url == ISBNDB_BOOK['image']
        assert http.get_json.call_args.kwargs['use_cache'] is False


# =============================================================================
# Google Books
# =============================================================================

GOOGLE_VOLUME = {
    'id': 'vol123',
    'volumeInfo': {
        'title': 'Dune',
        'authors': ['Frank Herbert'],
        'publisher': 'Ace',
        'publishedDate': '1990-09-01',
        'pageCount': 535,
        'language': 'en',
        'categories': ['Fiction'],
        'industryIdentifiers': [
            {'type': 'ISBN_10', 'identifier': '0441172717'},
            {'type': 'ISBN_13', 'identifier': '9780441172719'},
        ],
        'imageLinks': {
            'thumbnail': 'http://books.google.com/thumb',
            'smallThumbnail': 'http://books.google.com/small',
        },
    },
}


class TestGoogleBooks:
    """Tests for GoogleBooksProvider"""

    def test_title_match_points(self):
        assert title_match_points('The Overstory', 'Overstory: A Novel') == 20
        assert title_match_points('Red River Blue', 'Red River Green') == 13
        assert title_match_points('', 'anything') == 0

    def test_resolve(self):
        provider, http = make(GoogleBooksProvider, {'items': [GOOGLE_VOLUME]})
        result = provider.resolve_isbn('Dune', 'Frank Herbert')

        assert result.isbn == '9780441172719'
        # 50 + 20 title + 20 author + 5 thumbnail + 5 categories
        assert result.confidence == 100
        assert http.get_json.call_args.kwargs['params']['q'] == 'intitle:Dune+inauthor:Frank Herbert'

    def test_metadata(self):
        provider, _ = make(GoogleBooksProvider, {'items': [GOOGLE_VOLUME]})
        metadata = provider.fetch_metadata('9780441172719')

        assert metadata.cover_urls == {
            'medium': 'https://books.google.com/thumb',
            'small': 'https://books.google.com/small',
        }
        assert metadata.alternate_isbns == ['0441172717']
        assert metadata.external_ids == {'google_books_volume_ids': ['vol123']}

    def test_cover_prefers_largest(self):
        provider, _ = make(GoogleBooksProvider, {'items': [GOOGLE_VOLUME]})
        cover = provider.fetch_cover('9780441172719')
        assert cover.size == 'medium'

    def test_no_items(self):
        provider, _ = make(GoogleBooksProvider, {'totalItems': 0})
        assert provider.fetch_metadata('9780441172719') is None
        assert provider.fetch_subjects('9780441172719') is None

    def test_api_key_sent_when_set(self):
        provider, http = make(GoogleBooksProvider, {'items': []})
        provider.fetch_metadata('9780441172719')
        assert http.get_json.call_args.kwargs['params']['key'] == 'test-key'


# =============================================================================
# Open Library / Archive.org
# =============================================================================

OPEN_LIBRARY_DOC = {
    'key': '/works/OL893415W',
    'title': 'Dune',
    'author_name': ['Frank Herbert'],
    'isbn': ['junk', '0441013597'],
    'first_publish_year': 1965,
    'cover_i': 123,
    'edition_count': 40,
    'publisher': ['Chilton Books'],
    'language': ['eng'],
    'subject': ['Science fiction'],
}


class TestOpenLibrary:
    """Tests for OpenLibraryProvider"""

    def test_resolve(self):
        provider, _ = make(OpenLibraryProvider, {'docs': [OPEN_LIBRARY_DOC]})
        result = provider.resolve_isbn('Dune', 'Frank Herbert')

        assert result.isbn == normalize_isbn('0441013597')
        assert result.confidence == 100

    def test_confidence_sparse_doc(self):
        assert OpenLibraryProvider.calculate_confidence({'title': 'x'}) == 50

    def test_metadata(self):
        provider, _ = make(OpenLibraryProvider, {'docs': [OPEN_LIBRARY_DOC]})
        metadata = provider.fetch_metadata('9780441013593')

        assert metadata.publication_date == '1965'
        assert metadata.publisher == 'Chilton Books'
        assert metadata.cover_urls['large'].endswith('/123-L.jpg')
        assert metadata.cover_urls['small'].endswith('/123-S.jpg')
        assert metadata.external_ids == {'openlibrary_work_id': 'OL893415W'}

    def test_no_docs(self):
        provider, _ = make(OpenLibraryProvider, {'docs': []})
        assert provider.resolve_isbn('Nothing') is None
        assert provider.fetch_cover('9780441013593') is None


class TestArchiveOrg:
    """Tests for ArchiveOrgProvider"""

    def test_cover_from_identifier(self):
        provider, _ = make(ArchiveOrgProvider, {'response': {'docs': [{'identifier': 'dune00herb'}]}})
        cover = provider.fetch_cover('9780441013593')
        assert cover.url == 'https://archive.org/services/img/dune00herb'

    def test_metadata_single_values_become_lists(self):
        doc = {'identifier': 'dune00herb', 'title': 'Dune', 'creator': 'Herbert, Frank', 'subject': 'Science fiction'}
        provider, _ = make(ArchiveOrgProvider, {'response': {'docs': [doc]}})
        metadata = provider.fetch_metadata('9780441013593')

        assert metadata.authors == ['Herbert, Frank']
        assert metadata.subjects == ['Science fiction']
        assert metadata.external_ids == {'archive_org_id': 'dune00herb'}


# =============================================================================
# Wikidata
# =============================================================================

class TestWikidata:
    """Tests for WikidataProvider"""

    def test_sanitize(self):
        assert sanitize_sparql_literal('Ursula "K." Le Guin}') == 'Ursula K. Le Guin'

    def test_empty_name_makes_no_call(self):
        provider, http = make(WikidataProvider)
        assert provider.fetch_author_bio('""') is None
        http.get_json.assert_not_called()

    def test_only_stated_facts(self):
        binding = {
            'author': {'value': 'http://www.wikidata.org/entity/Q181659'},
            'authorDescription': {'value': 'American author'},
            'birth': {'value': '1929-10-21T00:00:00Z'},
            'citizenshipLabel': {'value': 'United States of America'},
            'viaf': {'value': '46774135'},
        }
        provider, _ = make(WikidataProvider, {'results': {'bindings': [binding]}})

        bio = provider.fetch_author_bio('Ursula K. Le Guin')

        assert bio.birth_year == 1929
        assert bio.death_year is None
        assert bio.gender is None
        assert bio.external_ids == {'wikidata_id': 'Q181659', 'viaf_id': '46774135'}
        assert bio.field_sources() == {'bio': 'wikidata', 'birth_year': 'wikidata', 'nationality': 'wikidata'}

    def test_not_found(self):
        provider, _ = make(WikidataProvider, {'results': {'bindings': []}})
        assert provider.fetch_author_bio('Nobody In Particular') is None


# =============================================================================
# Generative providers
# =============================================================================

BOOKS_JSON = json.dumps([
    {'title': 'Normal People', 'author': 'Sally Rooney', 'publication_year': 2018, 'format': 'hardcover'},
    {'title': 'Too Old', 'author': 'Someone', 'publication_year': 1800},
    {'title': 'Odd Format', 'author': 'Someone', 'publication_year': 2018, 'format': 'scroll'},
])


class TestParseGeneratedBooks:
    """Tests for parse_generated_books()"""

    def test_invalid_items_dropped(self):
        books = parse_generated_books(BOOKS_JSON, 'gemini')
        assert [b.title for b in books] == ['Normal People']
        assert books[0].format == 'Hardcover'
        assert books[0].source == 'gemini'

    def test_code_fences(self):
        books = parse_generated_books(f"```json\n{BOOKS_JSON}\n```", 'xai')
        assert len(books) == 1

    def test_books_wrapper(self):
        books = parse_generated_books(json.dumps({'books': json.loads(BOOKS_JSON)}), 'xai')
        assert len(books) == 1

    def test_refusal_text(self):
        with pytest.raises(ProviderRefusal):
            parse_generated_books('I cannot list books for this month: insufficient verifiable data.', 'gemini')

    def test_refusal_object(self):
        with pytest.raises(ProviderRefusal):
            parse_generated_books('{"error": "insufficient verifiable data"}', 'xai')

    def test_garbage(self):
        with pytest.raises(ProviderResponseError):
            parse_generated_books('<html>oops</html>', 'gemini')
        with pytest.raises(ProviderResponseError):
            parse_generated_books('', 'gemini')
        with pytest.raises(ProviderResponseError):
            parse_generated_books('{"count": 3}', 'gemini')


class TestGenerators:
    """Tests for GeminiProvider / XaiProvider request and response handling."""

    def test_gemini(self):
        response = {'candidates': [{'content': {'parts': [{'text': BOOKS_JSON}]}}]}
        provider, http = make(GeminiProvider, response)

        books = provider.generate_books('Notable books of May 2019', 3)

        assert len(books) == 1
        url, body = http.post_json.call_args.args
        assert url.endswith(':generateContent')
        assert 'Generate exactly 3 books' in body['contents'][0]['parts'][0]['text']
        assert http.post_json.call_args.kwargs['headers'] == {'x-goog-api-key': 'test-key'}

    def test_gemini_empty_response(self):
        provider, _ = make(GeminiProvider, {'candidates': []})
        with pytest.raises(ProviderResponseError):
            provider.generate_books('prompt', 3)

    def test_xai(self):
        response = {'choices': [{'message': {'content': BOOKS_JSON}}], 'usage': {'total_tokens': 420}}
        provider, http = make(XaiProvider, response)

        books = provider.generate_books('Notable books of May 2019', 3)

        assert [b.source for b in books] == ['xai']
        assert http.post_json.call_args.args[1]['messages'][0]['role'] == 'system'

    def test_xai_missing_choices(self):
        provider, _ = make(XaiProvider, {})
        with pytest.raises(ProviderResponseError):
            provider.generate_books('prompt', 3)
