"""
Tests for candidate generation: prompt variants and the generation orchestrator.

Run with: pytest tests/test_generation.py -v
"""
import pytest

from errors import ProviderRefusal
from fakes import FakeGenerator, make_registry
from providers.capabilities import GeneratedBook
from services.generation_orchestrator import (
    STATUS_EMPTY,
    STATUS_ERROR,
    STATUS_OK,
    STATUS_REFUSED,
    STATUS_TIMEOUT,
    GenerationOrchestrator,
    dedupe_by_title,
)
from services.generation_prompts import (
    PROMPT_VARIANT_ANNUAL,
    PROMPT_VARIANTS,
    build_prompt,
)


def book(title, author='Sally Rooney', source=None):
    return GeneratedBook(title=title, author=author, publication_year=2018, source=source)


# =============================================================================
# Prompts
# =============================================================================

class TestPrompts:
    """Every variant states the period and the exact batch size."""

    @pytest.mark.parametrize('variant', sorted(set(PROMPT_VARIANTS) - {PROMPT_VARIANT_ANNUAL}))
    def test_monthly_variants(self, variant):
        prompt = build_prompt(variant, 2019, 5, 20)
        assert 'May 2019' in prompt
        assert 'exactly 20' in prompt
        assert 'publication_year' in prompt

    def test_contemporary_allows_refusal(self):
        prompt = build_prompt('contemporary-notable', 2024, 11, 10)
        assert 'insufficient verifiable data' in prompt

    def test_annual_ranks_by_batch(self):
        prompt = build_prompt(PROMPT_VARIANT_ANNUAL, 1999, 3, 20)
        assert 'ranked 41-60' in prompt

    def test_annual_ignores_month_range(self):
        assert 'ranked 261-280' in build_prompt(PROMPT_VARIANT_ANNUAL, 1999, 14, 20)

    def test_unknown_variant(self):
        with pytest.raises(ValueError, match='Unknown prompt variant'):
            build_prompt('bestsellers-only', 2019, 5)

    @pytest.mark.parametrize('month', [0, 13])
    def test_invalid_month(self, month):
        with pytest.raises(ValueError, match='Invalid month'):
            build_prompt('baseline', 2019, month)


# =============================================================================
# Title dedup
# =============================================================================

class TestDedupeByTitle:

    def test_first_copy_survives(self):
        books = [
            book('Normal People', source='gemini'),
            book('Normal People', source='xai'),
            book('Milkman', author='Anna Burns', source='xai'),
        ]
        unique = dedupe_by_title(books)
        assert [(b.title, b.source) for b in unique] == [('Normal People', 'gemini'), ('Milkman', 'xai')]

    def test_near_duplicate_titles_collapse(self):
        unique = dedupe_by_title([book('The Overstory'), book('Overstory')])
        assert len(unique) == 1

    def test_distinct_titles_kept(self):
        unique = dedupe_by_title([book('Circe'), book('Educated'), book('There There')])
        assert len(unique) == 3


# =============================================================================
# Orchestrator
# =============================================================================

class TestConcurrentGeneration:
    """All generators run at once; outputs are pooled and deduplicated."""

    def test_pools_and_dedupes_across_providers(self):
        gemini = FakeGenerator('gemini', books=[book('Normal People'), book('Milkman', 'Anna Burns')])
        xai = FakeGenerator('xai', books=[book('Normal People'), book('The Overstory', 'Richard Powers')])
        result = GenerationOrchestrator(make_registry(xai, gemini)).generate_candidates('prompt', 20)

        assert result.total_generated == 4
        assert result.duplicates_removed == 1
        titles = [(b.title, b.source) for b in result.candidates]
        # gemini is first in priority, so its copy of the shared title is kept
        assert ('Normal People', 'gemini') in titles
        assert ('Normal People', 'xai') not in titles
        assert {s.status for s in result.providers} == {STATUS_OK}
        assert result.calls_by_provider() == {'gemini': 1, 'xai': 1}

    def test_same_prompt_sent_to_every_provider(self):
        gemini = FakeGenerator('gemini', books=[book('Circe')])
        xai = FakeGenerator('xai', books=[book('Educated')])
        GenerationOrchestrator(make_registry(gemini, xai)).generate_candidates('the prompt', 5)
        assert gemini.calls == ['the prompt']
        assert xai.calls == ['the prompt']

    def test_refusal_is_zero_results(self):
        gemini = FakeGenerator('gemini', error=ProviderRefusal('gemini', 'insufficient verifiable data'))
        xai = FakeGenerator('xai', books=[book('Circe')])
        result = GenerationOrchestrator(make_registry(gemini, xai)).generate_candidates('prompt', 5)

        statuses = {s.provider: s.status for s in result.providers}
        assert statuses == {'gemini': STATUS_REFUSED, 'xai': STATUS_OK}
        assert [b.title for b in result.candidates] == ['Circe']

    def test_timeout_does_not_block_others(self):
        slow = FakeGenerator('gemini', books=[book('Circe')], delay=0.5)
        fast = FakeGenerator('xai', books=[book('Educated')])
        result = GenerationOrchestrator(make_registry(slow, fast), timeout=0.05).generate_candidates('prompt', 5)

        statuses = {s.provider: s.status for s in result.providers}
        assert statuses['gemini'] == STATUS_TIMEOUT
        assert statuses['xai'] == STATUS_OK
        assert [b.title for b in result.candidates] == ['Educated']

    def test_errors_and_empty_answers(self):
        broken = FakeGenerator('gemini', error=RuntimeError('bad gateway'))
        empty = FakeGenerator('xai')
        result = GenerationOrchestrator(make_registry(broken, empty)).generate_candidates('prompt', 5)

        statuses = {s.provider: s.status for s in result.providers}
        assert statuses == {'gemini': STATUS_ERROR, 'xai': STATUS_EMPTY}
        assert result.candidates == []
        assert result.total_generated == 0

    def test_no_providers(self):
        result = GenerationOrchestrator(make_registry(FakeGenerator('gemini', available=False))).generate_candidates('p', 5)
        assert result.candidates == []
        assert result.providers == []

    def test_source_filled_from_provider(self):
        gemini = FakeGenerator('gemini', books=[book('Circe')])
        result = GenerationOrchestrator(make_registry(gemini)).generate_candidates('prompt', 5)
        assert result.candidates[0].source == 'gemini'
        assert result.to_dict()['candidates'][0]['title'] == 'Circe'


class TestSequentialGeneration:
    """Priority order, first non-empty answer wins."""

    def test_first_non_empty_wins(self):
        gemini = FakeGenerator('gemini')
        xai = FakeGenerator('xai', books=[book('Circe')])
        extra = FakeGenerator('other', books=[book('Educated')])
        orchestrator = GenerationOrchestrator(make_registry(extra, xai, gemini), concurrent=False)
        result = orchestrator.generate_candidates('prompt', 5)

        assert [b.title for b in result.candidates] == ['Circe']
        assert [s.provider for s in result.providers] == ['gemini', 'xai']
        assert extra.calls == []

    def test_timeout_moves_to_next(self):
        slow = FakeGenerator('gemini', books=[book('Circe')], delay=0.5)
        fast = FakeGenerator('xai', books=[book('Educated')])
        orchestrator = GenerationOrchestrator(make_registry(slow, fast), timeout=0.05, concurrent=False)
        result = orchestrator.generate_candidates('prompt', 5)

        assert [s.status for s in result.providers] == [STATUS_TIMEOUT, STATUS_OK]
        assert [b.title for b in result.candidates] == ['Educated']
