"""Tests for thresholded similarity search over the embedding store."""

from datetime import datetime, timezone

import pytest

from coachmem.models.core import ContentScope, ContentUnit, ConversationScope
from coachmem.services.embedding_store import EmbeddingStore
from coachmem.services.similarity_search import SimilaritySearch
from coachmem.utils.config import SearchConfig
from tests.conftest import OWNER
from tests.fakes.fake_bedrock import FakeEmbedder

QUERY = [1.0, 0.0, 0.0]


def _unit(unit_id, vector, owner=OWNER, content_type='message', **scope):
    if content_type in ('file_content', 'file_chunk'):
        scope.setdefault('file_id', 'f1')
        scope.setdefault('chunk_index', 0)
    return ContentUnit(id=unit_id,
                       owner_id=owner,
                       scope=ContentScope(type=content_type, **scope),
                       text=f'text of {unit_id}',
                       vector=vector,
                       created_at=datetime(2026, 3, 1, tzinfo=timezone.utc))


@pytest.fixture
def small_store(fake_opensearch):
    return EmbeddingStore(fake_opensearch, FakeEmbedder(dimension=3), dimension=3)


@pytest.fixture
def small_search(small_store):
    search_config = SearchConfig(message_threshold=0.75, message_top_k=5, file_threshold=0.7, file_top_k=3,
                                 cross_scope=True, cross_scope_top_k=3)
    return SimilaritySearch(small_store, search_config)


@pytest.fixture
def indexed(small_store):
    small_store.index(_unit('u-exact', [1.0, 0.0, 0.0], person_id='p-sarah'))
    small_store.index(_unit('u-close', [0.8, 0.6, 0.0], person_id='p-sarah'))
    small_store.index(_unit('u-far', [0.0, 1.0, 0.0], person_id='p-sarah'))
    small_store.index(_unit('u-tom', [0.9, 0.0, 0.43589], person_id='p-tom'))
    small_store.index(_unit('u-file', [1.0, 0.0, 0.0], content_type='file_chunk', person_id='p-sarah'))
    small_store.index(_unit('u-other-owner', [1.0, 0.0, 0.0], owner='user-2', person_id='p-sarah'))
    return small_store


# ============================================================================
# Core search
# ============================================================================


class TestSearch:
    def test_hits_below_threshold_are_excluded(self, small_search, indexed):
        hits = small_search.search(QUERY, OWNER, content_type='message', threshold=0.75)

        assert [hit.unit.id for hit in hits] == ['u-exact', 'u-tom', 'u-close']
        assert all(hit.similarity >= 0.75 for hit in hits)

    def test_results_are_never_padded(self, small_search, indexed):
        hits = small_search.search(QUERY, OWNER, content_type='message', threshold=0.95, top_k=10)

        assert [hit.unit.id for hit in hits] == ['u-exact']

    def test_ordering_is_descending_with_id_tie_break(self, small_search, small_store):
        small_store.index(_unit('u-b', [1.0, 0.0, 0.0]))
        small_store.index(_unit('u-a', [1.0, 0.0, 0.0]))
        small_store.index(_unit('u-c', [0.6, 0.8, 0.0]))

        hits = small_search.search(QUERY, OWNER)

        assert [hit.unit.id for hit in hits] == ['u-a', 'u-b', 'u-c']
        assert hits[0].similarity == pytest.approx(1.0)
        assert hits[2].similarity == pytest.approx(0.6)

    def test_repeated_search_is_identical(self, small_search, indexed):
        first = small_search.search(QUERY, OWNER, threshold=0.5)
        second = small_search.search(QUERY, OWNER, threshold=0.5)

        assert [(h.unit.id, h.similarity) for h in first] == [(h.unit.id, h.similarity) for h in second]

    def test_similarity_is_within_unit_interval(self, small_search, small_store):
        small_store.index(_unit('u-opposite', [-1.0, 0.0, 0.0]))

        hits = small_search.search(QUERY, OWNER)

        assert [hit.similarity for hit in hits] == [0.0]

    def test_top_k_caps_results(self, small_search, indexed):
        assert len(small_search.search(QUERY, OWNER, top_k=2)) == 2

    @pytest.mark.parametrize('top_k', [0, -1])
    def test_non_positive_top_k_returns_empty(self, small_search, indexed, top_k):
        assert small_search.search(QUERY, OWNER, top_k=top_k) == []

    def test_empty_store_returns_empty(self, small_search):
        assert small_search.search(QUERY, OWNER, threshold=0.0) == []

    def test_owner_isolation(self, small_search, indexed):
        hits = small_search.search(QUERY, 'user-2')

        assert [hit.unit.id for hit in hits] == ['u-other-owner']

    def test_scope_filter(self, small_search, indexed):
        hits = small_search.search(QUERY, OWNER, scope_filter={'person_id': 'p-tom'})

        assert [hit.unit.id for hit in hits] == ['u-tom']

    def test_unknown_scope_filter_is_rejected(self, small_search, indexed):
        with pytest.raises(ValueError):
            small_search.search(QUERY, OWNER, scope_filter={'channel': 'general'})


# ============================================================================
# Conversation-aware helpers
# ============================================================================


class TestScopedSearches:
    def test_search_messages_stays_in_active_scope(self, small_search, indexed):
        hits = small_search.search_messages(QUERY, OWNER, ConversationScope(person_id='p-sarah'))

        assert [hit.unit.id for hit in hits] == ['u-exact', 'u-close']

    def test_search_other_scopes_excludes_active_person(self, small_search, indexed):
        hits = small_search.search_other_scopes(QUERY, OWNER, ConversationScope(person_id='p-sarah'))

        assert [hit.unit.id for hit in hits] == ['u-tom']

    def test_search_other_scopes_without_scope_is_empty(self, small_search, indexed):
        assert small_search.search_other_scopes(QUERY, OWNER, ConversationScope()) == []

    def test_search_files_only_returns_file_units(self, small_search, indexed):
        hits = small_search.search_files(QUERY, OWNER, ConversationScope(person_id='p-sarah'))

        assert [hit.unit.id for hit in hits] == ['u-file']
