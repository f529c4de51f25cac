"""
Similarity Search: thresholded, capped nearest-neighbour queries over the embedding store.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

from ..models.core import FILE_CONTENT_TYPES, MESSAGE_CONTENT_TYPES, ConversationScope, SearchHit
from ..utils.config import SearchConfig, config
from ..utils.logging_config import get_logger
from .embedding_store import EmbeddingStore

logger = get_logger(__name__)

SCOPE_FILTER_KEYS = ('person_id', 'topic_id', 'file_id')

# Extra neighbours fetched so that threshold filtering still leaves top_k candidates.
OVERFETCH_FACTOR = 2


class SimilaritySearch:
    """Query layer over the embedding store. Never writes."""

    def __init__(self, store: EmbeddingStore, search_config: Optional[SearchConfig] = None):
        self.store = store
        self.config = search_config or config.search

    def search(self,
               query_vector: List[float],
               owner_id: str,
               content_type: Union[str, Sequence[str], None] = None,
               scope_filter: Optional[Dict[str, Any]] = None,
               threshold: float = 0.0,
               top_k: int = 10,
               exclude_scope: Optional[Dict[str, Any]] = None) -> List[SearchHit]:
        """Nearest neighbours of ``query_vector`` among one owner's units.

        Args:
            query_vector: Vector of the query text
            owner_id: Owner whose units are searched
            content_type: One content type or several; all types if None
            scope_filter: Restrict to a person_id / topic_id / file_id
            threshold: Minimum similarity in [0, 1]; weaker hits are dropped, never padded
            top_k: Maximum number of hits
            exclude_scope: Scope values that must not match (e.g. the active person)

        Returns:
            Hits ordered by descending similarity, ties broken by unit id. May be empty.

        Raises:
            EmbeddingStoreError: If the underlying lookup fails
        """
        if top_k <= 0 or not query_vector:
            return []

        filters = self._scope_clauses(scope_filter)
        if content_type:
            filters['content_type'] = [content_type] if isinstance(content_type, str) else list(content_type)

        raw = self.store.query(query_vector, owner_id, k=top_k * OVERFETCH_FACTOR, filters=filters,
                               exclude=self._scope_clauses(exclude_scope) or None)

        hits = [SearchHit(unit=unit, similarity=min(1.0, max(0.0, similarity))) for unit, similarity in raw
                if similarity >= threshold]
        hits.sort(key=lambda hit: (-hit.similarity, hit.unit.id))
        logger.debug(f'Similarity search kept {min(len(hits), top_k)}/{len(raw)} hits above {threshold} for user {owner_id}')
        return hits[:top_k]

    def search_messages(self, query_vector: List[float], owner_id: str, scope: ConversationScope) -> List[SearchHit]:
        """Prior messages and summaries from the active conversation."""
        return self.search(query_vector,
                           owner_id,
                           content_type=MESSAGE_CONTENT_TYPES,
                           scope_filter={'person_id': scope.person_id, 'topic_id': scope.topic_id},
                           threshold=self.config.message_threshold,
                           top_k=self.config.message_top_k)

    def search_other_scopes(self, query_vector: List[float], owner_id: str, scope: ConversationScope) -> List[SearchHit]:
        """Prior messages of the same owner from every conversation except the active one."""
        if scope.person_id:
            exclude = {'person_id': scope.person_id}
        elif scope.topic_id:
            exclude = {'topic_id': scope.topic_id}
        else:
            return []
        return self.search(query_vector,
                           owner_id,
                           content_type=MESSAGE_CONTENT_TYPES,
                           threshold=self.config.message_threshold,
                           top_k=self.config.cross_scope_top_k,
                           exclude_scope=exclude)

    def search_files(self, query_vector: List[float], owner_id: str, scope: Optional[ConversationScope] = None) -> List[SearchHit]:
        """File chunks of the owner; restricted to the active conversation when one is given."""
        scope_filter = {'person_id': scope.person_id, 'topic_id': scope.topic_id} if scope else None
        return self.search(query_vector,
                           owner_id,
                           content_type=FILE_CONTENT_TYPES,
                           scope_filter=scope_filter,
                           threshold=self.config.file_threshold,
                           top_k=self.config.file_top_k)

    @staticmethod
    def _scope_clauses(scope: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        clauses = {}
        for key, value in (scope or {}).items():
            if key not in SCOPE_FILTER_KEYS:
                raise ValueError(f'Unsupported scope filter: {key}')
            if value is not None:
                clauses[key] = value
        return clauses
