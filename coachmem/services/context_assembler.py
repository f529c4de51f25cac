"""
Context Assembler: merges history, similar content, connections and patterns into one bounded bundle.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence

from ..models.core import ContextBundle, ContextItem, ConversationScope, Person, SearchHit
from ..utils.bedrock_embed import BedrockEmbed, EmbeddingFailure
from ..utils.config import ContextConfig, SearchConfig, config
from ..utils.logging_config import get_logger
from ..utils.text_utils import estimate_tokens, extract_keywords, normalize_text, text_overlap
from .connection_tracker import ConnectionTracker, ConnectionTrackerError
from .embedding_store import EmbeddingStoreError
from .pattern_detector import PatternDetector, PatternDetectorError
from .similarity_search import SimilaritySearch

logger = get_logger(__name__)


def people_mentioned(message: str, people: Optional[Sequence[Person]]) -> List[Person]:
    """Known people whose full name or first name appears as whole words in the message."""
    if not message or not people:
        return []
    padded = f' {normalize_text(message)} '
    mentioned = []
    for person in people:
        full = normalize_text(person.name)
        if not full:
            continue
        first = full.split()[0]
        if f' {full} ' in padded or (len(first) > 1 and f' {first} ' in padded):
            mentioned.append(person)
    return mentioned


class ContextAssembler:
    """Builds the grounding bundle for one chat turn. Read-only."""

    def __init__(self,
                 search: SimilaritySearch,
                 connections: ConnectionTracker,
                 patterns: PatternDetector,
                 embed: Optional[BedrockEmbed] = None,
                 context_config: Optional[ContextConfig] = None,
                 search_config: Optional[SearchConfig] = None):
        self.search = search
        self.connections = connections
        self.patterns = patterns
        self.embed = embed or search.store.embed
        self.config = context_config or config.context
        self.search_config = search_config or config.search

    def assemble(self,
                 owner_id: str,
                 scope: ConversationScope,
                 current_message: str,
                 history: Optional[List[Dict[str, str]]] = None,
                 people: Optional[Sequence[Person]] = None) -> ContextBundle:
        """Assemble the context bundle for the current message.

        The message is embedded once; similarity searches, connection and pattern lookups
        then run concurrently. Candidates are ranked by source weight times relevance,
        with recency breaking near-ties, and admitted greedily into the token budget while
        skipping near-duplicates. A failing source is logged, recorded in
        ``degraded_sources`` and left out; it never fails the turn.

        Args:
            owner_id: Owner of the conversation
            scope: Active person or topic thread
            current_message: The user's new message
            history: Prior turns of the active scope, oldest first ({'role', 'content'})
            people: Known people of the owner, used to resolve mentions

        Returns:
            ContextBundle whose ``used_tokens`` never exceeds its budget
        """
        if not owner_id:
            raise ValueError('owner_id is required')

        budget = self.config.budget_tokens
        admitted_history, used = self._admit_history(history or [], budget)
        degraded: List[str] = []

        mentioned = people_mentioned(current_message, people)
        names = {p.id: p.name for p in people or []}
        entity_ids = [p.id for p in mentioned]
        if scope.person_id and scope.person_id not in entity_ids:
            entity_ids.append(scope.person_id)

        query_vector = None
        if current_message and current_message.strip():
            try:
                query_vector = self.embed.embed_query(current_message)
            except EmbeddingFailure as e:
                logger.warning(f'Embedding failed for user {owner_id}, skipping similarity sources: {e}')
                degraded.append('embedding')

        tasks: Dict[str, Callable[[], List[ContextItem]]] = {}
        if query_vector:
            tasks['message'] = lambda: self._hit_items('message', self.search.search_messages(query_vector, owner_id, scope))
            tasks['file'] = lambda: self._hit_items('file', self.search.search_files(query_vector, owner_id, scope))
            if self.search_config.cross_scope and (scope.person_id or scope.topic_id):
                tasks['cross_scope'] = lambda: self._hit_items(
                    'cross_scope', self.search.search_other_scopes(query_vector, owner_id, scope))
        if entity_ids:
            tasks['connection'] = lambda: self._connection_items(owner_id, entity_ids, names)
        keywords = extract_keywords(current_message or '')
        if keywords or entity_ids:
            tasks['pattern'] = lambda: self._pattern_items(owner_id, keywords, entity_ids)

        candidates: List[ContextItem] = []
        if tasks:
            with ThreadPoolExecutor(max_workers=len(tasks)) as pool:
                futures = {source: pool.submit(task) for source, task in tasks.items()}

            for source, future in futures.items():
                try:
                    candidates.extend(future.result())
                except (EmbeddingStoreError, ConnectionTrackerError, PatternDetectorError) as e:
                    logger.warning(f'Context source {source} unavailable for user {owner_id}: {e}')
                    degraded.append(source)

        items, used = self._admit_items(self._dedupe_refs(candidates, current_message), used, budget)

        logger.debug(f'Assembled context for user {owner_id}: {len(admitted_history)} history turns, '
                     f'{len(items)}/{len(candidates)} items, {used}/{budget} tokens')
        return ContextBundle(owner_id=owner_id,
                             scope=scope,
                             history=admitted_history,
                             items=items,
                             budget_tokens=budget,
                             used_tokens=used,
                             degraded_sources=degraded)

    def rank(self, candidates: List[ContextItem]) -> List[ContextItem]:
        """Order by score; items within ``recency_delta`` of their group's top score go newest first."""
        delta = max(self.config.recency_delta, 0.0)
        ordered = sorted(candidates, key=lambda item: (-item.score, item.ref_id))
        ranked: List[ContextItem] = []
        group: List[ContextItem] = []
        for item in ordered:
            if group and group[0].score - item.score > delta + 1e-9:
                ranked.extend(self._newest_first(group))
                group = []
            group.append(item)
        ranked.extend(self._newest_first(group))
        return ranked

    @staticmethod
    def _newest_first(group: List[ContextItem]) -> List[ContextItem]:
        return sorted(group, key=lambda item: (-item.created_at.timestamp(), -item.score, item.ref_id))

    def _admit_history(self, history: List[Dict[str, str]], budget: int):
        recent = history[-self.config.history_turns:] if self.config.history_turns > 0 else []
        admitted, used = [], 0
        for turn in reversed(recent):
            tokens = estimate_tokens(turn.get('content', ''))
            if used + tokens > budget:
                break
            admitted.append(turn)
            used += tokens
        admitted.reverse()
        return admitted, used

    def _admit_items(self, candidates: List[ContextItem], used: int, budget: int):
        admitted: List[ContextItem] = []
        for item in self.rank(candidates):
            tokens = estimate_tokens(item.text)
            if used + tokens > budget:
                continue
            if any(text_overlap(item.text, kept.text) > self.config.dedup_threshold for kept in admitted):
                logger.debug(f'Skipping near-duplicate {item.source} item {item.ref_id}')
                continue
            admitted.append(item)
            used += tokens
        return admitted, used

    @staticmethod
    def _dedupe_refs(candidates: List[ContextItem], current_message: str) -> List[ContextItem]:
        """Drop repeated references and content identical to the message being answered."""
        current = normalize_text(current_message or '')
        seen, unique = set(), []
        for item in candidates:
            if item.ref_id in seen or (current and normalize_text(item.text) == current):
                continue
            seen.add(item.ref_id)
            unique.append(item)
        return unique

    def _hit_items(self, source: str, hits: List[SearchHit]) -> List[ContextItem]:
        weight = self.config.weights.get(source, 1.0)
        return [
            ContextItem(source=source,
                        text=hit.unit.text,
                        score=weight * hit.similarity,
                        created_at=hit.unit.created_at,
                        ref_id=hit.unit.id,
                        similarity=hit.similarity,
                        metadata={
                            'content_type': hit.unit.scope.type,
                            'person_id': hit.unit.scope.person_id,
                            'topic_id': hit.unit.scope.topic_id,
                            'file_id': hit.unit.scope.file_id,
                            'chunk_index': hit.unit.scope.chunk_index
                        }) for hit in hits
        ]

    def _connection_items(self, owner_id: str, entity_ids: List[str], names: Dict[str, str]) -> List[ContextItem]:
        weight = self.config.weights.get('connection', 1.0)
        found = {}
        for entity_id in entity_ids:
            for connection in self.connections.query(owner_id, entity_id, self.config.connection_min_strength):
                found[connection.id] = connection

        strongest = sorted(found.values(), key=lambda c: (-c.strength, c.id))[:self.config.max_connections]
        items = []
        for connection in strongest:
            first = names.get(connection.entity_a, connection.entity_a)
            second = names.get(connection.entity_b, connection.entity_b)
            text = f'{first} and {second}: {connection.connection_type.replace("_", " ")}. {connection.description}'
            if connection.evidence:
                text += f' Latest evidence: "{connection.evidence[-1]}"'
            items.append(ContextItem(source='connection',
                                     text=text,
                                     score=weight * connection.strength,
                                     created_at=connection.last_updated,
                                     ref_id=connection.id,
                                     metadata={'strength': connection.strength, 'entities': [connection.entity_a, connection.entity_b]}))
        return items

    def _pattern_items(self, owner_id: str, keywords, entity_ids: List[str]) -> List[ContextItem]:
        weight = self.config.weights.get('pattern', 1.0)
        cap = max(1, self.config.pattern_frequency_cap)
        items = []
        for pattern in self.patterns.query(owner_id, keywords=keywords, entities=entity_ids)[:self.config.max_patterns]:
            text = f'{pattern.description} (recurring {pattern.pattern_type}, seen {pattern.frequency} times)'
            if pattern.suggested_actions:
                text += f' Suggested: {"; ".join(pattern.suggested_actions)}'
            items.append(ContextItem(source='pattern',
                                     text=text,
                                     score=weight * pattern.confidence * min(pattern.frequency, cap) / cap,
                                     created_at=pattern.last_occurrence,
                                     ref_id=pattern.id,
                                     metadata={'frequency': pattern.frequency, 'confidence': pattern.confidence}))
        return items
