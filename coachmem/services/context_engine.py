"""
Context Engine: the single entry point the chat orchestrator uses per turn.
"""

import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..models.core import Connection, ContentUnit, ContextBundle, ConversationScope, DetectionResult, Person, RecurringPattern
from ..utils.bedrock_embed import BedrockEmbed, EmbeddingFailure
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient
from ..utils.opensearch_client import OpenSearchClient
from .connection_tracker import ConnectionTracker, ConnectionTrackerError
from .context_assembler import ContextAssembler
from .embedding_store import EmbeddingStore, EmbeddingStoreError
from .mention_validation import MentionValidator
from .pattern_detector import PatternDetector, PatternDetectorError
from .person_detection import PersonDetector, name_key
from .similarity_search import SimilaritySearch
from .turn_analysis import TurnAnalysisError, TurnAnalyzer

logger = get_logger(__name__)


class ContextEngineError(Exception):
    """Custom exception for context engine errors."""
    pass


class ContextEngine:
    """Read path (context assembly, mention detection) and post-turn write path."""

    def __init__(self,
                 opensearch: Optional[OpenSearchClient] = None,
                 neptune: Optional[NeptuneClient] = None,
                 embed: Optional[BedrockEmbed] = None,
                 llm: Optional[BedrockLLM] = None,
                 validation_enabled: Optional[bool] = None,
                 dimension: Optional[int] = None):
        """Initialize the engine and its services.

        Args:
            opensearch: Vector and pattern store client (built from config if None)
            neptune: Connection graph client (built from config if None)
            embed: Vectorization client (built from config if None)
            llm: LLM for validation and turn analysis (if None, built from config, and
                validation gets its own single-attempt client)
            validation_enabled: Validate detected mentions with the LLM (config default if None)
            dimension: Vector dimensionality of the store (config default if None)
        """
        opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.llm = llm or BedrockLLM(config.bedrock_llm)

        self.store = EmbeddingStore(opensearch, embed, dimension)
        self.search = SimilaritySearch(self.store)
        self.connections = ConnectionTracker(neptune)
        self.patterns = PatternDetector(opensearch)
        self.assembler = ContextAssembler(self.search, self.connections, self.patterns, self.store.embed)

        if validation_enabled is None:
            validation_enabled = config.detection.validation_enabled
        validator = None
        if validation_enabled:
            validator = MentionValidator(llm, key=lambda name: name_key(name, config.detection.fuzzy_dedup))
        self.detector = PersonDetector(validator)
        self.analyzer = TurnAnalyzer(self.llm)

        logger.info(f'Initialized ContextEngine (mention validation {"on" if validator else "off"})')

    def assemble_context(self,
                         owner_id: str,
                         scope: ConversationScope,
                         current_message: str,
                         history: Optional[List[Dict[str, str]]] = None,
                         people: Optional[Sequence[Person]] = None) -> ContextBundle:
        """Build the grounding bundle for one chat turn. Never fails on a degraded source."""
        return self.assembler.assemble(owner_id, scope, current_message, history, people)

    def detect_mentions(self, message: str, existing_names: Optional[Iterable[str]] = None) -> DetectionResult:
        """Candidate new people in a message, for the caller to confirm."""
        return self.detector.detect(message, existing_names)

    def record_signal(self, owner_id: str, entity_a: str, entity_b: str, connection_type: str, evidence_text: str,
                      description: Optional[str] = None) -> Connection:
        return self.connections.record_signal(owner_id, entity_a, entity_b, connection_type, evidence_text, description)

    def observe(self, owner_id: str, pattern_type: str, description: str, entities: Optional[Iterable[str]] = None,
                keywords: Optional[Iterable[str]] = None, suggested_actions: Optional[List[str]] = None) -> RecurringPattern:
        return self.patterns.observe(owner_id, pattern_type, description, entities, keywords, suggested_actions)

    def top_patterns(self, owner_id: str, min_frequency: int = 2, limit: int = 5) -> List[RecurringPattern]:
        return self.patterns.top_patterns(owner_id, min_frequency, limit)

    def process_turn(self,
                     owner_id: str,
                     scope: ConversationScope,
                     messages: List[Dict[str, str]],
                     people: Optional[Sequence[Person]] = None) -> Dict[str, Any]:
        """Post-turn write path: index the turn, then record relationship and pattern signals.

        Messages whose embedding fails are skipped. If the analysis call fails the turn
        is still indexed and no signals are recorded.

        Args:
            owner_id: Owner of the conversation
            scope: Active person or topic thread
            messages: Turn messages with 'role', 'content' and optionally 'id'
            people: Known people of the owner

        Returns:
            Counts of what was written: indexed, skipped, connections, patterns
        """
        if not owner_id:
            raise ValueError('owner_id is required')

        summary = {'indexed': 0, 'skipped': 0, 'connections': 0, 'patterns': 0}
        for msg in messages:
            content = (msg.get('content') or '').strip()
            if not content:
                continue
            try:
                self.store.index_message(owner_id, msg.get('id') or str(uuid.uuid4()), content, scope,
                                         role=msg.get('role', 'user'))
                summary['indexed'] += 1
            except EmbeddingFailure as e:
                logger.warning(f'Skipping message for user {owner_id}, embedding failed: {e}')
                summary['skipped'] += 1
            except EmbeddingStoreError as e:
                logger.error(f'Failed to index message for user {owner_id}: {e}')
                summary['skipped'] += 1

        try:
            signals = self.analyzer.analyze(messages, people or [])
        except TurnAnalysisError as e:
            logger.warning(f'Turn analysis skipped for user {owner_id}: {e}')
            return summary

        for relationship in signals.relationships:
            try:
                self.connections.record_signal(owner_id, relationship.entity_a, relationship.entity_b,
                                               relationship.connection_type, relationship.evidence,
                                               relationship.description)
                summary['connections'] += 1
            except (ValueError, ConnectionTrackerError) as e:
                logger.warning(f'Failed to record relationship signal: {e}')

        for pattern in signals.patterns:
            entities = list(pattern.entities)
            if scope.person_id and scope.person_id not in entities:
                entities.append(scope.person_id)
            try:
                self.patterns.observe(owner_id, pattern.pattern_type, pattern.description, entities, pattern.keywords,
                                      pattern.suggested_actions)
                summary['patterns'] += 1
            except (ValueError, PatternDetectorError) as e:
                logger.warning(f'Failed to observe pattern: {e}')

        logger.info(f'Processed turn for user {owner_id}: {summary}')
        return summary

    def index_file_content(self, owner_id: str, file_id: str, text: str, scope: ConversationScope,
                           max_chunk_tokens: int = 500, metadata: Optional[Dict[str, Any]] = None) -> List[ContentUnit]:
        try:
            return self.store.index_file_content(owner_id, file_id, text, scope, max_chunk_tokens, metadata=metadata)
        except EmbeddingStoreError as e:
            raise ContextEngineError(f'File indexing failed: {e}')

    def index_summary(self, owner_id: str, summary_id: str, text: str, scope: ConversationScope) -> Optional[ContentUnit]:
        try:
            return self.store.index_summary(owner_id, summary_id, text, scope)
        except EmbeddingFailure as e:
            logger.warning(f'Skipping summary {summary_id}, embedding failed: {e}')
            return None
        except EmbeddingStoreError as e:
            raise ContextEngineError(f'Summary indexing failed: {e}')

    def delete_message(self, owner_id: str, message_id: str) -> int:
        try:
            return self.store.delete_message(owner_id, message_id)
        except EmbeddingStoreError as e:
            raise ContextEngineError(f'Message delete failed: {e}')

    def delete_file(self, owner_id: str, file_id: str) -> int:
        try:
            return self.store.delete_file(owner_id, file_id)
        except EmbeddingStoreError as e:
            raise ContextEngineError(f'File delete failed: {e}')

    def delete_person(self, owner_id: str, person_id: str) -> int:
        """Remove a person's content units and every connection touching them."""
        try:
            deleted = self.store.delete_person(owner_id, person_id)
            self.connections.delete_for_entity(owner_id, person_id)
        except (EmbeddingStoreError, ConnectionTrackerError) as e:
            raise ContextEngineError(f'Person delete failed: {e}')
        return deleted

    def delete_owner(self, owner_id: str) -> None:
        """Remove everything stored for an owner."""
        try:
            self.store.delete_owner(owner_id)
            self.connections.delete_owner(owner_id)
            self.patterns.delete_owner(owner_id)
        except (EmbeddingStoreError, ConnectionTrackerError, PatternDetectorError) as e:
            raise ContextEngineError(f'Owner delete failed: {e}')
        logger.info(f'Deleted all data for user {owner_id}')
