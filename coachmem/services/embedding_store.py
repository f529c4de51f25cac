"""
Embedding Store: persists content units with their vectors and scoping metadata.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import CONTENT_TYPES, FILE_CONTENT_TYPES, ContentScope, ContentUnit, ConversationScope
from ..utils.bedrock_embed import BedrockEmbed, EmbeddingFailure
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.text_utils import chunk_text
from ..utils.timestamp_utils import now_utc, parse_timestamp

logger = get_logger(__name__)

UNIT_NAMESPACE = uuid.UUID('5d0b8f5e-6a36-4d8e-9a8c-1f3c2f9e7b41')


class EmbeddingStoreError(Exception):
    """Custom exception for embedding store errors."""
    pass


def unit_id_for(owner_id: str, content_type: str, source_id: str, chunk_index: Optional[int] = None) -> str:
    """Deterministic unit id, so re-indexing the same source never adds a second record."""
    key = f'{owner_id}|{content_type}|{source_id}|{"" if chunk_index is None else chunk_index}'
    return str(uuid.uuid5(UNIT_NAMESPACE, key))


class EmbeddingStore:
    """Index and delete content units; raw k-NN lookups for the search layer."""

    def __init__(self,
                 opensearch: Optional[OpenSearchClient] = None,
                 embed: Optional[BedrockEmbed] = None,
                 dimension: Optional[int] = None):
        """Initialize the embedding store.

        Args:
            opensearch: Vector store client (built from config if None)
            embed: Vectorization client (built from config if None)
            dimension: Fixed vector dimensionality (config default if None)
        """
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.dimension = dimension or config.opensearch.dimension

        try:
            self.opensearch.create_index_if_not_exists(index_type='content')
        except OpenSearchError as e:
            logger.warning(f'Failed to create content index: {e}')

        logger.info('Initialized EmbeddingStore')

    def index(self, unit: ContentUnit) -> ContentUnit:
        """Persist one content unit, vectorizing its text first when it has no vector.

        Args:
            unit: Unit to index

        Returns:
            The indexed unit (with its vector filled in)

        Raises:
            EmbeddingFailure: If the vectorization call fails; callers skip the unit
            ValueError: If the unit's scope is malformed
            EmbeddingStoreError: If the store write fails
        """
        self._validate(unit)
        if not unit.vector:
            unit.vector = self.embed.embed_document(unit.text)
        if len(unit.vector) != self.dimension:
            raise EmbeddingFailure(f'Vector for unit {unit.id} has {len(unit.vector)} dimensions, expected {self.dimension}')

        try:
            self.opensearch.index_document(self._to_document(unit), doc_id=unit.id, index_type='content')
        except OpenSearchError as e:
            logger.error(f'Error indexing unit {unit.id}: {e}')
            raise EmbeddingStoreError(f'Failed to index unit {unit.id}: {e}')

        logger.debug(f'Indexed {unit.scope.type} unit {unit.id} for user {unit.owner_id}')
        return unit

    def index_message(self,
                      owner_id: str,
                      message_id: str,
                      text: str,
                      scope: ConversationScope,
                      role: str = 'user',
                      created_at: Optional[datetime] = None) -> ContentUnit:
        """Embed and store one chat message.

        Raises:
            EmbeddingFailure: If the message could not be vectorized
        """
        unit = ContentUnit(id=unit_id_for(owner_id, 'message', message_id),
                           owner_id=owner_id,
                           scope=ContentScope(type='message',
                                              person_id=scope.person_id,
                                              topic_id=scope.topic_id,
                                              message_id=message_id),
                           text=text,
                           vector=[],
                           created_at=created_at or now_utc(),
                           metadata={'role': role})
        return self.index(unit)

    def index_summary(self,
                      owner_id: str,
                      summary_id: str,
                      text: str,
                      scope: ConversationScope,
                      created_at: Optional[datetime] = None,
                      metadata: Optional[Dict[str, Any]] = None) -> ContentUnit:
        """Embed and store a conversation summary.

        Raises:
            EmbeddingFailure: If the summary could not be vectorized
        """
        unit = ContentUnit(id=unit_id_for(owner_id, 'summary', summary_id),
                           owner_id=owner_id,
                           scope=ContentScope(type='summary', person_id=scope.person_id, topic_id=scope.topic_id),
                           text=text,
                           vector=[],
                           created_at=created_at or now_utc(),
                           metadata=dict(metadata or {}, summary_id=summary_id))
        return self.index(unit)

    def index_file_content(self,
                           owner_id: str,
                           file_id: str,
                           text: str,
                           scope: ConversationScope,
                           max_chunk_tokens: int = 500,
                           created_at: Optional[datetime] = None,
                           metadata: Optional[Dict[str, Any]] = None) -> List[ContentUnit]:
        """Split extracted file text into ordered chunks and index each one.

        A chunk whose embedding fails is logged and skipped; the rest are still stored.

        Returns:
            The units that were indexed, in chunk order
        """
        chunks = chunk_text(text, max_chunk_tokens)
        if not chunks:
            logger.debug(f'No text to index for file {file_id}')
            return []

        content_type = 'file_content' if len(chunks) == 1 else 'file_chunk'
        created_at = created_at or now_utc()
        indexed = []
        for chunk_index, chunk in enumerate(chunks):
            unit = ContentUnit(id=unit_id_for(owner_id, content_type, file_id, chunk_index),
                               owner_id=owner_id,
                               scope=ContentScope(type=content_type,
                                                  person_id=scope.person_id,
                                                  topic_id=scope.topic_id,
                                                  file_id=file_id,
                                                  chunk_index=chunk_index),
                               text=chunk,
                               vector=[],
                               created_at=created_at,
                               metadata=dict(metadata or {}, chunk_count=len(chunks)))
            try:
                indexed.append(self.index(unit))
            except EmbeddingFailure as e:
                logger.warning(f'Skipping chunk {chunk_index} of file {file_id}: {e}')

        logger.debug(f'Indexed {len(indexed)}/{len(chunks)} chunks of file {file_id}')
        return indexed

    def query(self,
              query_vector: List[float],
              owner_id: str,
              k: int,
              filters: Optional[Dict[str, Any]] = None,
              exclude: Optional[Dict[str, Any]] = None) -> List[Tuple[ContentUnit, float]]:
        """Raw nearest-neighbour lookup; thresholds and ordering are the search layer's job.

        Raises:
            EmbeddingStoreError: If the lookup fails
        """
        try:
            results = self.opensearch.vector_search(query_vector, owner_id, top_k=k, filters=filters, exclude=exclude)
        except OpenSearchError as e:
            raise EmbeddingStoreError(f'Similarity lookup failed: {e}')
        return [(self._to_unit(result['document']), result['similarity']) for result in results]

    def delete_message(self, owner_id: str, message_id: str) -> int:
        return self._delete(owner_id, {'message_id': message_id})

    def delete_file(self, owner_id: str, file_id: str) -> int:
        return self._delete(owner_id, {'file_id': file_id})

    def delete_person(self, owner_id: str, person_id: str) -> int:
        return self._delete(owner_id, {'person_id': person_id})

    def delete_owner(self, owner_id: str) -> int:
        return self._delete(owner_id, None)

    def _delete(self, owner_id: str, filters: Optional[Dict[str, Any]]) -> int:
        try:
            deleted = self.opensearch.delete_by_query(owner_id, filters, index_type='content')
        except OpenSearchError as e:
            logger.error(f'Error deleting units for user {owner_id}: {e}')
            raise EmbeddingStoreError(f'Failed to delete units: {e}')
        logger.debug(f'Deleted {deleted} units for user {owner_id} ({filters or "all"})')
        return deleted

    @staticmethod
    def _validate(unit: ContentUnit) -> None:
        if not unit.owner_id:
            raise ValueError('Content unit requires an owner_id')
        if unit.scope.type not in CONTENT_TYPES:
            raise ValueError(f'Unknown content type: {unit.scope.type}')
        if unit.scope.type in FILE_CONTENT_TYPES:
            if not unit.scope.file_id:
                raise ValueError('File content requires a file_id')
            if unit.scope.chunk_index is None or unit.scope.chunk_index < 0:
                raise ValueError('File content requires a chunk_index starting at 0')

    @staticmethod
    def _to_document(unit: ContentUnit) -> Dict[str, Any]:
        return {
            'id': unit.id,
            'user_id': unit.owner_id,
            'content_type': unit.scope.type,
            'person_id': unit.scope.person_id,
            'topic_id': unit.scope.topic_id,
            'file_id': unit.scope.file_id,
            'message_id': unit.scope.message_id,
            'chunk_index': unit.scope.chunk_index,
            'text': unit.text,
            'metadata': unit.metadata,
            'embedding': unit.vector,
            'created_at': unit.created_at.isoformat()
        }

    @staticmethod
    def _to_unit(doc: Dict[str, Any]) -> ContentUnit:
        return ContentUnit(id=doc.get('id', ''),
                           owner_id=doc.get('user_id', ''),
                           scope=ContentScope(type=doc.get('content_type', 'message'),
                                              person_id=doc.get('person_id'),
                                              topic_id=doc.get('topic_id'),
                                              file_id=doc.get('file_id'),
                                              chunk_index=doc.get('chunk_index'),
                                              message_id=doc.get('message_id')),
                           text=doc.get('text', ''),
                           vector=doc.get('embedding') or [],
                           created_at=parse_timestamp(doc.get('created_at')),
                           metadata=doc.get('metadata') or {})
