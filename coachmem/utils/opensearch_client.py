"""
OpenSearch client wrapper: k-NN content index and recurring-pattern documents.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConflictError, NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

INDEX_TYPES = ('content', 'pattern')


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class VersionConflictError(OpenSearchError):
    """A conditional write lost the race against a concurrent writer."""
    pass


def score_to_similarity(score: float) -> float:
    """Convert an OpenSearch cosinesimil score, (1 + cos) / 2, to cosine clamped at [0, 1]."""
    return max(0.0, min(1.0, 2.0 * score - 1.0))


def _filter_clauses(filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    clauses = []
    for key, value in (filters or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            clauses.append({'terms': {key: list(value)}})
        else:
            clauses.append({'term': {key: value}})
    return clauses


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config

        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, index_type: str) -> str:
        if index_type not in INDEX_TYPES:
            raise ValueError(f'Unknown index type: {index_type}')
        return f'{self.config.index_name}_{index_type}'

    def _index_body(self, index_type: str) -> Dict[str, Any]:
        if index_type == 'content':
            return {
                'mappings': {
                    'properties': {
                        'id': {'type': 'keyword'},
                        'user_id': {'type': 'keyword'},
                        'content_type': {'type': 'keyword'},
                        'person_id': {'type': 'keyword'},
                        'topic_id': {'type': 'keyword'},
                        'file_id': {'type': 'keyword'},
                        'message_id': {'type': 'keyword'},
                        'chunk_index': {'type': 'integer'},
                        'text': {'type': 'text'},
                        'metadata': {'type': 'object', 'enabled': False},
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        },
                        'created_at': {'type': 'date'}
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }
        return {
            'mappings': {
                'properties': {
                    'id': {'type': 'keyword'},
                    'user_id': {'type': 'keyword'},
                    'pattern_type': {'type': 'keyword'},
                    'signature': {'type': 'keyword'},
                    'description': {'type': 'text'},
                    'frequency': {'type': 'integer'},
                    'last_occurrence': {'type': 'date'},
                    'entities_involved': {'type': 'keyword'},
                    'keywords': {'type': 'keyword'},
                    'suggested_actions': {'type': 'text'},
                    'confidence': {'type': 'float'}
                }
            }
        }

    def create_index_if_not_exists(self, index_type: str = 'content') -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_type: Type of index (content or pattern)

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._index_body(index_type))
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                logger.info(f'Waiting 15s for index {index_name} sync-up...')
                time.sleep(15)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def index_document(self,
                       document: Dict[str, Any],
                       doc_id: Optional[str] = None,
                       index_type: str = 'content',
                       if_seq_no: Optional[int] = None,
                       if_primary_term: Optional[int] = None,
                       op_type: Optional[str] = None) -> bool:
        """
        Index a document, optionally as a conditional write.

        Args:
            document: Document to index
            doc_id: Explicit document id (generated by OpenSearch if None)
            index_type: Type of index (content or pattern)
            if_seq_no: Only write if the stored document still has this sequence number
            if_primary_term: Primary term paired with ``if_seq_no``
            op_type: 'create' to fail when the document already exists

        Returns:
            True if indexing was successful

        Raises:
            VersionConflictError: If a conditional write lost a race
            OpenSearchError: On any other failure
        """
        index_name = self.index_name(index_type)
        params = {}
        if if_seq_no is not None:
            params['if_seq_no'] = if_seq_no
            params['if_primary_term'] = if_primary_term
        if op_type:
            params['op_type'] = op_type

        try:
            response = self.client.index(index=index_name, body=document, id=doc_id, params=params or None)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document {doc_id or response.get("_id")} in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')
            return success

        except ConflictError as e:
            raise VersionConflictError(f'Version conflict writing {doc_id}: {e}')
        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def get_document_by_id(self, doc_id: str, index_type: str = 'pattern') -> Optional[Dict[str, Any]]:
        """
        Fetch a document together with its concurrency-control metadata.

        Returns:
            Dict with 'id', 'seq_no', 'primary_term' and 'document', or None if missing
        """
        index_name = self.index_name(index_type)
        try:
            response = self.client.get(index=index_name, id=doc_id)
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')

        if not response.get('found', False):
            return None
        return {
            'id': response['_id'],
            'seq_no': response.get('_seq_no'),
            'primary_term': response.get('_primary_term'),
            'document': response['_source']
        }

    def vector_search(self,
                      query_vector: List[float],
                      user_id: str,
                      top_k: int = 20,
                      filters: Optional[Dict[str, Any]] = None,
                      exclude: Optional[Dict[str, Any]] = None,
                      index_type: str = 'content') -> List[Dict[str, Any]]:
        """
        Perform k-NN similarity search restricted to one owner.

        Args:
            query_vector: Query vector for similarity search
            user_id: Owner whose units are searched
            top_k: Number of neighbours to fetch
            filters: Field -> value (or list of values) restrictions
            exclude: Field -> value restrictions that must NOT match
            index_type: Type of index

        Returns:
            List of dicts with 'id', 'score', 'similarity' and 'document'
        """
        index_name = self.index_name(index_type)

        search_body = {
            'size': top_k,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': query_vector,
                                'k': top_k
                            }
                        }
                    }],
                    'filter': [{
                        'term': {
                            'user_id': user_id
                        }
                    }] + _filter_clauses(filters),
                    'must_not': _filter_clauses(exclude)
                }
            },
            '_source': {
                'excludes': ['embedding']
            }
        }

        try:
            response = self.client.search(index=index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

        results = []
        for hit in response['hits']['hits']:
            results.append({
                'id': hit['_id'],
                'score': hit['_score'],
                'similarity': score_to_similarity(hit['_score']),
                'document': hit['_source']
            })

        logger.debug(f'Vector search returned {len(results)} results for user {user_id}')
        return results

    def term_search(self,
                    user_id: str,
                    filters: Optional[Dict[str, Any]] = None,
                    any_of: Optional[Dict[str, List[str]]] = None,
                    size: int = 50,
                    index_type: str = 'pattern') -> List[Dict[str, Any]]:
        """
        Exact-value lookup: all ``filters`` must match and, when given, at least one ``any_of`` term.

        Returns:
            List of dicts with 'id' and 'document'
        """
        index_name = self.index_name(index_type)
        bool_query: Dict[str, Any] = {'filter': [{'term': {'user_id': user_id}}] + _filter_clauses(filters)}
        should = [{'terms': {key: list(values)}} for key, values in (any_of or {}).items() if values]
        if should:
            bool_query['should'] = should
            bool_query['minimum_should_match'] = 1

        try:
            response = self.client.search(index=index_name, body={'size': size, 'query': {'bool': bool_query}})
        except OpenSearchException as e:
            logger.error(f'Error performing term search: {e}')
            raise OpenSearchError(f'Term search failed: {e}')

        return [{'id': hit['_id'], 'document': hit['_source']} for hit in response['hits']['hits']]

    def delete_by_query(self, user_id: str, filters: Optional[Dict[str, Any]] = None, index_type: str = 'content') -> int:
        """
        Delete every document of an owner matching ``filters``.

        Returns:
            Number of deleted documents
        """
        index_name = self.index_name(index_type)
        body = {'query': {'bool': {'filter': [{'term': {'user_id': user_id}}] + _filter_clauses(filters)}}}

        try:
            response = self.client.delete_by_query(index=index_name, body=body)
        except NotFoundError:
            return 0
        except OpenSearchException as e:
            logger.error(f'Error deleting documents for user {user_id}: {e}')
            raise OpenSearchError(f'Delete by query failed: {e}')

        deleted = int(response.get('deleted', 0))
        logger.debug(f'Deleted {deleted} documents from {index_name}')
        return deleted

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name('content'))
            return response in [True, False]
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
