"""
Amazon Neptune graph client holding the owner-scoped connection graph between people.
"""

from functools import wraps
from typing import Any, Dict, List, Optional

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __

from .config import NeptuneConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


class EdgeVersionConflictError(NeptuneError):
    """A conditional edge write lost the race against a concurrent writer."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except NeptuneError:
            raise
        except Exception as e:
            if 'concurrentmodification' in str(e).lower():
                raise EdgeVersionConflictError(f'Concurrent modification in {func.__name__}: {e}')
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except NeptuneError:
                    raise
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _flatten(value_map: Dict[Any, Any]) -> Dict[str, Any]:
    """Vertex property values come back as single-item lists; unwrap them."""
    flat = {}
    for key, value in value_map.items():
        flat[str(key)] = value[0] if isinstance(value, list) and len(value) == 1 else value
    return flat


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        # Signed request for the WebSocket handshake
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    @retry_on_connection_error
    def ensure_entity_vertex(self, entity_id: str, user_id: str) -> bool:
        """
        Create the Entity vertex for a person unless it already exists.

        Returns:
            True once the vertex exists
        """
        self.g.V().has('Entity', 'id', entity_id).has('user_id', user_id).fold()\
            .coalesce(__.unfold(),
                      __.addV('Entity').property('id', entity_id).property('user_id', user_id))\
            .next()
        return True

    @retry_on_connection_error
    def get_connection_edge(self, pair_key: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the connection edge for a canonical pair key.

        Returns:
            Flat property dict including ``version``, or None if the pair has no edge yet
        """
        rows = self.g.E().has('Connection', 'pair_key', pair_key).limit(1).value_map().to_list()
        return _flatten(rows[0]) if rows else None

    @retry_on_connection_error
    def write_connection_edge(self, pair_key: str, user_id: str, entity_a: str, entity_b: str,
                              properties: Dict[str, Any], expected_version: Optional[int] = None) -> int:
        """
        Conditionally write the single Connection edge of a pair.

        With ``expected_version`` None the edge is only created when the pair has none;
        otherwise it is only updated while its stored ``version`` still equals
        ``expected_version``. Either way a pair never holds two edges.

        Returns:
            The version now stored on the edge

        Raises:
            EdgeVersionConflictError: If another writer created or changed the edge first
        """
        if expected_version is None:
            add = __.V().has('Entity', 'id', entity_a).has('user_id', user_id)\
                .addE('Connection').to(__.V().has('Entity', 'id', entity_b).has('user_id', user_id))\
                .property('pair_key', pair_key)
            for key, value in properties.items():
                add = add.property(key, value)
            created = self.g.E().has('Connection', 'pair_key', pair_key).fold()\
                .coalesce(__.unfold().constant(False), add.property('version', 1).constant(True))\
                .next()
            if not created:
                raise EdgeVersionConflictError(f'Connection edge {pair_key} already exists')
            logger.debug(f'Created connection edge {pair_key}')
            return 1

        t = self.g.E().has('Connection', 'pair_key', pair_key).has('version', expected_version)
        for key, value in properties.items():
            t = t.property(key, value)
        updated = t.property('version', expected_version + 1).count().next()
        if not updated:
            raise EdgeVersionConflictError(f'Connection edge {pair_key} changed since version {expected_version}')
        logger.debug(f'Updated connection edge {pair_key} to version {expected_version + 1}')
        return expected_version + 1

    @retry_on_connection_error
    def get_connections(self, user_id: str, entity_id: str) -> List[Dict[str, Any]]:
        """
        All connection edges touching an entity of the given owner.
        """
        rows = self.g.V().has('Entity', 'id', entity_id).has('user_id', user_id)\
            .both_e('Connection').has('user_id', user_id)\
            .value_map().to_list()
        return [_flatten(row) for row in rows]

    @retry_on_connection_error
    def delete_entity(self, entity_id: str, user_id: str) -> bool:
        """
        Delete an entity vertex and all of its connection edges.

        Args:
            entity_id: Entity ID to delete
            user_id: User ID for security check

        Returns:
            True if deletion was successful
        """
        self.g.V().has('Entity', 'id', entity_id).has('user_id', user_id)\
            .both_e().has('user_id', user_id).drop().iterate()

        self.g.V().has('Entity', 'id', entity_id).has('user_id', user_id).drop().iterate()

        logger.debug(f'Deleted entity and connected edges: {entity_id}')
        return True

    @retry_on_connection_error
    def delete_owner(self, user_id: str) -> bool:
        """Delete every vertex and edge belonging to an owner."""
        self.g.E().has('user_id', user_id).drop().iterate()
        self.g.V().has('user_id', user_id).drop().iterate()
        logger.info(f'Deleted connection graph for user {user_id}')
        return True

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        self.g.V().limit(1).count().next()
        return True
