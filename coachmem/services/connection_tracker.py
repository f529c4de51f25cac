"""
Cross-Entity Connection Tracker: weighted, evidence-backed relationships between an owner's people.
"""

import json
import uuid
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import CONNECTION_TYPES, Connection
from ..utils.config import ConnectionConfig, config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import EdgeVersionConflictError, NeptuneClient, NeptuneError
from ..utils.timestamp_utils import now_utc, parse_timestamp

logger = get_logger(__name__)

CONNECTION_NAMESPACE = uuid.UUID('b3a51c0e-2f4d-4c59-8d77-6e0a9c4f1d22')


class ConnectionTrackerError(Exception):
    """Custom exception for connection tracker errors."""
    pass


def canonical_pair(entity_a: str, entity_b: str) -> Tuple[str, str]:
    """Order an unordered pair so the smaller identifier comes first."""
    return (entity_a, entity_b) if entity_a <= entity_b else (entity_b, entity_a)


def pair_key(owner_id: str, entity_a: str, entity_b: str) -> str:
    first, second = canonical_pair(entity_a, entity_b)
    return f'{owner_id}|{first}|{second}'


def saturate(strength: float, weight: float) -> float:
    """Move strength toward 1 by ``weight`` of the remaining distance."""
    return min(1.0, max(0.0, strength + (1.0 - strength) * weight))


class ConnectionTracker:
    """Upserts and queries Connection edges in the owner-scoped graph."""

    def __init__(self, neptune: Optional[NeptuneClient] = None, connection_config: Optional[ConnectionConfig] = None):
        self.neptune = neptune or NeptuneClient(config.neptune)
        self.config = connection_config or config.connections
        logger.info('Initialized ConnectionTracker')

    def record_signal(self,
                      owner_id: str,
                      entity_a: str,
                      entity_b: str,
                      connection_type: str,
                      evidence_text: str,
                      description: Optional[str] = None) -> Connection:
        """Record one relationship signal between two entities.

        The first signal for a pair creates the connection at the base strength. Later
        signals raise strength with a saturating update and append evidence, keeping only
        the newest ``max_evidence`` entries.

        The write is conditional on the edge version read, and a lost race is retried
        against the fresh edge so concurrent signals accumulate.

        Args:
            owner_id: Owner of both entities
            entity_a: One entity id (order does not matter)
            entity_b: The other entity id
            connection_type: collaboration|conflict|dependency|mentorship|shared_challenge
            evidence_text: Text that showed the relationship
            description: Optional summary of the relationship

        Returns:
            The connection as stored

        Raises:
            ValueError: On an empty owner, identical entities or unknown type
            ConnectionTrackerError: If the graph write fails or keeps conflicting
        """
        self._validate(owner_id, entity_a, entity_b, connection_type)
        first, second = canonical_pair(entity_a, entity_b)
        key = pair_key(owner_id, first, second)
        attempts = max(1, self.config.conflict_retries)

        for attempt in range(attempts):
            try:
                existing = self.neptune.get_connection_edge(key)
                if existing is None:
                    self.neptune.ensure_entity_vertex(first, owner_id)
                    self.neptune.ensure_entity_vertex(second, owner_id)
                    strength = self.config.base_strength
                    evidence = []
                    summary = description
                    version = None
                else:
                    previous = float(existing.get('strength', self.config.base_strength))
                    strength = saturate(previous, self.config.signal_weights.get(connection_type, 0.0))
                    evidence = self._load_evidence(existing.get('evidence'))
                    summary = description or existing.get('description')
                    version = int(existing.get('version', 0))

                if evidence_text and evidence_text.strip():
                    evidence.append(evidence_text.strip())
                evidence = evidence[-self.config.max_evidence:] if self.config.max_evidence > 0 else []

                connection = Connection(id=str(uuid.uuid5(CONNECTION_NAMESPACE, key)),
                                        owner_id=owner_id,
                                        entity_a=first,
                                        entity_b=second,
                                        connection_type=connection_type,
                                        strength=strength,
                                        description=summary or f'{connection_type.replace("_", " ")} between {first} and {second}',
                                        evidence=evidence,
                                        last_updated=now_utc())
                self.neptune.write_connection_edge(key, owner_id, first, second, self._to_properties(connection),
                                                   expected_version=version)
                logger.debug(f'Recorded {connection_type} signal for {key}, strength now {strength:.3f}')
                return connection

            except EdgeVersionConflictError:
                logger.debug(f'Concurrent update of connection {key}, retry {attempt + 1}/{attempts}')
            except NeptuneError as e:
                logger.error(f'Error recording {connection_type} signal for {key}: {e}')
                raise ConnectionTrackerError(f'Failed to record connection signal: {e}')

        raise ConnectionTrackerError(f'Connection {key} kept conflicting after {attempts} attempts')

    def reevaluate(self,
                   owner_id: str,
                   entity_a: str,
                   entity_b: str,
                   strength: float,
                   connection_type: Optional[str] = None,
                   description: Optional[str] = None) -> Optional[Connection]:
        """Explicitly set a connection's strength; the only path that may lower it.

        Returns:
            The updated connection, or None if the pair has no connection yet
        """
        if not 0.0 <= strength <= 1.0:
            raise ValueError(f'Strength must be within [0, 1], got {strength}')
        if connection_type is not None and connection_type not in CONNECTION_TYPES:
            raise ValueError(f'Unknown connection type: {connection_type}')
        key = pair_key(owner_id, entity_a, entity_b)
        attempts = max(1, self.config.conflict_retries)

        for attempt in range(attempts):
            try:
                existing = self.neptune.get_connection_edge(key)
                if existing is None:
                    return None
                connection = self._to_connection(existing)
                connection.strength = strength
                connection.connection_type = connection_type or connection.connection_type
                connection.description = description or connection.description
                connection.last_updated = now_utc()
                self.neptune.write_connection_edge(key, owner_id, connection.entity_a, connection.entity_b,
                                                   self._to_properties(connection),
                                                   expected_version=int(existing.get('version', 0)))
                logger.info(f'Re-evaluated connection {key} to strength {strength:.3f}')
                return connection

            except EdgeVersionConflictError:
                logger.debug(f'Concurrent update of connection {key}, retry {attempt + 1}/{attempts}')
            except NeptuneError as e:
                raise ConnectionTrackerError(f'Failed to re-evaluate connection {key}: {e}')

        raise ConnectionTrackerError(f'Connection {key} kept conflicting after {attempts} attempts')

    def query(self, owner_id: str, entity_id: str, min_strength: float = 0.0) -> List[Connection]:
        """Connections touching an entity, at least ``min_strength`` strong, strongest first.

        Raises:
            ConnectionTrackerError: If the graph read fails
        """
        try:
            rows = self.neptune.get_connections(owner_id, entity_id)
        except NeptuneError as e:
            raise ConnectionTrackerError(f'Failed to query connections for {entity_id}: {e}')

        connections = [self._to_connection(row) for row in rows if row.get('user_id') == owner_id]
        connections = [c for c in connections if c.strength >= min_strength]
        connections.sort(key=lambda c: (-c.strength, c.other(entity_id)))
        return connections

    def delete_for_entity(self, owner_id: str, entity_id: str) -> None:
        """Remove an entity and every connection touching it."""
        try:
            self.neptune.delete_entity(entity_id, owner_id)
        except NeptuneError as e:
            raise ConnectionTrackerError(f'Failed to delete connections of {entity_id}: {e}')

    def delete_owner(self, owner_id: str) -> None:
        try:
            self.neptune.delete_owner(owner_id)
        except NeptuneError as e:
            raise ConnectionTrackerError(f'Failed to delete connection graph of {owner_id}: {e}')

    @staticmethod
    def _validate(owner_id: str, entity_a: str, entity_b: str, connection_type: str) -> None:
        if not owner_id:
            raise ValueError('owner_id is required')
        if not entity_a or not entity_b:
            raise ValueError('Both entity ids are required')
        if entity_a == entity_b:
            raise ValueError(f'Cannot connect entity {entity_a} to itself')
        if connection_type not in CONNECTION_TYPES:
            raise ValueError(f'Unknown connection type: {connection_type}')

    @staticmethod
    def _load_evidence(raw: Any) -> List[str]:
        if not raw:
            return []
        if isinstance(raw, list):
            return [str(item) for item in raw]
        try:
            loaded = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning('Discarding unreadable connection evidence')
            return []
        return [str(item) for item in loaded] if isinstance(loaded, list) else []

    @staticmethod
    def _to_properties(connection: Connection) -> Dict[str, Any]:
        return {
            'id': connection.id,
            'user_id': connection.owner_id,
            'entity_a': connection.entity_a,
            'entity_b': connection.entity_b,
            'connection_type': connection.connection_type,
            'strength': connection.strength,
            'description': connection.description,
            'evidence': json.dumps(connection.evidence),
            'last_updated': connection.last_updated.isoformat()
        }

    @classmethod
    def _to_connection(cls, row: Dict[str, Any]) -> Connection:
        return Connection(id=row.get('id', ''),
                          owner_id=row.get('user_id', ''),
                          entity_a=row.get('entity_a', ''),
                          entity_b=row.get('entity_b', ''),
                          connection_type=row.get('connection_type', 'collaboration'),
                          strength=min(1.0, max(0.0, float(row.get('strength', 0.0)))),
                          description=row.get('description', ''),
                          evidence=cls._load_evidence(row.get('evidence')),
                          last_updated=parse_timestamp(row.get('last_updated')))
