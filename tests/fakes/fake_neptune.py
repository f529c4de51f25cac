"""Fake in-memory connection graph standing in for NeptuneClient."""

import copy
import threading
from typing import Any, Dict, List, Optional

from coachmem.utils.neptune_client import EdgeVersionConflictError, NeptuneError


class FakeNeptune:
    """One versioned edge per pair_key, written only under the version the writer read."""

    def __init__(self):
        self._lock = threading.Lock()
        self.vertices = set()
        self.edges: Dict[str, Dict[str, Any]] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise NeptuneError('Failed to reach graph: connection refused')

    def ensure_entity_vertex(self, entity_id: str, user_id: str) -> bool:
        self._check()
        with self._lock:
            self.vertices.add((user_id, entity_id))
        return True

    def get_connection_edge(self, pair_key: str) -> Optional[Dict[str, Any]]:
        self._check()
        with self._lock:
            edge = self.edges.get(pair_key)
            return copy.deepcopy(edge) if edge is not None else None

    def write_connection_edge(self, pair_key: str, user_id: str, entity_a: str, entity_b: str,
                              properties: Dict[str, Any], expected_version: Optional[int] = None) -> int:
        self._check()
        with self._lock:
            edge = self.edges.get(pair_key)
            if expected_version is None:
                if edge is not None:
                    raise EdgeVersionConflictError(f'Connection edge {pair_key} already exists')
                if (user_id, entity_a) not in self.vertices or (user_id, entity_b) not in self.vertices:
                    raise NeptuneError(f'Missing entity vertex for {pair_key}')
                edge = self.edges[pair_key] = {'pair_key': pair_key, 'version': 0}
            elif edge is None or edge.get('version') != expected_version:
                raise EdgeVersionConflictError(f'Connection edge {pair_key} changed since version {expected_version}')
            edge.update(copy.deepcopy(properties))
            edge['version'] += 1
            return edge['version']

    def get_connections(self, user_id: str, entity_id: str) -> List[Dict[str, Any]]:
        self._check()
        with self._lock:
            return [copy.deepcopy(edge) for edge in self.edges.values()
                    if edge.get('user_id') == user_id and entity_id in (edge.get('entity_a'), edge.get('entity_b'))]

    def delete_entity(self, entity_id: str, user_id: str) -> bool:
        self._check()
        with self._lock:
            for key in [k for k, e in self.edges.items()
                        if e.get('user_id') == user_id and entity_id in (e.get('entity_a'), e.get('entity_b'))]:
                del self.edges[key]
            self.vertices.discard((user_id, entity_id))
        return True

    def delete_owner(self, user_id: str) -> bool:
        self._check()
        with self._lock:
            for key in [k for k, e in self.edges.items() if e.get('user_id') == user_id]:
                del self.edges[key]
            self.vertices = {v for v in self.vertices if v[0] != user_id}
        return True

    def health_check(self) -> bool:
        return not self.fail
