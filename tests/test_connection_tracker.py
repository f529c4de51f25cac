"""Tests for the cross-entity connection tracker."""

import threading

import pytest

from coachmem.services.connection_tracker import (ConnectionTracker, ConnectionTrackerError, canonical_pair, pair_key,
                                                  saturate)
from coachmem.utils.config import ConnectionConfig
from coachmem.utils.neptune_client import EdgeVersionConflictError
from tests.conftest import OWNER

WEIGHTS = {'collaboration': 0.2, 'conflict': 0.25, 'dependency': 0.2, 'mentorship': 0.2, 'shared_challenge': 0.15}


class TestHelpers:
    def test_canonical_pair_orders_ids(self):
        assert canonical_pair('p-tom', 'p-ana') == ('p-ana', 'p-tom')
        assert canonical_pair('p-ana', 'p-tom') == ('p-ana', 'p-tom')

    def test_pair_key_ignores_argument_order(self):
        assert pair_key(OWNER, 'p-tom', 'p-ana') == pair_key(OWNER, 'p-ana', 'p-tom') == f'{OWNER}|p-ana|p-tom'

    def test_saturate_moves_toward_one(self):
        assert saturate(0.3, 0.2) == pytest.approx(0.44)
        assert saturate(1.0, 0.5) == 1.0


# ============================================================================
# Recording signals
# ============================================================================


class TestRecordSignal:
    def test_first_signal_creates_at_base_strength(self, tracker, fake_neptune):
        connection = tracker.record_signal(OWNER, 'p-tom', 'p-ana', 'collaboration', 'Tom and Ana paired on the demo')

        assert connection.entity_a == 'p-ana'
        assert connection.entity_b == 'p-tom'
        assert connection.strength == pytest.approx(0.3)
        assert connection.evidence == ['Tom and Ana paired on the demo']
        assert list(fake_neptune.edges) == [f'{OWNER}|p-ana|p-tom']

    def test_repeat_signal_saturates_and_appends_evidence(self, tracker):
        tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'collaboration', 'first')
        second = tracker.record_signal(OWNER, 'p-tom', 'p-ana', 'collaboration', 'second')
        third = tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'collaboration', 'third')

        assert second.strength == pytest.approx(0.44)
        assert third.strength == pytest.approx(0.552)
        assert third.evidence == ['first', 'second', 'third']
        assert third.id == second.id

    def test_strength_never_exceeds_one(self, tracker):
        strengths = [tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'conflict', f'clash {i}').strength
                     for i in range(40)]

        assert strengths == sorted(strengths)
        assert all(0.0 <= s <= 1.0 for s in strengths)

    def test_evidence_keeps_newest_entries(self, fake_neptune):
        tracker = ConnectionTracker(fake_neptune, ConnectionConfig(base_strength=0.3, max_evidence=3, signal_weights=WEIGHTS))
        for i in range(5):
            connection = tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'dependency', f'note {i}')

        assert connection.evidence == ['note 2', 'note 3', 'note 4']

    def test_description_is_kept_across_signals(self, tracker):
        tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'mentorship', 'weekly 1:1', description='Ana mentors Tom')
        connection = tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'mentorship', 'code review help')

        assert connection.description == 'Ana mentors Tom'

    @pytest.mark.parametrize('owner,a,b,kind', [
        ('', 'p-ana', 'p-tom', 'collaboration'),
        (OWNER, '', 'p-tom', 'collaboration'),
        (OWNER, 'p-ana', 'p-ana', 'collaboration'),
        (OWNER, 'p-ana', 'p-tom', 'friendship'),
    ])
    def test_invalid_signals_are_rejected(self, tracker, fake_neptune, owner, a, b, kind):
        with pytest.raises(ValueError):
            tracker.record_signal(owner, a, b, kind, 'evidence')
        assert fake_neptune.edges == {}

    def test_graph_failure_is_wrapped(self, tracker, fake_neptune):
        fake_neptune.fail = True

        with pytest.raises(ConnectionTrackerError):
            tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'collaboration', 'evidence')

    def test_concurrent_signals_for_one_pair_accumulate(self, fake_neptune):
        tracker = ConnectionTracker(fake_neptune, ConnectionConfig(base_strength=0.3, max_evidence=20,
                                                                   signal_weights=WEIGHTS, conflict_retries=50))
        errors = []

        def worker(i):
            try:
                a, b = ('p-ana', 'p-tom') if i % 2 else ('p-tom', 'p-ana')
                tracker.record_signal(OWNER, a, b, 'collaboration', f'signal {i}')
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(fake_neptune.edges) == 1
        [connection] = tracker.query(OWNER, 'p-ana')
        assert set(connection.evidence) == {f'signal {i}' for i in range(12)}
        assert connection.strength == pytest.approx(1 - 0.7 * 0.8 ** 11)
        assert fake_neptune.edges[pair_key(OWNER, 'p-ana', 'p-tom')]['version'] == 12

    def test_concurrent_signals_keep_evidence_up_to_the_cap(self, tracker, fake_neptune):
        threads = [threading.Thread(target=tracker.record_signal,
                                    args=(OWNER, 'p-ana', 'p-tom', 'collaboration', f'signal {i}'))
                   for i in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        [connection] = tracker.query(OWNER, 'p-ana')
        assert len(connection.evidence) == 10
        assert set(connection.evidence) <= {f'signal {i}' for i in range(12)}

    @pytest.mark.parametrize('seeded', [True, False])
    def test_interleaved_writers_both_land(self, tracker, fake_neptune, monkeypatch, seeded):
        if seeded:
            tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'collaboration', 'seed')
        barrier = threading.Barrier(2, timeout=5)
        reads = []
        read_edge = fake_neptune.get_connection_edge

        def racing_read(key):
            edge = read_edge(key)
            reads.append(key)
            if len(reads) <= 2:
                barrier.wait()
            return edge

        monkeypatch.setattr(fake_neptune, 'get_connection_edge', racing_read)
        threads = [threading.Thread(target=tracker.record_signal,
                                    args=(OWNER, 'p-ana', 'p-tom', 'collaboration', f'signal {i}'))
                   for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        [connection] = tracker.query(OWNER, 'p-ana')
        expected = {'signal 0', 'signal 1'} | ({'seed'} if seeded else set())
        assert set(connection.evidence) == expected
        assert connection.strength == pytest.approx(0.552 if seeded else 0.44)
        assert len(reads) == 3

    def test_endless_conflicts_are_reported(self, fake_neptune, monkeypatch):
        tracker = ConnectionTracker(fake_neptune, ConnectionConfig(base_strength=0.3, max_evidence=10,
                                                                   signal_weights=WEIGHTS, conflict_retries=3))
        tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'collaboration', 'seed')
        attempts = []

        def always_conflicts(*args, **kwargs):
            attempts.append(1)
            raise EdgeVersionConflictError('changed since version 1')

        monkeypatch.setattr(fake_neptune, 'write_connection_edge', always_conflicts)
        with pytest.raises(ConnectionTrackerError):
            tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'collaboration', 'late')
        assert len(attempts) == 3


# ============================================================================
# Queries, re-evaluation and deletion
# ============================================================================


class TestQueryAndReevaluate:
    @pytest.fixture
    def graph(self, tracker):
        tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'collaboration', 'a')
        tracker.record_signal(OWNER, 'p-ana', 'p-tom', 'collaboration', 'b')
        tracker.record_signal(OWNER, 'p-ana', 'p-lee', 'conflict', 'c')
        tracker.record_signal(OWNER, 'p-ana', 'p-kim', 'dependency', 'd')
        tracker.record_signal('user-2', 'p-ana', 'p-zed', 'collaboration', 'e')
        return tracker

    def test_query_orders_by_strength_then_other_id(self, graph):
        connections = graph.query(OWNER, 'p-ana')

        assert [c.other('p-ana') for c in connections] == ['p-tom', 'p-kim', 'p-lee']

    def test_query_applies_minimum_strength(self, graph):
        connections = graph.query(OWNER, 'p-ana', min_strength=0.4)

        assert [c.other('p-ana') for c in connections] == ['p-tom']

    def test_query_is_owner_scoped(self, graph):
        assert [c.other('p-ana') for c in graph.query('user-2', 'p-ana')] == ['p-zed']

    def test_query_unknown_entity_is_empty(self, graph):
        assert graph.query(OWNER, 'p-nobody') == []

    def test_reevaluate_can_lower_strength(self, graph):
        connection = graph.reevaluate(OWNER, 'p-tom', 'p-ana', 0.1, description='They stopped working together')

        assert connection.strength == 0.1
        assert graph.query(OWNER, 'p-tom')[0].strength == 0.1
        assert graph.query(OWNER, 'p-tom')[0].evidence == ['a', 'b']

    def test_reevaluate_missing_pair_returns_none(self, graph):
        assert graph.reevaluate(OWNER, 'p-tom', 'p-kim', 0.5) is None

    @pytest.mark.parametrize('strength', [-0.1, 1.5])
    def test_reevaluate_rejects_out_of_range_strength(self, graph, strength):
        with pytest.raises(ValueError):
            graph.reevaluate(OWNER, 'p-tom', 'p-ana', strength)

    def test_delete_for_entity_removes_its_edges(self, graph, fake_neptune):
        graph.delete_for_entity(OWNER, 'p-ana')

        assert graph.query(OWNER, 'p-tom') == []
        assert list(fake_neptune.edges) == ['user-2|p-ana|p-zed']

    def test_delete_owner(self, graph, fake_neptune):
        graph.delete_owner(OWNER)

        assert list(fake_neptune.edges) == ['user-2|p-ana|p-zed']
