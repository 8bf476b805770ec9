"""Tests for FOLLOWS chain maintenance under out-of-order and concurrent inserts."""

import random
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from workgraph.services.temporal_sequencer import TemporalSequencer
from workgraph.utils.graph_store import FOLLOWS


def chain_ids(graph_store, node_id='node-1'):
    return [s.external_id for s in graph_store.session_chain('user-1', node_id)]


class TestSequencing:

    def test_first_session_has_no_edges(self, service, graph_store, seeder):
        result = seeder.session('s1', seeder.at(0))

        assert result == {'sessionId': 's1', 'created': True, 'predecessorId': None, 'successorId': None}
        assert graph_store.follows_edges('user-1', 'node-1') == []

    def test_appends_in_order(self, service, graph_store, seeder):
        seeder.session('s1', seeder.at(0))
        result = seeder.session('s2', seeder.at(hours=2))

        assert result['predecessorId'] == 's1'
        assert graph_store.follows_edges('user-1', 'node-1') == [('s1', 's2')]

    def test_late_arrival_is_spliced_between_neighbours(self, service, graph_store, seeder):
        seeder.session('t1', seeder.at(0))
        seeder.session('t3', seeder.at(hours=2))

        result = seeder.session('t2', seeder.at(hours=1))

        assert (result['predecessorId'], result['successorId']) == ('t1', 't3')
        assert graph_store.follows_edges('user-1', 'node-1') == [('t1', 't2'), ('t2', 't3')]

    def test_equal_start_times_break_ties_by_id(self, service, graph_store, seeder):
        for external_id in ('s-b', 's-c', 's-a'):
            seeder.session(external_id, seeder.at(0))

        assert chain_ids(graph_store) == ['s-a', 's-b', 's-c']
        assert TemporalSequencer(graph_store).chain_violations('user-1', 'node-1') == []

    def test_chains_are_per_node(self, service, graph_store, seeder):
        seeder.session('a1', seeder.at(0), node_id='node-a')
        seeder.session('b1', seeder.at(hours=1), node_id='node-b')
        seeder.session('a2', seeder.at(hours=2), node_id='node-a')

        assert graph_store.follows_edges('user-1', 'node-a') == [('a1', 'a2')]
        assert graph_store.follows_edges('user-1', 'node-b') == []

    def test_resequencing_is_a_no_op(self, service, graph_store, seeder):
        seeder.session('s1', seeder.at(0))
        seeder.session('s2', seeder.at(hours=1))
        before = graph_store.edge_properties(FOLLOWS, 's1', 's2')

        result = seeder.session('s2', seeder.at(hours=1))

        assert result['created'] is False
        assert graph_store.follows_edges('user-1', 'node-1') == [('s1', 's2')]
        assert graph_store.edge_properties(FOLLOWS, 's1', 's2') == before

    @pytest.mark.parametrize('seed', [1, 7, 42, 2024])
    def test_any_insertion_order_gives_chronological_chain(self, service, graph_store, seeder, seed):
        offsets = list(range(12))
        random.Random(seed).shuffle(offsets)

        for offset in offsets:
            seeder.session(f's{offset:02d}', seeder.at(hours=offset * 3))

        assert chain_ids(graph_store) == [f's{i:02d}' for i in range(12)]
        assert TemporalSequencer(graph_store).chain_violations('user-1', 'node-1') == []


class TestConcurrency:

    def test_concurrent_inserts_keep_chain_valid(self, service, graph_store, seeder):
        offsets = list(range(24))
        random.Random(3).shuffle(offsets)

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(lambda o: seeder.session(f's{o:02d}', seeder.at(hours=o)), offsets))

        assert TemporalSequencer(graph_store).chain_violations('user-1', 'node-1') == []
        assert len(graph_store.follows_edges('user-1', 'node-1')) == 23


class TestChainViolations:

    def test_reports_missing_and_out_of_order_edges(self, graph_store, seeder, service):
        for external_id, hours in (('a', 0), ('b', 1), ('c', 2)):
            seeder.session(external_id, seeder.at(hours=hours))

        graph_store.relink_session('a', 'c', None)

        problems = TemporalSequencer(graph_store).chain_violations('user-1', 'node-1')
        assert 'c -> a is not chronological' in problems
        assert any('is not followed by' in p for p in problems)

    def test_gap_uses_previous_end_time(self, service, graph_store, seeder):
        seeder.session('s1', seeder.at(0), tag='coding', end=seeder.at(0) + timedelta(minutes=20))
        seeder.session('s2', seeder.at(hours=1), tag='review')

        props = graph_store.edge_properties(FOLLOWS, 's1', 's2')
        assert props['time_gap_seconds'] == 40 * 60
        assert props['workflow_transition'] == 'coding → review'
