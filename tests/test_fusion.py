"""Tests for graph/vector score fusion."""

from datetime import datetime, timedelta, timezone

import pytest

from workgraph.models.core import ConceptRecord, EntityRecord, Session
from workgraph.models.retrieval import SOURCE_BOTH, SOURCE_GRAPH, SOURCE_VECTOR
from workgraph.services.fusion import fuse_concepts, fuse_entities, fuse_sessions, recency
from workgraph.utils.config import RetrievalConfig
from workgraph.utils.timestamp_utils import to_epoch_ms
from workgraph.utils.vector_store import CONCEPT_KIND, ENTITY_KIND, SESSION_KIND, VectorHit

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def config():
    return RetrievalConfig(path_timeout_seconds=2.0,
                           graph_weight=0.5,
                           vector_weight=0.5,
                           both_paths_bonus=0.1,
                           top_k=10,
                           vector_top_k=10,
                           min_similarity=0.5)


def entity(key, frequency):
    name, entity_type = key.split(':')
    return EntityRecord(key=key, name=name, type=entity_type, frequency=frequency, last_seen_at=NOW)


def entity_hit(key, similarity, frequency=1):
    name, entity_type = key.split(':')
    return VectorHit(key=key, kind=ENTITY_KIND, similarity=similarity,
                     document={'name': name, 'type': entity_type, 'frequency': frequency, 'last_seen_at': to_epoch_ms(NOW)})


class TestFuseEntities:

    def test_candidate_found_by_both_paths_ranks_first(self, config):
        results = fuse_entities([entity('react:technology', 5), entity('docker:tool', 5)],
                                [entity_hit('react:technology', 0.9)], config)

        assert [r.key for r in results] == ['react:technology', 'docker:tool']
        assert results[0].source == SOURCE_BOTH
        assert results[0].score == pytest.approx(0.5 * 1.0 + 0.5 * 0.9 + 0.1)
        assert results[1].source == SOURCE_GRAPH
        assert results[1].score == pytest.approx(0.5)

    def test_frequency_is_normalized_by_maximum(self, config):
        results = fuse_entities([entity('react:technology', 4), entity('docker:tool', 1)], [], config)

        assert [r.graph_signal for r in results] == [pytest.approx(1.0), pytest.approx(0.25)]

    def test_min_frequency_only_filters_graph_candidates(self, config):
        results = fuse_entities([entity('react:technology', 3), entity('docker:tool', 1)],
                                [entity_hit('kubernetes:tool', 0.8, frequency=1)],
                                config,
                                min_frequency=2)

        assert {r.key for r in results} == {'react:technology', 'kubernetes:tool'}
        vector_only = next(r for r in results if r.key == 'kubernetes:tool')
        assert vector_only.source == SOURCE_VECTOR
        assert vector_only.last_seen_at == NOW

    def test_ties_break_on_frequency_then_key(self, config):
        results = fuse_entities([], [entity_hit('b:tool', 0.8, 1), entity_hit('a:tool', 0.8, 1), entity_hit('c:tool', 0.8, 4)],
                                config)

        assert [r.key for r in results] == ['c:tool', 'a:tool', 'b:tool']

    def test_top_k(self, config):
        graph = [entity(f'tool{i}:tool', i + 1) for i in range(15)]

        assert len(fuse_entities(graph, [], config)) == 10
        assert len(fuse_entities(graph, [], config, top_k=3)) == 3


class TestFuseConcepts:

    def test_vector_only_concept_keeps_document_fields(self, config):
        hit = VectorHit(key='caching', kind=CONCEPT_KIND, similarity=0.7,
                        document={'name': 'Caching', 'category': 'performance', 'frequency': 6})

        results = fuse_concepts([ConceptRecord('testing', 'Testing', 'quality', 2, NOW)], [hit], config)

        caching = next(r for r in results if r.key == 'caching')
        assert (caching.name, caching.category, caching.frequency) == ('Caching', 'performance', 6)
        assert caching.last_seen_at is None


class TestFuseSessions:

    def session(self, external_id, days_ago, node_id='node-1'):
        return Session(external_id=external_id, user_id='user-1', node_id=node_id, start_time=NOW - timedelta(days=days_ago))

    def test_recent_sessions_score_higher(self, config):
        results = fuse_sessions([self.session('old', 20), self.session('new', 1)], [], config, NOW, 30)

        assert [r.session_id for r in results] == ['new', 'old']

    def test_excluded_session_never_returned(self, config):
        hit = VectorHit(key='anchor', kind=SESSION_KIND, similarity=1.0, document={'node_id': 'node-1'})

        results = fuse_sessions([self.session('anchor', 0), self.session('other', 2)], [hit], config, NOW, 30,
                                exclude={'anchor'})

        assert [r.session_id for r in results] == ['other']

    def test_equal_scores_prefer_newest(self, config):
        hits = [
            VectorHit(key=key, kind=SESSION_KIND, similarity=0.8,
                      document={'node_id': 'node-2', 'start_time': to_epoch_ms(NOW - timedelta(days=days))})
            for key, days in (('s-old', 5), ('s-new', 1))
        ]

        results = fuse_sessions([], hits, config, NOW, 30)

        assert [r.session_id for r in results] == ['s-new', 's-old']
        assert results[0].node_id == 'node-2'


class TestRecency:

    def test_linear_decay(self):
        assert recency(NOW, NOW, 30) == 1.0
        assert recency(NOW - timedelta(days=15), NOW, 30) == pytest.approx(0.5)
        assert recency(NOW - timedelta(days=45), NOW, 30) == 0.0

    def test_zero_window(self):
        assert recency(NOW, NOW, 0) == 0.0
