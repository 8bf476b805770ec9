"""Tests for the in-memory graph and vector stores."""

from datetime import datetime, timedelta, timezone

import pytest

from workgraph.models.core import Activity, Session, TimelineNode, WorkflowClassification
from workgraph.utils.errors import ValidationError
from workgraph.utils.graph_store import FOLLOWS
from workgraph.utils.memory_stores import InMemoryGraphStore, InMemoryVectorStore
from workgraph.utils.vector_store import SESSION_KIND

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_session(external_id='s1', node_id='node-1', user_id='user-1', start=T0, **kwargs):
    return Session(external_id=external_id, user_id=user_id, node_id=node_id, start_time=start, **kwargs)


@pytest.fixture
def store():
    store = InMemoryGraphStore()
    store.upsert_session(make_session())
    store.upsert_activity(Activity(id='a1', session_id='s1', timestamp=T0, summary='wrote components'))
    store.upsert_activity(Activity(id='a2', session_id='s1', timestamp=T0 + timedelta(minutes=5), summary='ran tests'))
    return store


class TestGraphUpserts:

    def test_session_upsert_is_idempotent(self):
        store = InMemoryGraphStore()
        assert store.upsert_session(make_session()) is True
        assert store.upsert_session(make_session()) is False
        assert store.count_vertices('session') == 1
        assert store.count_vertices('user') == 1
        assert store.count_vertices('node') == 1

    def test_session_refresh_updates_end_time_and_classification(self):
        store = InMemoryGraphStore()
        store.upsert_session(make_session())
        store.upsert_session(make_session(end_time=T0 + timedelta(hours=1),
                                          workflow_classification=WorkflowClassification('coding', 0.8)))

        session = store.get_session('s1')
        assert session.end_time == T0 + timedelta(hours=1)
        assert session.workflow_classification.tag == 'coding'

    def test_session_cannot_move_to_another_node(self):
        store = InMemoryGraphStore()
        store.upsert_session(make_session())
        with pytest.raises(ValidationError):
            store.upsert_session(make_session(node_id='node-2'))

    def test_session_requires_identifiers(self):
        with pytest.raises(ValidationError):
            InMemoryGraphStore().upsert_session(make_session(user_id=''))

    def test_timeline_node_owned_by_one_user(self):
        store = InMemoryGraphStore()
        store.upsert_timeline_node(TimelineNode(id='node-1', user_id='user-1', title='Checkout'))
        with pytest.raises(ValidationError):
            store.upsert_timeline_node(TimelineNode(id='node-1', user_id='user-2', title='Checkout'))

    def test_activity_requires_existing_session(self):
        with pytest.raises(ValidationError):
            InMemoryGraphStore().upsert_activity(Activity(id='a1', session_id='missing', timestamp=T0, summary=''))

    def test_activity_upsert_is_idempotent(self, store):
        assert store.upsert_activity(Activity(id='a1', session_id='s1', timestamp=T0, summary='wrote components')) is False
        assert [a.id for a in store.activities_for_session('s1')] == ['a1', 'a2']


class TestRelationships:

    def test_frequency_counts_distinct_activities(self, store):
        first = store.create_entity_relationship('a1', 'react:technology', 'React', 'technology', 0.9, T0)
        again = store.create_entity_relationship('a1', 'react:technology', 'React', 'technology', 0.9, T0)
        second = store.create_entity_relationship('a2', 'react:technology', 'React', 'technology', 0.9,
                                                  T0 + timedelta(minutes=5))

        assert (first.created, first.frequency) == (True, 1)
        assert (again.created, again.frequency) == (False, 1)
        assert (second.created, second.frequency) == (True, 2)
        assert second.last_seen_at == T0 + timedelta(minutes=5)

    def test_last_seen_never_moves_backwards(self, store):
        store.create_concept_relationship('a2', 'testing', 'Testing', 'quality', 0.9, T0 + timedelta(hours=1))
        write = store.create_concept_relationship('a1', 'testing', 'Testing', 'quality', 0.9, T0)
        assert write.frequency == 2
        assert write.last_seen_at == T0 + timedelta(hours=1)

    def test_relationship_requires_existing_activity(self, store):
        with pytest.raises(ValidationError):
            store.create_entity_relationship('missing', 'react:technology', 'React', 'technology', 0.9, T0)
        assert store.load_entities(['react:technology']) == []

    def test_targets_and_reverse_lookup(self, store):
        store.create_entity_relationship('a1', 'react:technology', 'React', 'technology', 0.9, T0)
        store.create_concept_relationship('a2', 'testing', 'Testing', 'quality', 0.9, T0)

        assert store.targets_for_sessions(['s1']) == ({'react:technology'}, {'testing'})
        assert store.sessions_for_targets(['react:technology'], []) == {'s1'}

    def test_entity_occurrences_use_session_tag_as_fallback(self):
        store = InMemoryGraphStore()
        store.upsert_session(make_session(workflow_classification=WorkflowClassification('research', 0.7)))
        store.upsert_activity(Activity(id='a1', session_id='s1', timestamp=T0, summary='', workflow_tag='coding'))
        store.upsert_activity(Activity(id='a2', session_id='s1', timestamp=T0 + timedelta(minutes=1), summary=''))
        for activity_id in ('a1', 'a2'):
            store.create_entity_relationship(activity_id, 'react:technology', 'React', 'technology', 0.9, T0)

        occurrences = store.entity_occurrences('react:technology')

        assert [(o.activity_id, o.workflow_tag) for o in occurrences] == [('a1', 'coding'), ('a2', 'research')]


class TestRelink:

    def test_relink_records_gap_and_transition(self):
        store = InMemoryGraphStore()
        store.upsert_session(make_session('a', end_time=T0 + timedelta(minutes=30),
                                          workflow_classification=WorkflowClassification('coding', 0.9)))
        store.upsert_session(make_session('b', start=T0 + timedelta(hours=1),
                                          workflow_classification=WorkflowClassification('debugging', 0.9)))

        store.relink_session('b', 'a', None)

        assert store.follows_edges('user-1', 'node-1') == [('a', 'b')]
        props = store.edge_properties(FOLLOWS, 'a', 'b')
        assert props == {'time_gap_seconds': 1800, 'workflow_transition': 'coding → debugging'}

    def test_relink_between_neighbours_replaces_their_edge(self):
        store = InMemoryGraphStore()
        for external_id, hours in (('a', 0), ('b', 1), ('c', 2)):
            store.upsert_session(make_session(external_id, start=T0 + timedelta(hours=hours)))
        store.relink_session('c', 'a', None)

        store.relink_session('b', 'a', 'c')

        assert store.follows_edges('user-1', 'node-1') == [('a', 'b'), ('b', 'c')]
        assert [s.external_id for s in store.session_chain('user-1', 'node-1')] == ['a', 'b', 'c']


class TestNeighborhood:

    def test_reaches_other_node_through_shared_entity(self):
        store = InMemoryGraphStore()
        store.upsert_session(make_session('s1'))
        store.upsert_session(make_session('s2', node_id='node-2', start=T0 + timedelta(hours=1)))
        store.upsert_session(make_session('other-user', node_id='node-3', user_id='user-2', start=T0))
        for activity_id, session_id in (('a1', 's1'), ('a2', 's2'), ('a3', 'other-user')):
            store.upsert_activity(Activity(id=activity_id, session_id=session_id, timestamp=T0, summary=''))
            store.create_entity_relationship(activity_id, 'react:technology', 'React', 'technology', 0.9, T0)
        store.create_entity_relationship('a2', 'docker:tool', 'Docker', 'tool', 0.9, T0)

        shallow = store.neighbors_within_depth('user-1', 'node-1', max_depth=1)
        deep = store.neighbors_within_depth('user-1', 'node-1', max_depth=3)

        assert [e.key for e in shallow.entities] == ['react:technology']
        assert [s.external_id for s in shallow.sessions] == ['s1']
        assert {s.external_id for s in deep.sessions} == {'s1', 's2'}
        assert {e.key for e in deep.entities} == {'react:technology', 'docker:tool'}

    def test_since_excludes_old_sessions(self):
        store = InMemoryGraphStore()
        store.upsert_session(make_session('old', start=T0 - timedelta(days=40)))
        store.upsert_session(make_session('new', start=T0))

        neighborhood = store.neighbors_within_depth('user-1', 'node-1', max_depth=2, since=T0 - timedelta(days=30))

        assert [s.external_id for s in neighborhood.seed_sessions] == ['new']

    def test_frequent_entities_sorted_and_filtered(self, store):
        store.create_entity_relationship('a1', 'react:technology', 'React', 'technology', 0.9, T0)
        store.create_entity_relationship('a2', 'react:technology', 'React', 'technology', 0.9, T0)
        store.create_entity_relationship('a1', 'docker:tool', 'Docker', 'tool', 0.9, T0)

        assert [e.key for e in store.frequent_entities('user-1', min_frequency=2)] == ['react:technology']
        assert [e.key for e in store.frequent_entities('user-1', min_frequency=1)] == ['react:technology', 'docker:tool']


class TestInMemoryVectorStore:

    def test_similarity_ranking_and_threshold(self):
        vectors = InMemoryVectorStore()
        vectors.upsert_entity('react:technology', 'React', 'technology', [1.0, 0.0, 0.0], 3, T0)
        vectors.upsert_entity('preact:technology', 'Preact', 'technology', [0.8, 0.6, 0.0], 1, T0)
        vectors.upsert_entity('docker:tool', 'Docker', 'tool', [0.0, 0.0, 1.0], 1, T0)

        hits = vectors.search_entities([1.0, 0.0, 0.0], min_similarity=0.5)

        assert [h.key for h in hits] == ['react:technology', 'preact:technology']
        assert hits[0].similarity == pytest.approx(1.0)
        assert hits[1].similarity == pytest.approx(0.8)

    def test_type_filter(self):
        vectors = InMemoryVectorStore()
        vectors.upsert_entity('react:technology', 'React', 'technology', [1.0, 0.0], 3, T0)
        vectors.upsert_entity('react:other', 'React', 'other', [1.0, 0.0], 1, T0)

        assert [h.key for h in vectors.search_entities([1.0, 0.0], entity_type='other')] == ['react:other']

    def test_counters_only_move_forward(self):
        vectors = InMemoryVectorStore()
        vectors.upsert_entity('react:technology', 'React', 'technology', [1.0, 0.0], 5, T0 + timedelta(hours=1))
        vectors.upsert_entity('react:technology', 'React', 'technology', [1.0, 0.0], 3, T0)

        hits = vectors.search_entities([1.0, 0.0])
        assert hits[0].document['frequency'] == 5
        assert len(hits) == 1

    def test_dimension_mismatch_rejected(self):
        with pytest.raises(ValidationError):
            InMemoryVectorStore(dimension=3).upsert_concept('caching', 'Caching', 'performance', [1.0, 0.0], 1, T0)

    def test_session_search_filters_user_and_window(self):
        vectors = InMemoryVectorStore()
        vectors.upsert_session(make_session('recent', start=T0), [1.0, 0.0])
        vectors.upsert_session(make_session('old', start=T0 - timedelta(days=60)), [1.0, 0.0])
        vectors.upsert_session(make_session('foreign', user_id='user-2', start=T0), [1.0, 0.0])

        hits = vectors.search_sessions([1.0, 0.0], 'user-1', since=T0 - timedelta(days=30))

        assert [h.key for h in hits] == ['recent']
        assert vectors.get_record(SESSION_KIND, 'recent')['node_id'] == 'node-1'

    def test_latest_session_vector(self):
        vectors = InMemoryVectorStore()
        vectors.upsert_session(make_session('first', start=T0), [1.0, 0.0])
        vectors.upsert_session(make_session('second', start=T0 + timedelta(hours=1)), [0.0, 1.0])

        assert vectors.latest_session_vector('user-1', 'node-1') == [0.0, 1.0]
        assert vectors.latest_session_vector('user-1', 'node-9') is None
