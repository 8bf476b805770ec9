"""Tests for the Neptune graph store using a mocked Gremlin traversal source."""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from workgraph.models.core import Activity
from workgraph.utils.config import NeptuneConfig, RetryConfig
from workgraph.utils.errors import StoreConnectionError, ValidationError
from workgraph.utils.neptune_client import NeptuneClient, NeptuneError
from workgraph.utils.timestamp_utils import to_epoch_ms

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def client():
    neptune = NeptuneClient(NeptuneConfig(endpoint='neptune.local', port=8182, region='us-east-1'),
                            RetryConfig(attempts=3, base_delay=0.0),
                            connect=False)
    neptune.g = MagicMock()
    return neptune


def session_row(external_id='s1', **overrides):
    row = {
        'external_id': external_id,
        'user_id': 'user-1',
        'node_id': 'node-1',
        'start_time': to_epoch_ms(T0),
        'workflow': 'coding',
        'workflow_confidence': 0.8
    }
    row.update(overrides)
    return row


class TestUpserts:

    def test_upsert_user_returns_created_flag(self, client):
        client.g.V.return_value.fold.return_value.coalesce.return_value.next.return_value = True

        assert client.upsert_user('user-1') is True
        client.g.V.assert_called_with('user:user-1')

    def test_empty_user_id_rejected_without_query(self, client):
        with pytest.raises(ValidationError):
            client.upsert_user('  ')
        client.g.V.assert_not_called()

    def test_conflicts_are_retried_then_surface(self, client):
        client.g.V.side_effect = Exception('ConcurrentModificationException: vertex locked')

        with pytest.raises(StoreConnectionError):
            client.upsert_user('user-1')

        assert client.g.V.call_count == 3

    def test_other_errors_fail_fast(self, client):
        client.g.V.side_effect = RuntimeError('malformed traversal')

        with pytest.raises(NeptuneError):
            client.upsert_user('user-1')

        assert client.g.V.call_count == 1

    def test_closing_transport_reconnects_once(self, client):
        retry_chain = MagicMock()
        retry_chain.fold.return_value.coalesce.return_value.next.return_value = False
        client.g.V.side_effect = [RuntimeError('Cannot write to closing transport'), retry_chain]

        with patch.object(client, '_connect') as connect, patch.object(client, 'close') as close:
            assert client.upsert_user('user-1') is False

        connect.assert_called_once()
        close.assert_called_once()

    def test_activity_requires_existing_session(self, client):
        client.g.V.return_value.has_label.return_value.has_next.return_value = False

        with pytest.raises(ValidationError):
            client.upsert_activity(Activity(id='a1', session_id='missing', timestamp=T0, summary=''))


class TestRelationships:

    def test_entity_link_reports_counters(self, client):
        client.g.V.return_value.has_next.return_value = True
        client.g.V.return_value.as_.return_value.coalesce.return_value.coalesce.return_value.next.return_value = True
        client.g.V.return_value.project.return_value.by.return_value.by.return_value.next.return_value = {
            'frequency': 3,
            'last_seen_at': to_epoch_ms(T0)
        }

        write = client.create_entity_relationship('a1', 'react:technology', 'React', 'technology', 0.9, T0)

        assert (write.key, write.created, write.frequency, write.last_seen_at) == ('react:technology', True, 3, T0)
        client.g.V.assert_any_call('activity:a1')
        client.g.V.assert_any_call('entity:react:technology')

    def test_unknown_activity_rejected(self, client):
        client.g.V.return_value.has_next.return_value = False

        with pytest.raises(ValidationError):
            client.create_concept_relationship('missing', 'testing', 'Testing', 'quality', 0.9, T0)


def chain_rows(tx, *rows):
    """Sessions the node holds as seen from inside the transaction."""
    chain = tx.begin.return_value.V.return_value.out.return_value.has_label.return_value.has.return_value
    chain.element_map.return_value.to_list.return_value = list(rows)


class TestRelink:

    def test_relink_commits_transaction(self, client):
        client.g.V.return_value.has_label.return_value.element_map.return_value.to_list.return_value = [session_row()]
        tx = client.g.tx.return_value
        chain_rows(tx, session_row('s0', start_time=to_epoch_ms(T0) - 3600000), session_row())

        assert client.relink_session('s1', 's0', None) == ('s0', None)

        tx.begin.assert_called_once()
        tx.commit.assert_called_once()
        tx.rollback.assert_not_called()

    def test_relink_uses_neighbours_read_in_transaction(self, client):
        client.g.V.return_value.has_label.return_value.element_map.return_value.to_list.return_value = [session_row()]
        tx = client.g.tx.return_value
        # Another writer spliced s0b between s0 and s1 after the caller looked
        chain_rows(tx,
                   session_row('s0', start_time=to_epoch_ms(T0) - 3600000),
                   session_row('s0b', start_time=to_epoch_ms(T0) - 1800000),
                   session_row())

        assert client.relink_session('s1', 's0', None) == ('s0b', None)

        gtx = tx.begin.return_value
        gtx.V.assert_any_call('session:s0b')
        assert ('session:s0',) not in [c.args for c in gtx.V.call_args_list]
        tx.commit.assert_called_once()

    def test_relink_conflict_is_retried_with_fresh_read(self, client):
        client.g.V.return_value.has_label.return_value.element_map.return_value.to_list.return_value = [session_row()]
        tx = client.g.tx.return_value
        chain_rows(tx, session_row('s0', start_time=to_epoch_ms(T0) - 3600000), session_row())
        tx.commit.side_effect = [RuntimeError('ConcurrentModificationException'), None]

        assert client.relink_session('s1', 's0', None) == ('s0', None)

        assert tx.begin.call_count == 2
        tx.rollback.assert_called_once()

    def test_relink_rolls_back_on_failure(self, client):
        client.g.V.return_value.has_label.return_value.element_map.return_value.to_list.return_value = [session_row()]
        tx = client.g.tx.return_value
        tx.begin.return_value.V.side_effect = RuntimeError('write failed')

        with pytest.raises(NeptuneError):
            client.relink_session('s1', 's0', None)

        tx.rollback.assert_called_once()
        tx.commit.assert_not_called()


class TestReads:

    def test_get_session_parses_element_map(self, client):
        row = session_row(end_time=to_epoch_ms(T0) + 60000)
        client.g.V.return_value.has_label.return_value.element_map.return_value.to_list.return_value = [row]

        session = client.get_session('s1')

        assert session.external_id == 's1'
        assert session.start_time == T0
        assert (session.end_time - session.start_time).total_seconds() == 60
        assert session.workflow_classification.tag == 'coding'

    def test_get_session_missing(self, client):
        client.g.V.return_value.has_label.return_value.element_map.return_value.to_list.return_value = []

        assert client.get_session('nope') is None

    def test_follows_edges_sorted(self, client):
        chain = client.g.V.return_value.out.return_value.has_label.return_value.has.return_value
        chain.as_.return_value.out.return_value.as_.return_value.select.return_value.by.return_value.to_list.return_value = [
            {'s': 's2', 't': 's3'}, {'s': 's1', 't': 's2'}
        ]

        assert client.follows_edges('user-1', 'node-1') == [('s1', 's2'), ('s2', 's3')]

    def test_empty_key_lists_skip_queries(self, client):
        assert client.load_entities([]) == []
        assert client.sessions_for_targets([], []) == set()
        client.g.V.assert_not_called()

    def test_health_check(self, client):
        assert client.health_check() is True
        client.g.V.return_value.limit.assert_called_with(1)
