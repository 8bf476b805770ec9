"""
Amazon Neptune graph store with Gremlin Python driver and AWS SigV4 authentication.

Vertex ids are prefixed by kind ('session:<external id>', 'entity:<key>', ...)
so that every upsert is a single keyed lookup. Timestamps are stored as
epoch milliseconds.
"""

from datetime import datetime
from functools import wraps
from typing import Iterable, List, Optional, Set, Tuple

from boto3 import Session as AWSSession
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, Order, P, T

from ..models.core import (Activity, ConceptRecord, EntityOccurrence, EntityRecord, RelationshipWrite, Session, TimelineNode,
                           UNKNOWN_WORKFLOW, WorkflowClassification)
from .config import NeptuneConfig, RetryConfig
from .errors import RaceConditionRetry, StoreConnectionError, ValidationError, retry_on_conflict
from .graph_store import (BELONGS_TO, CONTAINS, FOLLOWS, RELATES_TO, USES, GraphStore, chronological_neighbors,
                          follows_properties, require, validate_session)
from .logging_config import get_logger
from .timestamp_utils import from_epoch_ms, to_epoch_ms

logger = get_logger(__name__)

_CONFLICT_MARKERS = ('concurrentmodificationexception', 'conflict')


class NeptuneError(StoreConnectionError):
    """Custom exception for Neptune errors."""
    pass


def _translate(func_name: str, e: Exception) -> Exception:
    message = str(e)
    if any(marker in message.lower() for marker in _CONFLICT_MARKERS):
        return RaceConditionRetry(f'{func_name}: {message}')
    logger.error(f'Error in {func_name}: {message}')
    return NeptuneError(f'Failed to {func_name}: {message}')


def retry_on_connection_error(func):
    """Decorator to reconnect once on a closed transport and map driver errors to the store taxonomy."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except (ValidationError, RaceConditionRetry, NeptuneError):
            raise
        except Exception as e:
            if 'cannot write to closing transport' not in str(e).lower():
                raise _translate(func.__name__, e) from e

            logger.warning(f'Connection error detected: {e}. Reconnecting...')
            self.close()
            self._connect()
            try:
                return func(self, *args, **kwargs)
            except (ValidationError, RaceConditionRetry, NeptuneError):
                raise
            except Exception as retry_e:
                raise _translate(func.__name__, retry_e) from retry_e

    return wrapper


def _vid(kind: str, identifier: str) -> str:
    return f'{kind}:{identifier}'


def _session_from_map(data: dict) -> Session:
    end_time = data.get('end_time')
    return Session(external_id=data['external_id'],
                   user_id=data['user_id'],
                   node_id=data['node_id'],
                   start_time=from_epoch_ms(data['start_time']),
                   end_time=from_epoch_ms(end_time) if end_time else None,
                   workflow_classification=WorkflowClassification(tag=data.get('workflow', UNKNOWN_WORKFLOW),
                                                                  confidence=float(data.get('workflow_confidence', 0.0))))


def _activity_from_map(data: dict) -> Activity:
    return Activity(id=data['activity_id'],
                    session_id=data['session_id'],
                    timestamp=from_epoch_ms(data['timestamp']),
                    summary=data.get('summary', ''),
                    workflow_tag=data.get('workflow_tag') or None)


def _entity_from_map(data: dict) -> EntityRecord:
    return EntityRecord(key=data['key'],
                        name=data['name'],
                        type=data['type'],
                        frequency=int(data['frequency']),
                        last_seen_at=from_epoch_ms(data['last_seen_at']),
                        first_seen_at=from_epoch_ms(data['first_seen_at']) if data.get('first_seen_at') else None)


def _concept_from_map(data: dict) -> ConceptRecord:
    return ConceptRecord(key=data['key'],
                         name=data['name'],
                         category=data['category'],
                         frequency=int(data['frequency']),
                         last_seen_at=from_epoch_ms(data['last_seen_at']),
                         first_seen_at=from_epoch_ms(data['first_seen_at']) if data.get('first_seen_at') else None)


class NeptuneClient(GraphStore):
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig, retry_config: Optional[RetryConfig] = None, connect: bool = True):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
            retry_config: Backoff settings for conflicting writes (global config if None)
            connect: Open the WebSocket connection immediately
        """
        self.config = config
        self.retry_config = retry_config
        self.connection = None
        self.g = None
        if connect:
            self._connect()
            logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        aws_session = AWSSession()
        credentials = aws_session.get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = aws_session.region_name or self.config.region or 'us-east-1'

        # Signed handshake for the WebSocket upgrade
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
            self.connection = None

    # --- writes -------------------------------------------------------------

    @retry_on_conflict
    @retry_on_connection_error
    def upsert_user(self, user_id: str) -> bool:
        user_id = require(user_id, 'user_id')
        uid = _vid('user', user_id)
        return self.g.V(uid).fold().coalesce(
            __.unfold().constant(False),
            __.add_v('User').property(T.id, uid).property('user_id', user_id).constant(True)).next()

    @retry_on_conflict
    @retry_on_connection_error
    def upsert_timeline_node(self, node: TimelineNode) -> bool:
        require(node.id, 'node_id')
        require(node.user_id, 'user_id')
        nid = _vid('node', node.id)

        owner = self.g.V(nid).values('user_id').to_list()
        if owner and owner[0] != node.user_id:
            raise ValidationError(f'Timeline node {node.id} belongs to another user')

        self.upsert_user(node.user_id)
        created = self.g.V(nid).fold().coalesce(
            __.unfold().property(Cardinality.single, 'title', node.title)
              .property(Cardinality.single, 'node_type', node.node_type).constant(False),
            __.add_v('TimelineNode').property(T.id, nid)
              .property('node_id', node.id)
              .property('user_id', node.user_id)
              .property('title', node.title)
              .property('node_type', node.node_type).constant(True)).next()
        return created

    @retry_on_conflict
    @retry_on_connection_error
    def upsert_session(self, session: Session) -> bool:
        validate_session(session)
        sid = _vid('session', session.external_id)
        uid = _vid('user', session.user_id)
        nid = _vid('node', session.node_id)

        existing = self.get_session(session.external_id)
        if existing is not None and (existing.user_id, existing.node_id) != (session.user_id, session.node_id):
            raise ValidationError(f'Session {session.external_id} is already attached to another node')

        self.upsert_user(session.user_id)
        self.g.V(nid).fold().coalesce(
            __.unfold(),
            __.add_v('TimelineNode').property(T.id, nid)
              .property('node_id', session.node_id)
              .property('user_id', session.user_id)
              .property('title', '')
              .property('node_type', 'project')).iterate()

        classification = session.workflow_classification
        update = __.unfold()\
            .property(Cardinality.single, 'workflow', classification.tag)\
            .property(Cardinality.single, 'workflow_confidence', classification.confidence)
        if session.end_time is not None:
            update = update.property(Cardinality.single, 'end_time', to_epoch_ms(session.end_time))

        create = __.add_v('Session').property(T.id, sid)\
            .property('external_id', session.external_id)\
            .property('user_id', session.user_id)\
            .property('node_id', session.node_id)\
            .property('start_time', to_epoch_ms(session.start_time))\
            .property('workflow', classification.tag)\
            .property('workflow_confidence', classification.confidence)
        if session.end_time is not None:
            create = create.property('end_time', to_epoch_ms(session.end_time))

        created = self.g.V(sid).fold().coalesce(update.constant(False), create.constant(True)).next()

        self.g.V(sid).coalesce(
            __.out_e(BELONGS_TO).where(__.in_v().has_id(uid)),
            __.add_e(BELONGS_TO).to(__.V(uid))).iterate()
        self.g.V(nid).coalesce(
            __.out_e(CONTAINS).where(__.in_v().has_id(sid)),
            __.add_e(CONTAINS).to(__.V(sid))).iterate()

        if created:
            logger.debug(f'Created session vertex: {session.external_id}')
        return created

    @retry_on_conflict
    @retry_on_connection_error
    def upsert_activity(self, activity: Activity) -> bool:
        require(activity.id, 'activity id')
        require(activity.session_id, 'session_id')
        aid = _vid('activity', activity.id)
        sid = _vid('session', activity.session_id)

        if not self.g.V(sid).has_label('Session').has_next():
            raise ValidationError(f'Unknown session {activity.session_id} for activity {activity.id}')

        owner = self.g.V(aid).values('session_id').to_list()
        if owner:
            if owner[0] != activity.session_id:
                raise ValidationError(f'Activity {activity.id} already belongs to session {owner[0]}')
            return False

        create = __.add_v('Activity').property(T.id, aid)\
            .property('activity_id', activity.id)\
            .property('session_id', activity.session_id)\
            .property('timestamp', to_epoch_ms(activity.timestamp))\
            .property('summary', activity.summary or '')
        if activity.workflow_tag:
            create = create.property('workflow_tag', activity.workflow_tag)

        created = self.g.V(aid).fold().coalesce(__.unfold().constant(False), create.constant(True)).next()
        self.g.V(sid).coalesce(
            __.out_e(CONTAINS).where(__.in_v().has_id(aid)),
            __.add_e(CONTAINS).to(__.V(aid))).iterate()
        return created

    def _link(self, label: str, activity_id: str, target_vid: str, create_target, confidence: float,
              seen_at: datetime) -> Tuple[bool, dict]:
        """Find-or-create the target and the edge in one traversal; bump counters only on a new edge."""
        require(activity_id, 'activity_id')
        aid = _vid('activity', activity_id)
        if not self.g.V(aid).has_next():
            raise ValidationError(f'Unknown activity {activity_id}')

        seen_ms = to_epoch_ms(seen_at)
        created = self.g.V(aid).as_('a')\
            .coalesce(__.V(target_vid), create_target)\
            .coalesce(
                __.in_e(label).where(__.out_v().has_id(aid)).constant(False),
                __.add_e(label).from_('a').property('confidence', confidence).in_v()
                  .property(Cardinality.single, 'frequency', __.union(__.values('frequency'), __.constant(1)).sum_())
                  .property(Cardinality.single, 'last_seen_at', __.union(__.values('last_seen_at'), __.constant(seen_ms)).max_())
                  .constant(True)).next()

        counters = self.g.V(target_vid).project('frequency', 'last_seen_at').by('frequency').by('last_seen_at').next()
        return created, counters

    @retry_on_conflict
    @retry_on_connection_error
    def create_entity_relationship(self, activity_id: str, key: str, name: str, entity_type: str, confidence: float,
                                   seen_at: datetime) -> RelationshipWrite:
        eid = _vid('entity', key)
        seen_ms = to_epoch_ms(seen_at)
        create_target = __.add_v('Entity').property(T.id, eid)\
            .property('key', key)\
            .property('name', name)\
            .property('type', entity_type)\
            .property(Cardinality.single, 'frequency', 0)\
            .property(Cardinality.single, 'last_seen_at', seen_ms)\
            .property('first_seen_at', seen_ms)
        created, counters = self._link(USES, activity_id, eid, create_target, confidence, seen_at)
        return RelationshipWrite(key=key,
                                 created=created,
                                 frequency=int(counters['frequency']),
                                 last_seen_at=from_epoch_ms(counters['last_seen_at']))

    @retry_on_conflict
    @retry_on_connection_error
    def create_concept_relationship(self, activity_id: str, key: str, name: str, category: str, confidence: float,
                                    seen_at: datetime) -> RelationshipWrite:
        cid = _vid('concept', key)
        seen_ms = to_epoch_ms(seen_at)
        create_target = __.add_v('Concept').property(T.id, cid)\
            .property('key', key)\
            .property('name', name)\
            .property('category', category)\
            .property(Cardinality.single, 'frequency', 0)\
            .property(Cardinality.single, 'last_seen_at', seen_ms)\
            .property('first_seen_at', seen_ms)
        created, counters = self._link(RELATES_TO, activity_id, cid, create_target, confidence, seen_at)
        return RelationshipWrite(key=key,
                                 created=created,
                                 frequency=int(counters['frequency']),
                                 last_seen_at=from_epoch_ms(counters['last_seen_at']))

    @retry_on_conflict
    @retry_on_connection_error
    def relink_session(self, session_id: str, predecessor_id: Optional[str],
                       successor_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        session = self.get_session(session_id)
        if session is None:
            raise ValidationError(f'Unknown session {session_id}')
        sid = _vid('session', session_id)

        tx = self.g.tx()
        gtx = tx.begin()
        try:
            # Neighbours are re-read inside the transaction; a concurrent splice of
            # the same vertices fails the commit as a conflict and is retried
            rows = gtx.V(_vid('node', session.node_id)).out(CONTAINS).has_label('Session')\
                .has('user_id', session.user_id).element_map().to_list()
            predecessor, successor = chronological_neighbors(session, [_session_from_map(row) for row in rows])
            linked = (predecessor.external_id if predecessor else None, successor.external_id if successor else None)
            if linked != (predecessor_id, successor_id):
                logger.info(f'Chain of node {session.node_id} changed under session {session_id}: '
                            f'linking {linked[0]} -> {session_id} -> {linked[1]}')

            gtx.V(sid).both_e(FOLLOWS).drop().iterate()
            if predecessor is not None:
                pid = _vid('session', predecessor.external_id)
                props = follows_properties(predecessor, session)
                gtx.V(pid).out_e(FOLLOWS).drop().iterate()
                gtx.V(pid).add_e(FOLLOWS).to(__.V(sid))\
                    .property('time_gap_seconds', props['time_gap_seconds'])\
                    .property('workflow_transition', props['workflow_transition']).iterate()
            if successor is not None:
                nid = _vid('session', successor.external_id)
                props = follows_properties(session, successor)
                gtx.V(nid).in_e(FOLLOWS).drop().iterate()
                gtx.V(sid).add_e(FOLLOWS).to(__.V(nid))\
                    .property('time_gap_seconds', props['time_gap_seconds'])\
                    .property('workflow_transition', props['workflow_transition']).iterate()
            tx.commit()
        except Exception:
            tx.rollback()
            raise
        return linked

    # --- reads --------------------------------------------------------------

    @retry_on_connection_error
    def get_session(self, session_id: str) -> Optional[Session]:
        rows = self.g.V(_vid('session', session_id)).has_label('Session').element_map().to_list()
        return _session_from_map(rows[0]) if rows else None

    @retry_on_connection_error
    def get_activity(self, activity_id: str) -> Optional[Activity]:
        rows = self.g.V(_vid('activity', activity_id)).has_label('Activity').element_map().to_list()
        return _activity_from_map(rows[0]) if rows else None

    @retry_on_connection_error
    def sessions_for_node(self, user_id: str, node_id: str, since: Optional[datetime] = None) -> List[Session]:
        t = self.g.V(_vid('node', node_id)).out(CONTAINS).has_label('Session').has('user_id', user_id)
        if since is not None:
            t = t.has('start_time', P.gte(to_epoch_ms(since)))
        sessions = [_session_from_map(row) for row in t.element_map().to_list()]
        return sorted(sessions, key=Session.ordering_key)

    @retry_on_connection_error
    def node_ids_for_user(self, user_id: str) -> List[str]:
        return sorted(self.g.V().has_label('TimelineNode').has('user_id', user_id).values('node_id').dedup().to_list())

    @retry_on_connection_error
    def follows_edges(self, user_id: str, node_id: str) -> List[Tuple[str, str]]:
        rows = self.g.V(_vid('node', node_id)).out(CONTAINS).has_label('Session').has('user_id', user_id).as_('s')\
            .out(FOLLOWS).as_('t')\
            .select('s', 't').by('external_id').to_list()
        return sorted((row['s'], row['t']) for row in rows)

    @retry_on_connection_error
    def activities_for_session(self, session_id: str) -> List[Activity]:
        rows = self.g.V(_vid('session', session_id)).out(CONTAINS).has_label('Activity').element_map().to_list()
        return sorted((_activity_from_map(row) for row in rows), key=lambda a: (a.timestamp, a.id))

    @retry_on_connection_error
    def targets_for_sessions(self, session_ids: Iterable[str]) -> Tuple[Set[str], Set[str]]:
        vids = [_vid('session', s) for s in session_ids]
        if not vids:
            return set(), set()
        entity_keys = self.g.V(*vids).out(CONTAINS).out(USES).values('key').dedup().to_list()
        concept_keys = self.g.V(*vids).out(CONTAINS).out(RELATES_TO).values('key').dedup().to_list()
        return set(entity_keys), set(concept_keys)

    @retry_on_connection_error
    def sessions_for_targets(self, entity_keys: Iterable[str], concept_keys: Iterable[str]) -> Set[str]:
        vids = [_vid('entity', k) for k in entity_keys] + [_vid('concept', k) for k in concept_keys]
        if not vids:
            return set()
        return set(self.g.V(*vids).in_(USES, RELATES_TO).in_(CONTAINS).has_label('Session')
                   .values('external_id').dedup().to_list())

    @retry_on_connection_error
    def follows_neighbors(self, session_ids: Iterable[str]) -> Set[str]:
        vids = [_vid('session', s) for s in session_ids]
        if not vids:
            return set()
        return set(self.g.V(*vids).both(FOLLOWS).values('external_id').dedup().to_list())

    @retry_on_connection_error
    def load_sessions(self, session_ids: Iterable[str]) -> List[Session]:
        vids = [_vid('session', s) for s in session_ids]
        if not vids:
            return []
        return [_session_from_map(row) for row in self.g.V(*vids).has_label('Session').element_map().to_list()]

    @retry_on_connection_error
    def load_entities(self, keys: Iterable[str]) -> List[EntityRecord]:
        vids = [_vid('entity', k) for k in keys]
        if not vids:
            return []
        return [_entity_from_map(row) for row in self.g.V(*vids).has_label('Entity').element_map().to_list()]

    @retry_on_connection_error
    def load_concepts(self, keys: Iterable[str]) -> List[ConceptRecord]:
        vids = [_vid('concept', k) for k in keys]
        if not vids:
            return []
        return [_concept_from_map(row) for row in self.g.V(*vids).has_label('Concept').element_map().to_list()]

    @retry_on_connection_error
    def frequent_entities(self, user_id: str, limit: int = 20, min_frequency: int = 2) -> List[EntityRecord]:
        rows = self.g.V(_vid('user', user_id)).in_(BELONGS_TO).out(CONTAINS).out(USES).dedup()\
            .has('frequency', P.gte(min_frequency))\
            .order().by('frequency', Order.desc).by('key', Order.asc)\
            .limit(limit)\
            .element_map().to_list()
        return [_entity_from_map(row) for row in rows]

    @retry_on_connection_error
    def entity_occurrences(self, key: str) -> List[EntityOccurrence]:
        rows = self.g.V(_vid('entity', key)).in_(USES).as_('a').in_(CONTAINS).has_label('Session').as_('s')\
            .select('a', 's').by(__.element_map()).to_list()

        occurrences = []
        for row in rows:
            activity = _activity_from_map(row['a'])
            session = _session_from_map(row['s'])
            occurrences.append(
                EntityOccurrence(activity_id=activity.id,
                                 session_id=session.external_id,
                                 timestamp=activity.timestamp,
                                 workflow_tag=activity.workflow_tag or session.workflow_classification.tag,
                                 session_workflow=session.workflow_classification.tag))
        return sorted(occurrences, key=lambda o: (o.timestamp, o.activity_id))

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy
        """
        self.g.V().limit(1).count().next()
        return True
