"""
In-memory implementations of the graph and vector store interfaces.

Used by the test suite and by local runs with STORE_BACKEND=memory. Every
public operation holds the store lock for its whole duration, which makes
frequency increments and FOLLOWS relinks atomic the same way a single
Gremlin traversal is on Neptune.
"""

import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from ..models.core import (Activity, ConceptRecord, EntityOccurrence, EntityRecord, RelationshipWrite, Session, TimelineNode,
                           UNKNOWN_WORKFLOW)
from .errors import ValidationError
from .graph_store import (BELONGS_TO, CONTAINS, FOLLOWS, RELATES_TO, USES, GraphStore, follows_properties, require,
                          validate_session)
from .logging_config import get_logger
from .timestamp_utils import ensure_utc, to_epoch_ms
from .vector_store import CONCEPT_KIND, ENTITY_KIND, SESSION_KIND, VectorHit, VectorStore

logger = get_logger(__name__)


def _vid(kind: str, identifier: str) -> str:
    return f'{kind}:{identifier}'


def _strip(vertex_id: str) -> str:
    return vertex_id.split(':', 1)[1]


class InMemoryGraphStore(GraphStore):
    """Adjacency-list relationship store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._users: Set[str] = set()
        self._nodes: Dict[str, TimelineNode] = {}
        self._sessions: Dict[str, Session] = {}
        self._activities: Dict[str, Activity] = {}
        self._entities: Dict[str, EntityRecord] = {}
        self._concepts: Dict[str, ConceptRecord] = {}
        self._out: Dict[str, Dict[str, Set[str]]] = defaultdict(lambda: defaultdict(set))
        self._in: Dict[str, Dict[str, Set[str]]] = defaultdict(lambda: defaultdict(set))
        self._edge_properties: Dict[Tuple[str, str, str], dict] = {}

    # --- edge helpers (callers hold the lock) --------------------------------

    def _add_edge(self, label: str, source: str, target: str, **properties) -> bool:
        if target in self._out[source][label]:
            return False
        self._out[source][label].add(target)
        self._in[target][label].add(source)
        self._edge_properties[(label, source, target)] = properties
        return True

    def _drop_edge(self, label: str, source: str, target: str) -> None:
        self._out[source][label].discard(target)
        self._in[target][label].discard(source)
        self._edge_properties.pop((label, source, target), None)

    def edge_properties(self, label: str, source_id: str, target_id: str, source_kind: str = 'session',
                        target_kind: str = 'session') -> Optional[dict]:
        """Properties of an edge, or None if it does not exist."""
        with self._lock:
            props = self._edge_properties.get((label, _vid(source_kind, source_id), _vid(target_kind, target_id)))
            return dict(props) if props is not None else None

    def count_vertices(self, kind: str) -> int:
        """Number of vertices of a kind ('user', 'node', 'session', 'activity', 'entity', 'concept')."""
        collections = {
            'user': self._users,
            'node': self._nodes,
            'session': self._sessions,
            'activity': self._activities,
            'entity': self._entities,
            'concept': self._concepts
        }
        with self._lock:
            return len(collections[kind])

    # --- writes -------------------------------------------------------------

    def upsert_user(self, user_id: str) -> bool:
        user_id = require(user_id, 'user_id')
        with self._lock:
            if user_id in self._users:
                return False
            self._users.add(user_id)
            logger.debug(f'Created user vertex: {user_id}')
            return True

    def upsert_timeline_node(self, node: TimelineNode) -> bool:
        require(node.id, 'node_id')
        require(node.user_id, 'user_id')
        with self._lock:
            existing = self._nodes.get(node.id)
            if existing is not None and existing.user_id != node.user_id:
                raise ValidationError(f'Timeline node {node.id} belongs to another user')
            self.upsert_user(node.user_id)
            self._nodes[node.id] = replace(node)
            return existing is None

    def upsert_session(self, session: Session) -> bool:
        validate_session(session)
        with self._lock:
            existing = self._sessions.get(session.external_id)
            if existing is not None:
                if (existing.user_id, existing.node_id) != (session.user_id, session.node_id):
                    raise ValidationError(f'Session {session.external_id} is already attached to another node')
                if session.end_time is not None:
                    existing.end_time = ensure_utc(session.end_time)
                existing.workflow_classification = replace(session.workflow_classification)
                return False

            self.upsert_user(session.user_id)
            if session.node_id not in self._nodes:
                self._nodes[session.node_id] = TimelineNode(id=session.node_id, user_id=session.user_id, title='')
            self._sessions[session.external_id] = replace(session,
                                                          start_time=ensure_utc(session.start_time),
                                                          end_time=ensure_utc(session.end_time) if session.end_time else None,
                                                          workflow_classification=replace(session.workflow_classification))
            sid = _vid('session', session.external_id)
            self._add_edge(BELONGS_TO, sid, _vid('user', session.user_id))
            self._add_edge(CONTAINS, _vid('node', session.node_id), sid)
            logger.debug(f'Created session vertex: {session.external_id}')
            return True

    def upsert_activity(self, activity: Activity) -> bool:
        require(activity.id, 'activity id')
        require(activity.session_id, 'session_id')
        with self._lock:
            if activity.session_id not in self._sessions:
                raise ValidationError(f'Unknown session {activity.session_id} for activity {activity.id}')
            existing = self._activities.get(activity.id)
            if existing is not None:
                if existing.session_id != activity.session_id:
                    raise ValidationError(f'Activity {activity.id} already belongs to session {existing.session_id}')
                return False
            self._activities[activity.id] = replace(activity, timestamp=ensure_utc(activity.timestamp))
            self._add_edge(CONTAINS, _vid('session', activity.session_id), _vid('activity', activity.id))
            return True

    def create_entity_relationship(self, activity_id: str, key: str, name: str, entity_type: str, confidence: float,
                                   seen_at: datetime) -> RelationshipWrite:
        seen_at = ensure_utc(seen_at)
        with self._lock:
            self._require_activity(activity_id)
            record = self._entities.get(key)
            if record is None:
                record = EntityRecord(key=key, name=name, type=entity_type, frequency=0, last_seen_at=seen_at,
                                      first_seen_at=seen_at)
                self._entities[key] = record
            return self._link(USES, activity_id, _vid('entity', key), record, confidence, seen_at)

    def create_concept_relationship(self, activity_id: str, key: str, name: str, category: str, confidence: float,
                                    seen_at: datetime) -> RelationshipWrite:
        seen_at = ensure_utc(seen_at)
        with self._lock:
            self._require_activity(activity_id)
            record = self._concepts.get(key)
            if record is None:
                record = ConceptRecord(key=key, name=name, category=category, frequency=0, last_seen_at=seen_at,
                                       first_seen_at=seen_at)
                self._concepts[key] = record
            return self._link(RELATES_TO, activity_id, _vid('concept', key), record, confidence, seen_at)

    def _require_activity(self, activity_id: str) -> None:
        require(activity_id, 'activity_id')
        if activity_id not in self._activities:
            raise ValidationError(f'Unknown activity {activity_id}')

    def _link(self, label, activity_id, target, record, confidence, seen_at) -> RelationshipWrite:
        created = self._add_edge(label, _vid('activity', activity_id), target, confidence=confidence)
        if created:
            record.frequency += 1
            record.last_seen_at = max(record.last_seen_at, seen_at)
        return RelationshipWrite(key=record.key, created=created, frequency=record.frequency, last_seen_at=record.last_seen_at)

    def relink_session(self, session_id: str, predecessor_id: Optional[str],
                       successor_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise ValidationError(f'Unknown session {session_id}')
            sid = _vid('session', session_id)

            for target in list(self._out[sid][FOLLOWS]):
                self._drop_edge(FOLLOWS, sid, target)
            for source in list(self._in[sid][FOLLOWS]):
                self._drop_edge(FOLLOWS, source, sid)

            if predecessor_id is not None:
                predecessor = self._sessions[predecessor_id]
                pid = _vid('session', predecessor_id)
                for target in list(self._out[pid][FOLLOWS]):
                    self._drop_edge(FOLLOWS, pid, target)
                self._add_edge(FOLLOWS, pid, sid, **follows_properties(predecessor, session))

            if successor_id is not None:
                successor = self._sessions[successor_id]
                nid = _vid('session', successor_id)
                for source in list(self._in[nid][FOLLOWS]):
                    self._drop_edge(FOLLOWS, source, nid)
                self._add_edge(FOLLOWS, sid, nid, **follows_properties(session, successor))
            return predecessor_id, successor_id

    # --- reads --------------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session else None

    def get_activity(self, activity_id: str) -> Optional[Activity]:
        with self._lock:
            activity = self._activities.get(activity_id)
            return replace(activity) if activity else None

    def sessions_for_node(self, user_id: str, node_id: str, since: Optional[datetime] = None) -> List[Session]:
        with self._lock:
            sessions = [
                replace(s) for s in self._sessions.values()
                if s.user_id == user_id and s.node_id == node_id and (since is None or s.start_time >= since)
            ]
        return sorted(sessions, key=Session.ordering_key)

    def node_ids_for_user(self, user_id: str) -> List[str]:
        with self._lock:
            node_ids = {s.node_id for s in self._sessions.values() if s.user_id == user_id}
            node_ids |= {n.id for n in self._nodes.values() if n.user_id == user_id}
        return sorted(node_ids)

    def follows_edges(self, user_id: str, node_id: str) -> List[Tuple[str, str]]:
        with self._lock:
            edges = []
            for session in self._sessions.values():
                if session.user_id != user_id or session.node_id != node_id:
                    continue
                for target in self._out[_vid('session', session.external_id)][FOLLOWS]:
                    edges.append((session.external_id, _strip(target)))
        return sorted(edges)

    def activities_for_session(self, session_id: str) -> List[Activity]:
        with self._lock:
            activities = [replace(self._activities[_strip(a)]) for a in self._out[_vid('session', session_id)][CONTAINS]]
        return sorted(activities, key=lambda a: (a.timestamp, a.id))

    def targets_for_sessions(self, session_ids: Iterable[str]) -> Tuple[Set[str], Set[str]]:
        entity_keys, concept_keys = set(), set()
        with self._lock:
            for session_id in session_ids:
                for activity in self._out[_vid('session', session_id)][CONTAINS]:
                    entity_keys |= {_strip(t) for t in self._out[activity][USES]}
                    concept_keys |= {_strip(t) for t in self._out[activity][RELATES_TO]}
        return entity_keys, concept_keys

    def sessions_for_targets(self, entity_keys: Iterable[str], concept_keys: Iterable[str]) -> Set[str]:
        activity_ids = set()
        with self._lock:
            for key in entity_keys:
                activity_ids |= self._in[_vid('entity', key)][USES]
            for key in concept_keys:
                activity_ids |= self._in[_vid('concept', key)][RELATES_TO]
            return {self._activities[_strip(a)].session_id for a in activity_ids}

    def follows_neighbors(self, session_ids: Iterable[str]) -> Set[str]:
        neighbors = set()
        with self._lock:
            for session_id in session_ids:
                sid = _vid('session', session_id)
                neighbors |= {_strip(v) for v in self._out[sid][FOLLOWS] | self._in[sid][FOLLOWS]}
        return neighbors

    def load_sessions(self, session_ids: Iterable[str]) -> List[Session]:
        with self._lock:
            return [replace(self._sessions[s]) for s in session_ids if s in self._sessions]

    def load_entities(self, keys: Iterable[str]) -> List[EntityRecord]:
        with self._lock:
            return [replace(self._entities[k]) for k in keys if k in self._entities]

    def load_concepts(self, keys: Iterable[str]) -> List[ConceptRecord]:
        with self._lock:
            return [replace(self._concepts[k]) for k in keys if k in self._concepts]

    def frequent_entities(self, user_id: str, limit: int = 20, min_frequency: int = 2) -> List[EntityRecord]:
        with self._lock:
            session_ids = [s.external_id for s in self._sessions.values() if s.user_id == user_id]
            keys, _ = self.targets_for_sessions(session_ids)
            records = [e for e in self.load_entities(keys) if e.frequency >= min_frequency]
        records.sort(key=lambda e: (-e.frequency, e.key))
        return records[:limit]

    def entity_occurrences(self, key: str) -> List[EntityOccurrence]:
        with self._lock:
            occurrences = []
            for activity_vid in self._in[_vid('entity', key)][USES]:
                activity = self._activities[_strip(activity_vid)]
                session = self._sessions[activity.session_id]
                occurrences.append(
                    EntityOccurrence(activity_id=activity.id,
                                     session_id=session.external_id,
                                     timestamp=activity.timestamp,
                                     workflow_tag=activity.workflow_tag or session.workflow_classification.tag,
                                     session_workflow=session.workflow_classification.tag or UNKNOWN_WORKFLOW))
        return sorted(occurrences, key=lambda o: (o.timestamp, o.activity_id))

    def health_check(self) -> bool:
        return True


class InMemoryVectorStore(VectorStore):
    """Brute-force cosine similarity over numpy vectors."""

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension
        self._lock = threading.RLock()
        self._records: Dict[str, Dict[str, Tuple[np.ndarray, dict]]] = {
            ENTITY_KIND: {},
            CONCEPT_KIND: {},
            SESSION_KIND: {}
        }

    def _vector(self, embedding: List[float]) -> np.ndarray:
        vector = np.asarray(embedding, dtype=np.float32)
        if vector.ndim != 1 or vector.size == 0:
            raise ValidationError('Embedding must be a non-empty flat vector')
        if self.dimension is not None and vector.size != self.dimension:
            raise ValidationError(f'Embedding has dimension {vector.size}, expected {self.dimension}')
        return vector

    def _merge(self, kind: str, key: str, vector: np.ndarray, document: dict) -> None:
        with self._lock:
            existing = self._records[kind].get(key)
            if existing is not None:
                old = existing[1]
                document['frequency'] = max(old.get('frequency', 0), document.get('frequency', 0))
                document['last_seen_at'] = max(old.get('last_seen_at', 0), document.get('last_seen_at', 0))
            self._records[kind][key] = (vector, document)

    def upsert_entity(self, key: str, name: str, entity_type: str, embedding: List[float], frequency: int,
                      last_seen_at: datetime) -> None:
        self._merge(ENTITY_KIND, key, self._vector(embedding), {
            'key': key,
            'name': name,
            'type': entity_type,
            'frequency': frequency,
            'last_seen_at': to_epoch_ms(last_seen_at)
        })

    def upsert_concept(self, key: str, name: str, category: str, embedding: List[float], frequency: int,
                       last_seen_at: datetime) -> None:
        self._merge(CONCEPT_KIND, key, self._vector(embedding), {
            'key': key,
            'name': name,
            'category': category,
            'frequency': frequency,
            'last_seen_at': to_epoch_ms(last_seen_at)
        })

    def upsert_session(self, session: Session, embedding: List[float]) -> None:
        with self._lock:
            self._records[SESSION_KIND][session.external_id] = (self._vector(embedding), {
                'key': session.external_id,
                'user_id': session.user_id,
                'node_id': session.node_id,
                'start_time': to_epoch_ms(session.start_time),
                'end_time': to_epoch_ms(session.end_time) if session.end_time else None,
                'workflow': session.workflow_classification.tag
            })

    def _search(self, kind: str, query_vector: List[float], top_k: int, min_similarity: float, accept) -> List[VectorHit]:
        query = self._vector(query_vector)
        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []

        with self._lock:
            candidates = [(key, vector, dict(doc)) for key, (vector, doc) in self._records[kind].items() if accept(doc)]

        hits = []
        for key, vector, document in candidates:
            norm = np.linalg.norm(vector)
            if norm == 0:
                continue
            cosine = float(np.dot(query, vector) / (query_norm * norm))
            similarity = min(1.0, max(0.0, cosine))
            if similarity >= min_similarity:
                hits.append(VectorHit(key=key, kind=kind, similarity=similarity, document=document))

        hits.sort(key=lambda h: (-h.similarity, h.key))
        return hits[:top_k]

    def search_entities(self,
                        query_vector: List[float],
                        top_k: int = 20,
                        min_similarity: float = 0.0,
                        entity_type: Optional[str] = None) -> List[VectorHit]:
        return self._search(ENTITY_KIND, query_vector, top_k, min_similarity,
                            lambda doc: entity_type is None or doc['type'] == entity_type)

    def search_concepts(self,
                        query_vector: List[float],
                        top_k: int = 20,
                        min_similarity: float = 0.0,
                        category: Optional[str] = None) -> List[VectorHit]:
        return self._search(CONCEPT_KIND, query_vector, top_k, min_similarity,
                            lambda doc: category is None or doc['category'] == category)

    def search_sessions(self,
                        query_vector: List[float],
                        user_id: str,
                        top_k: int = 20,
                        min_similarity: float = 0.0,
                        since: Optional[datetime] = None) -> List[VectorHit]:
        since_ms = to_epoch_ms(since) if since is not None else None
        return self._search(SESSION_KIND, query_vector, top_k, min_similarity,
                            lambda doc: doc['user_id'] == user_id and (since_ms is None or doc['start_time'] >= since_ms))

    def latest_session_vector(self, user_id: str, node_id: str) -> Optional[List[float]]:
        with self._lock:
            candidates = [(doc['start_time'], key, vector) for key, (vector, doc) in self._records[SESSION_KIND].items()
                          if doc['user_id'] == user_id and doc['node_id'] == node_id]
        if not candidates:
            return None
        return max(candidates, key=lambda c: (c[0], c[1]))[2].tolist()

    def get_record(self, kind: str, key: str) -> Optional[dict]:
        """Stored document (without the vector), or None."""
        with self._lock:
            record = self._records[kind].get(key)
            return dict(record[1]) if record else None

    def health_check(self) -> bool:
        return True
