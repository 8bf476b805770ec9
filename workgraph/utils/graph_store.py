"""
Relationship store interface.

The services only talk to this narrow surface so the core logic stays
storage-agnostic. NeptuneClient implements it against Amazon Neptune and
InMemoryGraphStore against an adjacency list.

Graph layout:
    (Session)-[BELONGS_TO]->(User)
    (TimelineNode)-[CONTAINS]->(Session)-[CONTAINS]->(Activity)
    (Session)-[FOLLOWS]->(Session)
    (Activity)-[USES]->(Entity)
    (Activity)-[RELATES_TO]->(Concept)
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional, Set, Tuple

from ..models.core import (Activity, ConceptRecord, EntityOccurrence, EntityRecord, GraphNeighborhood, RelationshipWrite,
                           Session, TimelineNode)
from .errors import StoreTimeoutError, ValidationError
from .logging_config import get_logger

logger = get_logger(__name__)

BELONGS_TO = 'BELONGS_TO'
CONTAINS = 'CONTAINS'
FOLLOWS = 'FOLLOWS'
USES = 'USES'
RELATES_TO = 'RELATES_TO'


def require(value: Optional[str], field_name: str) -> str:
    """Return a stripped identifier or raise ValidationError if it is missing."""
    if value is None or not str(value).strip():
        raise ValidationError(f'{field_name} is required')
    return str(value).strip()


def validate_session(session: Session) -> None:
    """Check the identifiers and times a session needs before it is written."""
    require(session.external_id, 'session external_id')
    require(session.user_id, 'user_id')
    require(session.node_id, 'node_id')
    if session.start_time is None:
        raise ValidationError('session start_time is required')
    if session.end_time is not None and session.end_time < session.start_time:
        raise ValidationError(f'session {session.external_id} ends before it starts')


def chronological_neighbors(session: Session, siblings: Iterable[Session]) -> Tuple[Optional[Session], Optional[Session]]:
    """Closest earlier and later sessions of the same chain, by (start_time, external_id)."""
    position = session.ordering_key()
    predecessor = None
    successor = None
    for sibling in siblings:
        if sibling.external_id == session.external_id:
            continue
        key = sibling.ordering_key()
        if key < position and (predecessor is None or key > predecessor.ordering_key()):
            predecessor = sibling
        elif key > position and (successor is None or key < successor.ordering_key()):
            successor = sibling
    return predecessor, successor


def follows_properties(previous: Session, following: Session) -> dict:
    """Properties stored on a FOLLOWS edge: the idle gap and the workflow transition it spans."""
    gap_start = previous.end_time or previous.start_time
    return {
        'time_gap_seconds': max(0, int((following.start_time - gap_start).total_seconds())),
        'workflow_transition': f'{previous.workflow_classification.tag} → {following.workflow_classification.tag}'
    }


class GraphStore(ABC):
    """Idempotent upserts and traversal primitives over the activity graph."""

    # --- writes -------------------------------------------------------------

    @abstractmethod
    def upsert_user(self, user_id: str) -> bool:
        """Create the user vertex if absent. Returns True if it was created."""

    @abstractmethod
    def upsert_timeline_node(self, node: TimelineNode) -> bool:
        """Create or refresh the timeline node vertex. Returns True if it was created."""

    @abstractmethod
    def upsert_session(self, session: Session) -> bool:
        """Create the session with its BELONGS_TO and CONTAINS edges, or refresh its end time and classification.

        Missing user/node vertices are created alongside so no edge dangles.
        Returns True if the session vertex was created.
        """

    @abstractmethod
    def upsert_activity(self, activity: Activity) -> bool:
        """Create the activity under its session. Raises ValidationError if the session does not exist."""

    @abstractmethod
    def create_entity_relationship(self, activity_id: str, key: str, name: str, entity_type: str, confidence: float,
                                   seen_at: datetime) -> RelationshipWrite:
        """Link an activity to an entity, creating the entity if absent.

        The entity's frequency is incremented atomically by 1 only when the
        USES edge is new, and last_seen_at moves forward to ``seen_at``.
        """

    @abstractmethod
    def create_concept_relationship(self, activity_id: str, key: str, name: str, category: str, confidence: float,
                                    seen_at: datetime) -> RelationshipWrite:
        """Link an activity to a concept; same counting rules as create_entity_relationship."""

    @abstractmethod
    def relink_session(self, session_id: str, predecessor_id: Optional[str],
                       successor_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Splice a session into its FOLLOWS chain between its neighbours, in one transaction.

        The given neighbours are what the caller observed. A store shared by
        several writers re-reads the chain inside the transaction and links
        the neighbours it finds there instead.

        Returns:
            Tuple of (predecessor id, successor id) actually linked
        """

    # --- reads --------------------------------------------------------------

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[Session]:
        pass

    @abstractmethod
    def get_activity(self, activity_id: str) -> Optional[Activity]:
        pass

    @abstractmethod
    def sessions_for_node(self, user_id: str, node_id: str, since: Optional[datetime] = None) -> List[Session]:
        """Sessions of a (user, node), sorted by ordering key."""

    @abstractmethod
    def node_ids_for_user(self, user_id: str) -> List[str]:
        pass

    @abstractmethod
    def follows_edges(self, user_id: str, node_id: str) -> List[Tuple[str, str]]:
        """All FOLLOWS edges among the sessions of a (user, node) as (from, to) pairs."""

    @abstractmethod
    def activities_for_session(self, session_id: str) -> List[Activity]:
        """Activities of a session sorted by timestamp."""

    @abstractmethod
    def targets_for_sessions(self, session_ids: Iterable[str]) -> Tuple[Set[str], Set[str]]:
        """Entity keys and concept keys used by any activity of the given sessions."""

    @abstractmethod
    def sessions_for_targets(self, entity_keys: Iterable[str], concept_keys: Iterable[str]) -> Set[str]:
        """Ids of sessions having an activity that uses any of the given entities or concepts."""

    @abstractmethod
    def follows_neighbors(self, session_ids: Iterable[str]) -> Set[str]:
        """Sessions one FOLLOWS hop away from the given ones, in either direction."""

    @abstractmethod
    def load_sessions(self, session_ids: Iterable[str]) -> List[Session]:
        pass

    @abstractmethod
    def load_entities(self, keys: Iterable[str]) -> List[EntityRecord]:
        pass

    @abstractmethod
    def load_concepts(self, keys: Iterable[str]) -> List[ConceptRecord]:
        pass

    @abstractmethod
    def frequent_entities(self, user_id: str, limit: int = 20, min_frequency: int = 2) -> List[EntityRecord]:
        """Entities used by the user's activities, most frequent first."""

    @abstractmethod
    def entity_occurrences(self, key: str) -> List[EntityOccurrence]:
        """Every activity that uses the entity, oldest first."""

    @abstractmethod
    def health_check(self) -> bool:
        pass

    # --- derived traversals -------------------------------------------------

    def session_chain(self, user_id: str, node_id: str) -> List[Session]:
        """Sessions of a (user, node) in FOLLOWS order, starting from the chain head.

        Sessions not (yet) linked into the chain are appended in ordering-key
        order so that a partially sequenced chain is still fully covered.
        """
        sessions = {s.external_id: s for s in self.sessions_for_node(user_id, node_id)}
        successor = {}
        has_predecessor = set()
        for source, target in self.follows_edges(user_id, node_id):
            successor[source] = target
            has_predecessor.add(target)

        ordered = []
        seen = set()
        heads = sorted((s for sid, s in sessions.items() if sid not in has_predecessor), key=Session.ordering_key)
        for head in heads:
            current = head.external_id
            while current is not None and current not in seen and current in sessions:
                seen.add(current)
                ordered.append(sessions[current])
                current = successor.get(current)

        for session in sorted(sessions.values(), key=Session.ordering_key):
            if session.external_id not in seen:
                ordered.append(session)
        return ordered

    def neighbors_within_depth(self,
                               user_id: str,
                               node_id: str,
                               max_depth: int,
                               since: Optional[datetime] = None,
                               cancel_event: Optional[threading.Event] = None) -> GraphNeighborhood:
        """Breadth-first walk from a node's sessions.

        One hop is Session<->Entity/Concept (through any of the session's
        activities, which are crossed transparently) or Session<->Session over
        FOLLOWS. Sessions outside the user or older than ``since`` are neither
        collected nor expanded.

        Args:
            user_id: Requesting user; sessions of other users are never reached
            node_id: Timeline node whose sessions seed the walk
            max_depth: Maximum number of hops from the seed sessions
            since: Lower bound on session start time
            cancel_event: Checked between levels; when set the walk stops with StoreTimeoutError

        Returns:
            GraphNeighborhood with the seeds, every reached session, entity and concept
        """
        require(user_id, 'user_id')
        require(node_id, 'node_id')

        seeds = self.sessions_for_node(user_id, node_id, since)
        neighborhood = GraphNeighborhood(seed_sessions=list(seeds), sessions=list(seeds))
        if not seeds:
            return neighborhood

        visited_sessions = {s.external_id for s in seeds}
        visited_entities: Set[str] = set()
        visited_concepts: Set[str] = set()
        frontier_sessions = set(visited_sessions)
        frontier_entities: Set[str] = set()
        frontier_concepts: Set[str] = set()

        for depth in range(1, max_depth + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise StoreTimeoutError(f'Traversal cancelled at depth {depth}')
            if not (frontier_sessions or frontier_entities or frontier_concepts):
                break

            entity_keys, concept_keys = self.targets_for_sessions(frontier_sessions) if frontier_sessions else (set(), set())
            candidate_sessions = self.follows_neighbors(frontier_sessions) if frontier_sessions else set()
            if frontier_entities or frontier_concepts:
                candidate_sessions |= self.sessions_for_targets(frontier_entities, frontier_concepts)

            new_entities = entity_keys - visited_entities
            new_concepts = concept_keys - visited_concepts
            new_session_ids = candidate_sessions - visited_sessions

            reached = []
            for session in self.load_sessions(new_session_ids):
                visited_sessions.add(session.external_id)
                if session.user_id != user_id or (since is not None and session.start_time < since):
                    continue
                reached.append(session)

            visited_entities |= new_entities
            visited_concepts |= new_concepts
            neighborhood.sessions.extend(reached)
            if new_entities:
                neighborhood.entities.extend(self.load_entities(new_entities))
            if new_concepts:
                neighborhood.concepts.extend(self.load_concepts(new_concepts))

            frontier_sessions = {s.external_id for s in reached}
            frontier_entities = new_entities
            frontier_concepts = new_concepts
            logger.debug(f'Depth {depth}: {len(reached)} sessions, {len(new_entities)} entities, '
                         f'{len(new_concepts)} concepts')

        return neighborhood
