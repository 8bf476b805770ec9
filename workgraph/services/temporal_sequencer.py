"""
Temporal Sequencer: keeps the FOLLOWS chain of each (user, timeline node) in chronological order.
"""

from typing import List, Optional, Tuple

from ..models.core import Session
from ..utils.graph_store import GraphStore, chronological_neighbors
from ..utils.keyed_lock import KeyedLock
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class TemporalSequencer:
    """Splices sessions into their (user, node) chain as they arrive, in any order.

    The per-(user, node) lock only covers writers in this process; writers in
    other processes are reconciled by the store's transactional relink.
    """

    def __init__(self, graph_store: GraphStore, locks: Optional[KeyedLock] = None):
        self.graph = graph_store
        self.locks = locks or KeyedLock()

    def sequence(self, session: Session) -> Tuple[Optional[str], Optional[str]]:
        """
        Link a stored session between its chronological neighbours.

        Args:
            session: Session already written to the graph store

        Returns:
            Tuple of (predecessor id, successor id); either may be None
        """
        with self.locks.hold((session.user_id, session.node_id)):
            siblings = self.graph.sessions_for_node(session.user_id, session.node_id)
            predecessor, successor = chronological_neighbors(session, siblings)

            predecessor_id = predecessor.external_id if predecessor else None
            successor_id = successor.external_id if successor else None

            if self._already_linked(session, predecessor_id, successor_id):
                return predecessor_id, successor_id

            predecessor_id, successor_id = self.graph.relink_session(session.external_id, predecessor_id, successor_id)
            logger.debug(f'Sequenced session {session.external_id}: {predecessor_id} -> {session.external_id} -> {successor_id}')
            return predecessor_id, successor_id

    def _already_linked(self, session: Session, predecessor_id: Optional[str], successor_id: Optional[str]) -> bool:
        touching = {(a, b) for a, b in self.graph.follows_edges(session.user_id, session.node_id)
                    if session.external_id in (a, b)}
        expected = set()
        if predecessor_id:
            expected.add((predecessor_id, session.external_id))
        if successor_id:
            expected.add((session.external_id, successor_id))
        return touching == expected

    def chain_violations(self, user_id: str, node_id: str) -> List[str]:
        """Describe every way the (user, node) FOLLOWS edges deviate from a single chronological path.

        Returns:
            Human-readable problems; empty when the chain is valid
        """
        sessions = {s.external_id: s for s in self.graph.sessions_for_node(user_id, node_id)}
        edges = self.graph.follows_edges(user_id, node_id)
        problems = []

        outgoing, incoming = {}, {}
        for source, target in edges:
            if source in outgoing:
                problems.append(f'{source} has more than one outgoing FOLLOWS edge')
            if target in incoming:
                problems.append(f'{target} has more than one incoming FOLLOWS edge')
            outgoing[source] = target
            incoming[target] = source
            if source in sessions and target in sessions and \
                    sessions[source].ordering_key() >= sessions[target].ordering_key():
                problems.append(f'{source} -> {target} is not chronological')

        ordered = sorted(sessions.values(), key=Session.ordering_key)
        for previous, following in zip(ordered, ordered[1:]):
            if outgoing.get(previous.external_id) != following.external_id:
                problems.append(f'{previous.external_id} is not followed by {following.external_id}')

        if len(edges) != max(0, len(sessions) - 1):
            problems.append(f'expected {max(0, len(sessions) - 1)} FOLLOWS edges, found {len(edges)}')
        return problems
