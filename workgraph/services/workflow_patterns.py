"""
Workflow Pattern Miner: aggregates activity classification transitions along FOLLOWS chains.
"""

import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..models.core import Activity, Session, UNKNOWN_WORKFLOW
from ..models.retrieval import WorkflowPattern
from ..utils.errors import StoreTimeoutError, ValidationError
from ..utils.graph_store import GraphStore, require
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import ensure_utc, to_epoch_ms

logger = get_logger(__name__)

TimeRange = Tuple[Optional[datetime], Optional[datetime]]


def transition_key(previous: str, following: str) -> str:
    return f'{previous}→{following}'


def _in_range(value: datetime, time_range: Optional[TimeRange]) -> bool:
    if time_range is None:
        return True
    start, end = time_range
    return (start is None or value >= ensure_utc(start)) and (end is None or value <= ensure_utc(end))


class WorkflowPatternMiner:
    """Counts "from→to" transitions between consecutive differently-classified activities."""

    def __init__(self, graph_store: GraphStore):
        self.graph = graph_store

    def mine(self,
             user_id: str,
             time_range: Optional[TimeRange] = None,
             min_frequency: int = 1,
             cancel_event: Optional[threading.Event] = None) -> List[WorkflowPattern]:
        """
        Mine transition statistics over every chain of the user.

        Args:
            user_id: User whose timeline nodes are walked
            time_range: Optional (start, end) bounds on session start and activity timestamps
            min_frequency: Transitions seen fewer times are dropped
            cancel_event: Checked between chains; when set mining stops with StoreTimeoutError

        Returns:
            Patterns sorted by frequency (descending), ties by transition key
        """
        require(user_id, 'user_id')
        if time_range is not None and time_range[0] and time_range[1] and ensure_utc(time_range[0]) > ensure_utc(time_range[1]):
            raise ValidationError('time_range start is after its end')

        gaps: Dict[str, List[int]] = defaultdict(list)
        for node_id in self.graph.node_ids_for_user(user_id):
            if cancel_event is not None and cancel_event.is_set():
                raise StoreTimeoutError('Workflow pattern mining cancelled')
            chain = [s for s in self.graph.session_chain(user_id, node_id) if _in_range(s.start_time, time_range)]
            self._collect(chain, time_range, gaps)

        patterns = [
            WorkflowPattern(transition=key, frequency=len(deltas), avg_transition_time_ms=sum(deltas) / len(deltas))
            for key, deltas in gaps.items() if len(deltas) >= min_frequency
        ]
        patterns.sort(key=lambda p: (-p.frequency, p.transition))
        logger.debug(f'Mined {len(patterns)} workflow patterns for user {user_id} from {len(gaps)} distinct transitions')
        return patterns

    def _collect(self, chain: List[Session], time_range: Optional[TimeRange], gaps: Dict[str, List[int]]) -> None:
        classified: List[Tuple[Activity, str]] = []
        for session in chain:
            fallback = session.workflow_classification.tag or UNKNOWN_WORKFLOW
            for activity in self.graph.activities_for_session(session.external_id):
                if _in_range(activity.timestamp, time_range):
                    classified.append((activity, activity.workflow_tag or fallback))

        classified.sort(key=lambda pair: (pair[0].timestamp, pair[0].id))
        for (previous, previous_tag), (following, following_tag) in zip(classified, classified[1:]):
            if previous_tag == following_tag:
                continue
            gaps[transition_key(previous_tag, following_tag)].append(
                to_epoch_ms(following.timestamp) - to_epoch_ms(previous.timestamp))
