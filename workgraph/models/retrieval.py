"""
Result models returned by the retrieval interface.

Attributes are snake_case; ``to_dict`` produces the camelCase envelope
expected by external callers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

SOURCE_GRAPH = 'graph'
SOURCE_VECTOR = 'vector'
SOURCE_BOTH = 'both'


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class EntityResult:
    """Entity candidate after fusion."""
    key: str
    name: str
    type: str
    frequency: int
    last_seen_at: Optional[datetime]
    similarity: float = 0.0
    graph_signal: float = 0.0
    score: float = 0.0
    source: str = SOURCE_GRAPH

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'entityName': self.name,
            'entityType': self.type,
            'frequency': self.frequency,
            'lastSeen': _iso(self.last_seen_at),
            'similarity': self.similarity,
            'score': self.score,
            'source': self.source
        }


@dataclass
class ConceptResult:
    """Concept candidate after fusion."""
    key: str
    name: str
    category: str
    frequency: int
    last_seen_at: Optional[datetime]
    similarity: float = 0.0
    graph_signal: float = 0.0
    score: float = 0.0
    source: str = SOURCE_GRAPH

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'conceptName': self.name,
            'category': self.category,
            'frequency': self.frequency,
            'lastSeen': _iso(self.last_seen_at),
            'similarity': self.similarity,
            'score': self.score,
            'source': self.source
        }


@dataclass
class SessionResult:
    """Related session after fusion."""
    session_id: str
    node_id: str
    workflow_classification: str
    start_time: datetime
    end_time: Optional[datetime] = None
    similarity: float = 0.0
    graph_signal: float = 0.0
    score: float = 0.0
    source: str = SOURCE_GRAPH

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sessionId': self.session_id,
            'nodeId': self.node_id,
            'workflowClassification': self.workflow_classification,
            'startTime': _iso(self.start_time),
            'endTime': _iso(self.end_time),
            'similarity': self.similarity,
            'score': self.score,
            'source': self.source
        }


@dataclass
class WorkflowPattern:
    """Aggregated activity transition."""
    transition: str
    frequency: int
    avg_transition_time_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {'transition': self.transition, 'frequency': self.frequency, 'avgTransitionTimeMs': self.avg_transition_time_ms}


@dataclass
class TemporalSequenceEntry:
    session_id: str
    start_time: datetime
    workflow: str

    def to_dict(self) -> Dict[str, Any]:
        return {'sessionId': self.session_id, 'startTime': _iso(self.start_time), 'workflow': self.workflow}


@dataclass
class RetrievalMetadata:
    """Timing, counts and degradation status of one retrieval."""
    total_time_ms: float = 0.0
    fused_result_count: int = 0
    degraded: bool = False
    degraded_path: Optional[str] = None
    graph_query_time_ms: float = 0.0
    vector_query_time_ms: float = 0.0
    graph_result_count: int = 0
    vector_result_count: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        metadata = {
            'totalTimeMs': self.total_time_ms,
            'fusedResultCount': self.fused_result_count,
            'degraded': self.degraded,
            'graphQueryTimeMs': self.graph_query_time_ms,
            'vectorQueryTimeMs': self.vector_query_time_ms,
            'graphResultCount': self.graph_result_count,
            'vectorResultCount': self.vector_result_count
        }
        if self.degraded_path:
            metadata['degradedPath'] = self.degraded_path
        if self.errors:
            metadata['errors'] = dict(self.errors)
        return metadata


@dataclass
class CrossSessionContext:
    """Ranked bundle returned by get_cross_session_context."""
    entities: List[EntityResult] = field(default_factory=list)
    concepts: List[ConceptResult] = field(default_factory=list)
    workflow_patterns: List[WorkflowPattern] = field(default_factory=list)
    related_sessions: List[SessionResult] = field(default_factory=list)
    temporal_sequence: List[TemporalSequenceEntry] = field(default_factory=list)
    retrieval_metadata: RetrievalMetadata = field(default_factory=RetrievalMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entities': [e.to_dict() for e in self.entities],
            'concepts': [c.to_dict() for c in self.concepts],
            'workflowPatterns': [p.to_dict() for p in self.workflow_patterns],
            'relatedSessions': [s.to_dict() for s in self.related_sessions],
            'temporalSequence': [t.to_dict() for t in self.temporal_sequence],
            'retrievalMetadata': self.retrieval_metadata.to_dict()
        }
