"""
Core data models for the activity graph.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

UNKNOWN_WORKFLOW = 'unknown'


@dataclass
class WorkflowClassification:
    """Free-form workflow tag assigned to a session, with the classifier's confidence."""
    tag: str = UNKNOWN_WORKFLOW
    confidence: float = 0.0


@dataclass
class User:
    """Identity anchor; created on first activity and never deleted here."""
    id: str


@dataclass
class TimelineNode:
    """Work item tracked on the user's timeline (job, project, ...), mirrored from the timeline system."""
    id: str
    user_id: str
    title: str
    node_type: str = 'project'


@dataclass
class Session:
    """Bounded span of activity tied to exactly one timeline node."""
    external_id: str  # Caller-supplied idempotency key
    user_id: str
    node_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    workflow_classification: WorkflowClassification = field(default_factory=WorkflowClassification)

    def ordering_key(self) -> Tuple[datetime, str]:
        """Chronological position in the FOLLOWS chain; equal start times fall back to the external id."""
        return (self.start_time, self.external_id)


@dataclass
class Activity:
    """One atomic captured unit of work within a session."""
    id: str
    session_id: str
    timestamp: datetime
    summary: str
    workflow_tag: Optional[str] = None  # Activity-level classification, if the capture pipeline provided one


@dataclass
class EntityRecord:
    """Normalized, frequency-tracked technology or tool."""
    key: str
    name: str
    type: str
    frequency: int
    last_seen_at: datetime
    first_seen_at: Optional[datetime] = None


@dataclass
class ConceptRecord:
    """Normalized, frequency-tracked abstract topic or pattern."""
    key: str
    name: str
    category: str
    frequency: int
    last_seen_at: datetime
    first_seen_at: Optional[datetime] = None


@dataclass
class RelationshipWrite:
    """Outcome of linking an activity to an entity or concept.

    ``created`` is False when the activity was already linked, in which case
    the target's frequency was left untouched.
    """
    key: str
    created: bool
    frequency: int
    last_seen_at: datetime


@dataclass
class GraphNeighborhood:
    """Everything reachable from a node's sessions within the traversal depth."""
    seed_sessions: List[Session] = field(default_factory=list)
    sessions: List[Session] = field(default_factory=list)
    entities: List[EntityRecord] = field(default_factory=list)
    concepts: List[ConceptRecord] = field(default_factory=list)


@dataclass
class EntityOccurrence:
    """A single use of an entity by an activity."""
    activity_id: str
    session_id: str
    timestamp: datetime
    workflow_tag: str
    session_workflow: str
