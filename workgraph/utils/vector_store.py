"""
Embedding store interface.

Entities and concepts are mirrored here under the same normalization key as
in the graph; sessions are indexed under their external id. Records are only
used for similarity search, never for traversal.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.core import Session

ENTITY_KIND = 'entity'
CONCEPT_KIND = 'concept'
SESSION_KIND = 'session'


@dataclass
class VectorHit:
    """One nearest-neighbour result; similarity is in [0, 1]."""
    key: str
    kind: str
    similarity: float
    document: Dict[str, Any] = field(default_factory=dict)


class VectorStore(ABC):
    """Vector-indexed mirrors of entities, concepts and sessions."""

    @abstractmethod
    def upsert_entity(self, key: str, name: str, entity_type: str, embedding: List[float], frequency: int,
                      last_seen_at: datetime) -> None:
        """Create or refresh an entity record.

        Frequency and last_seen_at only move forward: a stale write never
        lowers what a concurrent, newer write stored.
        """

    @abstractmethod
    def upsert_concept(self, key: str, name: str, category: str, embedding: List[float], frequency: int,
                       last_seen_at: datetime) -> None:
        """Create or refresh a concept record (same merge rules as upsert_entity)."""

    @abstractmethod
    def upsert_session(self, session: Session, embedding: List[float]) -> None:
        """Index a session's aggregate-text embedding."""

    @abstractmethod
    def search_entities(self,
                        query_vector: List[float],
                        top_k: int = 20,
                        min_similarity: float = 0.0,
                        entity_type: Optional[str] = None) -> List[VectorHit]:
        pass

    @abstractmethod
    def search_concepts(self,
                        query_vector: List[float],
                        top_k: int = 20,
                        min_similarity: float = 0.0,
                        category: Optional[str] = None) -> List[VectorHit]:
        pass

    @abstractmethod
    def search_sessions(self,
                        query_vector: List[float],
                        user_id: str,
                        top_k: int = 20,
                        min_similarity: float = 0.0,
                        since: Optional[datetime] = None) -> List[VectorHit]:
        """Nearest sessions of one user, restricted to start times at or after ``since``."""

    @abstractmethod
    def latest_session_vector(self, user_id: str, node_id: str) -> Optional[List[float]]:
        """Embedding of the node's most recently started indexed session, if any."""

    @abstractmethod
    def health_check(self) -> bool:
        pass
