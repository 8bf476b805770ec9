"""
Entity/Concept Resolution Engine.

Turns extracted (name, type, confidence) and (name, category, confidence)
tuples into graph and vector writes: normalize, drop low-confidence items,
collapse duplicates by normalization key, then write each key once to the
graph (which owns the frequency counter) and mirror it to the vector store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models.core import RelationshipWrite
from ..models.extraction import (ExtractedConcept, ExtractedEntity, coerce_concept, coerce_entity, concept_key, entity_key)
from ..utils.config import ResolutionConfig
from ..utils.errors import ValidationError
from ..utils.graph_store import GraphStore, require
from ..utils.logging_config import get_logger
from ..utils.vector_store import VectorStore

logger = get_logger(__name__)


@dataclass
class _KeyGroup:
    """All mentions of one normalization key within a batch."""
    key: str
    name: str
    label: str  # entity type or concept category
    confidence: float
    activity_ids: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None

    def add(self, activity_id: str, confidence: float, embedding: Optional[List[float]]) -> None:
        if activity_id not in self.activity_ids:
            self.activity_ids.append(activity_id)
        self.confidence = max(self.confidence, confidence)
        if self.embedding is None:
            self.embedding = embedding


@dataclass
class ResolutionSummary:
    """Outcome of one resolution batch."""
    writes: Dict[str, RelationshipWrite] = field(default_factory=dict)  # key -> latest graph write
    new_relationships: int = 0
    skipped: int = 0
    vector_writes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'resolved': {key: write.frequency for key, write in self.writes.items()},
            'newRelationships': self.new_relationships,
            'skipped': self.skipped,
            'vectorWrites': self.vector_writes
        }


class EntityResolutionEngine:
    """Deduplicates extracted items and maintains their frequency/recency counters."""

    def __init__(self,
                 graph_store: GraphStore,
                 vector_store: VectorStore,
                 embedder=None,
                 resolution_config: Optional[ResolutionConfig] = None):
        """
        Args:
            graph_store: System of record for entities, concepts and their counters
            vector_store: Embedding mirror keyed by the same normalization keys
            embedder: Object with ``embed_document(text)``; used when an item carries no vector
            resolution_config: Thresholds and limits (global config if None)
        """
        if resolution_config is None:
            from ..utils.config import config
            resolution_config = config.resolution

        self.graph = graph_store
        self.vectors = vector_store
        self.embedder = embedder
        self.config = resolution_config

    def resolve_entities(self, items: Iterable[Tuple[str, Any]]) -> ResolutionSummary:
        """Resolve a batch of (activity_id, raw entity) pairs.

        Args:
            items: Pairs of source activity id and an ExtractedEntity or raw mapping

        Returns:
            ResolutionSummary with the final graph write per key

        Raises:
            ValidationError: If a referenced activity does not exist
            StoreConnectionError: If either store rejects a write
        """
        summary = ResolutionSummary()
        groups: Dict[str, _KeyGroup] = {}
        for activity_id, raw in items:
            entity = coerce_entity(raw, self.config.max_name_length)
            if entity is None or not self._accept(entity.confidence, entity.name):
                summary.skipped += 1
                continue
            key = entity_key(entity.name, entity.type)
            group = groups.setdefault(key, _KeyGroup(key=key, name=entity.name, label=entity.type, confidence=entity.confidence))
            group.add(require(activity_id, 'activity_id'), entity.confidence, entity.embedding)

        for group in groups.values():
            self._write_group(group, summary, self.graph.create_entity_relationship, self.vectors.upsert_entity)

        logger.info(f'Resolved {len(groups)} entities ({summary.new_relationships} new links, {summary.skipped} skipped)')
        return summary

    def resolve_concepts(self, items: Iterable[Tuple[str, Any]]) -> ResolutionSummary:
        """Resolve a batch of (activity_id, raw concept) pairs; same rules as resolve_entities."""
        summary = ResolutionSummary()
        groups: Dict[str, _KeyGroup] = {}
        for activity_id, raw in items:
            concept = coerce_concept(raw, self.config.max_name_length, self.config.max_category_length)
            if concept is None or not self._accept(concept.confidence, concept.name):
                summary.skipped += 1
                continue
            key = concept_key(concept.name)
            group = groups.setdefault(key,
                                      _KeyGroup(key=key, name=concept.name, label=concept.category, confidence=concept.confidence))
            group.add(require(activity_id, 'activity_id'), concept.confidence, concept.embedding)

        for group in groups.values():
            self._write_group(group, summary, self.graph.create_concept_relationship, self.vectors.upsert_concept)

        logger.info(f'Resolved {len(groups)} concepts ({summary.new_relationships} new links, {summary.skipped} skipped)')
        return summary

    def resolve(self, items: Iterable[Tuple[str, Any]]) -> Tuple[ResolutionSummary, ResolutionSummary]:
        """Resolve a mixed batch of ExtractedEntity / ExtractedConcept items."""
        entities, concepts = [], []
        for activity_id, item in items:
            if isinstance(item, ExtractedConcept):
                concepts.append((activity_id, item))
            elif isinstance(item, ExtractedEntity):
                entities.append((activity_id, item))
            else:
                raise ValidationError(f'Unsupported extracted item: {type(item).__name__}')
        return self.resolve_entities(entities), self.resolve_concepts(concepts)

    def _accept(self, confidence: float, name: str) -> bool:
        if confidence < self.config.min_confidence:
            logger.debug(f"Dropping '{name}' below confidence threshold ({confidence:.2f} < {self.config.min_confidence})")
            return False
        return True

    def _write_group(self, group: _KeyGroup, summary: ResolutionSummary, link, mirror) -> None:
        latest = None
        for activity_id in group.activity_ids:
            seen_at = self._activity_time(activity_id)
            write = link(activity_id, group.key, group.name, group.label, group.confidence, seen_at)
            if write.created:
                summary.new_relationships += 1
            if latest is None or write.frequency >= latest.frequency:
                latest = write

        summary.writes[group.key] = latest

        embedding = group.embedding
        if embedding is None and self.embedder is not None:
            embedding = self.embedder.embed_document(group.name)
        if embedding is None:
            logger.debug(f'No embedding for {group.key}; vector mirror not updated')
            return

        mirror(group.key, group.name, group.label, embedding, latest.frequency, latest.last_seen_at)
        summary.vector_writes += 1

    def _activity_time(self, activity_id: str) -> datetime:
        activity = self.graph.get_activity(activity_id)
        if activity is None:
            raise ValidationError(f'Unknown activity {activity_id}')
        return activity.timestamp
