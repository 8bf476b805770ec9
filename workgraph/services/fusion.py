"""
Score fusion for graph and vector retrieval candidates.

fused = graph_weight * normalized graph signal + vector_weight * similarity,
plus a bonus when both paths found the candidate. Entity/concept graph
signals are frequencies normalized by the category maximum; session graph
signals are recency within the lookback window.
"""

from datetime import datetime
from typing import Dict, List, Optional, Set

from ..models.core import ConceptRecord, EntityRecord, Session
from ..models.retrieval import SOURCE_BOTH, SOURCE_GRAPH, SOURCE_VECTOR, ConceptResult, EntityResult, SessionResult
from ..utils.config import RetrievalConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import from_epoch_ms
from ..utils.vector_store import VectorHit

logger = get_logger(__name__)


def _fused_score(graph_signal: Optional[float], similarity: Optional[float], config: RetrievalConfig):
    score = config.graph_weight * (graph_signal or 0.0) + config.vector_weight * (similarity or 0.0)
    if graph_signal is not None and similarity is not None:
        return score + config.both_paths_bonus, SOURCE_BOTH
    return score, SOURCE_GRAPH if graph_signal is not None else SOURCE_VECTOR


def _doc_time(document: dict, field_name: str) -> Optional[datetime]:
    value = document.get(field_name)
    return from_epoch_ms(value) if value else None


def recency(start_time: datetime, now: datetime, lookback_days: float) -> float:
    """1.0 for a session starting now, falling linearly to 0.0 at the lookback boundary."""
    if lookback_days <= 0:
        return 0.0
    age_days = (now - start_time).total_seconds() / 86400
    return min(1.0, max(0.0, 1.0 - age_days / lookback_days))


def fuse_entities(graph_entities: List[EntityRecord],
                  vector_hits: List[VectorHit],
                  config: RetrievalConfig,
                  min_frequency: int = 1,
                  top_k: Optional[int] = None) -> List[EntityResult]:
    """
    Merge graph and vector entity candidates by normalization key and rank them.

    Args:
        graph_entities: Entities reached by the graph traversal
        vector_hits: Entity nearest neighbours
        config: Fusion weights and bonus
        min_frequency: Candidates seen by the graph with a lower frequency are dropped
        top_k: Result limit (config.top_k if None)

    Returns:
        Ranked EntityResult list
    """
    max_frequency = max((e.frequency for e in graph_entities), default=0) or 1
    candidates: Dict[str, EntityResult] = {}
    signals: Dict[str, float] = {}
    similarities: Dict[str, float] = {}

    for entity in graph_entities:
        signals[entity.key] = entity.frequency / max_frequency
        candidates[entity.key] = EntityResult(key=entity.key,
                                              name=entity.name,
                                              type=entity.type,
                                              frequency=entity.frequency,
                                              last_seen_at=entity.last_seen_at)

    for hit in vector_hits:
        similarities[hit.key] = max(similarities.get(hit.key, 0.0), hit.similarity)
        if hit.key not in candidates:
            candidates[hit.key] = EntityResult(key=hit.key,
                                               name=hit.document.get('name', hit.key),
                                               type=hit.document.get('type', 'other'),
                                               frequency=int(hit.document.get('frequency', 0)),
                                               last_seen_at=_doc_time(hit.document, 'last_seen_at'))

    results = []
    for key, result in candidates.items():
        in_graph = key in signals
        if in_graph and result.frequency < min_frequency:
            continue
        result.graph_signal = signals.get(key, 0.0)
        result.similarity = similarities.get(key, 0.0)
        result.score, result.source = _fused_score(signals.get(key), similarities.get(key), config)
        results.append(result)

    results.sort(key=lambda r: (-r.score, -r.frequency, r.key))
    return results[:top_k if top_k is not None else config.top_k]


def fuse_concepts(graph_concepts: List[ConceptRecord],
                  vector_hits: List[VectorHit],
                  config: RetrievalConfig,
                  min_frequency: int = 1,
                  top_k: Optional[int] = None) -> List[ConceptResult]:
    """Concept counterpart of fuse_entities."""
    max_frequency = max((c.frequency for c in graph_concepts), default=0) or 1
    candidates: Dict[str, ConceptResult] = {}
    signals: Dict[str, float] = {}
    similarities: Dict[str, float] = {}

    for concept in graph_concepts:
        signals[concept.key] = concept.frequency / max_frequency
        candidates[concept.key] = ConceptResult(key=concept.key,
                                                name=concept.name,
                                                category=concept.category,
                                                frequency=concept.frequency,
                                                last_seen_at=concept.last_seen_at)

    for hit in vector_hits:
        similarities[hit.key] = max(similarities.get(hit.key, 0.0), hit.similarity)
        if hit.key not in candidates:
            candidates[hit.key] = ConceptResult(key=hit.key,
                                                name=hit.document.get('name', hit.key),
                                                category=hit.document.get('category', 'general'),
                                                frequency=int(hit.document.get('frequency', 0)),
                                                last_seen_at=_doc_time(hit.document, 'last_seen_at'))

    results = []
    for key, result in candidates.items():
        if key in signals and result.frequency < min_frequency:
            continue
        result.graph_signal = signals.get(key, 0.0)
        result.similarity = similarities.get(key, 0.0)
        result.score, result.source = _fused_score(signals.get(key), similarities.get(key), config)
        results.append(result)

    results.sort(key=lambda r: (-r.score, -r.frequency, r.key))
    return results[:top_k if top_k is not None else config.top_k]


def fuse_sessions(graph_sessions: List[Session],
                  vector_hits: List[VectorHit],
                  config: RetrievalConfig,
                  now: datetime,
                  lookback_days: float,
                  exclude: Optional[Set[str]] = None,
                  top_k: Optional[int] = None) -> List[SessionResult]:
    """
    Merge related-session candidates from both paths.

    Args:
        graph_sessions: Sessions reached by the traversal (already within the window)
        vector_hits: Session nearest neighbours (already within the window)
        config: Fusion weights and bonus
        now: Reference time for recency
        lookback_days: Window length used to scale recency
        exclude: Session ids never returned (the anchor session)
        top_k: Result limit (config.top_k if None)

    Returns:
        Ranked SessionResult list, newest first among equal scores
    """
    exclude = exclude or set()
    candidates: Dict[str, SessionResult] = {}
    signals: Dict[str, float] = {}
    similarities: Dict[str, float] = {}

    for session in graph_sessions:
        if session.external_id in exclude:
            continue
        signals[session.external_id] = recency(session.start_time, now, lookback_days)
        candidates[session.external_id] = SessionResult(session_id=session.external_id,
                                                        node_id=session.node_id,
                                                        workflow_classification=session.workflow_classification.tag,
                                                        start_time=session.start_time,
                                                        end_time=session.end_time)

    for hit in vector_hits:
        if hit.key in exclude:
            continue
        similarities[hit.key] = max(similarities.get(hit.key, 0.0), hit.similarity)
        if hit.key not in candidates:
            candidates[hit.key] = SessionResult(session_id=hit.key,
                                                node_id=hit.document.get('node_id', ''),
                                                workflow_classification=hit.document.get('workflow', 'unknown'),
                                                start_time=_doc_time(hit.document, 'start_time'),
                                                end_time=_doc_time(hit.document, 'end_time'))

    results = []
    for key, result in candidates.items():
        result.graph_signal = signals.get(key, 0.0)
        result.similarity = similarities.get(key, 0.0)
        result.score, result.source = _fused_score(signals.get(key), similarities.get(key), config)
        results.append(result)

    results.sort(key=lambda r: (-r.score, -(r.start_time.timestamp() if r.start_time else 0), r.session_id))
    logger.debug(f'Fused {len(results)} related sessions ({len(signals)} graph, {len(similarities)} vector)')
    return results[:top_k if top_k is not None else config.top_k]
