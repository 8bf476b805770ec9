"""
WorkGraph service: the ingestion and retrieval interfaces over the graph and vector stores.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..models.core import Activity, EntityOccurrence, EntityRecord, Session, TimelineNode, WorkflowClassification
from ..models.extraction import entity_key, parse_extraction_response
from ..models.retrieval import ConceptResult, CrossSessionContext, EntityResult, SessionResult, WorkflowPattern
from ..utils.config import AppConfig
from ..utils.errors import ValidationError
from ..utils.graph_store import GraphStore, require
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import parse_timestamp, to_epoch_ms
from ..utils.vector_store import VectorStore
from .cross_session_retrieval import CrossSessionRetrieval
from .entity_resolution import EntityResolutionEngine
from .temporal_sequencer import TemporalSequencer
from .workflow_patterns import TimeRange, WorkflowPatternMiner

logger = get_logger(__name__)

Timestamp = Union[datetime, int, float, str]


def _timestamp(value: Timestamp, field_name: str) -> datetime:
    try:
        return parse_timestamp(value)
    except (ValueError, TypeError) as e:
        raise ValidationError(f'{field_name}: {e}') from e


def create_stores(app_config: AppConfig) -> Tuple[GraphStore, VectorStore, Any]:
    """
    Build the graph store, vector store and embedder selected by STORE_BACKEND.

    Args:
        app_config: Application configuration

    Returns:
        Tuple of (graph store, vector store, embedder or None)
    """
    backend = app_config.store_backend
    if backend == 'memory':
        from ..utils.memory_stores import InMemoryGraphStore, InMemoryVectorStore
        logger.info('Using in-memory graph and vector stores')
        return InMemoryGraphStore(), InMemoryVectorStore(), None

    if backend == 'aws':
        from ..utils.bedrock_embed import BedrockEmbed
        from ..utils.neptune_client import NeptuneClient
        from ..utils.opensearch_client import OpenSearchClient, OpenSearchError

        graph_store = NeptuneClient(app_config.neptune, app_config.retry)
        vector_store = OpenSearchClient(app_config.opensearch, app_config.retry)
        try:
            vector_store.ensure_indices()
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch indexes: {e}')
        return graph_store, vector_store, BedrockEmbed(app_config.bedrock_embed)

    raise ValueError(f"Unknown STORE_BACKEND '{backend}' (expected 'aws' or 'memory')")


class WorkGraphService:
    """Unified service for activity ingestion and cross-session retrieval."""

    def __init__(self,
                 graph_store: Optional[GraphStore] = None,
                 vector_store: Optional[VectorStore] = None,
                 embedder=None,
                 app_config: Optional[AppConfig] = None):
        """
        Initialize the service; stores not passed in are built from the configuration.

        Args:
            graph_store: Relationship store
            vector_store: Embedding store
            embedder: Object with ``embed_query``/``embed_document``
            app_config: Application configuration (global config if None)
        """
        if app_config is None:
            from ..utils.config import config
            app_config = config

        if graph_store is None or vector_store is None:
            default_graph, default_vectors, default_embedder = create_stores(app_config)
            graph_store = graph_store or default_graph
            vector_store = vector_store or default_vectors
            embedder = embedder or default_embedder

        self.config = app_config
        self.graph = graph_store
        self.vectors = vector_store
        self.embedder = embedder
        self.sequencer = TemporalSequencer(graph_store)
        self.resolution = EntityResolutionEngine(graph_store, vector_store, embedder, app_config.resolution)
        self.pattern_miner = WorkflowPatternMiner(graph_store)
        self.retrieval = CrossSessionRetrieval(graph_store, vector_store, embedder, app_config.retrieval, self.pattern_miner)

        logger.info('Initialized WorkGraphService')

    def close(self) -> None:
        self.retrieval.close()
        for store in (self.graph, self.vectors):
            if hasattr(store, 'close'):
                store.close()

    # --- ingestion ----------------------------------------------------------

    def upsert_user(self, user_id: str) -> bool:
        return self.graph.upsert_user(user_id)

    def upsert_timeline_node(self, node_id: str, user_id: str, title: str = '', node_type: str = 'project') -> bool:
        return self.graph.upsert_timeline_node(TimelineNode(id=node_id, user_id=user_id, title=title, node_type=node_type))

    def upsert_session(self,
                       external_id: str,
                       user_id: str,
                       node_id: str,
                       start_time: Timestamp,
                       end_time: Optional[Timestamp] = None,
                       workflow_tag: Optional[str] = None,
                       workflow_confidence: float = 0.0,
                       embedding: Optional[List[float]] = None) -> Dict[str, Any]:
        """
        Create or refresh a session and splice it into its node's FOLLOWS chain.

        Args:
            external_id: Caller-supplied idempotency key
            user_id: Owner of the session
            node_id: Timeline node the session is tied to
            start_time: Session start (datetime, epoch ms or ISO-8601)
            end_time: Session end, if closed
            workflow_tag: Session-level workflow classification
            workflow_confidence: Classifier confidence for the tag
            embedding: Aggregate-text vector to index for similar-session search

        Returns:
            Dict with sessionId, created, predecessorId and successorId

        Raises:
            ValidationError: On missing ids or unparseable times
            StoreConnectionError: If a store is unavailable
        """
        session = Session(external_id=require(external_id, 'session external_id'),
                          user_id=require(user_id, 'user_id'),
                          node_id=require(node_id, 'node_id'),
                          start_time=_timestamp(start_time, 'start_time'),
                          end_time=_timestamp(end_time, 'end_time') if end_time is not None else None)
        if workflow_tag:
            session.workflow_classification = WorkflowClassification(tag=workflow_tag, confidence=workflow_confidence)
        else:
            existing = self.graph.get_session(session.external_id)
            if existing is not None:
                session.workflow_classification = existing.workflow_classification

        created = self.graph.upsert_session(session)
        stored = self.graph.get_session(session.external_id) or session
        predecessor_id, successor_id = self.sequencer.sequence(stored)

        if embedding:
            self.vectors.upsert_session(stored, embedding)

        return {
            'sessionId': session.external_id,
            'created': created,
            'predecessorId': predecessor_id,
            'successorId': successor_id
        }

    def upsert_activity(self,
                        session_id: str,
                        timestamp: Timestamp,
                        summary: str,
                        activity_id: Optional[str] = None,
                        workflow_tag: Optional[str] = None) -> str:
        """
        Record an activity under an existing session.

        Without an explicit activity_id a deterministic one is derived from the
        session, timestamp and summary so that retried submissions stay idempotent.

        Returns:
            The activity id
        """
        require(session_id, 'session_id')
        moment = _timestamp(timestamp, 'timestamp')
        if activity_id is None:
            activity_id = str(uuid.uuid5(uuid.NAMESPACE_URL, f'{session_id}|{to_epoch_ms(moment)}|{summary or ""}'))

        self.graph.upsert_activity(
            Activity(id=activity_id, session_id=session_id, timestamp=moment, summary=summary or '', workflow_tag=workflow_tag))
        return activity_id

    def submit_extracted_entities(self, items: Iterable[Any], activity_id: str) -> Dict[str, Any]:
        """Resolve the entities extracted from one activity."""
        require(activity_id, 'activity_id')
        return self.resolution.resolve_entities((activity_id, item) for item in items or []).to_dict()

    def submit_extracted_concepts(self, items: Iterable[Any], activity_id: str) -> Dict[str, Any]:
        """Resolve the concepts extracted from one activity."""
        require(activity_id, 'activity_id')
        return self.resolution.resolve_concepts((activity_id, item) for item in items or []).to_dict()

    def submit_extraction_response(self, response: str, activity_id: str) -> Dict[str, Any]:
        """Parse an extractor's raw JSON answer and resolve everything it contains."""
        require(activity_id, 'activity_id')
        entities, concepts = parse_extraction_response(response, self.config.resolution)
        return {
            'entities': self.submit_extracted_entities(entities, activity_id),
            'concepts': self.submit_extracted_concepts(concepts, activity_id)
        }

    # --- retrieval ----------------------------------------------------------

    def get_cross_session_context(self,
                                  user_id: str,
                                  node_id: str,
                                  lookback_days: float = 30,
                                  max_depth: int = 3,
                                  min_frequency: int = 1,
                                  cancel_event=None) -> CrossSessionContext:
        return self.retrieval.get_cross_session_context(user_id,
                                                        node_id,
                                                        lookback_days=lookback_days,
                                                        max_depth=max_depth,
                                                        min_frequency=min_frequency,
                                                        cancel_event=cancel_event)

    def search_entities(self,
                        query_text: str,
                        top_k: int = 20,
                        entity_type: Optional[str] = None,
                        min_similarity: Optional[float] = None) -> List[EntityResult]:
        return self.retrieval.search_entities(query_text, top_k, entity_type, min_similarity)

    def search_concepts(self,
                        query_text: str,
                        top_k: int = 20,
                        category: Optional[str] = None,
                        min_similarity: Optional[float] = None) -> List[ConceptResult]:
        return self.retrieval.search_concepts(query_text, top_k, category, min_similarity)

    def get_workflow_patterns(self,
                              user_id: str,
                              time_range: Optional[Tuple[Optional[Timestamp], Optional[Timestamp]]] = None,
                              min_frequency: int = 1) -> List[WorkflowPattern]:
        """
        Mine workflow transitions for a user.

        Args:
            user_id: User whose chains are walked
            time_range: Optional (start, end); either bound may be None
            min_frequency: Minimum occurrences for a transition to be reported

        Returns:
            WorkflowPattern list, most frequent first
        """
        bounds: Optional[TimeRange] = None
        if time_range is not None:
            start, end = time_range
            bounds = (_timestamp(start, 'time_range start') if start is not None else None,
                      _timestamp(end, 'time_range end') if end is not None else None)
        return self.pattern_miner.mine(user_id, bounds, min_frequency)

    def get_frequent_entities(self, user_id: str, limit: int = 20, min_frequency: int = 2) -> List[EntityRecord]:
        require(user_id, 'user_id')
        return self.graph.frequent_entities(user_id, limit, min_frequency)

    def get_entity_occurrences(self, name: str, entity_type: str = 'other') -> List[EntityOccurrence]:
        """Every activity that used the entity with this (un-normalized) name and type."""
        require(name, 'name')
        return self.graph.entity_occurrences(entity_key(name, entity_type))

    def get_related_sessions(self, session_id: str, limit: int = 20) -> List[SessionResult]:
        """Other sessions of the same timeline node, newest first."""
        session = self.graph.get_session(require(session_id, 'session_id'))
        if session is None:
            raise ValidationError(f'Unknown session {session_id}')

        siblings = [s for s in self.graph.sessions_for_node(session.user_id, session.node_id) if s.external_id != session_id]
        siblings.sort(key=Session.ordering_key, reverse=True)
        return [
            SessionResult(session_id=s.external_id,
                          node_id=s.node_id,
                          workflow_classification=s.workflow_classification.tag,
                          start_time=s.start_time,
                          end_time=s.end_time) for s in siblings[:limit]
        ]

    def health_check(self) -> Dict[str, str]:
        """Probe both stores; never raises."""
        status = {}
        for name, store in (('graphStore', self.graph), ('vectorStore', self.vectors)):
            try:
                status[name] = 'ok' if store.health_check() else 'fail'
            except Exception as e:
                logger.error(f'{name} health check failed: {e}')
                status[name] = 'fail'
        return status
