"""
Cross-Session Retrieval Orchestrator.

Fans a context request out to the graph and vector stores in parallel,
waits for both under a per-path time budget, and fuses whatever came back.
If one path fails or times out the other one's results are returned with
``degraded`` set; only when both fail does the call raise.
"""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from ..models.core import ConceptRecord, EntityRecord, Session
from ..models.retrieval import (SOURCE_VECTOR, ConceptResult, CrossSessionContext, EntityResult, RetrievalMetadata,
                                TemporalSequenceEntry, WorkflowPattern)
from ..utils.config import RetrievalConfig
from ..utils.errors import StoreConnectionError, StoreTimeoutError, ValidationError, WorkGraphError
from ..utils.graph_store import GraphStore, require
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import from_epoch_ms, lookback_boundary, utc_now
from ..utils.vector_store import VectorHit, VectorStore
from .fusion import fuse_concepts, fuse_entities, fuse_sessions
from .workflow_patterns import WorkflowPatternMiner

logger = get_logger(__name__)

GRAPH_PATH = 'graph'
VECTOR_PATH = 'vector'


class RetrievalCancelledError(WorkGraphError):
    """The caller cancelled a retrieval before it completed."""
    pass


@dataclass
class _GraphResult:
    anchor_id: Optional[str] = None
    seed_sessions: List[Session] = field(default_factory=list)
    sessions: List[Session] = field(default_factory=list)
    entities: List[EntityRecord] = field(default_factory=list)
    concepts: List[ConceptRecord] = field(default_factory=list)
    patterns: List[WorkflowPattern] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def count(self) -> int:
        return len(self.sessions) + len(self.entities) + len(self.concepts)


@dataclass
class _VectorResult:
    anchor_id: Optional[str] = None
    entities: List[VectorHit] = field(default_factory=list)
    concepts: List[VectorHit] = field(default_factory=list)
    sessions: List[VectorHit] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def count(self) -> int:
        return len(self.entities) + len(self.concepts) + len(self.sessions)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class CrossSessionRetrieval:
    """Hybrid graph + vector retrieval of knowledge related to a timeline node."""

    def __init__(self,
                 graph_store: GraphStore,
                 vector_store: VectorStore,
                 embedder=None,
                 retrieval_config: Optional[RetrievalConfig] = None,
                 pattern_miner: Optional[WorkflowPatternMiner] = None):
        """
        Args:
            graph_store: Relationship store
            vector_store: Embedding store
            embedder: Object with ``embed_query(text)``; without one the vector path seeds from stored session vectors
            retrieval_config: Budgets, weights and limits (global config if None)
            pattern_miner: Miner for the context's workflow patterns
        """
        if retrieval_config is None:
            from ..utils.config import config
            retrieval_config = config.retrieval

        self.graph = graph_store
        self.vectors = vector_store
        self.embedder = embedder
        self.config = retrieval_config
        self.pattern_miner = pattern_miner or WorkflowPatternMiner(graph_store)
        self._inflight: Set[threading.Event] = set()
        self._inflight_lock = threading.Lock()

    def close(self) -> None:
        """Ask the paths of every in-flight request to stop at their next checkpoint."""
        with self._inflight_lock:
            for path_cancel in self._inflight:
                path_cancel.set()

    # --- context ------------------------------------------------------------

    def get_cross_session_context(self,
                                  user_id: str,
                                  node_id: str,
                                  lookback_days: float = 30,
                                  max_depth: int = 3,
                                  min_frequency: int = 1,
                                  cancel_event: Optional[threading.Event] = None,
                                  now: Optional[datetime] = None) -> CrossSessionContext:
        """
        Assemble the ranked knowledge related to a timeline node.

        Args:
            user_id: Requesting user
            node_id: Timeline node the context is built for
            lookback_days: Only sessions started within this many days are considered
            max_depth: Maximum traversal hops on the graph path
            min_frequency: Graph-found entities/concepts below this frequency are dropped
            cancel_event: Set by the caller to abandon the request
            now: Reference time (current time if None)

        Returns:
            CrossSessionContext with fused results and retrieval metadata

        Raises:
            ValidationError: On missing ids or negative limits
            StoreConnectionError: If both paths failed
            StoreTimeoutError: If both paths timed out
            RetrievalCancelledError: If cancel_event was set before both paths finished
        """
        require(user_id, 'user_id')
        require(node_id, 'node_id')
        if lookback_days < 0 or max_depth < 0 or min_frequency < 0:
            raise ValidationError('lookback_days, max_depth and min_frequency must not be negative')

        started = time.perf_counter()
        now = now or utc_now()
        boundary = lookback_boundary(lookback_days, now)
        path_cancel = threading.Event()
        path_starts: Dict[str, float] = {}

        # Threads are per request; a path abandoned mid store call must not delay later requests
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='workgraph-retrieval')
        with self._inflight_lock:
            self._inflight.add(path_cancel)
        try:
            futures = {
                GRAPH_PATH: executor.submit(self._timed, path_starts, GRAPH_PATH,
                                            self._graph_path, user_id, node_id, boundary, now, max_depth, path_cancel),
                VECTOR_PATH: executor.submit(self._timed, path_starts, VECTOR_PATH,
                                             self._vector_path, user_id, node_id, boundary, path_cancel)
            }
            timed_out = self._await(futures, path_starts, cancel_event, path_cancel)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            with self._inflight_lock:
                self._inflight.discard(path_cancel)

        outcomes, errors = {}, {}
        for path, future in futures.items():
            if path in timed_out or not future.done():
                future.cancel()
                errors[path] = StoreTimeoutError(f'{path} path exceeded {self.config.path_timeout_seconds}s')
                continue
            try:
                outcomes[path] = future.result()
            except Exception as e:
                errors[path] = e
        if errors:
            path_cancel.set()

        for path, error in errors.items():
            logger.warning(f'{path} path failed for node {node_id}: {error}')

        if len(errors) == 2:
            message = f"Both retrieval paths failed: graph={errors[GRAPH_PATH]}; vector={errors[VECTOR_PATH]}"
            logger.error(message)
            if all(isinstance(e, StoreTimeoutError) for e in errors.values()):
                raise StoreTimeoutError(message)
            raise StoreConnectionError(message) from errors[GRAPH_PATH]

        graph_result = outcomes.get(GRAPH_PATH) or _GraphResult()
        vector_result = outcomes.get(VECTOR_PATH) or _VectorResult()

        anchors = {a for a in (graph_result.anchor_id, vector_result.anchor_id) if a}
        context = CrossSessionContext(
            entities=fuse_entities(graph_result.entities, vector_result.entities, self.config, min_frequency),
            concepts=fuse_concepts(graph_result.concepts, vector_result.concepts, self.config, min_frequency),
            workflow_patterns=graph_result.patterns,
            related_sessions=fuse_sessions(graph_result.sessions, vector_result.sessions, self.config, now, lookback_days,
                                           exclude=anchors),
            temporal_sequence=[
                TemporalSequenceEntry(session_id=s.external_id, start_time=s.start_time, workflow=s.workflow_classification.tag)
                for s in graph_result.seed_sessions
            ])

        degraded_path = next(iter(errors), None)
        context.retrieval_metadata = RetrievalMetadata(
            total_time_ms=_elapsed_ms(started),
            fused_result_count=len(context.entities) + len(context.concepts) + len(context.related_sessions),
            degraded=degraded_path is not None,
            degraded_path=degraded_path,
            graph_query_time_ms=graph_result.elapsed_ms if GRAPH_PATH in outcomes else self._budget_ms(errors, GRAPH_PATH),
            vector_query_time_ms=vector_result.elapsed_ms if VECTOR_PATH in outcomes else self._budget_ms(errors, VECTOR_PATH),
            graph_result_count=graph_result.count,
            vector_result_count=vector_result.count,
            errors={path: str(error) for path, error in errors.items()})

        logger.info(f'Cross-session context for node {node_id}: {context.retrieval_metadata.fused_result_count} results in '
                    f'{context.retrieval_metadata.total_time_ms}ms (degraded={context.retrieval_metadata.degraded})')
        return context

    def _budget_ms(self, errors, path: str) -> float:
        if isinstance(errors.get(path), StoreTimeoutError):
            return self.config.path_timeout_seconds * 1000
        return 0.0

    @staticmethod
    def _timed(path_starts: Dict[str, float], path: str, func, *args):
        path_starts[path] = time.perf_counter()
        return func(*args)

    def _await(self, futures: Dict[str, Future], path_starts: Dict[str, float], cancel_event: Optional[threading.Event],
               path_cancel: threading.Event) -> Set[str]:
        """Block until every path has finished or used up its own budget, or the caller cancels.

        A path's budget runs from the moment its task starts, so time spent
        waiting for a thread is never charged to the store.

        Returns:
            Names of the paths that ran past their budget
        """
        budget = self.config.path_timeout_seconds
        pending = dict(futures)
        timed_out: Set[str] = set()
        while pending:
            if cancel_event is not None and cancel_event.is_set():
                path_cancel.set()
                for future in pending.values():
                    future.cancel()
                raise RetrievalCancelledError('Cross-session retrieval cancelled by caller')

            now = time.perf_counter()
            expired = {path for path in pending if path in path_starts and now - path_starts[path] >= budget}
            timed_out |= expired
            pending = {path: future for path, future in pending.items() if path not in expired}
            if not pending:
                break

            # A path that has not started yet still has its whole budget
            remaining = min(path_starts.get(path, now) + budget - now for path in pending)
            # Short slices so a caller cancellation is noticed promptly
            wait(pending.values(), timeout=max(0.0, min(remaining, 0.05)), return_when=FIRST_COMPLETED)
            pending = {path: future for path, future in pending.items() if not future.done()}
        return timed_out

    def _graph_path(self, user_id: str, node_id: str, boundary: datetime, now: datetime, max_depth: int,
                    cancel_event: threading.Event) -> _GraphResult:
        started = time.perf_counter()
        neighborhood = self.graph.neighbors_within_depth(user_id, node_id, max_depth, since=boundary, cancel_event=cancel_event)

        if cancel_event.is_set():
            raise StoreTimeoutError('Graph path cancelled before pattern mining')
        patterns = self.pattern_miner.mine(user_id, (boundary, now), cancel_event=cancel_event)

        seeds = neighborhood.seed_sessions
        result = _GraphResult(anchor_id=seeds[-1].external_id if seeds else None,
                              seed_sessions=seeds,
                              sessions=neighborhood.sessions,
                              entities=neighborhood.entities,
                              concepts=neighborhood.concepts,
                              patterns=patterns)
        result.elapsed_ms = _elapsed_ms(started)
        logger.debug(f'Graph path: {result.count} candidates in {result.elapsed_ms}ms')
        return result

    def _vector_path(self, user_id: str, node_id: str, boundary: datetime, cancel_event: threading.Event) -> _VectorResult:
        started = time.perf_counter()
        result = _VectorResult()

        query_vector, result.anchor_id = self._seed_vector(user_id, node_id)
        if query_vector is None:
            logger.debug(f'No seed for the vector path of node {node_id}')
            result.elapsed_ms = _elapsed_ms(started)
            return result

        top_k = self.config.vector_top_k
        min_similarity = self.config.min_similarity

        self._check(cancel_event)
        result.entities = self.vectors.search_entities(query_vector, top_k=top_k, min_similarity=min_similarity)
        self._check(cancel_event)
        result.concepts = self.vectors.search_concepts(query_vector, top_k=top_k, min_similarity=min_similarity)
        self._check(cancel_event)
        # One extra slot since the anchor session is usually its own nearest neighbour
        result.sessions = self.vectors.search_sessions(query_vector,
                                                       user_id,
                                                       top_k=top_k + 1,
                                                       min_similarity=min_similarity,
                                                       since=boundary)

        result.elapsed_ms = _elapsed_ms(started)
        logger.debug(f'Vector path: {result.count} candidates in {result.elapsed_ms}ms')
        return result

    @staticmethod
    def _check(cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise StoreTimeoutError('Vector path cancelled')

    def _seed_vector(self, user_id: str, node_id: str):
        """Query vector for the node: its latest session's activity text, else that session's stored vector."""
        anchor_id = None
        if self.embedder is not None:
            try:
                sessions = self.graph.sessions_for_node(user_id, node_id)
                if sessions:
                    anchor_id = sessions[-1].external_id
                    text = self.seed_text(anchor_id)
                    if text:
                        vector = self.embedder.embed_query(text)
                        if vector:
                            return vector, anchor_id
            except (StoreConnectionError, StoreTimeoutError) as e:
                logger.warning(f'Seed text unavailable for node {node_id}, using stored session vector: {e}')

        return self.vectors.latest_session_vector(user_id, node_id), anchor_id

    def seed_text(self, session_id: str) -> str:
        """Aggregate activity text of a session, falling back to its entity and concept names."""
        summaries = [a.summary.strip() for a in self.graph.activities_for_session(session_id) if a.summary and a.summary.strip()]
        if summaries:
            return '\n'.join(summaries)

        entity_keys, concept_keys = self.graph.targets_for_sessions([session_id])
        names = [e.name for e in self.graph.load_entities(sorted(entity_keys))]
        names += [c.name for c in self.graph.load_concepts(sorted(concept_keys))]
        return ' '.join(names)

    # --- direct search ------------------------------------------------------

    def _embed_query(self, query_text: str) -> Optional[List[float]]:
        if not query_text or not query_text.strip():
            return None
        if self.embedder is None:
            raise WorkGraphError('Text search requires an embedder')
        return self.embedder.embed_query(query_text)

    def search_entities(self,
                        query_text: str,
                        top_k: int = 20,
                        entity_type: Optional[str] = None,
                        min_similarity: Optional[float] = None) -> List[EntityResult]:
        """
        Nearest entities to a free-text query.

        Args:
            query_text: Text to embed and search with
            top_k: Maximum number of results
            entity_type: Restrict to one entity type
            min_similarity: Similarity floor (config default if None)

        Returns:
            EntityResult list ranked by similarity
        """
        vector = self._embed_query(query_text)
        if vector is None:
            return []
        floor = self.config.min_similarity if min_similarity is None else min_similarity
        hits = self.vectors.search_entities(vector, top_k=top_k, min_similarity=floor, entity_type=entity_type)
        return [
            EntityResult(key=hit.key,
                         name=hit.document.get('name', hit.key),
                         type=hit.document.get('type', 'other'),
                         frequency=int(hit.document.get('frequency', 0)),
                         last_seen_at=from_epoch_ms(hit.document['last_seen_at']) if hit.document.get('last_seen_at') else None,
                         similarity=hit.similarity,
                         score=hit.similarity,
                         source=SOURCE_VECTOR) for hit in hits
        ]

    def search_concepts(self,
                        query_text: str,
                        top_k: int = 20,
                        category: Optional[str] = None,
                        min_similarity: Optional[float] = None) -> List[ConceptResult]:
        """Nearest concepts to a free-text query; see search_entities."""
        vector = self._embed_query(query_text)
        if vector is None:
            return []
        floor = self.config.min_similarity if min_similarity is None else min_similarity
        hits = self.vectors.search_concepts(vector, top_k=top_k, min_similarity=floor, category=category)
        return [
            ConceptResult(key=hit.key,
                          name=hit.document.get('name', hit.key),
                          category=hit.document.get('category', 'general'),
                          frequency=int(hit.document.get('frequency', 0)),
                          last_seen_at=from_epoch_ms(hit.document['last_seen_at']) if hit.document.get('last_seen_at') else None,
                          similarity=hit.similarity,
                          score=hit.similarity,
                          source=SOURCE_VECTOR) for hit in hits
        ]
