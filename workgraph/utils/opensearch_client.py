"""
OpenSearch vector store for entity, concept and session embeddings.

One k-NN index per record kind: ``{index_name}_entity``, ``{index_name}_concept``
and ``{index_name}_session``. Documents are keyed by the normalization key
(or session external id) so repeated upserts update a single record.
"""

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConflictError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import Session
from .config import OpenSearchConfig, RetryConfig
from .errors import RaceConditionRetry, StoreConnectionError, retry_on_conflict
from .logging_config import get_logger
from .timestamp_utils import to_epoch_ms
from .vector_store import CONCEPT_KIND, ENTITY_KIND, SESSION_KIND, VectorHit, VectorStore

logger = get_logger(__name__)

# Counters only move forward so a late, stale write cannot undo a newer one
_MERGE_SCRIPT = """
def oldFrequency = ctx._source.frequency == null ? 0 : ctx._source.frequency;
def oldSeen = ctx._source.last_seen_at == null ? 0L : ctx._source.last_seen_at;
ctx._source.putAll(params.doc);
ctx._source.frequency = Math.max(oldFrequency, params.doc.frequency);
ctx._source.last_seen_at = Math.max(oldSeen, params.doc.last_seen_at);
"""

# nmslib applies bool filters after the k-NN stage, so filtered searches
# fetch more neighbours than they return
_FILTERED_K_FACTOR = 10
_MAX_K = 10000

_KIND_FIELDS = {
    ENTITY_KIND: {
        'key': {
            'type': 'keyword'
        },
        'name': {
            'type': 'text'
        },
        'type': {
            'type': 'keyword'
        },
        'frequency': {
            'type': 'integer'
        },
        'last_seen_at': {
            'type': 'date',
            'format': 'epoch_millis'
        }
    },
    CONCEPT_KIND: {
        'key': {
            'type': 'keyword'
        },
        'name': {
            'type': 'text'
        },
        'category': {
            'type': 'keyword'
        },
        'frequency': {
            'type': 'integer'
        },
        'last_seen_at': {
            'type': 'date',
            'format': 'epoch_millis'
        }
    },
    SESSION_KIND: {
        'key': {
            'type': 'keyword'
        },
        'user_id': {
            'type': 'keyword'
        },
        'node_id': {
            'type': 'keyword'
        },
        'workflow': {
            'type': 'keyword'
        },
        'start_time': {
            'type': 'date',
            'format': 'epoch_millis'
        },
        'end_time': {
            'type': 'date',
            'format': 'epoch_millis'
        }
    }
}


class OpenSearchError(StoreConnectionError):
    """Custom exception for OpenSearch errors."""
    pass


def score_to_similarity(score: float) -> float:
    """Map a cosinesimil k-NN score (1 + cos) back to a similarity in [0, 1]."""
    return min(1.0, max(0.0, score - 1.0))


class OpenSearchClient(VectorStore):
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, retry_config: Optional[RetryConfig] = None, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            retry_config: Backoff settings for conflicting writes (global config if None)
            client: Pre-built low-level client; one is created from the config if None
        """
        self.config = config
        self.retry_config = retry_config

        if client is None:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_for(self, kind: str) -> str:
        return f'{self.config.index_name}_{kind}'

    def create_index_if_not_exists(self, kind: str, wait_seconds: float = 15.0) -> str:
        """
        Create the k-NN index for a record kind if it doesn't exist.

        Args:
            kind: 'entity', 'concept' or 'session'
            wait_seconds: Pause after creation while the index syncs up

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_for(kind)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            properties = dict(_KIND_FIELDS[kind])
            properties['embedding'] = {
                'type': 'knn_vector',
                'dimension': self.config.dimension,
                'method': {
                    'name': 'hnsw',
                    'space_type': 'cosinesimil',
                    'engine': 'nmslib'
                }
            }
            index_body = {
                'mappings': {
                    'properties': properties
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

            response = self.client.indices.create(index=index_name, body=index_body)
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                if wait_seconds > 0:
                    logger.info(f'Waiting {wait_seconds}s for index {index_name} sync-up...')
                    time.sleep(wait_seconds)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}') from e

    def ensure_indices(self, wait_seconds: float = 15.0) -> Dict[str, str]:
        """Create every k-NN index the engine needs."""
        return {kind: self.create_index_if_not_exists(kind, wait_seconds) for kind in (ENTITY_KIND, CONCEPT_KIND, SESSION_KIND)}

    def _merge_document(self, kind: str, doc_id: str, document: Dict[str, Any]) -> None:
        index_name = self.index_for(kind)
        try:
            self.client.update(index=index_name,
                               id=doc_id,
                               body={
                                   'scripted_upsert': True,
                                   'script': {
                                       'source': _MERGE_SCRIPT,
                                       'lang': 'painless',
                                       'params': {
                                           'doc': document
                                       }
                                   },
                                   'upsert': {}
                               },
                               retry_on_conflict=3)
            logger.debug(f'Upserted {kind} document {doc_id} in {index_name}')
        except ConflictError as e:
            raise RaceConditionRetry(f'Conflicting update of {kind} {doc_id}: {e}') from e
        except OpenSearchException as e:
            logger.error(f'Error upserting {kind} document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to upsert {kind} document: {e}') from e

    @retry_on_conflict
    def upsert_entity(self, key: str, name: str, entity_type: str, embedding: List[float], frequency: int,
                      last_seen_at: datetime) -> None:
        self._merge_document(ENTITY_KIND, key, {
            'key': key,
            'name': name,
            'type': entity_type,
            'frequency': frequency,
            'last_seen_at': to_epoch_ms(last_seen_at),
            'embedding': list(embedding)
        })

    @retry_on_conflict
    def upsert_concept(self, key: str, name: str, category: str, embedding: List[float], frequency: int,
                       last_seen_at: datetime) -> None:
        self._merge_document(CONCEPT_KIND, key, {
            'key': key,
            'name': name,
            'category': category,
            'frequency': frequency,
            'last_seen_at': to_epoch_ms(last_seen_at),
            'embedding': list(embedding)
        })

    def upsert_session(self, session: Session, embedding: List[float]) -> None:
        index_name = self.index_for(SESSION_KIND)
        document = {
            'key': session.external_id,
            'user_id': session.user_id,
            'node_id': session.node_id,
            'workflow': session.workflow_classification.tag,
            'start_time': to_epoch_ms(session.start_time),
            'end_time': to_epoch_ms(session.end_time) if session.end_time else None,
            'embedding': list(embedding)
        }
        try:
            self.client.index(index=index_name, id=session.external_id, body=document)
            logger.debug(f'Indexed session {session.external_id} in {index_name}')
        except OpenSearchException as e:
            logger.error(f'Error indexing session {session.external_id}: {e}')
            raise OpenSearchError(f'Failed to index session: {e}') from e

    def _knn_search(self, kind: str, query_vector: List[float], top_k: int, min_similarity: float,
                    filters: List[Dict[str, Any]]) -> List[VectorHit]:
        index_name = self.index_for(kind)
        k = min(_MAX_K, top_k * _FILTERED_K_FACTOR) if filters else top_k
        search_body = {
            'size': top_k,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': list(query_vector),
                                'k': k
                            }
                        }
                    }],
                    'filter': filters
                }
            },
            '_source': {
                'excludes': ['embedding']
            }
        }

        try:
            response = self.client.search(index=index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search on {index_name}: {e}')
            raise OpenSearchError(f'Vector search failed: {e}') from e

        hits = []
        for hit in response['hits']['hits']:
            similarity = score_to_similarity(hit['_score'])
            if similarity >= min_similarity:
                hits.append(VectorHit(key=hit['_id'], kind=kind, similarity=similarity, document=hit['_source']))

        logger.debug(f'Vector search on {index_name} returned {len(hits)} results')
        return hits

    def search_entities(self,
                        query_vector: List[float],
                        top_k: int = 20,
                        min_similarity: float = 0.0,
                        entity_type: Optional[str] = None) -> List[VectorHit]:
        filters = [{'term': {'type': entity_type}}] if entity_type else []
        return self._knn_search(ENTITY_KIND, query_vector, top_k, min_similarity, filters)

    def search_concepts(self,
                        query_vector: List[float],
                        top_k: int = 20,
                        min_similarity: float = 0.0,
                        category: Optional[str] = None) -> List[VectorHit]:
        filters = [{'term': {'category': category}}] if category else []
        return self._knn_search(CONCEPT_KIND, query_vector, top_k, min_similarity, filters)

    def search_sessions(self,
                        query_vector: List[float],
                        user_id: str,
                        top_k: int = 20,
                        min_similarity: float = 0.0,
                        since: Optional[datetime] = None) -> List[VectorHit]:
        filters: List[Dict[str, Any]] = [{'term': {'user_id': user_id}}]
        if since is not None:
            filters.append({'range': {'start_time': {'gte': to_epoch_ms(since)}}})
        return self._knn_search(SESSION_KIND, query_vector, top_k, min_similarity, filters)

    def latest_session_vector(self, user_id: str, node_id: str) -> Optional[List[float]]:
        index_name = self.index_for(SESSION_KIND)
        search_body = {
            'size': 1,
            'query': {
                'bool': {
                    'filter': [{
                        'term': {
                            'user_id': user_id
                        }
                    }, {
                        'term': {
                            'node_id': node_id
                        }
                    }]
                }
            },
            'sort': [{
                'start_time': {
                    'order': 'desc'
                }
            }],
            '_source': {
                'includes': ['embedding']
            }
        }

        try:
            response = self.client.search(index=index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error reading latest session vector for node {node_id}: {e}')
            raise OpenSearchError(f'Failed to read session vector: {e}') from e

        hits = response['hits']['hits']
        return hits[0]['_source'].get('embedding') if hits else None

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_for(ENTITY_KIND))
            return response in [True, False]
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
