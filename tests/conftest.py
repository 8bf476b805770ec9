"""Shared fixtures: in-memory stores, a deterministic embedder and a graph seeding helper."""

import dataclasses
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from workgraph.services.workgraph_service import WorkGraphService
from workgraph.utils.config import RetryConfig, load_config
from workgraph.utils.memory_stores import InMemoryGraphStore, InMemoryVectorStore

VOCABULARY = ('react', 'typescript', 'docker', 'kubernetes', 'python', 'debugging', 'testing', 'design')


class KeywordEmbedder:
    """Bag-of-words embedder over a fixed vocabulary so similarities are predictable."""

    def __init__(self, vocabulary=VOCABULARY):
        self.vocabulary = vocabulary
        self.calls: List[str] = []

    def embed(self, text: str) -> Optional[List[float]]:
        self.calls.append(text)
        words = re.findall(r'[a-z]+', (text or '').lower())
        vector = [float(words.count(term)) for term in self.vocabulary]
        return vector if any(vector) else None

    def embed_query(self, text: str) -> Optional[List[float]]:
        return self.embed(text)

    def embed_document(self, text: str) -> Optional[List[float]]:
        return self.embed(text)


def keyword_vector(*terms: str) -> List[float]:
    return [float(term in terms) for term in VOCABULARY]


class GraphSeeder:
    """Writes sessions, activities and extractions through the service facade."""

    def __init__(self, service: WorkGraphService, base: datetime):
        self.service = service
        self.base = base

    def at(self, hours: float = 0, days: float = 0) -> datetime:
        return self.base + timedelta(hours=hours, days=days)

    def session(self, external_id: str, start: datetime, node_id: str = 'node-1', user_id: str = 'user-1', tag: str = None,
                end: datetime = None, embedding: List[float] = None) -> dict:
        return self.service.upsert_session(external_id,
                                           user_id,
                                           node_id,
                                           start,
                                           end_time=end,
                                           workflow_tag=tag,
                                           workflow_confidence=0.9 if tag else 0.0,
                                           embedding=embedding)

    def activity(self, session_id: str, at: datetime, summary: str = '', tag: str = None, activity_id: str = None) -> str:
        return self.service.upsert_activity(session_id, at, summary, activity_id=activity_id, workflow_tag=tag)

    def entities(self, activity_id: str, *names: str, entity_type: str = 'technology') -> dict:
        items = [{'name': name, 'type': entity_type, 'confidence': 0.9} for name in names]
        return self.service.submit_extracted_entities(items, activity_id)

    def concepts(self, activity_id: str, *names: str, category: str = 'engineering') -> dict:
        items = [{'name': name, 'category': category, 'confidence': 0.9} for name in names]
        return self.service.submit_extracted_concepts(items, activity_id)


@pytest.fixture
def app_config():
    """Configuration pinned to the in-memory backend with instant retries."""
    base = load_config()
    return dataclasses.replace(base,
                               store_backend='memory',
                               retry=RetryConfig(attempts=3, base_delay=0.0),
                               resolution=dataclasses.replace(base.resolution, min_confidence=0.5),
                               retrieval=dataclasses.replace(base.retrieval,
                                                             path_timeout_seconds=2.0,
                                                             graph_weight=0.5,
                                                             vector_weight=0.5,
                                                             both_paths_bonus=0.1,
                                                             top_k=20,
                                                             vector_top_k=20,
                                                             min_similarity=0.5))


@pytest.fixture
def graph_store():
    return InMemoryGraphStore()


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def vectorize():
    """Build a vocabulary vector from terms, e.g. vectorize('react', 'docker')."""
    return keyword_vector


@pytest.fixture
def service(graph_store, vector_store, embedder, app_config):
    svc = WorkGraphService(graph_store, vector_store, embedder, app_config)
    yield svc
    svc.close()


@pytest.fixture
def base_time():
    """A reference point a few days in the past so seeded sessions fall inside default lookback windows."""
    return (datetime.now(timezone.utc) - timedelta(days=5)).replace(microsecond=0)


@pytest.fixture
def seeder(service, base_time):
    return GraphSeeder(service, base_time)
