"""Tests for the entity/concept resolution engine."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from workgraph.models.extraction import ExtractedConcept, ExtractedEntity
from workgraph.services.entity_resolution import EntityResolutionEngine
from workgraph.utils.errors import StoreConnectionError, ValidationError
from workgraph.utils.vector_store import CONCEPT_KIND, ENTITY_KIND


@pytest.fixture
def activities(seeder):
    """Three activities spread over one session."""
    seeder.session('s1', seeder.at(0))
    return [seeder.activity('s1', seeder.at(hours=i), f'activity {i}', activity_id=f'a{i}') for i in range(3)]


class TestFrequency:

    def test_three_activities_give_frequency_three(self, service, graph_store, activities, seeder):
        for activity_id in activities:
            seeder.entities(activity_id, 'React')

        record = graph_store.load_entities(['react:technology'])[0]
        assert record.frequency == 3
        assert record.last_seen_at == seeder.at(hours=2)

    def test_repeated_mention_in_one_activity_counts_once(self, service, graph_store, activities):
        summary = service.submit_extracted_entities([
            {'name': 'React', 'type': 'technology', 'confidence': 0.9},
            {'name': 'react ', 'type': 'Technology', 'confidence': 0.8},
        ], activities[0])

        assert summary['resolved'] == {'react:technology': 1}
        assert graph_store.load_entities(['react:technology'])[0].frequency == 1

    def test_resubmission_is_idempotent(self, service, graph_store, activities):
        items = [{'name': 'Docker', 'type': 'tool', 'confidence': 0.9}]
        service.submit_extracted_entities(items, activities[0])
        summary = service.submit_extracted_entities(items, activities[0])

        assert summary['newRelationships'] == 0
        assert graph_store.load_entities(['docker:tool'])[0].frequency == 1

    def test_batch_spanning_activities_contributes_per_activity(self, graph_store, vector_store, embedder, app_config,
                                                                 activities):
        engine = EntityResolutionEngine(graph_store, vector_store, embedder, app_config.resolution)

        summary = engine.resolve_entities([(activities[0], {'name': 'Python', 'type': 'technology', 'confidence': 0.9}),
                                           (activities[1], {'name': 'python', 'type': 'technology', 'confidence': 0.7}),
                                           (activities[1], {'name': 'PYTHON', 'type': 'technology', 'confidence': 0.6})])

        assert summary.writes['python:technology'].frequency == 2
        assert summary.new_relationships == 2

    def test_concurrent_submissions_count_every_activity(self, service, graph_store, vector_store, seeder):
        seeder.session('busy', seeder.at(0))
        activity_ids = [seeder.activity('busy', seeder.base + timedelta(minutes=i), f'step {i}', activity_id=f'busy-{i}')
                        for i in range(50)]

        def submit(activity_id):
            return seeder.entities(activity_id, 'React')

        with ThreadPoolExecutor(max_workers=16) as executor:
            list(executor.map(submit, activity_ids))

        record = graph_store.load_entities(['react:technology'])[0]
        assert record.frequency == 50
        assert record.last_seen_at == seeder.base + timedelta(minutes=49)
        assert vector_store.get_record(ENTITY_KIND, 'react:technology')['frequency'] == 50


class TestFiltering:

    def test_low_confidence_and_malformed_items_are_skipped(self, service, graph_store, activities):
        summary = service.submit_extracted_entities([
            {'name': 'Kubernetes', 'type': 'tool', 'confidence': 0.2},
            {'name': '', 'type': 'tool', 'confidence': 0.9},
            {'name': 'Docker', 'type': 'tool', 'confidence': 'very'},
            {'name': 'Docker', 'type': 'tool', 'confidence': 0.9},
        ], activities[0])

        assert summary['skipped'] == 3
        assert list(summary['resolved']) == ['docker:tool']
        assert graph_store.load_entities(['kubernetes:tool']) == []

    def test_unknown_activity_fails_the_batch(self, service):
        with pytest.raises(ValidationError):
            service.submit_extracted_entities([{'name': 'Docker', 'type': 'tool', 'confidence': 0.9}], 'missing')


class TestVectorMirror:

    def test_mirror_carries_graph_frequency(self, service, vector_store, activities, seeder):
        for activity_id in activities[:2]:
            seeder.entities(activity_id, 'React')

        record = vector_store.get_record(ENTITY_KIND, 'react:technology')
        assert record['frequency'] == 2
        assert record['name'] == 'React'

    def test_item_embedding_takes_precedence(self, graph_store, vector_store, app_config, activities):
        embedder = MagicMock()
        engine = EntityResolutionEngine(graph_store, vector_store, embedder, app_config.resolution)

        engine.resolve_concepts([(activities[0], ExtractedConcept('Caching', 'performance', 0.9, embedding=[0.0, 1.0]))])

        embedder.embed_document.assert_not_called()
        assert vector_store.get_record(CONCEPT_KIND, 'caching')['category'] == 'performance'

    def test_no_embedding_skips_mirror_but_keeps_graph_write(self, graph_store, vector_store, app_config, activities):
        engine = EntityResolutionEngine(graph_store, vector_store, None, app_config.resolution)

        summary = engine.resolve_entities([(activities[0], ExtractedEntity('Figma', 'tool', 0.9))])

        assert summary.vector_writes == 0
        assert graph_store.load_entities(['figma:tool'])[0].frequency == 1
        assert vector_store.get_record(ENTITY_KIND, 'figma:tool') is None

    def test_vector_store_failure_propagates(self, graph_store, app_config, embedder, activities):
        vectors = MagicMock()
        vectors.upsert_entity.side_effect = StoreConnectionError('opensearch down')
        engine = EntityResolutionEngine(graph_store, vectors, embedder, app_config.resolution)

        with pytest.raises(StoreConnectionError):
            engine.resolve_entities([(activities[0], {'name': 'React', 'type': 'technology', 'confidence': 0.9})])

        # The graph write already landed; a retry must not double count
        engine.vectors = MagicMock()
        engine.resolve_entities([(activities[0], {'name': 'React', 'type': 'technology', 'confidence': 0.9})])
        assert graph_store.load_entities(['react:technology'])[0].frequency == 1


class TestMixedBatch:

    def test_resolve_splits_entities_and_concepts(self, graph_store, vector_store, embedder, app_config, activities):
        engine = EntityResolutionEngine(graph_store, vector_store, embedder, app_config.resolution)

        entities, concepts = engine.resolve([(activities[0], ExtractedEntity('React', 'technology', 0.9)),
                                             (activities[0], ExtractedConcept('Testing', 'quality', 0.9))])

        assert list(entities.writes) == ['react:technology']
        assert list(concepts.writes) == ['testing']

    def test_resolve_rejects_untyped_items(self, graph_store, vector_store, app_config, activities):
        engine = EntityResolutionEngine(graph_store, vector_store, None, app_config.resolution)
        with pytest.raises(ValidationError):
            engine.resolve([(activities[0], {'name': 'React'})])

    def test_extraction_response_end_to_end(self, service, graph_store, activities, seeder):
        response = '```json\n{"entities": [{"name": "TypeScript", "type": "technology", "confidence": 0.95}],' \
                   ' "concepts": [{"name": "Type Safety", "category": "quality", "relevanceScore": 0.8}]}\n```'

        result = service.submit_extraction_response(response, activities[1])

        assert result['entities']['resolved'] == {'typescript:technology': 1}
        assert result['concepts']['resolved'] == {'type safety': 1}
        assert graph_store.load_concepts(['type safety'])[0].last_seen_at == seeder.at(hours=1)


def test_last_seen_tracks_latest_activity(service, graph_store, seeder):
    seeder.session('s1', seeder.at(0))
    late = seeder.activity('s1', seeder.at(hours=3), 'late')
    early = seeder.activity('s1', seeder.at(hours=1), 'early')

    seeder.concepts(late, 'Caching')
    seeder.concepts(early, 'Caching')

    record = graph_store.load_concepts(['caching'])[0]
    assert record.frequency == 2
    assert record.last_seen_at == seeder.at(hours=3)
