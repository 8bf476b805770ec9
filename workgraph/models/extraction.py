"""
Extraction payloads accepted at the ingestion boundary.

The extraction collaborator hands over loosely-shaped JSON. Everything is
coerced into ExtractedEntity / ExtractedConcept here so that no untyped map
reaches the resolution engine.
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from ..utils.config import ResolutionConfig
from ..utils.json_utils import clean_json_response
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

ENTITY_TYPES = ('technology', 'tool', 'person', 'organization', 'other')
DEFAULT_CONCEPT_CATEGORY = 'general'

_WHITESPACE = re.compile(r'\s+')


@dataclass
class ExtractedEntity:
    """Technology/tool mention produced by the extractor."""
    name: str
    type: str
    confidence: float
    context: Optional[str] = None
    embedding: Optional[List[float]] = None


@dataclass
class ExtractedConcept:
    """Abstract topic produced by the extractor."""
    name: str
    category: str
    confidence: float
    embedding: Optional[List[float]] = None


ExtractedItem = Union[ExtractedEntity, ExtractedConcept]


def normalize_name(name: str) -> str:
    """Trim, lowercase and collapse internal whitespace."""
    return _WHITESPACE.sub(' ', name.strip().lower())


def normalize_entity_type(entity_type: str) -> str:
    """Lowercase the type, mapping anything unrecognised to 'other'."""
    normalized = normalize_name(entity_type)
    return normalized if normalized in ENTITY_TYPES else 'other'


def entity_key(name: str, entity_type: str) -> str:
    """Dedup key of an entity: normalized name plus type."""
    return f'{normalize_name(name)}:{normalize_entity_type(entity_type)}'


def concept_key(name: str) -> str:
    """Dedup key of a concept: its normalized name."""
    return normalize_name(name)


def _coerce_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f'confidence must be a number, got {value!r}')
    if math.isnan(value):
        raise ValueError('confidence is NaN')
    return min(1.0, max(0.0, float(value)))


def _coerce_embedding(value: Any) -> Optional[List[float]]:
    if value is None:
        return None
    if not isinstance(value, (list, tuple)) or not value:
        raise ValueError('embedding must be a non-empty list of numbers')
    return [float(v) for v in value]


def coerce_entity(raw: Union[ExtractedEntity, Mapping[str, Any]], max_name_length: int = 100) -> Optional[ExtractedEntity]:
    """Validate one raw entity payload.

    Args:
        raw: ExtractedEntity or mapping with name/type/confidence keys
        max_name_length: Names longer than this are truncated

    Returns:
        ExtractedEntity, or None (with a logged warning) if the payload is malformed
    """
    if isinstance(raw, ExtractedEntity):
        raw = {
            'name': raw.name,
            'type': raw.type,
            'confidence': raw.confidence,
            'context': raw.context,
            'embedding': raw.embedding
        }
    if not isinstance(raw, Mapping):
        logger.warning(f'Dropping malformed entity payload of type {type(raw).__name__}')
        return None

    try:
        name = raw.get('name')
        entity_type = raw.get('type') or 'other'
        if not isinstance(name, str) or not normalize_name(name):
            raise ValueError(f'unparseable name {name!r}')
        if not isinstance(entity_type, str):
            raise ValueError(f'unparseable type {entity_type!r}')
        context = raw.get('context')
        return ExtractedEntity(name=name.strip()[:max_name_length],
                               type=normalize_entity_type(entity_type),
                               confidence=_coerce_confidence(raw.get('confidence')),
                               context=context[:200] if isinstance(context, str) else None,
                               embedding=_coerce_embedding(raw.get('embedding')))
    except (ValueError, TypeError) as e:
        logger.warning(f'Dropping malformed entity payload: {e}')
        return None


def coerce_concept(raw: Union[ExtractedConcept, Mapping[str, Any]],
                   max_name_length: int = 100,
                   max_category_length: int = 50) -> Optional[ExtractedConcept]:
    """Validate one raw concept payload.

    ``relevanceScore`` is accepted in place of ``confidence``, matching the
    extractor's output format.
    """
    if isinstance(raw, ExtractedConcept):
        raw = {'name': raw.name, 'category': raw.category, 'confidence': raw.confidence, 'embedding': raw.embedding}
    if not isinstance(raw, Mapping):
        logger.warning(f'Dropping malformed concept payload of type {type(raw).__name__}')
        return None

    try:
        name = raw.get('name')
        category = raw.get('category') or DEFAULT_CONCEPT_CATEGORY
        if not isinstance(name, str) or not normalize_name(name):
            raise ValueError(f'unparseable name {name!r}')
        if not isinstance(category, str):
            raise ValueError(f'unparseable category {category!r}')
        confidence = raw.get('confidence', raw.get('relevanceScore'))
        return ExtractedConcept(name=name.strip()[:max_name_length],
                                category=normalize_name(category)[:max_category_length] or DEFAULT_CONCEPT_CATEGORY,
                                confidence=_coerce_confidence(confidence),
                                embedding=_coerce_embedding(raw.get('embedding')))
    except (ValueError, TypeError) as e:
        logger.warning(f'Dropping malformed concept payload: {e}')
        return None


def coerce_entities(raw_items: Iterable[Any], max_name_length: int = 100) -> List[ExtractedEntity]:
    """Coerce a list of raw entity payloads, skipping malformed ones."""
    entities = []
    for raw in raw_items or []:
        entity = coerce_entity(raw, max_name_length)
        if entity is not None:
            entities.append(entity)
    return entities


def coerce_concepts(raw_items: Iterable[Any], max_name_length: int = 100, max_category_length: int = 50) -> List[ExtractedConcept]:
    """Coerce a list of raw concept payloads, skipping malformed ones."""
    concepts = []
    for raw in raw_items or []:
        concept = coerce_concept(raw, max_name_length, max_category_length)
        if concept is not None:
            concepts.append(concept)
    return concepts


def parse_extraction_response(response: str,
                              resolution_config: Optional[ResolutionConfig] = None
                              ) -> Tuple[List[ExtractedEntity], List[ExtractedConcept]]:
    """Parse an extractor's raw JSON answer into typed items.

    Args:
        response: Raw LLM text, optionally wrapped in a markdown code block
        resolution_config: Limits on item counts and name lengths (global config if None)

    Returns:
        Tuple of (entities, concepts); both empty if the response is not valid JSON
    """
    if resolution_config is None:
        from ..utils.config import config
        resolution_config = config.resolution

    if not response or not response.strip():
        logger.warning('Empty extraction response')
        return [], []

    try:
        data = json.loads(clean_json_response(response))
    except json.JSONDecodeError as e:
        logger.warning(f'Failed to parse extraction JSON: {e}')
        return [], []

    if not isinstance(data, dict):
        logger.warning(f'Expected extraction object, got {type(data).__name__}')
        return [], []

    raw_entities = data.get('entities') if isinstance(data.get('entities'), list) else []
    raw_concepts = data.get('concepts') if isinstance(data.get('concepts'), list) else []

    entities = coerce_entities(raw_entities, resolution_config.max_name_length)
    concepts = coerce_concepts(raw_concepts, resolution_config.max_name_length, resolution_config.max_category_length)

    entities = entities[:resolution_config.max_entities_per_extraction]
    concepts = concepts[:resolution_config.max_concepts_per_extraction]

    logger.debug(f'Parsed {len(entities)} entities and {len(concepts)} concepts from extraction response')
    return entities, concepts
