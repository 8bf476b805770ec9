"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .config import AppConfig
from .logging_config import get_logger

logger = get_logger(__name__)


def check_health(app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(app_config)
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get detailed health status of the configured backend's components.

    Returns:
        Dictionary with health status of each component
    """
    if app_config is None:
        from .config import config
        app_config = config

    if app_config.store_backend == 'memory':
        return {
            'graph_store': {
                'healthy': True,
                'service': 'In-memory graph store'
            },
            'vector_store': {
                'healthy': True,
                'service': 'In-memory vector store'
            }
        }

    health_status = {}

    try:
        from .bedrock_embed import BedrockEmbed
        embed = BedrockEmbed(app_config.bedrock_embed)
        health_status['bedrock_embed'] = {
            'healthy': embed.health_check(),
            'service': 'Amazon Bedrock Embed',
            'model': app_config.bedrock_embed.model_id
        }
    except Exception as e:
        health_status['bedrock_embed'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}

    try:
        from .neptune_client import NeptuneClient
        neptune = NeptuneClient(app_config.neptune, app_config.retry)
        try:
            neptune_healthy = neptune.health_check()
        finally:
            neptune.close()
        health_status['graph_store'] = {
            'healthy': neptune_healthy,
            'service': 'Amazon Neptune',
            'endpoint': app_config.neptune.endpoint
        }
    except Exception as e:
        health_status['graph_store'] = {'healthy': False, 'service': 'Amazon Neptune', 'error': str(e)}

    try:
        from .opensearch_client import OpenSearchClient
        opensearch = OpenSearchClient(app_config.opensearch, app_config.retry)
        health_status['vector_store'] = {
            'healthy': opensearch.health_check(),
            'service': 'Amazon OpenSearch',
            'endpoint': app_config.opensearch.endpoint
        }
    except Exception as e:
        health_status['vector_store'] = {'healthy': False, 'service': 'Amazon OpenSearch', 'error': str(e)}

    return health_status


def get_system_info(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    if app_config is None:
        from .config import config
        app_config = config

    return {
        'service_name': 'WorkGraph',
        'version': '1.0.0',
        'configuration': {
            'store_backend': app_config.store_backend,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'path_timeout_seconds': app_config.retrieval.path_timeout_seconds,
            'min_confidence': app_config.resolution.min_confidence
        },
        'health_status': get_health_status(app_config)
    }
