"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from workgraph.services.workgraph_service import WorkGraphService
from workgraph.utils.config import config
from workgraph.utils.errors import ValidationError, WorkGraphError
from workgraph.utils.health_check import get_system_info
from workgraph.utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('WorkGraph')

_service: Optional[WorkGraphService] = None


def get_service() -> WorkGraphService:
    """Lazily build the service so importing this module opens no store connections."""
    global _service
    if _service is None:
        _service = WorkGraphService()
    return _service


def set_service(service: Optional[WorkGraphService]) -> None:
    global _service
    _service = service


def _run(tool_name: str, call):
    try:
        return call()
    except ValidationError as e:
        logger.warning(f'Invalid request to {tool_name}: {e}')
        raise ValueError(str(e)) from e
    except WorkGraphError as e:
        logger.error(f'{tool_name} failed: {e}')
        raise RuntimeError(f'{tool_name} failed: {e}') from e


@mcp.tool()
def get_cross_session_context(user_id: str,
                              node_id: str,
                              lookback_days: float = 30,
                              max_depth: int = 3,
                              min_frequency: int = 1) -> Dict[str, Any]:
    """Get ranked knowledge from other sessions related to a timeline node.

    Args:
        user_id: User ID
        node_id: Timeline node ID
        lookback_days: Only consider sessions started within this many days (default: 30)
        max_depth: Maximum graph traversal depth (default: 3)
        min_frequency: Minimum entity/concept frequency (default: 1)

    Returns:
        Context with entities, concepts, workflowPatterns, relatedSessions, temporalSequence and retrievalMetadata
    """
    context = _run('get_cross_session_context',
                   lambda: get_service().get_cross_session_context(user_id, node_id, lookback_days, max_depth, min_frequency))
    logger.debug(f'MCP context returned {context.retrieval_metadata.fused_result_count} results for node {node_id}')
    return context.to_dict()


@mcp.tool()
def search_entities(query: str, top_k: int = 20, entity_type: Optional[str] = None) -> List[Dict[str, Any]]:
    """Search tracked technologies and tools by meaning.

    Args:
        query: Natural language query
        top_k: Maximum number of results to return (default: 20)
        entity_type: Restrict to technology, tool, person, organization or other

    Returns:
        List of entity results with similarity scores
    """
    if not query or not query.strip():
        return []
    results = _run('search_entities', lambda: get_service().search_entities(query, top_k, entity_type))
    return [r.to_dict() for r in results]


@mcp.tool()
def search_concepts(query: str, top_k: int = 20, category: Optional[str] = None) -> List[Dict[str, Any]]:
    """Search tracked concepts by meaning.

    Args:
        query: Natural language query
        top_k: Maximum number of results to return (default: 20)
        category: Restrict to one concept category

    Returns:
        List of concept results with similarity scores
    """
    if not query or not query.strip():
        return []
    results = _run('search_concepts', lambda: get_service().search_concepts(query, top_k, category))
    return [r.to_dict() for r in results]


@mcp.tool()
def get_workflow_patterns(user_id: str,
                          start: Optional[str] = None,
                          end: Optional[str] = None,
                          min_frequency: int = 1) -> List[Dict[str, Any]]:
    """Get the user's recurring workflow transitions.

    Args:
        user_id: User ID
        start: ISO-8601 lower bound (optional)
        end: ISO-8601 upper bound (optional)
        min_frequency: Minimum number of occurrences (default: 1)

    Returns:
        List of {transition, frequency, avgTransitionTimeMs}
    """
    time_range = (start, end) if start or end else None
    patterns = _run('get_workflow_patterns', lambda: get_service().get_workflow_patterns(user_id, time_range, min_frequency))
    return [p.to_dict() for p in patterns]


@mcp.tool()
def health_check() -> Dict[str, str]:
    """Report graph and vector store status as ok/fail."""
    return get_service().health_check()


@mcp.tool()
def system_info() -> Dict[str, Any]:
    """Report configuration and per-component health of the deployment."""
    return get_system_info(config)


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
