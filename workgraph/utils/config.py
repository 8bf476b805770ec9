"""
Configuration management for the graph store, vector store and retrieval engine.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    service: str  # SigV4 service name: 'aoss' for serverless collections, 'es' for managed domains


@dataclass
class RetryConfig:
    """Bounded exponential backoff for conflicting store writes."""
    attempts: int
    base_delay: float


@dataclass
class ResolutionConfig:
    """Configuration for entity/concept resolution."""
    min_confidence: float
    max_entities_per_extraction: int
    max_concepts_per_extraction: int
    max_name_length: int
    max_category_length: int


@dataclass
class RetrievalConfig:
    """Configuration for cross-session retrieval and fusion."""
    path_timeout_seconds: float
    graph_weight: float
    vector_weight: float
    both_paths_bonus: float
    top_k: int
    vector_top_k: int
    min_similarity: float


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    store_backend: str  # 'aws' (Neptune + OpenSearch) or 'memory'
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    retry: RetryConfig
    resolution: ResolutionConfig
    retrieval: RetrievalConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'workgraph'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'))

    retry_config = RetryConfig(attempts=int(os.getenv('STORE_RETRY_ATTEMPTS', '3')),
                               base_delay=float(os.getenv('STORE_RETRY_DELAY', '0.05')))

    resolution_config = ResolutionConfig(
        min_confidence=float(os.getenv('RESOLUTION_MIN_CONFIDENCE', '0.5')),
        max_entities_per_extraction=int(os.getenv('RESOLUTION_MAX_ENTITIES', '20')),
        max_concepts_per_extraction=int(os.getenv('RESOLUTION_MAX_CONCEPTS', '10')),
        max_name_length=int(os.getenv('RESOLUTION_MAX_NAME_LENGTH', '100')),
        max_category_length=int(os.getenv('RESOLUTION_MAX_CATEGORY_LENGTH', '50')))

    retrieval_config = RetrievalConfig(path_timeout_seconds=float(os.getenv('RETRIEVAL_PATH_TIMEOUT_SECONDS', '0.8')),
                                       graph_weight=float(os.getenv('RETRIEVAL_GRAPH_WEIGHT', '0.5')),
                                       vector_weight=float(os.getenv('RETRIEVAL_VECTOR_WEIGHT', '0.5')),
                                       both_paths_bonus=float(os.getenv('RETRIEVAL_BOTH_PATHS_BONUS', '0.1')),
                                       top_k=int(os.getenv('RETRIEVAL_TOP_K', '20')),
                                       vector_top_k=int(os.getenv('RETRIEVAL_VECTOR_TOP_K', '20')),
                                       min_similarity=float(os.getenv('RETRIEVAL_MIN_SIMILARITY', '0.5')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     store_backend=os.getenv('STORE_BACKEND', 'aws').lower(),
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     retry=retry_config,
                     resolution=resolution_config,
                     retrieval=retrieval_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
