"""
Amazon Bedrock embedding client used to vectorise queries, entity names and session text.
"""

import json
import random
import time
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .errors import WorkGraphError
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(WorkGraphError):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client; one is created from the config if None
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension
        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}') from e

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _embed(self, text: str, input_type: str) -> Optional[List[float]]:
        if not text or not text.strip():
            logger.warning(f'Empty text provided for {input_type} embedding')
            return None

        model = self.model_id.lower()
        try:
            if 'titan' in model:
                response = self._call_with_retry({'inputText': text, 'dimensions': self.output_embedding_length})
                return response.get('embedding') or None

            if 'cohere' in model:
                if self.output_embedding_length != 1024:
                    raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')
                response = self._call_with_retry({'input_type': input_type, 'texts': [text]})
                embeddings = response.get('embeddings') or []
                return embeddings[0] if embeddings else None

            raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating {input_type} embedding: {e}')
            raise BedrockEmbedError(f'Embedding failed: {e}') from e

    def embed_document(self, text: str) -> Optional[List[float]]:
        """
        Generate embeddings for stored text (entity names, session summaries).

        Args:
            text: Text to embed

        Returns:
            List of embedding values, or None for empty text

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed(text, 'search_document')

    def embed_query(self, text: str) -> Optional[List[float]]:
        """Generate embeddings for query text; None for empty text."""
        return self._embed(text, 'search_query')

    def health_check(self) -> bool:
        try:
            test_embedding = self.embed_document('test')
            return test_embedding is not None and len(test_embedding) == self.output_embedding_length
        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
