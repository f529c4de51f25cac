"""
Amazon Bedrock embedding client: the vectorization service for content units and queries.
"""

import json
import random
import time
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class EmbeddingFailure(Exception):
    """Raised when text could not be turned into a vector."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        self.bedrock = boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            EmbeddingFailure: If all retry attempts fail
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
                    raise EmbeddingFailure(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise EmbeddingFailure(f'Unexpected Bedrock Embed error: {e}')

        raise EmbeddingFailure(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _embed(self, text: str, input_type: str) -> List[float]:
        if not text or not text.strip():
            raise EmbeddingFailure('Cannot embed empty text')

        model = self.model_id.lower()
        if 'titan' in model:
            data = {'inputText': text, 'dimensions': self.dimension, 'normalize': True}
            vector = self._call_with_retry(data).get('embedding')
        elif 'cohere' in model:
            if self.dimension != 1024:
                raise EmbeddingFailure(f'Cohere models only support 1024 dimensions, got {self.dimension}')
            embeddings = self._call_with_retry({'input_type': input_type, 'texts': [text]}).get('embeddings')
            vector = embeddings[0] if embeddings else None
        else:
            raise EmbeddingFailure(f'Unsupported embedding model: {self.model_id}')

        if not vector or len(vector) != self.dimension:
            raise EmbeddingFailure(f'Embedding has wrong dimensionality: expected {self.dimension}, '
                                   f'got {len(vector) if vector else 0}')
        return vector

    def embed_document(self, text: str) -> List[float]:
        """
        Generate the stored vector for a content unit.

        Args:
            text: Text to embed

        Returns:
            List of embedding values

        Raises:
            EmbeddingFailure: If embedding generation fails
        """
        return self._embed(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """
        Generate the vector for a search query (the current user message).

        Raises:
            EmbeddingFailure: If embedding generation fails
        """
        return self._embed(text, 'search_query')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed_document('test')) == self.dimension
        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
