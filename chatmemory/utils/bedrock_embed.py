"""
Amazon Bedrock embedding client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import Any, Dict, List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)

QUERY_TASK = 'search_query'
DOCUMENT_TASK = 'search_document'


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (created from config if None)
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        # Create Bedrock runtime client
        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    @property
    def model_identity(self) -> str:
        """Identity stored next to every vector; vectors with another identity are never compared."""
        return f'{self.model_id}:{self.output_embedding_length}'

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

                result = json.loads(response.get('body').read())
                logger.debug('Bedrock Embed request successful')
                return result

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _build_request(self, text: str, task_type: str) -> Dict[str, Any]:
        model = self.model_id.lower()
        if 'titan' in model:
            # Titan v2 has no task hint; query and document share one space
            return {'inputText': text, 'dimensions': self.output_embedding_length, 'normalize': True}
        if 'cohere' in model:
            if self.output_embedding_length != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')
            return {'input_type': task_type, 'texts': [text]}
        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def _extract_vector(self, response: Dict[str, Any]) -> List[float]:
        if 'embedding' in response:
            vector = response['embedding']
        else:
            embeddings = response.get('embeddings') or []
            vector = embeddings[0] if embeddings else []

        if len(vector) != self.output_embedding_length:
            raise BedrockEmbedError(f'Expected {self.output_embedding_length} dimensions, got {len(vector)}')
        return vector

    def embed(self, text: str, task_type: str = DOCUMENT_TASK) -> List[float]:
        """
        Generate an embedding for text.

        Empty input is rejected rather than mapped to a zero vector.

        Args:
            text: Text to embed
            task_type: QUERY_TASK or DOCUMENT_TASK

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty text')

        try:
            return self._extract_vector(self._call_with_retry(self._build_request(text, task_type)))
        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating {task_type} embedding: {e}')
            raise BedrockEmbedError(f'Embedding failed: {e}')

    def embed_document(self, text: str) -> List[float]:
        """Generate embeddings for stored text (summaries, facts)."""
        return self.embed(text, DOCUMENT_TASK)

    def embed_query(self, text: str) -> List[float]:
        """Generate embeddings for query text."""
        return self.embed(text, QUERY_TASK)

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('test')
            return len(test_embedding) == self.output_embedding_length

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
