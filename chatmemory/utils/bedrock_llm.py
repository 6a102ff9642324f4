"""
Amazon Bedrock LLM client wrapper with retry logic, streaming and token counting.
"""

import base64
import binascii
import json
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..models.core import ASSISTANT_ROLE, USER_ROLE, ConversationMessage
from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

SAFETY_STOP_REASONS = ('guardrail_intervened', 'content_filtered')
STREAM_ERROR_EVENTS = ('internalServerException', 'modelStreamErrorException', 'validationException',
                       'throttlingException', 'serviceUnavailableException')
IMAGE_FORMATS = {'image/png': 'png', 'image/jpeg': 'jpeg', 'image/jpg': 'jpeg', 'image/gif': 'gif', 'image/webp': 'webp'}
DOCUMENT_FORMATS = {'application/pdf': 'pdf', 'text/plain': 'txt', 'text/csv': 'csv', 'text/markdown': 'md', 'text/html': 'html'}


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


@dataclass
class StreamEvent:
    """One demultiplexed piece of a streaming completion."""
    kind: str  # thinking | text | stop
    text: str = ''
    finish_reason: Optional[str] = None


def _wrap_client_error(e: Exception, prefix: str) -> BedrockLLMError:
    if isinstance(e, ClientError):
        error = e.response.get('Error', {})
        status = e.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        code = error.get('Code')
        return BedrockLLMError(f'{prefix}: {code}: {error.get("Message", e)}', status_code=status, error_code=code)
    return BedrockLLMError(f'{prefix}: {type(e).__name__}: {e}')


def _attachment_block(attachment) -> Optional[Dict[str, Any]]:
    mime_type = attachment.mime_type.lower()
    try:
        payload = base64.b64decode(attachment.data, validate=False)
    except (binascii.Error, ValueError) as e:
        logger.warning(f'Skipping undecodable attachment {attachment.name or mime_type}: {e}')
        return None

    if mime_type in IMAGE_FORMATS:
        return {'image': {'format': IMAGE_FORMATS[mime_type], 'source': {'bytes': payload}}}
    if mime_type in DOCUMENT_FORMATS:
        name = (attachment.name or 'attachment').rsplit('.', 1)[0]
        return {'document': {'format': DOCUMENT_FORMATS[mime_type], 'name': name, 'source': {'bytes': payload}}}

    logger.warning(f'Skipping attachment with unsupported mime type: {mime_type}')
    return None


def format_bedrock_messages(messages: Sequence[ConversationMessage]) -> List[Dict[str, Any]]:
    """Convert conversation messages into Bedrock Converse message dicts.

    Converse requires the sequence to open with a user turn and to alternate
    roles, so consecutive turns of the same role are merged into one message.

    Args:
        messages: Ordered conversation messages

    Returns:
        List of message dictionaries in Bedrock format
    """
    formatted: List[Dict[str, Any]] = []
    for message in messages:
        role = USER_ROLE if message.role == USER_ROLE else ASSISTANT_ROLE
        content = [block for block in (_attachment_block(a) for a in message.attachments) if block]
        if message.text:
            content.append({'text': message.text})
        if not content:
            continue

        if not formatted and role == ASSISTANT_ROLE:
            formatted.append({'role': USER_ROLE, 'content': [{'text': '[Earlier conversation omitted]'}]})

        if formatted and formatted[-1]['role'] == role:
            formatted[-1]['content'].extend(content)
        else:
            formatted.append({'role': role, 'content': content})

    return formatted


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (created from config if None)
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=600,
                read_timeout=600,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None,
                          model_id: Optional[str] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate a complete (non-streamed to the caller) response with retry logic.

        Used by the helper prompts: summarization, synopsis and fact extraction.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation
            model_id: Model override, e.g. a cheaper summarization model

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        max_tokens = max_tokens or self.config.max_tokens
        temperature = self.config.temperature if temperature is None else temperature
        stop_sequences = stop_sequences or []
        model_id = model_id or self.model_id

        system = [{'text': system_prompt}]
        inf_params = {
            'maxTokens': max_tokens,
            'temperature': temperature,
            'stopSequences': stop_sequences,
        }

        last_error: Optional[BedrockLLMError] = None
        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')

                stream = self.bedrock_runtime.converse_stream(modelId=model_id,
                                                              messages=messages,
                                                              system=system,
                                                              inferenceConfig=inf_params).get('stream')

                msg = ''
                invoke_metrics = None

                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta'].get('text', '')
                        if 'metadata' in event:
                            invoke_metrics = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg, invoke_metrics

            except (ClientError, BotoCoreError, json.JSONDecodeError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')
                last_error = _wrap_client_error(e, 'Bedrock LLM request failed')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {last_error}',
                              status_code=last_error.status_code if last_error else None,
                              error_code=last_error.error_code if last_error else None)

    def stream_response(self,
                        messages: List[Dict[str, Any]],
                        system_prompt: str,
                        temperature: Optional[float] = None,
                        thinking_level: Optional[str] = None) -> Iterator[StreamEvent]:
        """
        Run a single streaming completion attempt.

        No retries happen here; the caller owns the retry policy so a partially
        consumed stream is never silently replayed.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System instruction
            temperature: Temperature for generation (uses config default if None)
            thinking_level: LOW or HIGH (uses config default if None)

        Yields:
            StreamEvent items in arrival order, ending with a 'stop' event when
            the service reports a finish reason

        Raises:
            BedrockLLMError: On any service or transport failure
        """
        thinking_level = (thinking_level or self.config.thinking_level).upper()
        request: Dict[str, Any] = {
            'modelId': self.model_id,
            'messages': messages,
            'system': [{'text': system_prompt}],
        }

        if thinking_level == 'HIGH':
            # Extended thinking rejects a custom temperature
            request['inferenceConfig'] = {'maxTokens': self.config.max_tokens + self.config.thinking_budget_tokens}
            request['additionalModelRequestFields'] = {
                'thinking': {
                    'type': 'enabled',
                    'budget_tokens': self.config.thinking_budget_tokens
                }
            }
        else:
            request['inferenceConfig'] = {
                'maxTokens': self.config.max_tokens,
                'temperature': self.config.temperature if temperature is None else temperature,
            }

        if self.config.guardrail_id:
            request['guardrailConfig'] = {
                'guardrailIdentifier': self.config.guardrail_id,
                'guardrailVersion': self.config.guardrail_version or 'DRAFT',
                'streamProcessingMode': 'sync'
            }

        try:
            stream = self.bedrock_runtime.converse_stream(**request).get('stream') or []
            for event in stream:
                for error_key in STREAM_ERROR_EVENTS:
                    if error_key in event:
                        detail = event[error_key].get('message', '')
                        raise BedrockLLMError(f'{error_key[0].upper()}{error_key[1:]}: {detail}', error_code=error_key)

                if 'contentBlockDelta' in event:
                    delta = event['contentBlockDelta'].get('delta', {})
                    reasoning = delta.get('reasoningContent', {}).get('text')
                    if reasoning:
                        yield StreamEvent(kind='thinking', text=reasoning)
                    if delta.get('text'):
                        yield StreamEvent(kind='text', text=delta['text'])

                if 'messageStop' in event:
                    yield StreamEvent(kind='stop', finish_reason=event['messageStop'].get('stopReason'))

        except (ClientError, BotoCoreError) as e:
            logger.warning(f'Bedrock LLM stream failed: {e}')
            raise _wrap_client_error(e, 'Bedrock LLM stream failed')

    def count_tokens(self, text: str, model_id: Optional[str] = None) -> int:
        """
        Count input tokens exactly using the Bedrock CountTokens API.

        Args:
            text: Text to count
            model_id: Model override (uses the configured token-count model if None)

        Returns:
            Number of input tokens

        Raises:
            BedrockLLMError: If the count request fails
        """
        if not text:
            return 0

        try:
            response = self.bedrock_runtime.count_tokens(
                modelId=model_id or self.config.token_count_model_id,
                input={'converse': {
                    'messages': [{
                        'role': USER_ROLE,
                        'content': [{
                            'text': text
                        }]
                    }]
                }})
            return int(response['inputTokens'])

        except (ClientError, BotoCoreError) as e:
            raise _wrap_client_error(e, 'Bedrock token count failed')
        except (KeyError, TypeError, ValueError) as e:
            raise BedrockLLMError(f'Malformed token count response: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = self.generate_response(messages=test_messages,
                                                 system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
