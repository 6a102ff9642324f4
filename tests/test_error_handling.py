"""Tests for generation error classification and retry backoff."""

import random

import pytest
from botocore.exceptions import ClientError

from chatmemory.services.error_handling import (ErrorType, GenerationError, SafetyBlockedError, format_error_for_chat,
                                                get_recovery_actions, get_retry_delay, http_code, is_context_overflow,
                                                is_retryable, parse_error)


class StatusError(Exception):

    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


def _client_error(code, message, status):
    return ClientError({
        'Error': {
            'Code': code,
            'Message': message
        },
        'ResponseMetadata': {
            'HTTPStatusCode': status
        }
    }, 'ConverseStream')


class TestClassification:

    @pytest.mark.parametrize('message, expected', [
        ('ValidationException: Input is too long for requested model.', ErrorType.CONTEXT_OVERFLOW),
        ('prompt is too long: 210000 tokens > 200000 maximum', ErrorType.CONTEXT_OVERFLOW),
        ('ThrottlingException: Too many requests, please wait before trying again.', ErrorType.RATE_LIMITED),
        ('ServiceQuotaExceededException: quota exceeded for tokens per minute', ErrorType.RATE_LIMITED),
        ("AccessDeniedException: You don't have access to the model with the specified model ID.",
         ErrorType.INVALID_CREDENTIAL),
        ('UnrecognizedClientException: The security token included in the request is invalid.',
         ErrorType.INVALID_CREDENTIAL),
        ('ExpiredTokenException: The security token included in the request is expired',
         ErrorType.INVALID_CREDENTIAL),
        ('The response was blocked by a guardrail', ErrorType.SAFETY_BLOCKED),
        ('ModelNotReadyException: Model is not ready for inference', ErrorType.MODEL_UNAVAILABLE),
        ('ServiceUnavailableException: Service Unavailable', ErrorType.MODEL_UNAVAILABLE),
        ('EndpointConnectionError: Could not connect to the endpoint URL', ErrorType.NETWORK_ERROR),
        ('ReadTimeoutError: Read timed out.', ErrorType.NETWORK_ERROR),
        ('Something odd happened', ErrorType.UNKNOWN),
    ])
    def test_message_patterns(self, message, expected):
        assert parse_error(message).type == expected

    def test_http_status_fallback(self):
        assert parse_error(StatusError('request failed', 429)).type == ErrorType.RATE_LIMITED
        assert parse_error(StatusError('request failed', 403)).type == ErrorType.INVALID_CREDENTIAL
        assert parse_error(StatusError('request failed', 503)).type == ErrorType.MODEL_UNAVAILABLE
        assert parse_error(StatusError('wrong token count', 400)).type == ErrorType.CONTEXT_OVERFLOW
        assert parse_error(StatusError('bad field', 400)).type == ErrorType.UNKNOWN

    def test_client_error_status(self):
        error = _client_error('SomeNewCode', 'nope', 503)

        assert http_code(error) == 503
        assert parse_error(error).type == ErrorType.MODEL_UNAVAILABLE

    def test_http_code_from_message(self):
        assert http_code('Request failed with status 502') == 502
        assert http_code('no code here') is None

    def test_generation_errors_keep_their_classification(self):
        parsed = parse_error('Response blocked by safety filters (content_filtered)')
        blocked = SafetyBlockedError(parsed)

        assert parse_error(blocked) is parsed
        assert parse_error(GenerationError(parse_error('throttled'))).type == ErrorType.RATE_LIMITED
        assert is_retryable(blocked) is False

    def test_parsed_error_fields(self):
        error = ValueError('rate limit reached')

        parsed = parse_error(error)

        assert parsed.message == 'ValueError: rate limit reached'
        assert parsed.retryable is True
        assert parsed.raw_error is error
        assert parsed.actions[0].primary is True


class TestHelpers:

    def test_retryable_types(self):
        assert is_retryable('Too many requests') is True
        assert is_retryable('Service Unavailable') is True
        assert is_retryable('network down') is True
        assert is_retryable('Something odd happened') is True
        assert is_retryable('Input is too long') is False
        assert is_retryable('Access denied') is False

    def test_context_overflow(self):
        assert is_context_overflow('maximum context length exceeded') is True
        assert is_context_overflow('throttled') is False

    def test_recovery_actions(self):
        actions = get_recovery_actions(ErrorType.CONTEXT_OVERFLOW)

        assert [a.action for a in actions] == ['new_chat', 'clear_context']
        assert [a.action for a in get_recovery_actions(ErrorType.RATE_LIMITED)] == ['wait', 'retry']

    def test_format_for_chat(self):
        parsed = parse_error('throttled')

        assert format_error_for_chat(parsed) == (
            '**Too many requests. The rate limit has been reached.**\n\n'
            'Please wait a moment before sending another message.')


class TestRetryDelay:

    @pytest.mark.parametrize('attempt, low', [(0, 1.0), (1, 2.0), (2, 4.0), (4, 16.0), (5, 30.0), (12, 30.0)])
    def test_exponential_with_cap_and_jitter(self, attempt, low):
        delay = get_retry_delay(attempt)

        assert low <= delay <= low + 1.0

    def test_custom_base(self, monkeypatch):
        monkeypatch.setattr(random, 'uniform', lambda a, b: 0.5)

        assert get_retry_delay(3, base_delay=0.5, max_delay=10.0) == 4.5
