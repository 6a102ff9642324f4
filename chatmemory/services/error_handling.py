"""
Classification of generation failures into user-facing error types with recovery actions.
"""

import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class ErrorType(str, Enum):
    CONTEXT_OVERFLOW = 'context_overflow'
    RATE_LIMITED = 'rate_limited'
    INVALID_CREDENTIAL = 'invalid_credential'
    SAFETY_BLOCKED = 'safety_blocked'
    MODEL_UNAVAILABLE = 'model_unavailable'
    NETWORK_ERROR = 'network_error'
    UNKNOWN = 'unknown'


@dataclass(frozen=True)
class RecoveryAction:
    """Action offered to the user next to an error message."""
    label: str
    action: str  # new_chat | clear_context | wait | retry | check_settings
    primary: bool = False


@dataclass
class ParsedError:
    """Structured, user-presentable view of a failure."""
    type: ErrorType
    message: str
    user_message: str
    suggestion: str
    retryable: bool
    http_code: Optional[int] = None
    actions: List[RecoveryAction] = field(default_factory=list)
    raw_error: Any = None


class GenerationError(Exception):
    """Custom exception for generation errors, carrying the parsed classification."""

    def __init__(self, parsed: ParsedError):
        super().__init__(parsed.message)
        self.parsed = parsed


class SafetyBlockedError(GenerationError):
    """The response was blocked by safety filtering (explicit signal or empty stream)."""
    pass


# Checked in this order; the first matching group wins
ERROR_PATTERNS = {
    ErrorType.CONTEXT_OVERFLOW: [
        re.compile(r'context.*(length|limit|exceed|overflow)', re.I),
        re.compile(r'too many (input )?tokens', re.I),
        re.compile(r'maximum.*context', re.I),
        re.compile(r'input.*too (long|large)', re.I),
        re.compile(r'request.*too (long|large)', re.I),
        re.compile(r'prompt is too long', re.I),
    ],
    ErrorType.RATE_LIMITED: [
        re.compile(r'rate.?limit', re.I),
        re.compile(r'quota.*exceed', re.I),
        re.compile(r'too many requests', re.I),
        re.compile(r'throttl', re.I),
        re.compile(r'\b429\b'),
    ],
    ErrorType.INVALID_CREDENTIAL: [
        re.compile(r'api.?key', re.I),
        re.compile(r'invalid.*(key|credential)', re.I),
        re.compile(r'access.?denied', re.I),
        re.compile(r'unrecognized.?client', re.I),
        re.compile(r'expired.?token', re.I),
        re.compile(r'security token', re.I),
        re.compile(r'no ?credentials', re.I),
        re.compile(r'\b40[13]\b'),
    ],
    ErrorType.SAFETY_BLOCKED: [
        re.compile(r'safety', re.I),
        re.compile(r'blocked', re.I),
        re.compile(r'harmful', re.I),
        re.compile(r'content.*filter', re.I),
        re.compile(r'guardrail', re.I),
    ],
    ErrorType.MODEL_UNAVAILABLE: [
        re.compile(r'model.*(unavailable|not ?ready)', re.I),
        re.compile(r'overloaded', re.I),
        re.compile(r'unavailable', re.I),
        re.compile(r'capacity', re.I),
        re.compile(r'\b503\b'),
    ],
    ErrorType.NETWORK_ERROR: [
        re.compile(r'network', re.I),
        re.compile(r'connect', re.I),
        re.compile(r'timed? ?out', re.I),
        re.compile(r'ECONNREFUSED|ETIMEDOUT'),
    ],
}

ERROR_CONFIGS: Dict[ErrorType, Dict[str, Any]] = {
    ErrorType.CONTEXT_OVERFLOW: {
        'user_message': 'This conversation has become too long for the AI to process.',
        'suggestion': 'Start a new chat to continue. Your conversation history is saved and you can reference it later.',
        'retryable': False,
        'actions': [RecoveryAction('Start New Chat', 'new_chat', primary=True),
                    RecoveryAction('Clear Old Messages', 'clear_context')],
    },
    ErrorType.RATE_LIMITED: {
        'user_message': 'Too many requests. The rate limit has been reached.',
        'suggestion': 'Please wait a moment before sending another message.',
        'retryable': True,
        'actions': [RecoveryAction('Wait & Retry', 'wait', primary=True),
                    RecoveryAction('Retry Now', 'retry')],
    },
    ErrorType.INVALID_CREDENTIAL: {
        'user_message': "There's a problem with your credentials.",
        'suggestion': 'Please check that your AWS credentials are valid, have not expired and allow access to the model.',
        'retryable': False,
        'actions': [RecoveryAction('Check Settings', 'check_settings', primary=True)],
    },
    ErrorType.SAFETY_BLOCKED: {
        'user_message': 'This request was blocked by safety filters.',
        'suggestion': 'Try rephrasing your message or adjusting safety settings.',
        'retryable': False,
        'actions': [RecoveryAction('Check Settings', 'check_settings', primary=True),
                    RecoveryAction('Try Again', 'retry')],
    },
    ErrorType.MODEL_UNAVAILABLE: {
        'user_message': 'The AI model is temporarily unavailable.',
        'suggestion': 'The service may be experiencing high demand. Please try again in a few moments.',
        'retryable': True,
        'actions': [RecoveryAction('Retry', 'retry', primary=True),
                    RecoveryAction('Wait & Retry', 'wait')],
    },
    ErrorType.NETWORK_ERROR: {
        'user_message': 'Unable to connect to the AI service.',
        'suggestion': 'Please check your internet connection and try again.',
        'retryable': True,
        'actions': [RecoveryAction('Retry', 'retry', primary=True)],
    },
    ErrorType.UNKNOWN: {
        'user_message': 'An unexpected error occurred.',
        'suggestion': 'Please try again. If the problem persists, try starting a new chat.',
        'retryable': True,
        'actions': [RecoveryAction('Retry', 'retry', primary=True),
                    RecoveryAction('Start New Chat', 'new_chat')],
    },
}

HTTP_CODE_PATTERN = re.compile(r'\b([45]\d{2})\b')


def error_text(error: Any) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        return f'{type(error).__name__}: {error}'
    return str(error)


def http_code(error: Any) -> Optional[int]:
    """Best-effort HTTP status code from an exception or its message."""
    status = getattr(error, 'status_code', None)
    if isinstance(status, int):
        return status
    if isinstance(error, ClientError):
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        if isinstance(status, int):
            return status

    match = HTTP_CODE_PATTERN.search(error_text(error))
    return int(match.group(1)) if match else None


def detect_error_type(error: Any) -> ErrorType:
    if isinstance(error, SafetyBlockedError):
        return ErrorType.SAFETY_BLOCKED
    if isinstance(error, GenerationError):
        return error.parsed.type

    text = error_text(error)
    for error_type, patterns in ERROR_PATTERNS.items():
        if any(pattern.search(text) for pattern in patterns):
            return error_type

    code = http_code(error)
    if code == 429:
        return ErrorType.RATE_LIMITED
    if code in (401, 403):
        return ErrorType.INVALID_CREDENTIAL
    if code == 503:
        return ErrorType.MODEL_UNAVAILABLE
    if code == 400 and re.search(r'length|token|context', text, re.I):
        return ErrorType.CONTEXT_OVERFLOW

    return ErrorType.UNKNOWN


def parse_error(error: Any) -> ParsedError:
    """
    Classify any failure raised around a generation call.

    Args:
        error: Exception or message

    Returns:
        ParsedError with user message, suggestion and recovery actions
    """
    if isinstance(error, GenerationError):
        return error.parsed

    error_type = detect_error_type(error)
    settings = ERROR_CONFIGS[error_type]
    return ParsedError(type=error_type,
                       message=error_text(error),
                       user_message=settings['user_message'],
                       suggestion=settings['suggestion'],
                       retryable=settings['retryable'],
                       http_code=http_code(error),
                       actions=list(settings['actions']),
                       raw_error=error)


def get_recovery_actions(error_type: ErrorType) -> List[RecoveryAction]:
    return list(ERROR_CONFIGS.get(error_type, ERROR_CONFIGS[ErrorType.UNKNOWN])['actions'])


def is_context_overflow(error: Any) -> bool:
    return detect_error_type(error) == ErrorType.CONTEXT_OVERFLOW


def is_retryable(error: Any) -> bool:
    return ERROR_CONFIGS[detect_error_type(error)]['retryable']


def format_error_for_chat(parsed: ParsedError) -> str:
    return f'**{parsed.user_message}**\n\n{parsed.suggestion}'


def get_retry_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff in seconds, capped, plus up to one second of jitter.

    Args:
        attempt: Retry attempt number (0-indexed)
        base_delay: Delay of the first retry
        max_delay: Cap before jitter
    """
    return min(base_delay * (2**attempt), max_delay) + random.uniform(0, 1)
