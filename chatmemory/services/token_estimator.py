"""
Token estimation: a calibrated language-aware heuristic with optional exact counting.
"""

import hashlib
import math
import re
import threading
from typing import Dict, Optional, Sequence, Union

from ..models.core import ConversationMessage
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import TokenEstimationConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

# Han ideographs, Hiragana, Katakana and Hangul syllables
CJK_PATTERN = re.compile('[\u4e00-\u9fff\u3040-\u309f\u30a0-\u30ff\uac00-\ud7af]')

LOCAL = 'local'
API = 'api'
HYBRID = 'hybrid'


class TokenCountCache:
    """Exact token counts keyed by content hash.

    No eviction; call clear() in tests or long-running workers.
    """

    def __init__(self):
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(text: str) -> str:
        return hashlib.sha256(text.encode('utf-8')).hexdigest()

    def get(self, text: str) -> Optional[int]:
        with self._lock:
            return self._counts.get(self.key(text))

    def set(self, text: str, count: int) -> None:
        with self._lock:
            self._counts[self.key(text)] = count

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counts)


class TokenEstimator:
    """Estimate tokens for text, messages and message lists.

    `estimate` is purely local and never touches the network. The `count_*`
    methods follow the configured method: 'local', 'api' (always exact) or
    'hybrid' (exact before summarization and on every Nth message as a drift
    check). Exact counting failures fall back to the heuristic and never raise.
    """

    def __init__(self, config: TokenEstimationConfig, counter: Optional[BedrockLLM] = None,
                 cache: Optional[TokenCountCache] = None):
        self.config = config
        self.counter = counter
        self.cache = cache if cache is not None else TokenCountCache()
        self._since_validation = 0
        self._counter_lock = threading.Lock()

    # Local heuristic

    def estimate_text(self, text: str) -> int:
        if not text:
            return 0

        cjk_chars = len(CJK_PATTERN.findall(text))
        other_chars = len(text) - cjk_chars
        return math.ceil(cjk_chars * self.config.cjk_tokens_per_char + other_chars / self.config.latin_chars_per_token)

    def estimate_attachments(self, message: ConversationMessage) -> int:
        """Flat per-attachment overhead plus one token per attachment_bytes_per_token payload characters."""
        tokens = 0
        for attachment in message.attachments:
            tokens += self.config.attachment_overhead_tokens
            tokens += math.ceil(len(attachment.data) / self.config.attachment_bytes_per_token)
        return tokens

    def estimate_message(self, message: ConversationMessage) -> int:
        return self.estimate_text(message.text) + self.estimate_attachments(message) + self.config.role_overhead_tokens

    def estimate(self, target: Union[str, ConversationMessage, Sequence[ConversationMessage]]) -> int:
        """
        Heuristic token count of a string, a message or a list of messages.

        Args:
            target: Text, single message, or sequence of messages

        Returns:
            Estimated token count (0 for empty text, role overhead for an empty message)
        """
        if target is None:
            return 0
        if isinstance(target, str):
            return self.estimate_text(target)
        if isinstance(target, ConversationMessage):
            return self.estimate_message(target)
        return sum(self.estimate_message(message) for message in target)

    # Hybrid counting

    def _count_exact(self, text: str) -> int:
        cached = self.cache.get(text)
        if cached is not None:
            return cached

        try:
            count = self.counter.count_tokens(text)
        except Exception as e:
            logger.warning(f'Exact token count failed, falling back to heuristic: {e}')
            return self.estimate_text(text)

        self.cache.set(text, count)
        return count

    def _should_count_exactly(self, force_precise: bool) -> bool:
        if self.counter is None or self.config.method == LOCAL:
            return False
        if self.config.method == API:
            return True
        if force_precise and self.config.use_api_before_summarization:
            return True

        with self._counter_lock:
            self._since_validation += 1
            if self._since_validation >= self.config.api_validation_frequency:
                self._since_validation = 0
                return True
        return False

    def count_text(self, text: str, force_precise: bool = False) -> int:
        """
        Count tokens in text using the configured method.

        Args:
            text: Text to count
            force_precise: Request an exact count (e.g. before summarization)

        Returns:
            Token count
        """
        if not text:
            return 0
        if not self._should_count_exactly(force_precise):
            return self.estimate_text(text)

        exact = self._count_exact(text)
        if not force_precise:
            logger.debug(f'Token drift check: heuristic={self.estimate_text(text)} exact={exact}')
        return exact

    def count_message(self, message: ConversationMessage, force_precise: bool = False) -> int:
        return (self.count_text(message.text, force_precise) + self.estimate_attachments(message) +
                self.config.role_overhead_tokens)

    def count_messages(self, messages: Sequence[ConversationMessage], force_precise: bool = False) -> int:
        if not force_precise:
            return sum(self.count_message(message, force_precise) for message in messages)

        # One exact request for the whole batch instead of one per message
        text = '\n\n'.join(message.text for message in messages if message.text)
        overhead = sum(self.estimate_attachments(message) + self.config.role_overhead_tokens for message in messages)
        return self.count_text(text, force_precise=True) + overhead

    def clear_cache(self) -> None:
        """Drop cached exact counts and reset the drift-check counter."""
        self.cache.clear()
        with self._counter_lock:
            self._since_validation = 0

    def cache_stats(self) -> Dict[str, int]:
        return {'size': len(self.cache), 'since_validation': self._since_validation}
