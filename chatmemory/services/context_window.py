"""
Sliding-window context builder, the always-available fallback tier.
"""

from typing import List, Sequence, Tuple

from ..models.core import ContextWindow, ConversationMessage
from ..utils.config import ContextConfig
from ..utils.logging_config import get_logger
from .token_estimator import TokenEstimator

logger = get_logger(__name__)


def valid_messages(history: Sequence[ConversationMessage]) -> List[ConversationMessage]:
    """Messages eligible for any context: error-flagged turns are dropped."""
    return [message for message in history if not message.is_error]


class ContextWindowBuilder:
    """Keep the most recent messages that fit the token and message-count budget.

    Touches no external service and cannot fail.
    """

    def __init__(self, config: ContextConfig, estimator: TokenEstimator):
        self.config = config
        self.estimator = estimator

    def available_tokens(self, system_instruction_tokens: int = 0) -> int:
        return (self.config.max_context_tokens - self.config.system_instruction_buffer - self.config.response_buffer -
                system_instruction_tokens)

    def build(self, history: Sequence[ConversationMessage], system_instruction_tokens: int = 0) -> ContextWindow:
        """
        Build a sliding window over the history.

        Walks newest to oldest; the newest min_recent_messages are always kept
        even when they exceed the token budget.

        Args:
            history: Full chronological history of the session
            system_instruction_tokens: Token cost of the system instruction

        Returns:
            ContextWindow in chronological order
        """
        messages = valid_messages(history)
        if not messages:
            return ContextWindow(messages=[], estimated_tokens=0, truncated=False, original_count=0)

        budget = self.available_tokens(system_instruction_tokens)
        floor = min(self.config.min_recent_messages, self.config.max_messages)
        kept: List[ConversationMessage] = []
        tokens = 0

        for message in reversed(messages):
            message_tokens = self.estimator.estimate(message)
            over_budget = tokens + message_tokens > budget
            at_ceiling = len(kept) >= self.config.max_messages
            below_floor = len(kept) < floor

            if (over_budget or at_ceiling) and not below_floor:
                break

            kept.append(message)
            tokens += message_tokens

        kept.reverse()
        window = ContextWindow(messages=kept,
                               estimated_tokens=tokens,
                               truncated=len(kept) < len(messages),
                               original_count=len(messages))

        if window.truncated:
            logger.debug(f'Sliding window kept {len(kept)}/{len(messages)} messages ({tokens} tokens)')
        return window

    def validate(self, window: ContextWindow) -> Tuple[bool, List[str]]:
        """
        Check a window against the configured limits.

        Returns:
            Tuple of (valid, warnings)
        """
        warnings = []

        if window.estimated_tokens > self.config.max_context_tokens * 0.9:
            warnings.append('Context is approaching token limit')

        if len(window.messages) >= self.config.max_messages:
            warnings.append('Context has reached message count limit')

        if window.truncated:
            warnings.append(f'{window.original_count - len(window.messages)} messages were truncated')

        return window.estimated_tokens <= self.config.max_context_tokens, warnings
