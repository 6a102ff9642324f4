"""
Synopsis Service: short summaries that make sessions below the summarization threshold searchable.
"""

import functools
import threading
from typing import Callable, Optional, Sequence, Tuple

from ..models.core import ConversationMessage, format_transcript
from ..utils.background import BackgroundTaskRunner
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import SynopsisConfig
from ..utils.logging_config import get_logger
from .context_window import valid_messages
from .summary_service import SummaryError, SummaryService

logger = get_logger(__name__)

SYNOPSIS_TEMPERATURE = 0.3
ADDITIONAL_CONTEXT_MARKER = '[Additional context:]'

SYNOPSIS_PROMPT = """Write a synopsis of the conversation in about 100 words.
Say what the user wanted, what was covered and any conclusions or decisions reached, including key names and specifics.
The synopsis is used to find this conversation again later, so favour concrete topics over general impressions.
Output only the synopsis."""

CREATED = 'created'
APPENDED = 'appended'
UP_TO_DATE = 'up_to_date'
TOO_SHORT = 'too_short'
FAILED = 'failed'


class SynopsisService:
    """Create-or-append synopses stored in the session summary slot.

    Unlike full summarization there is no keep-fresh window: the whole
    session, or on append only the messages since the last synopsis, is
    condensed in one pass.
    """

    def __init__(self, config: SynopsisConfig, summaries: SummaryService, llm: BedrockLLM):
        self.config = config
        self.summaries = summaries
        self.llm = llm

    def generate_synopsis(self, messages: Sequence[ConversationMessage]) -> str:
        """
        Condense messages into a short synopsis.

        Raises:
            BedrockLLMError: If the LLM call fails
        """
        response, _ = self.llm.generate_response(messages=[{
            'role': 'user',
            'content': [{
                'text': f'## Conversation\n{format_transcript(messages)}'
            }]
        }],
                                                 system_prompt=SYNOPSIS_PROMPT,
                                                 max_tokens=self.config.max_output_tokens,
                                                 temperature=SYNOPSIS_TEMPERATURE,
                                                 model_id=self.config.model_id)
        return response.strip()

    def generate_synopsis_if_needed(self, session_id: str, user_id: str, history: Sequence[ConversationMessage]) -> str:
        """
        Bring the session's searchable summary up to date.

        Cases:
            - no summary: create one when at least min_messages valid messages exist
            - summary covers every valid message: nothing to do
            - new messages since the summary: append a mini-synopsis of the delta

        Failures are logged, never raised.

        Args:
            session_id: Session ID
            user_id: Owner of the session
            history: Full chronological history

        Returns:
            One of 'created', 'appended', 'up_to_date', 'too_short', 'failed'
        """
        messages = valid_messages(history)

        try:
            existing = self.summaries.get_summary(session_id)

            if existing is None:
                if len(messages) < self.config.min_messages:
                    logger.debug(f'Not enough messages for synopsis of session {session_id}')
                    return TOO_SHORT

                synopsis = self.generate_synopsis(messages)
                if not synopsis:
                    logger.warning(f'Empty synopsis for session {session_id}')
                    return FAILED
                self.summaries.save_summary(session_id, user_id, synopsis, len(messages))
                logger.info(f'Generated synopsis for session {session_id}')
                return CREATED

            new_messages = messages[existing.messages_summarized_count:]
            if not new_messages:
                logger.debug(f'Session {session_id} already up to date')
                return UP_TO_DATE

            mini_synopsis = self.generate_synopsis(new_messages)
            if not mini_synopsis:
                logger.warning(f'Empty synopsis for new messages of session {session_id}')
                return FAILED
            updated_text = f'{existing.summary_text}\n\n{ADDITIONAL_CONTEXT_MARKER}\n{mini_synopsis}'
            self.summaries.save_summary(session_id, user_id, updated_text, len(messages), existing=existing)
            logger.info(f'Appended {len(new_messages)} new messages to synopsis of session {session_id}')
            return APPENDED

        except (BedrockLLMError, SummaryError) as e:
            logger.error(f'Synopsis generation failed for session {session_id}: {e}')
            return FAILED

    def should_generate_synopsis(self, session_id: str, message_count: int) -> bool:
        """True if a synopsis job for this session would do any work."""
        existing = self.summaries.get_summary(session_id)
        if existing is None:
            return message_count >= self.config.min_messages
        return message_count > existing.messages_summarized_count


class SessionActivityMonitor:
    """Fire synopsis jobs when the user leaves a session or goes idle.

    Every call to touch() or on_session_switch() restarts the idle timer.
    Jobs run on the background runner and never block the caller.
    """

    def __init__(self,
                 synopsis: SynopsisService,
                 runner: BackgroundTaskRunner,
                 history_provider: Callable[[str], Sequence[ConversationMessage]],
                 idle_timeout_seconds: float,
                 timer_factory: Callable[..., threading.Timer] = threading.Timer):
        self.synopsis = synopsis
        self.runner = runner
        self.history_provider = history_provider
        self.idle_timeout_seconds = idle_timeout_seconds
        self._timer_factory = timer_factory
        self._timer: Optional[threading.Timer] = None
        self._current: Optional[Tuple[str, str]] = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def current_session_id(self) -> Optional[str]:
        return self._current[0] if self._current else None

    def _trigger(self, session_id: str, user_id: str, reason: str) -> None:
        history = self.history_provider(session_id)
        if not history:
            return

        logger.debug(f'Triggering synopsis for session {session_id} ({reason})')
        self.runner.submit(f'synopsis:{session_id}', self.synopsis.generate_synopsis_if_needed, session_id, user_id,
                           list(history))

    def _restart_timer(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._current is None:
            return

        self._timer = self._timer_factory(self.idle_timeout_seconds, functools.partial(self._on_idle, self._generation))
        self._timer.daemon = True
        self._timer.start()

    def _on_idle(self, generation: int) -> None:
        with self._lock:
            # A timer that fired while being replaced is stale
            if generation != self._generation:
                return
            current = self._current
            self._timer = None
        if current:
            self._trigger(current[0], current[1], 'idle timeout')

    def on_session_switch(self, session_id: Optional[str], user_id: Optional[str]) -> None:
        """
        Record that the user opened another session.

        Args:
            session_id: Session now in view (None when leaving all sessions)
            user_id: Owner of that session
        """
        with self._lock:
            previous = self._current
            self._current = (session_id, user_id) if session_id and user_id else None
            self._restart_timer()

        if previous and previous[0] != session_id:
            self._trigger(previous[0], previous[1], 'session switch')

    def touch(self) -> None:
        """Record user activity in the current session."""
        with self._lock:
            self._restart_timer()

    def stop(self) -> None:
        with self._lock:
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
