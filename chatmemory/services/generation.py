"""
Generation Orchestrator: streams a completion over the assembled context with bounded retries.
"""

import threading
import time
import uuid
from typing import Callable, Iterator, List, Optional, Sequence

from ..models.core import ASSISTANT_ROLE, Attachment, ConversationMessage
from ..utils.background import BackgroundTaskRunner
from ..utils.bedrock_llm import SAFETY_STOP_REASONS, BedrockLLM, format_bedrock_messages
from ..utils.config import BedrockLLMConfig
from ..utils.logging_config import get_logger
from .context_assembler import ContextAssembler
from .error_handling import GenerationError, SafetyBlockedError, get_retry_delay, parse_error
from .memory_service import MemoryService

logger = get_logger(__name__)

THINKING_START = '<thinking>'
THINKING_END = '</thinking>'


class GenerationOrchestrator:
    """Turn-level generation: assemble context, stream, retry, then schedule fact extraction."""

    def __init__(self,
                 config: BedrockLLMConfig,
                 llm: BedrockLLM,
                 assembler: ContextAssembler,
                 runner: BackgroundTaskRunner,
                 memory: Optional[MemoryService] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        self.config = config
        self.llm = llm
        self.assembler = assembler
        self.runner = runner
        self.memory = memory
        self._sleep = sleep

    def _backoff(self, delay: float, cancel_event: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        elif cancel_event is not None:
            # Returns early when the turn is cancelled
            cancel_event.wait(delay)
        else:
            time.sleep(delay)

    def _stream_once(self, messages, system_prompt: str, temperature: Optional[float],
                     thinking_level: Optional[str]) -> Iterator[str]:
        in_thinking = False
        produced = False

        for event in self.llm.stream_response(messages, system_prompt, temperature=temperature, thinking_level=thinking_level):
            if event.kind == 'stop':
                if event.finish_reason in SAFETY_STOP_REASONS:
                    raise SafetyBlockedError(parse_error(f'Response blocked by safety filters ({event.finish_reason})'))
                continue

            if not event.text:
                continue

            if event.kind == 'thinking' and not in_thinking:
                yield THINKING_START
                in_thinking = True
            elif event.kind == 'text' and in_thinking:
                yield THINKING_END
                in_thinking = False

            produced = True
            yield event.text

        if in_thinking:
            yield THINKING_END

        if not produced:
            raise SafetyBlockedError(parse_error('Empty response from model, likely blocked by safety filters'))

    def generate_stream(self,
                        user_id: Optional[str],
                        session_id: Optional[str],
                        history: Sequence[ConversationMessage],
                        query: str,
                        system_prompt: str,
                        attachments: Sequence[Attachment] = (),
                        is_temporary: bool = False,
                        temperature: Optional[float] = None,
                        thinking_level: Optional[str] = None,
                        cancel_event: Optional[threading.Event] = None) -> Iterator[str]:
        """
        Stream the reply to a new user turn.

        Thinking segments are wrapped in <thinking>...</thinking>; answer text
        is yielded as-is, in arrival order. A failed attempt is retried with
        capped, jittered backoff only when its error class is retryable and
        nothing has been yielded yet. Fact extraction is scheduled only after
        the stream completed; closing the generator or setting cancel_event
        stops consumption and schedules nothing.

        Args:
            user_id: Authenticated user ID (None for guests)
            session_id: Persistent session ID
            history: Prior messages of the session, chronological
            query: Text of the new user turn
            system_prompt: System instruction
            attachments: Attachments of the new user turn
            is_temporary: Ephemeral session (no memory, no summaries)
            temperature: Sampling temperature override
            thinking_level: LOW or HIGH override
            cancel_event: Set to abandon the turn

        Yields:
            Text chunks

        Raises:
            SafetyBlockedError: If the response was blocked
            GenerationError: If generation failed and was not (or no longer) retryable
        """
        context, tier = self.assembler.assemble(user_id,
                                                session_id,
                                                history,
                                                query,
                                                attachments=attachments,
                                                is_temporary=is_temporary,
                                                system_instruction=system_prompt)
        messages = format_bedrock_messages(context)
        logger.debug(f'Generating over {len(context)} context messages ({tier} tier)')

        answer: List[str] = []
        max_attempts = max(1, self.config.retry_attempts)

        for attempt in range(max_attempts):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f'Generation cancelled for session {session_id} before attempt {attempt + 1}')
                return

            yielded = False
            in_thinking = False
            stream = self._stream_once(messages, system_prompt, temperature, thinking_level)
            try:
                for chunk in stream:
                    if cancel_event is not None and cancel_event.is_set():
                        logger.info(f'Generation cancelled for session {session_id}')
                        return

                    if chunk == THINKING_START:
                        in_thinking = True
                    elif chunk == THINKING_END:
                        in_thinking = False
                    elif not in_thinking:
                        answer.append(chunk)

                    yielded = True
                    yield chunk
                break

            except GenerationError:
                raise
            except Exception as e:
                parsed = parse_error(e)
                if yielded or not parsed.retryable or attempt == max_attempts - 1:
                    logger.error(f'Generation failed ({parsed.type.value}) on attempt {attempt + 1}/{max_attempts}: {e}')
                    raise GenerationError(parsed) from e

                delay = get_retry_delay(attempt, self.config.retry_delay, self.config.max_retry_delay)
                logger.warning(f'Generation attempt {attempt + 1}/{max_attempts} failed ({parsed.type.value}), '
                               f'retrying in {delay:.1f}s: {e}')
                self._backoff(delay, cancel_event)
            finally:
                stream.close()

        self._schedule_memory_extraction(user_id, session_id, history, context[-1], ''.join(answer), is_temporary)

    def _schedule_memory_extraction(self, user_id: Optional[str], session_id: Optional[str],
                                    history: Sequence[ConversationMessage], user_turn: ConversationMessage, answer: str,
                                    is_temporary: bool) -> None:
        if not (self.memory and self.assembler.memory_enabled and user_id and session_id) or is_temporary:
            return

        reply = ConversationMessage(id=str(uuid.uuid4()), role=ASSISTANT_ROLE, text=answer, timestamp=time.time())
        conversation = list(history) + [user_turn, reply]
        self.runner.submit(f'memory-extraction:{session_id}', self.memory.process_conversation_for_memories, user_id,
                           session_id, conversation)
