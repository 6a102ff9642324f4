"""
Context Assembler: picks the richest context tier that works for the current turn.
"""

import time
import uuid
from typing import List, Optional, Sequence, Tuple

from ..models.core import ASSISTANT_ROLE, USER_ROLE, Attachment, ConversationMessage
from ..utils.logging_config import get_logger
from .context_window import ContextWindowBuilder
from .memory_service import MEMORY_ACK, MEMORY_ACK_ID, MEMORY_MESSAGE_ID, MemoryService
from .session_rag import SESSION_RAG_ACK, SESSION_RAG_ACK_ID, SESSION_RAG_MESSAGE_ID, SessionRAGService
from .summary_service import SummaryService

logger = get_logger(__name__)

TIER_MEMORY = 'memory'
TIER_SUMMARY = 'summary'
TIER_WINDOW = 'sliding_window'


class ContextAssembler:
    """Three-tier context assembly.

    1. memory + session RAG + summary
    2. summary alone
    3. sliding window, which cannot fail

    Guests (no user ID) and temporary sessions go straight to tier 3.
    The final order is always memory pair, session RAG pair, summary pair,
    recent messages, then the new user turn.
    """

    def __init__(self,
                 window: ContextWindowBuilder,
                 summaries: Optional[SummaryService] = None,
                 memory: Optional[MemoryService] = None,
                 session_rag: Optional[SessionRAGService] = None,
                 memory_enabled: bool = True):
        self.window = window
        self.summaries = summaries
        self.memory = memory
        self.session_rag = session_rag
        self.memory_enabled = memory_enabled

    @staticmethod
    def _context_pair(message_id: str, ack_id: str, text: str, ack: str, timestamp: float) -> List[ConversationMessage]:
        return [
            ConversationMessage(id=message_id, role=USER_ROLE, text=text, timestamp=timestamp),
            ConversationMessage(id=ack_id, role=ASSISTANT_ROLE, text=ack, timestamp=timestamp + 1),
        ]

    def _with_memory(self, user_id: str, session_id: str, history: Sequence[ConversationMessage],
                     query: str) -> List[ConversationMessage]:
        memories = self.memory.retrieve(user_id, query) if self.memory else []

        sessions = []
        if self.session_rag:
            try:
                sessions = self.session_rag.retrieve_relevant_sessions(user_id, session_id, query)
            except Exception as e:
                logger.warning(f'Session RAG unavailable, continuing without it: {e}')

        tail = self.summaries.build_context_with_summary(session_id, user_id, history)
        base = tail[0].timestamp if tail else time.time()

        prefix: List[ConversationMessage] = []
        if memories:
            prefix += self._context_pair(MEMORY_MESSAGE_ID, MEMORY_ACK_ID, MemoryService.format_memories_as_context(memories),
                                         MEMORY_ACK, base - 4)
        if sessions:
            prefix += self._context_pair(SESSION_RAG_MESSAGE_ID, SESSION_RAG_ACK_ID,
                                         SessionRAGService.format_sessions_as_context(sessions), SESSION_RAG_ACK, base - 2)

        logger.debug(f'Context built: [Memories: {len(memories)}] + [Sessions: {len(sessions)}] + [Current: {len(tail)}]')
        return prefix + tail

    def build_history_context(self,
                              user_id: Optional[str],
                              session_id: Optional[str],
                              history: Sequence[ConversationMessage],
                              query: str,
                              is_temporary: bool = False,
                              system_instruction_tokens: int = 0) -> Tuple[List[ConversationMessage], str]:
        """
        Build the context that precedes the new user turn.

        Args:
            user_id: Authenticated user ID (None for guests)
            session_id: Persistent session ID (None for unsaved sessions)
            history: Prior messages of the session, chronological
            query: Text of the new user turn, used for retrieval
            is_temporary: Ephemeral session that must not touch persistent state
            system_instruction_tokens: Token cost of the system instruction

        Returns:
            Tuple of (ordered context messages, tier that produced them)
        """
        if user_id and session_id and not is_temporary and self.summaries:
            if self.memory_enabled and (self.memory or self.session_rag):
                try:
                    return self._with_memory(user_id, session_id, history, query), TIER_MEMORY
                except Exception as e:
                    logger.warning(f'Memory context failed, falling back to summary: {e}')

            try:
                return self.summaries.build_context_with_summary(session_id, user_id, history), TIER_SUMMARY
            except Exception as e:
                logger.warning(f'Summary context failed, falling back to sliding window: {e}')

        window = self.window.build(history, system_instruction_tokens)
        return window.messages, TIER_WINDOW

    def assemble(self,
                 user_id: Optional[str],
                 session_id: Optional[str],
                 history: Sequence[ConversationMessage],
                 query: str,
                 attachments: Sequence[Attachment] = (),
                 is_temporary: bool = False,
                 system_instruction: str = '',
                 message_id: Optional[str] = None) -> Tuple[List[ConversationMessage], str]:
        """
        Assemble the full message sequence for one completion call.

        Args:
            user_id: Authenticated user ID (None for guests)
            session_id: Persistent session ID
            history: Prior messages of the session, chronological
            query: Text of the new user turn
            attachments: Attachments of the new user turn
            is_temporary: Ephemeral session
            system_instruction: System instruction, counted against the window budget
            message_id: ID for the new user turn (generated if None)

        Returns:
            Tuple of (ordered messages ending with the new user turn, context tier)
        """
        system_tokens = self.window.estimator.estimate(system_instruction) if system_instruction else 0
        context, tier = self.build_history_context(user_id, session_id, history, query, is_temporary, system_tokens)

        user_turn = ConversationMessage(id=message_id or str(uuid.uuid4()),
                                        role=USER_ROLE,
                                        text=query,
                                        timestamp=time.time(),
                                        attachments=tuple(attachments))
        return context + [user_turn], tier
