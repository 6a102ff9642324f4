"""
Summary Service for incremental, persisted session summaries.
"""

import uuid
from typing import List, Optional, Sequence

from ..models.core import (ASSISTANT_ROLE, USER_ROLE, ConversationMessage, SessionSummary, format_transcript)
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import SummarizationConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import SUMMARY_INDEX, OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import parse_datetime, utc_now
from .context_window import valid_messages
from .token_estimator import TokenEstimator

logger = get_logger(__name__)

SUMMARY_MESSAGE_ID = 'context-summary'
SUMMARY_ACK_ID = 'context-summary-ack'
SUMMARY_HEADER = '[Previous conversation summary]'
SUMMARY_FOOTER = '[End of summary - conversation continues below]'
SUMMARY_ACK = 'I understand the context from our previous conversation. Let me continue helping you.'

INITIAL_SUMMARY_PROMPT = """You compress chat transcripts into a running summary that another assistant will read instead of the original messages.

Write ONE paragraph of at most {max_words} words. Keep:
- Who the user is and what they are trying to accomplish
- Decisions made, answers given, and constraints agreed on
- Names, numbers, code identifiers and other specifics that later turns may refer to
- Open questions or tasks still in progress

Drop greetings, filler and anything superseded later in the conversation. Write in the third person ("The user...", "The assistant...").
Output only the summary paragraph."""

INCREMENTAL_SUMMARY_PROMPT = """You maintain a running summary of a long chat so another assistant can continue it.

Merge the existing summary and the new messages into ONE updated paragraph of at most {max_words} words.
Rewrite rather than append: fold new facts into the existing narrative, replace anything the new messages supersede, and drop details that no longer matter.
Keep names, numbers, code identifiers, decisions and open tasks. Write in the third person ("The user...", "The assistant...").
Output only the updated summary paragraph."""


class SummaryError(Exception):
    """Custom exception for summary errors."""
    pass


class SummaryService:
    """Token-triggered incremental summarization with persistence.

    Per session the state moves from no summary to version 1 on the first
    threshold breach, then to version N+1 on every later breach that has new
    messages to fold. The newest recent_messages_to_keep messages are never
    folded.
    """

    def __init__(self, config: SummarizationConfig, store: OpenSearchClient, llm: BedrockLLM, embed: BedrockEmbed,
                 estimator: TokenEstimator):
        self.config = config
        self.store = store
        self.llm = llm
        self.embed = embed
        self.estimator = estimator

    # Persistence

    def get_summary(self, session_id: str) -> Optional[SessionSummary]:
        """
        Fetch the summary of a session.

        Args:
            session_id: Session ID

        Returns:
            SessionSummary, or None if the session has never been summarized

        Raises:
            SummaryError: If the store cannot be read
        """
        try:
            doc = self.store.get_document(session_id, index_type=SUMMARY_INDEX)
        except OpenSearchError as e:
            logger.error(f'Error fetching summary for session {session_id}: {e}')
            raise SummaryError(f'Summary lookup failed: {e}')

        if not doc:
            return None

        return SessionSummary(id=doc.get('id', session_id),
                              session_id=doc.get('session_id', session_id),
                              user_id=doc.get('user_id', ''),
                              summary_text=doc.get('summary_text', ''),
                              messages_summarized_count=int(doc.get('messages_summarized_count', 0)),
                              version=int(doc.get('version', 1)),
                              updated_at=parse_datetime(doc.get('updated_at')),
                              created_at=parse_datetime(doc.get('created_at')),
                              embedding=doc.get('embedding'))

    def save_summary(self,
                     session_id: str,
                     user_id: str,
                     summary_text: str,
                     messages_summarized_count: int,
                     existing: Optional[SessionSummary] = None) -> SessionSummary:
        """
        Create or replace the session summary, re-embedding it for session search.

        An embedding failure is logged and the summary is stored without a
        vector, which only makes it unsearchable.

        Args:
            session_id: Session ID (one summary per session)
            user_id: Owner of the session
            summary_text: New summary text
            messages_summarized_count: Number of valid messages folded so far
            existing: Current summary if the caller already fetched it

        Returns:
            The persisted SessionSummary

        Raises:
            SummaryError: If the summary cannot be persisted
        """
        if existing is None:
            existing = self.get_summary(session_id)

        embedding = None
        try:
            embedding = self.embed.embed_document(summary_text)
            logger.debug(f'Generated embedding for session summary {session_id}')
        except BedrockEmbedError as e:
            logger.warning(f'Failed to embed summary for session {session_id}, saving without embedding: {e}')

        now = utc_now()
        summary = SessionSummary(id=existing.id if existing else str(uuid.uuid4()),
                                 session_id=session_id,
                                 user_id=user_id or (existing.user_id if existing else ''),
                                 summary_text=summary_text,
                                 messages_summarized_count=messages_summarized_count,
                                 version=existing.version + 1 if existing else 1,
                                 updated_at=now,
                                 created_at=existing.created_at if existing else now,
                                 embedding=embedding)

        document = {
            'id': summary.id,
            'session_id': session_id,
            'user_id': summary.user_id,
            'summary_text': summary_text,
            'messages_summarized_count': messages_summarized_count,
            'version': summary.version,
            'created_at': summary.created_at.isoformat(),
            'updated_at': summary.updated_at.isoformat()
        }
        if embedding:
            document['embedding'] = embedding
            document['embedding_model'] = self.embed.model_identity

        try:
            self.store.index_document(document, doc_id=session_id, index_type=SUMMARY_INDEX)
        except OpenSearchError as e:
            logger.error(f'Error saving summary for session {session_id}: {e}')
            raise SummaryError(f'Summary save failed: {e}')

        logger.info(f'Saved summary v{summary.version} for session {session_id} ({messages_summarized_count} messages folded)')
        return summary

    def delete_summary(self, session_id: str) -> bool:
        """Delete the summary of a deleted session."""
        try:
            return self.store.delete_document(session_id, index_type=SUMMARY_INDEX)
        except OpenSearchError as e:
            logger.error(f'Error deleting summary for session {session_id}: {e}')
            raise SummaryError(f'Summary delete failed: {e}')

    # Summarization

    def _exceeds_threshold(self, summary: Optional[SessionSummary], messages: List[ConversationMessage]) -> bool:
        folded = summary.messages_summarized_count if summary else 0
        new_messages = messages[folded:]
        if not new_messages:
            return False

        total = self.estimator.count_messages(new_messages, force_precise=True)
        if summary:
            total += self.estimator.count_text(summary.summary_text, force_precise=True)
        return total >= self.config.threshold_tokens

    def needs_summarization(self, session_id: str, history: Sequence[ConversationMessage]) -> bool:
        """
        Check whether summary text plus unfolded messages reach the threshold.

        Args:
            session_id: Session ID
            history: Full chronological history

        Returns:
            True if summarization should run
        """
        return self._exceeds_threshold(self.get_summary(session_id), valid_messages(history))

    def generate_summary(self, messages: Sequence[ConversationMessage], existing_summary: Optional[str] = None) -> str:
        """
        Ask the summarization model for a new or merged summary.

        Args:
            messages: Messages to fold
            existing_summary: Current summary text to merge with, if any

        Returns:
            Summary text

        Raises:
            SummaryError: If generation fails or returns nothing
        """
        max_words = max(50, int(self.config.max_summary_tokens * 0.75))
        transcript = format_transcript(valid_messages(messages))

        if existing_summary:
            system_prompt = INCREMENTAL_SUMMARY_PROMPT.format(max_words=max_words)
            user_text = f'## Existing summary\n{existing_summary}\n\n## New messages\n{transcript}'
        else:
            system_prompt = INITIAL_SUMMARY_PROMPT.format(max_words=max_words)
            user_text = f'## Conversation\n{transcript}'

        try:
            response, _ = self.llm.generate_response(messages=[{
                'role': 'user',
                'content': [{
                    'text': user_text
                }]
            }],
                                                     system_prompt=system_prompt,
                                                     max_tokens=self.config.max_summary_tokens,
                                                     temperature=self.config.temperature,
                                                     model_id=self.config.model_id)
        except BedrockLLMError as e:
            logger.error(f'LLM error during summarization: {e}')
            raise SummaryError(f'Summarization failed: {e}')

        summary_text = ' '.join(response.split())
        if not summary_text:
            raise SummaryError('Summarization returned empty text')

        max_chars = self.config.max_summary_tokens * 4
        if len(summary_text) > max_chars:
            summary_text = summary_text[:max_chars] + '...'

        return summary_text

    def summarize_if_needed(self, session_id: str, user_id: str,
                            history: Sequence[ConversationMessage]) -> Optional[SessionSummary]:
        """
        Fold messages older than the keep-fresh window into the summary when the threshold is reached.

        Returns the existing summary unchanged when there is nothing new to
        fold, so repeated calls without new messages are no-ops.

        Args:
            session_id: Session ID
            user_id: Owner of the session
            history: Full chronological history

        Returns:
            Current SessionSummary, or None if the session has none
        """
        messages = valid_messages(history)
        summary = self.get_summary(session_id)

        if not self._exceeds_threshold(summary, messages):
            return summary

        already_folded = summary.messages_summarized_count if summary else 0
        cutoff = max(0, len(messages) - self.config.recent_messages_to_keep)
        to_fold = messages[already_folded:cutoff]

        if not to_fold:
            logger.debug(f'No new messages to summarize for session {session_id}')
            return summary

        logger.info(f'Summarizing {len(to_fold)} messages for session {session_id} '
                    f'(keeping last {self.config.recent_messages_to_keep})')

        summary_text = self.generate_summary(to_fold, summary.summary_text if summary else None)
        return self.save_summary(session_id, user_id, summary_text, cutoff, existing=summary)

    def build_context_with_summary(self, session_id: str, user_id: str,
                                   history: Sequence[ConversationMessage]) -> List[ConversationMessage]:
        """
        Summarize if needed, then return [summary, ack] + unfolded messages.

        Without a summary all valid messages are returned and no synthetic
        messages are added.

        Args:
            session_id: Session ID
            user_id: Owner of the session
            history: Full chronological history

        Returns:
            Ordered context messages
        """
        summary = self.summarize_if_needed(session_id, user_id, history)
        messages = valid_messages(history)

        if not summary:
            return messages

        recent = messages[summary.messages_summarized_count:]
        if not recent:
            # Synopses fold every message; fall back to the full history
            return messages

        timestamp = recent[0].timestamp - 1
        summary_message = ConversationMessage(id=SUMMARY_MESSAGE_ID,
                                              role=USER_ROLE,
                                              text=f'{SUMMARY_HEADER}\n{summary.summary_text}\n{SUMMARY_FOOTER}',
                                              timestamp=timestamp)
        ack_message = ConversationMessage(id=SUMMARY_ACK_ID, role=ASSISTANT_ROLE, text=SUMMARY_ACK, timestamp=timestamp)

        logger.debug(f'Context built: [Summary v{summary.version}] + {len(recent)} recent messages')
        return [summary_message, ack_message] + recent
