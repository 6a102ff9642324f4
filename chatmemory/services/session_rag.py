"""
Session RAG: retrieve summaries of the user's other sessions that relate to the current query.
"""

from datetime import datetime
from typing import List, Optional, Sequence

from ..models.core import SessionSummaryMatch
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import MemoryConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import SUMMARY_INDEX, OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import format_absolute_date, parse_datetime, relative_time_label

logger = get_logger(__name__)

SESSION_RAG_MESSAGE_ID = 'session-rag-context'
SESSION_RAG_ACK_ID = 'session-rag-context-ack'
SESSION_RAG_HEADER = '[Relevant context from past conversations]'
SESSION_RAG_FOOTER = '[End of past context]'
SESSION_RAG_ACK = "I see the context from our past conversations. I'll reference this as needed."


class SessionRAGError(Exception):
    """Custom exception for session RAG errors."""
    pass


class SessionRAGService:
    """Similarity search over the user's session summaries."""

    def __init__(self, config: MemoryConfig, store: OpenSearchClient, embed: BedrockEmbed):
        self.config = config
        self.store = store
        self.embed = embed

    def _recent_session_ids(self, user_id: str) -> List[str]:
        results = self.store.search_documents(user_id,
                                              index_type=SUMMARY_INDEX,
                                              filters=[{
                                                  'term': {
                                                      'embedding_model': self.embed.model_identity
                                                  }
                                              }],
                                              sort=[{
                                                  'updated_at': {
                                                      'order': 'desc'
                                                  }
                                              }],
                                              size=self.config.max_sessions_to_search)
        return [result['document'].get('session_id', result['id']) for result in results]

    def retrieve_relevant_sessions(self,
                                   user_id: str,
                                   exclude_session_id: Optional[str],
                                   query: str,
                                   limit: Optional[int] = None) -> List[SessionSummaryMatch]:
        """
        Find past sessions whose summaries are similar to the query.

        Only the max_sessions_to_search most recently updated summaries are
        candidates. The current session is never returned.

        Args:
            user_id: Owner of the sessions
            exclude_session_id: Current session ID
            query: Query text, usually the new user message
            limit: Maximum number of matches (uses config default if None)

        Returns:
            Matches ordered by similarity, best first

        Raises:
            SessionRAGError: If embedding or search fails
        """
        limit = limit or self.config.max_sessions_to_retrieve
        if not query or not query.strip():
            return []

        try:
            candidates = self._recent_session_ids(user_id)
            if not candidates:
                return []

            query_vector = self.embed.embed_query(query)
            results = self.store.vector_search(query_vector=query_vector,
                                               user_id=user_id,
                                               top_k=limit + 1,
                                               index_type=SUMMARY_INDEX,
                                               min_similarity=self.config.session_rag_threshold,
                                               filters=[{
                                                   'terms': {
                                                       'session_id': candidates
                                                   }
                                               }, {
                                                   'term': {
                                                       'embedding_model': self.embed.model_identity
                                                   }
                                               }])
        except (BedrockEmbedError, OpenSearchError) as e:
            logger.error(f'Session RAG search failed for user {user_id}: {e}')
            raise SessionRAGError(f'Session retrieval failed: {e}')

        matches = []
        for result in results:
            doc = result['document']
            session_id = doc.get('session_id', result['id'])
            if session_id == exclude_session_id:
                continue
            matches.append(
                SessionSummaryMatch(session_id=session_id,
                                    summary_text=doc.get('summary_text', ''),
                                    similarity=result['similarity'],
                                    updated_at=parse_datetime(doc.get('updated_at'))))

        logger.debug(f'Session RAG matched {len(matches[:limit])} of {len(candidates)} recent sessions')
        return matches[:limit]

    @staticmethod
    def format_sessions_as_context(sessions: Sequence[SessionSummaryMatch], now: Optional[datetime] = None) -> str:
        """Render matches with relative and absolute dates between header and footer markers."""
        if not sessions:
            return ''

        blocks = []
        for session in sessions:
            label = relative_time_label(session.updated_at, now)
            blocks.append(f'From {label} ({format_absolute_date(session.updated_at)}):\n"{session.summary_text}"')

        joined = '\n\n'.join(blocks)
        return f'{SESSION_RAG_HEADER}\n{joined}\n{SESSION_RAG_FOOTER}'
