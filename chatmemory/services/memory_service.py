"""
Memory Service for durable, user-scoped facts remembered across sessions.
"""

import hashlib
from typing import Dict, List, Optional, Sequence

from ..models.core import (ASSISTANT_ROLE, CATEGORY_PRIORITY, USER_ROLE, ConversationMessage, ExtractedFact,
                           MemoryCategory, UserMemoryFact, format_transcript)
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import MemoryConfig
from ..utils.json_utils import parse_json_object
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import MEMORY_INDEX, OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import parse_datetime, utc_now
from .context_window import valid_messages

logger = get_logger(__name__)

MEMORY_MESSAGE_ID = 'cross-session-memory'
MEMORY_ACK_ID = 'cross-session-memory-ack'
MEMORY_CONTEXT_HEADER = '[Remembered facts about the user from previous conversations]'
MEMORY_CONTEXT_FOOTER = '[End of remembered facts]'
MEMORY_ACK = "I'll keep these details about you in mind."

EXTRACTION_TEMPERATURE = 0.1

FACT_EXTRACTION_PROMPT = """You are a memory extraction system. Read the conversation and extract facts about the user that will still be true in future, unrelated conversations.

Extract only durable facts:
- Identity and background (job, location, languages, family)
- Stable preferences and dislikes
- Long-running interests and hobbies
- Skills and technical stack
- Ongoing projects and goals

Do NOT extract:
- Transient state ("is tired today", "is waiting for a build")
- Questions the user asked or tasks requested in this chat
- Anything said by the assistant about itself
- Guesses that the user did not state or clearly imply

Always write each fact as one short sentence with "User" as the subject (e.g. "User is a backend engineer"), never the user's name.

Categories: personal, preference, interest, technical, project, general.
Confidence: 0.0 to 1.0, how certain it is that the fact is stated and durable.

Return a JSON object with this exact format:
```json
{
  "facts": [
    {"text": "User ...", "category": "personal|preference|interest|technical|project|general", "confidence": 0.9}
  ]
}
```
Return {"facts": []} if there is nothing durable to remember."""


class MemoryServiceError(Exception):
    """Custom exception for memory service errors."""
    pass


def fact_document_id(user_id: str, fact_text: str) -> str:
    """Deterministic document ID for (user, exact fact text)."""
    normalized = ' '.join(fact_text.split()).lower()
    return hashlib.sha256(f'{user_id}\n{normalized}'.encode('utf-8')).hexdigest()


def _to_fact(doc_id: str, doc: Dict, similarity: Optional[float] = None) -> UserMemoryFact:
    last_accessed = doc.get('last_accessed_at')
    return UserMemoryFact(id=doc.get('id', doc_id),
                          user_id=doc.get('user_id', ''),
                          fact_text=doc.get('fact_text', ''),
                          category=MemoryCategory.parse(doc.get('category')),
                          confidence=float(doc.get('confidence', 0.0)),
                          created_at=parse_datetime(doc.get('created_at')),
                          updated_at=parse_datetime(doc.get('updated_at')),
                          source_session_id=doc.get('source_session_id'),
                          source_message_id=doc.get('source_message_id'),
                          access_count=int(doc.get('access_count', 0)),
                          last_accessed_at=parse_datetime(last_accessed) if last_accessed else None,
                          is_pinned=bool(doc.get('is_pinned', False)),
                          is_deleted=bool(doc.get('is_deleted', False)),
                          similarity=similarity)


class MemoryService:
    """Extract, deduplicate, store and retrieve cross-session user facts."""

    def __init__(self, config: MemoryConfig, store: OpenSearchClient, llm: BedrockLLM, embed: BedrockEmbed):
        self.config = config
        self.store = store
        self.llm = llm
        self.embed = embed

    def _live_filters(self) -> List[Dict]:
        return [{'term': {'embedding_model': self.embed.model_identity}}]

    @staticmethod
    def _not_deleted() -> List[Dict]:
        return [{'term': {'is_deleted': True}}]

    # Extraction

    def extract_facts(self, recent_messages: Sequence[ConversationMessage]) -> List[ExtractedFact]:
        """
        Ask the extraction model for durable facts about the user.

        Args:
            recent_messages: Recent conversation messages, oldest first

        Returns:
            Facts at or above the minimum confidence; empty if fewer than two
            valid messages were given or the response could not be parsed

        Raises:
            MemoryServiceError: If the LLM call fails
        """
        messages = valid_messages(recent_messages)
        if len(messages) < 2:
            logger.debug('Need at least one exchange for fact extraction')
            return []

        llm_messages = [{
            'role': USER_ROLE,
            'content': [{
                'text': f'Extract durable facts about the user from this conversation:\n\n{format_transcript(messages)}'
            }]
        }, {
            'role': ASSISTANT_ROLE,
            'content': [{
                'text': '```json'
            }]
        }]

        try:
            response, _ = self.llm.generate_response(messages=llm_messages,
                                                     system_prompt=FACT_EXTRACTION_PROMPT,
                                                     temperature=EXTRACTION_TEMPERATURE,
                                                     stop_sequences=['```'],
                                                     model_id=self.config.extraction_model_id)
        except BedrockLLMError as e:
            logger.error(f'LLM error during fact extraction: {e}')
            raise MemoryServiceError(f'Fact extraction failed: {e}')

        parsed = parse_json_object(response)
        if parsed is None or not isinstance(parsed.get('facts'), list):
            logger.warning('Fact extraction returned no parsable facts object')
            return []

        facts = []
        for item in parsed['facts']:
            if not isinstance(item, dict):
                continue

            text = str(item.get('text', '')).strip()
            confidence = item.get('confidence')
            if not text or isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
                continue
            if confidence < self.config.min_confidence:
                logger.debug(f'Dropping low-confidence fact ({confidence}): {text}')
                continue

            facts.append(ExtractedFact(text=text,
                                       category=MemoryCategory.parse(item.get('category')),
                                       confidence=min(float(confidence), 1.0)))

        logger.debug(f'Extracted {len(facts)} facts')
        return facts

    # Storage

    def _find_duplicate(self, user_id: str, embedding: List[float]) -> Optional[Dict]:
        matches = self.store.vector_search(query_vector=embedding,
                                           user_id=user_id,
                                           top_k=1,
                                           index_type=MEMORY_INDEX,
                                           min_similarity=self.config.deduplication_threshold,
                                           filters=self._live_filters(),
                                           must_not=self._not_deleted())
        return matches[0] if matches else None

    def store_fact(self,
                   user_id: str,
                   fact: ExtractedFact,
                   session_id: Optional[str] = None,
                   message_id: Optional[str] = None) -> str:
        """
        Store one fact with near-duplicate detection.

        Args:
            user_id: Owner of the fact
            fact: Extracted fact
            session_id: Session the fact came from
            message_id: Message the fact came from

        Returns:
            'inserted', 'updated' or 'skipped'

        Raises:
            MemoryServiceError: If embedding or the store fails
        """
        try:
            embedding = self.embed.embed_document(fact.text)
            duplicate = self._find_duplicate(user_id, embedding)
            now = utc_now().isoformat()

            if duplicate:
                stored_confidence = float(duplicate['document'].get('confidence', 0.0))
                if fact.confidence <= stored_confidence:
                    logger.debug(f'Skipping duplicate fact (similarity {duplicate["similarity"]:.3f}, '
                                 f'confidence {fact.confidence} <= {stored_confidence}): {fact.text}')
                    return 'skipped'

                self.store.update_document(duplicate['id'], {
                    'fact_text': fact.text,
                    'confidence': fact.confidence,
                    'embedding': embedding,
                    'embedding_model': self.embed.model_identity,
                    'updated_at': now
                },
                                           index_type=MEMORY_INDEX)
                logger.debug(f'Updated fact {duplicate["id"]} with higher confidence {fact.confidence}: {fact.text}')
                return 'updated'

            doc_id = fact_document_id(user_id, fact.text)
            document = {
                'id': doc_id,
                'user_id': user_id,
                'fact_text': fact.text,
                'category': fact.category.value,
                'confidence': fact.confidence,
                'embedding': embedding,
                'embedding_model': self.embed.model_identity,
                'source_session_id': session_id,
                'source_message_id': message_id,
                'access_count': 0,
                'is_pinned': False,
                'is_deleted': False,
                'created_at': now,
                'updated_at': now
            }

            if not self.store.index_document(document, doc_id=doc_id, index_type=MEMORY_INDEX, create_only=True):
                logger.debug(f'Fact text already stored for user {user_id}: {fact.text}')
                return 'skipped'

            logger.debug(f'Inserted fact {doc_id}: {fact.text}')
            return 'inserted'

        except (BedrockEmbedError, OpenSearchError) as e:
            logger.error(f'Error storing fact for user {user_id}: {e}')
            raise MemoryServiceError(f'Fact storage failed: {e}')

    def store_facts(self,
                    user_id: str,
                    facts: Sequence[ExtractedFact],
                    session_id: Optional[str] = None,
                    message_id: Optional[str] = None) -> Dict[str, int]:
        """
        Store facts one by one; a failing fact does not stop the others.

        Returns:
            Counts per outcome ('inserted', 'updated', 'skipped', 'failed')
        """
        outcome = {'inserted': 0, 'updated': 0, 'skipped': 0, 'failed': 0}
        for fact in facts:
            try:
                outcome[self.store_fact(user_id, fact, session_id, message_id)] += 1
            except MemoryServiceError as e:
                logger.warning(f'Fact not stored: {e}')
                outcome['failed'] += 1

        logger.info(f'Stored facts for user {user_id}: {outcome}')
        return outcome

    # Retrieval

    def retrieve(self, user_id: str, query: str, limit: Optional[int] = None) -> List[UserMemoryFact]:
        """
        Retrieve facts relevant to a query, most similar first.

        Never raises: any failure yields an empty list.

        Args:
            user_id: Owner of the facts
            query: Query text, usually the new user message
            limit: Maximum number of facts (uses config default if None)

        Returns:
            List of UserMemoryFact with similarity set
        """
        limit = limit or self.config.max_memories_to_retrieve
        if not query or not query.strip():
            return []

        try:
            query_vector = self.embed.embed_query(query)
            results = self.store.vector_search(query_vector=query_vector,
                                               user_id=user_id,
                                               top_k=limit,
                                               index_type=MEMORY_INDEX,
                                               min_similarity=self.config.retrieval_threshold,
                                               filters=self._live_filters(),
                                               must_not=self._not_deleted())
            facts = [_to_fact(result['id'], result['document'], result['similarity']) for result in results[:limit]]
        except Exception as e:
            logger.warning(f'Memory retrieval failed for user {user_id}: {e}')
            return []

        if facts:
            try:
                self.store.record_access([fact.id for fact in facts], utc_now().isoformat(), index_type=MEMORY_INDEX)
            except Exception as e:
                logger.debug(f'Could not record memory access: {e}')

        logger.debug(f'Retrieved {len(facts)} memories for user {user_id}')
        return facts

    @staticmethod
    def format_memories_as_context(memories: Sequence[UserMemoryFact]) -> str:
        """Render facts grouped by category priority between header and footer markers."""
        if not memories:
            return ''

        order = {category: index for index, category in enumerate(CATEGORY_PRIORITY)}
        ordered = sorted(memories, key=lambda m: order.get(m.category, len(order)))
        facts = '\n'.join(f'- {memory.fact_text}' for memory in ordered)
        return f'{MEMORY_CONTEXT_HEADER}\n{facts}\n{MEMORY_CONTEXT_FOOTER}'

    # Management

    def list_memories(self, user_id: str, limit: int = 500) -> List[UserMemoryFact]:
        """
        List a user's non-deleted facts, newest first.

        Raises:
            MemoryServiceError: If the store cannot be queried
        """
        try:
            results = self.store.search_documents(user_id,
                                                  index_type=MEMORY_INDEX,
                                                  must_not=self._not_deleted(),
                                                  sort=[{
                                                      'created_at': {
                                                          'order': 'desc'
                                                      }
                                                  }],
                                                  size=limit)
        except OpenSearchError as e:
            logger.error(f'Error listing memories for user {user_id}: {e}')
            raise MemoryServiceError(f'Memory listing failed: {e}')

        return [_to_fact(result['id'], result['document']) for result in results]

    def get_memory(self, memory_id: str) -> Optional[UserMemoryFact]:
        try:
            doc = self.store.get_document(memory_id, index_type=MEMORY_INDEX)
        except OpenSearchError as e:
            raise MemoryServiceError(f'Memory lookup failed: {e}')
        return _to_fact(memory_id, doc) if doc else None

    def _update(self, memory_id: str, fields: Dict) -> bool:
        try:
            return self.store.update_document(memory_id, fields, index_type=MEMORY_INDEX)
        except OpenSearchError as e:
            logger.error(f'Error updating memory {memory_id}: {e}')
            raise MemoryServiceError(f'Memory update failed: {e}')

    def delete_memory(self, memory_id: str) -> bool:
        """Soft-delete a fact; it disappears from retrieval and deduplication."""
        deleted = self._update(memory_id, {'is_deleted': True, 'updated_at': utc_now().isoformat()})
        if deleted:
            logger.info(f'Soft-deleted memory {memory_id}')
        return deleted

    def edit_memory(self, memory_id: str, new_text: str) -> bool:
        """
        Replace the text of a fact and regenerate its embedding.

        Args:
            memory_id: Fact ID
            new_text: Replacement text

        Returns:
            True if the fact was updated

        Raises:
            MemoryServiceError: If the text is empty or embedding/store fails
        """
        new_text = (new_text or '').strip()
        if not new_text:
            raise MemoryServiceError('Memory text cannot be empty')

        try:
            embedding = self.embed.embed_document(new_text)
        except BedrockEmbedError as e:
            logger.error(f'Error embedding edited memory {memory_id}: {e}')
            raise MemoryServiceError(f'Memory edit failed: {e}')

        return self._update(
            memory_id, {
                'fact_text': new_text,
                'embedding': embedding,
                'embedding_model': self.embed.model_identity,
                'updated_at': utc_now().isoformat()
            })

    def toggle_pin(self, memory_id: str) -> Optional[bool]:
        """
        Flip the pinned flag of a fact.

        Returns:
            The new pinned state, or None if the fact does not exist
        """
        memory = self.get_memory(memory_id)
        if memory is None:
            logger.warning(f'Memory {memory_id} not found for pin toggle')
            return None

        pinned = not memory.is_pinned
        self._update(memory_id, {'is_pinned': pinned})
        return pinned

    def clear_all_memories(self, user_id: str) -> int:
        """Soft-delete every fact of a user and return how many were affected."""
        try:
            count = self.store.update_by_query(user_id, {
                'is_deleted': True,
                'updated_at': utc_now().isoformat()
            },
                                               index_type=MEMORY_INDEX)
        except OpenSearchError as e:
            logger.error(f'Error clearing memories for user {user_id}: {e}')
            raise MemoryServiceError(f'Memory clear failed: {e}')

        logger.info(f'Cleared {count} memories for user {user_id}')
        return count

    # Background processing

    def process_conversation_for_memories(self, user_id: str, session_id: str,
                                          history: Sequence[ConversationMessage]) -> Dict[str, int]:
        """
        Extract and store facts from the latest exchange of a conversation.

        Runs as a background job after a completed turn; only the last
        extraction_window_size valid messages are analysed.

        Returns:
            Storage outcome counts (all zero when nothing was extracted)
        """
        recent = valid_messages(history)[-self.config.extraction_window_size:]
        if len(recent) < 2:
            return {'inserted': 0, 'updated': 0, 'skipped': 0, 'failed': 0}

        logger.debug(f'Analyzing {len(recent)} messages for memory extraction (session {session_id})')
        facts = self.extract_facts(recent)
        if not facts:
            logger.debug('No new facts extracted')
            return {'inserted': 0, 'updated': 0, 'skipped': 0, 'failed': 0}

        return self.store_facts(user_id, facts, session_id=session_id)
