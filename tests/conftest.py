"""Shared fixtures and in-memory fakes for the pipeline tests."""

import copy
import math
import uuid
from typing import Any, Callable, Dict, List, Optional

import pytest

from chatmemory.models.core import ASSISTANT_ROLE, USER_ROLE, ConversationMessage
from chatmemory.services.token_estimator import TokenEstimator
from chatmemory.utils.bedrock_embed import BedrockEmbedError
from chatmemory.utils.bedrock_llm import BedrockLLMError
from chatmemory.utils.config import (BedrockLLMConfig, ContextConfig, MemoryConfig, SummarizationConfig, SynopsisConfig,
                                     TokenEstimationConfig)
from chatmemory.utils.opensearch_client import OpenSearchError


class FakeLLM:
    """Scripted stand-in for BedrockLLM."""

    def __init__(self, responses=None, token_count: Optional[Callable[[str], int]] = None):
        self.responses = list(responses or [])
        self.default_response = 'The user and the assistant discussed the project.'
        self.calls: List[Dict[str, Any]] = []
        self.stream_scripts: List[list] = []
        self.stream_calls: List[Dict[str, Any]] = []
        self.count_calls: List[str] = []
        self.token_count = token_count

    def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None, model_id=None):
        self.calls.append({
            'messages': messages,
            'system_prompt': system_prompt,
            'max_tokens': max_tokens,
            'temperature': temperature,
            'stop_sequences': stop_sequences,
            'model_id': model_id
        })
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response, None
        return self.default_response, None

    def stream_response(self, messages, system_prompt, temperature=None, thinking_level=None):
        self.stream_calls.append({'messages': messages, 'system_prompt': system_prompt, 'thinking_level': thinking_level})
        script = self.stream_scripts.pop(0) if self.stream_scripts else []
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item

    def count_tokens(self, text, model_id=None):
        self.count_calls.append(text)
        if self.token_count is None:
            raise BedrockLLMError('CountTokens unavailable')
        return self.token_count(text)


class FakeEmbed:
    """Deterministic embeddings: each distinct text gets its own basis vector unless given explicitly."""

    def __init__(self, dimension: int = 64, vectors: Optional[Dict[str, List[float]]] = None, model_id: str = 'fake-embed'):
        self.dimension = dimension
        self.model_id = model_id
        self.vectors = dict(vectors or {})
        self.fail = False
        self.calls: List[str] = []
        self._assigned: Dict[str, int] = {}

    @property
    def model_identity(self) -> str:
        return f'{self.model_id}:{self.dimension}'

    def embed(self, text: str, task_type: str = 'search_document') -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise BedrockEmbedError('embedding service down')
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty text')
        if text in self.vectors:
            return list(self.vectors[text])

        index = self._assigned.setdefault(text, len(self._assigned) % self.dimension)
        vector = [0.0] * self.dimension
        vector[index] = 1.0
        return vector

    def embed_document(self, text: str) -> List[float]:
        return self.embed(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        return self.embed(text, 'search_query')


def _cosine(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def _matches(doc: Dict[str, Any], clause: Dict[str, Any]) -> bool:
    if 'term' in clause:
        return all(doc.get(field) == value for field, value in clause['term'].items())
    if 'terms' in clause:
        return all(doc.get(field) in values for field, values in clause['terms'].items())
    raise AssertionError(f'Unsupported clause {clause}')


class FakeStore:
    """In-memory replacement for OpenSearchClient with the same method surface."""

    def __init__(self):
        self.indices: Dict[str, Dict[str, Dict[str, Any]]] = {'summary': {}, 'memory': {}}
        self.fail = False
        self.access_log: List[str] = []

    def _check(self):
        if self.fail:
            raise OpenSearchError('store unavailable')

    def docs(self, index_type: str) -> Dict[str, Dict[str, Any]]:
        return self.indices[index_type]

    def create_index_if_not_exists(self, index_type='memory'):
        self._check()
        return 'exists'

    def index_document(self, document, doc_id=None, index_type='memory', create_only=False):
        self._check()
        doc_id = doc_id or str(uuid.uuid4())
        if create_only and doc_id in self.indices[index_type]:
            return False
        self.indices[index_type][doc_id] = copy.deepcopy(document)
        return True

    def get_document(self, doc_id, index_type='memory'):
        self._check()
        doc = self.indices[index_type].get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def update_document(self, doc_id, fields, index_type='memory'):
        self._check()
        if doc_id not in self.indices[index_type]:
            return False
        self.indices[index_type][doc_id].update(copy.deepcopy(fields))
        return True

    def record_access(self, doc_ids, accessed_at, index_type='memory'):
        self._check()
        for doc_id in doc_ids:
            doc = self.indices[index_type][doc_id]
            doc['access_count'] = doc.get('access_count', 0) + 1
            doc['last_accessed_at'] = accessed_at
            self.access_log.append(doc_id)

    def update_by_query(self, user_id, fields, index_type='memory'):
        self._check()
        count = 0
        for doc in self.indices[index_type].values():
            if doc.get('user_id') == user_id:
                doc.update(fields)
                count += 1
        return count

    def _select(self, user_id, index_type, filters, must_not):
        for doc_id, doc in self.indices[index_type].items():
            if doc.get('user_id') != user_id:
                continue
            if not all(_matches(doc, clause) for clause in filters or []):
                continue
            if any(_matches(doc, clause) for clause in must_not or []):
                continue
            yield doc_id, doc

    @staticmethod
    def _public(doc):
        return {key: copy.deepcopy(value) for key, value in doc.items() if key != 'embedding'}

    def vector_search(self, query_vector, user_id, top_k=20, index_type='memory', min_similarity=None, filters=None,
                      must_not=None):
        self._check()
        results = []
        for doc_id, doc in self._select(user_id, index_type, filters, must_not):
            if not doc.get('embedding'):
                continue
            similarity = _cosine(query_vector, doc['embedding'])
            if min_similarity is not None and similarity < min_similarity:
                continue
            results.append({'id': doc_id, 'score': (1 + similarity) / 2, 'similarity': similarity, 'document': self._public(doc)})

        results.sort(key=lambda r: r['similarity'], reverse=True)
        return results[:top_k]

    def search_documents(self, user_id, index_type='memory', filters=None, must_not=None, sort=None, size=100):
        self._check()
        hits = [{'id': doc_id, 'document': self._public(doc)} for doc_id, doc in self._select(user_id, index_type, filters, must_not)]
        for spec in reversed(sort or []):
            for field, options in spec.items():
                hits.sort(key=lambda h: h['document'].get(field) or '', reverse=options.get('order') == 'desc')
        return hits[:size]

    def delete_document(self, doc_id, index_type='memory'):
        self._check()
        return self.indices[index_type].pop(doc_id, None) is not None


def make_messages(count: int, text: str = 'hello there', start: float = 1_700_000_000.0) -> List[ConversationMessage]:
    """Alternating user/assistant messages, one second apart."""
    return [
        ConversationMessage(id=f'm{i}',
                            role=USER_ROLE if i % 2 == 0 else ASSISTANT_ROLE,
                            text=f'{text} {i}',
                            timestamp=start + i) for i in range(count)
    ]


@pytest.fixture
def token_config() -> TokenEstimationConfig:
    return TokenEstimationConfig(method='local',
                                 api_validation_frequency=10,
                                 use_api_before_summarization=True,
                                 cjk_tokens_per_char=1.0,
                                 latin_chars_per_token=4.0,
                                 attachment_overhead_tokens=258,
                                 attachment_bytes_per_token=1000,
                                 role_overhead_tokens=4)


@pytest.fixture
def context_config() -> ContextConfig:
    return ContextConfig(max_messages=50,
                         max_context_tokens=100000,
                         system_instruction_buffer=2000,
                         response_buffer=8000,
                         min_recent_messages=5)


@pytest.fixture
def summary_config() -> SummarizationConfig:
    return SummarizationConfig(threshold_tokens=50000,
                               recent_messages_to_keep=15,
                               max_summary_tokens=2000,
                               model_id='helper-model',
                               temperature=0.3)


@pytest.fixture
def memory_config() -> MemoryConfig:
    return MemoryConfig(enabled=True,
                        extraction_model_id='helper-model',
                        min_confidence=0.7,
                        deduplication_threshold=0.9,
                        retrieval_threshold=0.5,
                        max_memories_to_retrieve=10,
                        session_rag_threshold=0.6,
                        max_sessions_to_retrieve=5,
                        max_sessions_to_search=50,
                        extraction_window_size=10)


@pytest.fixture
def synopsis_config() -> SynopsisConfig:
    return SynopsisConfig(min_messages=2, max_output_tokens=200, idle_timeout_minutes=60, model_id='helper-model')


@pytest.fixture
def llm_config() -> BedrockLLMConfig:
    return BedrockLLMConfig(region='us-east-1',
                            model_id='chat-model',
                            max_tokens=1024,
                            temperature=0.7,
                            retry_attempts=3,
                            retry_delay=1.0,
                            max_retry_delay=30.0,
                            thinking_level='LOW',
                            thinking_budget_tokens=2048,
                            guardrail_id=None,
                            guardrail_version=None,
                            token_count_model_id='chat-model')


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fake_embed() -> FakeEmbed:
    return FakeEmbed()


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def estimator(token_config) -> TokenEstimator:
    return TokenEstimator(token_config)
