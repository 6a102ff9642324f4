"""
OpenSearch client wrapper for session summaries and user memory facts with vector similarity search.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConflictError, NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

SUMMARY_INDEX = 'summary'
MEMORY_INDEX = 'memory'


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def score_to_similarity(score: float) -> float:
    """Lucene cosinesimil scores are (1 + cosine) / 2; map back to cosine similarity."""
    return 2.0 * score - 1.0


def similarity_to_score(similarity: float) -> float:
    """Inverse of score_to_similarity, used for min_score thresholds."""
    return (1.0 + similarity) / 2.0


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None, index_sync_wait: float = 15.0):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built OpenSearch client (created from config if None)
            index_sync_wait: Seconds to wait after creating an index
        """
        self.config = config
        self.index_sync_wait = index_sync_wait

        if client is None:
            # Get AWS credentials and create auth
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                # Remove protocol if present
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)

        self.client = client
        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def _index(self, index_type: str) -> str:
        return f'{self.config.index_name}_{index_type}'

    def _vector_field(self) -> Dict[str, Any]:
        return {
            'type': 'knn_vector',
            'dimension': self.config.dimension,
            'method': {
                'name': 'hnsw',
                'space_type': 'cosinesimil',
                'engine': 'lucene'
            }
        }

    def _mappings(self, index_type: str) -> Dict[str, Any]:
        if index_type == SUMMARY_INDEX:
            properties = {
                'id': {'type': 'keyword'},
                'session_id': {'type': 'keyword'},
                'user_id': {'type': 'keyword'},
                'summary_text': {'type': 'text'},
                'messages_summarized_count': {'type': 'integer'},
                'version': {'type': 'integer'},
                'embedding': self._vector_field(),
                'embedding_model': {'type': 'keyword'},
                'created_at': {'type': 'date'},
                'updated_at': {'type': 'date'}
            }
        elif index_type == MEMORY_INDEX:
            properties = {
                'id': {'type': 'keyword'},
                'user_id': {'type': 'keyword'},
                'fact_text': {'type': 'text', 'fields': {'raw': {'type': 'keyword', 'ignore_above': 1024}}},
                'category': {'type': 'keyword'},
                'confidence': {'type': 'float'},
                'embedding': self._vector_field(),
                'embedding_model': {'type': 'keyword'},
                'source_session_id': {'type': 'keyword'},
                'source_message_id': {'type': 'keyword'},
                'access_count': {'type': 'integer'},
                'last_accessed_at': {'type': 'date'},
                'is_pinned': {'type': 'boolean'},
                'is_deleted': {'type': 'boolean'},
                'created_at': {'type': 'date'},
                'updated_at': {'type': 'date'}
            }
        else:
            raise OpenSearchError(f'Unknown index type: {index_type}')

        return {'mappings': {'properties': properties}, 'settings': {'index': {'knn': True}}}

    def create_index_if_not_exists(self, index_type: str = MEMORY_INDEX) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_type: Type of index (summary or memory)

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self._index(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._mappings(index_type))
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                if self.index_sync_wait:
                    logger.info(f'Waiting {self.index_sync_wait}s for index {index_name} sync-up...')
                    time.sleep(self.index_sync_wait)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def index_document(self, document: Dict[str, Any], doc_id: Optional[str] = None, index_type: str = MEMORY_INDEX,
                       create_only: bool = False) -> bool:
        """
        Index a document in OpenSearch.

        Args:
            document: Document to index
            doc_id: Explicit document ID (generated by OpenSearch if None)
            index_type: Type of index (summary or memory)
            create_only: Fail instead of overwriting when doc_id already exists

        Returns:
            True if indexing was successful, False if create_only hit an existing document
        """
        index_name = self._index(index_type)
        kwargs: Dict[str, Any] = {'index': index_name, 'body': document, 'refresh': 'wait_for'}
        if doc_id:
            kwargs['id'] = doc_id
        if create_only:
            kwargs['op_type'] = 'create'

        try:
            response = self.client.index(**kwargs)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')

            return success

        except ConflictError:
            logger.debug(f'Document {doc_id} already exists in {index_name}')
            return False
        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def get_document(self, doc_id: str, index_type: str = MEMORY_INDEX) -> Optional[Dict[str, Any]]:
        """
        Get a document by ID.

        Args:
            doc_id: Document ID
            index_type: Type of index (summary or memory)

        Returns:
            Document source if found, None otherwise
        """
        try:
            response = self.client.get(index=self._index(index_type), id=doc_id)
            return response.get('_source') if response.get('found', True) else None
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')

    def update_document(self, doc_id: str, fields: Dict[str, Any], index_type: str = MEMORY_INDEX) -> bool:
        """
        Partially update a document.

        Args:
            doc_id: Document ID
            fields: Fields to overwrite
            index_type: Type of index (summary or memory)

        Returns:
            True if the document was updated, False if it does not exist
        """
        try:
            response = self.client.update(index=self._index(index_type), id=doc_id, body={'doc': fields}, refresh='wait_for')
            return response.get('result') in ['updated', 'noop']
        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for update')
            return False
        except OpenSearchException as e:
            logger.error(f'Error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}')

    def record_access(self, doc_ids: List[str], accessed_at: str, index_type: str = MEMORY_INDEX) -> None:
        """
        Increment access_count and stamp last_accessed_at on each document.

        Args:
            doc_ids: Document IDs that were returned to a caller
            accessed_at: ISO timestamp
            index_type: Type of index
        """
        script = {
            'source': ('ctx._source.access_count = (ctx._source.access_count == null ? 0 : ctx._source.access_count) + 1;'
                       ' ctx._source.last_accessed_at = params.now'),
            'lang': 'painless',
            'params': {
                'now': accessed_at
            }
        }
        for doc_id in doc_ids:
            try:
                self.client.update(index=self._index(index_type), id=doc_id, body={'script': script})
            except OpenSearchException as e:
                raise OpenSearchError(f'Failed to record access for {doc_id}: {e}')

    def update_by_query(self, user_id: str, fields: Dict[str, Any], index_type: str = MEMORY_INDEX) -> int:
        """
        Set fields on every document of a user.

        Args:
            user_id: User whose documents are updated
            fields: Field values to assign
            index_type: Type of index

        Returns:
            Number of updated documents
        """
        assignments = '; '.join(f'ctx._source.{name} = params.{name}' for name in fields)
        body = {
            'query': {
                'term': {
                    'user_id': user_id
                }
            },
            'script': {
                'source': assignments,
                'lang': 'painless',
                'params': fields
            }
        }

        try:
            response = self.client.update_by_query(index=self._index(index_type), body=body, refresh=True)
            return int(response.get('updated', 0))
        except OpenSearchException as e:
            logger.error(f'Error updating documents for user {user_id}: {e}')
            raise OpenSearchError(f'Failed to update documents: {e}')

    def _filter_clause(self, user_id: str, filters: Optional[List[Dict[str, Any]]],
                       must_not: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
        clause: Dict[str, Any] = {'bool': {'filter': [{'term': {'user_id': user_id}}] + list(filters or [])}}
        if must_not:
            clause['bool']['must_not'] = list(must_not)
        return clause

    def vector_search(self,
                      query_vector: List[float],
                      user_id: str,
                      top_k: int = 20,
                      index_type: str = MEMORY_INDEX,
                      min_similarity: Optional[float] = None,
                      filters: Optional[List[Dict[str, Any]]] = None,
                      must_not: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        """
        Perform vector similarity search restricted to one user.

        Args:
            query_vector: Query vector for similarity search
            user_id: User ID to filter results
            top_k: Number of results to return (default 20)
            index_type: Type of index (summary or memory)
            min_similarity: Cosine similarity floor
            filters: Extra filter clauses (all must match)
            must_not: Clauses that exclude documents

        Returns:
            List of results with id, score, similarity and document, best first
        """
        index_name = self._index(index_type)

        search_body: Dict[str, Any] = {
            'size': top_k,
            'query': {
                'knn': {
                    'embedding': {
                        'vector': query_vector,
                        'k': top_k,
                        'filter': self._filter_clause(user_id, filters, must_not)
                    }
                }
            },
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }
        if min_similarity is not None:
            search_body['min_score'] = similarity_to_score(min_similarity)

        try:
            response = self.client.search(index=index_name, body=search_body)
        except NotFoundError:
            logger.debug(f'Index {index_name} does not exist yet')
            return []
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

        results = []
        for hit in response['hits']['hits']:
            similarity = score_to_similarity(hit['_score'])
            if min_similarity is not None and similarity < min_similarity:
                continue
            results.append({'id': hit['_id'], 'score': hit['_score'], 'similarity': similarity, 'document': hit['_source']})

        results.sort(key=lambda r: r['similarity'], reverse=True)
        logger.debug(f'Vector search returned {len(results)} results for user {user_id}')
        return results[:top_k]

    def search_documents(self,
                         user_id: str,
                         index_type: str = MEMORY_INDEX,
                         filters: Optional[List[Dict[str, Any]]] = None,
                         must_not: Optional[List[Dict[str, Any]]] = None,
                         sort: Optional[List[Dict[str, Any]]] = None,
                         size: int = 100) -> List[Dict[str, Any]]:
        """
        Plain filtered search, e.g. listing a user's memories or recent summaries.

        Args:
            user_id: User ID to filter results
            index_type: Type of index
            filters: Extra filter clauses
            must_not: Clauses that exclude documents
            sort: Sort specification
            size: Maximum number of documents

        Returns:
            List of results with id and document
        """
        index_name = self._index(index_type)
        search_body: Dict[str, Any] = {
            'size': size,
            'query': self._filter_clause(user_id, filters, must_not),
            '_source': {
                'excludes': ['embedding']
            }
        }
        if sort:
            search_body['sort'] = sort

        try:
            response = self.client.search(index=index_name, body=search_body)
        except NotFoundError:
            return []
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Search failed: {e}')

        return [{'id': hit['_id'], 'document': hit['_source']} for hit in response['hits']['hits']]

    def delete_document(self, doc_id: str, index_type: str = MEMORY_INDEX) -> bool:
        """
        Delete a document from the index.

        Args:
            doc_id: Document ID to delete
            index_type: Type of index

        Returns:
            True if deletion was successful, False otherwise
        """
        index_name = self._index(index_type)

        try:
            response = self.client.delete(index=index_name, id=doc_id, refresh='wait_for')

            success = response.get('result') == 'deleted'
            if success:
                logger.debug(f'Deleted document {doc_id} from {index_name}')
            else:
                logger.warning(f'Document {doc_id} not found for deletion')

            return success

        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for deletion')
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self._index(MEMORY_INDEX))
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
