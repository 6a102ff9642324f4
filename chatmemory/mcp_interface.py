"""
MCP Interface Layer using fastmcp for agent access to memories and past sessions.
"""
from typing import Any, Dict, List, Optional, Tuple

from fastmcp import FastMCP

from .pipeline import Pipeline, build_pipeline
from .services.memory_service import MemoryServiceError
from .services.session_rag import SessionRAGError
from .utils.config import config
from .utils.health_check import check_health, get_system_info
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Chat Memory')
_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline(config)
    return _pipeline


def _require(value: str, name: str) -> None:
    if not value or not value.strip():
        raise ValueError(f'{name} is required')


@mcp.tool()
def search_memories(user_id: str, query: str, top_k: int = 10) -> List[Tuple[str, str, str]]:
    """Search facts remembered about a user.

    Args:
        user_id: User ID
        query: Natural language query
        top_k: Maximum number of results to return (default: 10)

    Returns:
        List of tuples (memory_id, category, fact_text), most relevant first
    """
    _require(user_id, 'User ID')
    if not query or not query.strip():
        return []

    memories = get_pipeline().memory.retrieve(user_id, query, top_k)
    logger.debug(f'MCP search returned {len(memories)} memories for user {user_id}')
    return [(memory.id, memory.category.value, memory.fact_text) for memory in memories]


@mcp.tool()
def list_memories(user_id: str) -> List[Dict[str, Any]]:
    """List all non-deleted memories of a user, newest first.

    Args:
        user_id: User ID

    Returns:
        List of memory dicts (id, fact_text, category, confidence, is_pinned, created_at)
    """
    _require(user_id, 'User ID')
    try:
        memories = get_pipeline().memory.list_memories(user_id)
    except MemoryServiceError as e:
        logger.error(f'Memory service error in MCP list: {e}')
        raise Exception(f'Memory listing failed: {e}')

    return [{
        'id': memory.id,
        'fact_text': memory.fact_text,
        'category': memory.category.value,
        'confidence': memory.confidence,
        'is_pinned': memory.is_pinned,
        'created_at': memory.created_at.isoformat()
    } for memory in memories]


@mcp.tool()
def delete_memory(memory_id: str) -> bool:
    """Forget one memory (soft delete).

    Args:
        memory_id: Memory ID

    Returns:
        True if the memory was deleted
    """
    _require(memory_id, 'Memory ID')
    try:
        return get_pipeline().memory.delete_memory(memory_id)
    except MemoryServiceError as e:
        logger.error(f'Memory service error in MCP delete: {e}')
        raise Exception(f'Memory deletion failed: {e}')


@mcp.tool()
def edit_memory(memory_id: str, fact_text: str) -> bool:
    """Replace the text of a memory.

    Args:
        memory_id: Memory ID
        fact_text: New fact text

    Returns:
        True if the memory was updated
    """
    _require(memory_id, 'Memory ID')
    try:
        return get_pipeline().memory.edit_memory(memory_id, fact_text)
    except MemoryServiceError as e:
        logger.error(f'Memory service error in MCP edit: {e}')
        raise Exception(f'Memory edit failed: {e}')


@mcp.tool()
def toggle_memory_pin(memory_id: str) -> Optional[bool]:
    """Pin or unpin a memory.

    Args:
        memory_id: Memory ID

    Returns:
        New pinned state, or None if the memory does not exist
    """
    _require(memory_id, 'Memory ID')
    try:
        return get_pipeline().memory.toggle_pin(memory_id)
    except MemoryServiceError as e:
        logger.error(f'Memory service error in MCP pin: {e}')
        raise Exception(f'Memory pin failed: {e}')


@mcp.tool()
def clear_memories(user_id: str) -> int:
    """Forget every memory of a user.

    Args:
        user_id: User ID

    Returns:
        Number of memories cleared
    """
    _require(user_id, 'User ID')
    try:
        return get_pipeline().memory.clear_all_memories(user_id)
    except MemoryServiceError as e:
        logger.error(f'Memory service error in MCP clear: {e}')
        raise Exception(f'Memory clear failed: {e}')


@mcp.tool()
def search_past_sessions(user_id: str,
                         query: str,
                         exclude_session_id: Optional[str] = None,
                         top_k: int = 5) -> List[Dict[str, Any]]:
    """Find the user's past sessions related to a query.

    Args:
        user_id: User ID
        query: Natural language query
        exclude_session_id: Session to leave out, usually the current one
        top_k: Maximum number of sessions (default: 5)

    Returns:
        List of dicts (session_id, summary_text, similarity, updated_at), best first
    """
    _require(user_id, 'User ID')
    if not query or not query.strip():
        return []

    try:
        matches = get_pipeline().session_rag.retrieve_relevant_sessions(user_id, exclude_session_id, query, top_k)
    except SessionRAGError as e:
        logger.error(f'Session RAG error in MCP search: {e}')
        raise Exception(f'Session search failed: {e}')

    return [{
        'session_id': match.session_id,
        'summary_text': match.summary_text,
        'similarity': round(match.similarity, 4),
        'updated_at': match.updated_at.isoformat()
    } for match in matches]


@mcp.tool()
def system_info() -> Dict[str, Any]:
    """Report configuration and component health."""
    return get_system_info(config)


@mcp.tool()
def health() -> bool:
    """Check that Bedrock and OpenSearch are reachable."""
    return check_health(config)


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
