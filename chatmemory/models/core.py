"""
Core data models for the context assembly and memory pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

USER_ROLE = 'user'
ASSISTANT_ROLE = 'assistant'


class MemoryCategory(str, Enum):
    """Category of a remembered user fact."""
    PREFERENCE = 'preference'
    INTEREST = 'interest'
    PERSONAL = 'personal'
    TECHNICAL = 'technical'
    PROJECT = 'project'
    GENERAL = 'general'

    @classmethod
    def parse(cls, value: Optional[str]) -> 'MemoryCategory':
        """Map free-form LLM output onto a category, defaulting to general."""
        try:
            return cls((value or '').strip().lower())
        except ValueError:
            return cls.GENERAL


# Rendering order for remembered facts, most identity-defining first
CATEGORY_PRIORITY: Tuple[MemoryCategory, ...] = (
    MemoryCategory.PERSONAL,
    MemoryCategory.PREFERENCE,
    MemoryCategory.INTEREST,
    MemoryCategory.PROJECT,
    MemoryCategory.TECHNICAL,
    MemoryCategory.GENERAL,
)


@dataclass(frozen=True)
class Attachment:
    """Binary attachment carried inline with a message (base64 payload)."""
    mime_type: str
    data: str
    name: Optional[str] = None


@dataclass(frozen=True)
class ConversationMessage:
    """A single turn of a conversation session. Immutable once created."""
    id: str
    role: str  # user | assistant
    text: str
    timestamp: float  # Unix seconds
    attachments: Tuple[Attachment, ...] = ()
    is_error: bool = False


@dataclass
class ContextWindow:
    """Result of a sliding-window truncation. Built per call, never persisted."""
    messages: List[ConversationMessage]
    estimated_tokens: int
    truncated: bool
    original_count: int


@dataclass
class SessionSummary:
    """Running summary of one session; at most one exists per session."""
    id: str
    session_id: str
    user_id: str
    summary_text: str
    messages_summarized_count: int
    version: int
    updated_at: datetime
    created_at: datetime
    embedding: Optional[List[float]] = None


@dataclass
class ExtractedFact:
    """Candidate fact produced by the extraction prompt, before storage."""
    text: str
    category: MemoryCategory
    confidence: float


@dataclass
class UserMemoryFact:
    """Durable, user-scoped fact remembered across sessions."""
    id: str
    user_id: str
    fact_text: str
    category: MemoryCategory
    confidence: float
    created_at: datetime
    updated_at: datetime
    embedding: List[float] = field(default_factory=list)
    source_session_id: Optional[str] = None
    source_message_id: Optional[str] = None
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    is_pinned: bool = False
    is_deleted: bool = False
    similarity: Optional[float] = None  # Only set on retrieval results


@dataclass(frozen=True)
class SessionSummaryMatch:
    """Read-only projection of a summary returned by similarity search."""
    session_id: str
    summary_text: str
    similarity: float
    updated_at: datetime


def format_transcript(messages) -> str:
    """Render messages as 'User: ...' / 'Assistant: ...' blocks for helper prompts."""
    lines = []
    for message in messages:
        speaker = 'User' if message.role == USER_ROLE else 'Assistant'
        lines.append(f'{speaker}: {message.text}')
    return '\n\n'.join(lines)
