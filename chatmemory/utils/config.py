"""
Configuration management for AWS services and context pipeline settings.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock chat completion service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    max_retry_delay: float
    thinking_level: str  # LOW disables reasoning, HIGH grants the full budget
    thinking_budget_tokens: int
    guardrail_id: Optional[str]
    guardrail_version: Optional[str]
    token_count_model_id: str


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    service: str  # es for managed domains, aoss for serverless


@dataclass
class ContextConfig:
    """Sliding window limits."""
    max_messages: int
    max_context_tokens: int
    system_instruction_buffer: int
    response_buffer: int
    min_recent_messages: int


@dataclass
class TokenEstimationConfig:
    """Configuration for heuristic and exact token counting."""
    method: str  # local, api or hybrid
    api_validation_frequency: int
    use_api_before_summarization: bool
    cjk_tokens_per_char: float
    latin_chars_per_token: float
    attachment_overhead_tokens: int
    attachment_bytes_per_token: int
    role_overhead_tokens: int


@dataclass
class SummarizationConfig:
    """Configuration for incremental session summarization."""
    threshold_tokens: int
    recent_messages_to_keep: int
    max_summary_tokens: int
    model_id: str
    temperature: float


@dataclass
class MemoryConfig:
    """Configuration for cross-session memory and session RAG."""
    enabled: bool
    extraction_model_id: str
    min_confidence: float
    deduplication_threshold: float
    retrieval_threshold: float
    max_memories_to_retrieve: int
    session_rag_threshold: float
    max_sessions_to_retrieve: int
    max_sessions_to_search: int
    extraction_window_size: int


@dataclass
class SynopsisConfig:
    """Configuration for lightweight synopses of short sessions."""
    min_messages: int
    max_output_tokens: int
    idle_timeout_minutes: int
    model_id: str


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    background_workers: int
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    context: ContextConfig
    token_estimation: TokenEstimationConfig
    summarization: SummarizationConfig
    memory: MemoryConfig
    synopsis: SynopsisConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')
    chat_model = os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-7-sonnet-20250219-v1:0')
    helper_model = os.getenv('BEDROCK_HELPER_MODEL_ID', 'anthropic.claude-3-5-haiku-20241022-v1:0')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=chat_model,
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '8192')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.7')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          max_retry_delay=float(os.getenv('BEDROCK_LLM_MAX_RETRY_DELAY', '30.0')),
                                          thinking_level=os.getenv('BEDROCK_LLM_THINKING_LEVEL', 'LOW').upper(),
                                          thinking_budget_tokens=int(os.getenv('BEDROCK_LLM_THINKING_BUDGET', '24576')),
                                          guardrail_id=os.getenv('BEDROCK_GUARDRAIL_ID') or None,
                                          guardrail_version=os.getenv('BEDROCK_GUARDRAIL_VERSION') or None,
                                          token_count_model_id=os.getenv('BEDROCK_TOKEN_COUNT_MODEL_ID', chat_model))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'chat_context'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'es'))

    context_config = ContextConfig(max_messages=int(os.getenv('CONTEXT_MAX_MESSAGES', '50')),
                                   max_context_tokens=int(os.getenv('CONTEXT_MAX_TOKENS', '100000')),
                                   system_instruction_buffer=int(os.getenv('CONTEXT_SYSTEM_INSTRUCTION_BUFFER', '2000')),
                                   response_buffer=int(os.getenv('CONTEXT_RESPONSE_BUFFER', '8000')),
                                   min_recent_messages=int(os.getenv('CONTEXT_MIN_RECENT_MESSAGES', '5')))

    token_estimation_config = TokenEstimationConfig(
        method=os.getenv('TOKEN_ESTIMATION_METHOD', 'hybrid'),
        api_validation_frequency=int(os.getenv('TOKEN_API_VALIDATION_FREQUENCY', '10')),
        use_api_before_summarization=_env_bool('TOKEN_API_BEFORE_SUMMARIZATION', 'true'),
        cjk_tokens_per_char=float(os.getenv('TOKEN_CJK_TOKENS_PER_CHAR', '1.0')),
        latin_chars_per_token=float(os.getenv('TOKEN_LATIN_CHARS_PER_TOKEN', '4.0')),
        attachment_overhead_tokens=int(os.getenv('TOKEN_ATTACHMENT_OVERHEAD', '258')),
        attachment_bytes_per_token=int(os.getenv('TOKEN_ATTACHMENT_BYTES_PER_TOKEN', '1000')),
        role_overhead_tokens=int(os.getenv('TOKEN_ROLE_OVERHEAD', '4')))

    summarization_config = SummarizationConfig(threshold_tokens=int(os.getenv('SUMMARY_THRESHOLD_TOKENS', '50000')),
                                               recent_messages_to_keep=int(os.getenv('SUMMARY_RECENT_MESSAGES_TO_KEEP', '15')),
                                               max_summary_tokens=int(os.getenv('SUMMARY_MAX_TOKENS', '2000')),
                                               model_id=os.getenv('SUMMARY_MODEL_ID', helper_model),
                                               temperature=float(os.getenv('SUMMARY_TEMPERATURE', '0.3')))

    # Memory configuration
    memory_config = MemoryConfig(enabled=_env_bool('MEMORY_ENABLED', 'true'),
                                 extraction_model_id=os.getenv('MEMORY_EXTRACTION_MODEL_ID', helper_model),
                                 min_confidence=float(os.getenv('MEMORY_MIN_CONFIDENCE', '0.7')),
                                 deduplication_threshold=float(os.getenv('MEMORY_DEDUP_THRESHOLD', '0.9')),
                                 retrieval_threshold=float(os.getenv('MEMORY_RETRIEVAL_THRESHOLD', '0.5')),
                                 max_memories_to_retrieve=int(os.getenv('MEMORY_MAX_RETRIEVE', '10')),
                                 session_rag_threshold=float(os.getenv('SESSION_RAG_THRESHOLD', '0.6')),
                                 max_sessions_to_retrieve=int(os.getenv('SESSION_RAG_MAX_RETRIEVE', '5')),
                                 max_sessions_to_search=int(os.getenv('SESSION_RAG_MAX_SEARCH', '50')),
                                 extraction_window_size=int(os.getenv('MEMORY_EXTRACTION_WINDOW', '10')))

    synopsis_config = SynopsisConfig(min_messages=int(os.getenv('SYNOPSIS_MIN_MESSAGES', '2')),
                                     max_output_tokens=int(os.getenv('SYNOPSIS_MAX_OUTPUT_TOKENS', '200')),
                                     idle_timeout_minutes=int(os.getenv('SYNOPSIS_IDLE_TIMEOUT_MINUTES', '60')),
                                     model_id=os.getenv('SYNOPSIS_MODEL_ID', helper_model))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     background_workers=int(os.getenv('BACKGROUND_WORKERS', '4')),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     context=context_config,
                     token_estimation=token_estimation_config,
                     summarization=summarization_config,
                     memory=memory_config,
                     synopsis=synopsis_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
