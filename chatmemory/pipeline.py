"""
Construction of the context pipeline from configuration.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .models.core import ConversationMessage
from .services.context_assembler import ContextAssembler
from .services.context_window import ContextWindowBuilder
from .services.generation import GenerationOrchestrator
from .services.memory_service import MemoryService
from .services.session_rag import SessionRAGService
from .services.summary_service import SummaryService
from .services.synopsis_service import SessionActivityMonitor, SynopsisService
from .services.token_estimator import TokenCountCache, TokenEstimator
from .utils.background import BackgroundTaskRunner
from .utils.bedrock_embed import BedrockEmbed
from .utils.bedrock_llm import BedrockLLM
from .utils.config import AppConfig
from .utils.logging_config import get_logger
from .utils.opensearch_client import MEMORY_INDEX, SUMMARY_INDEX, OpenSearchClient, OpenSearchError

logger = get_logger(__name__)


@dataclass
class Pipeline:
    """All pipeline components, wired once per process or worker."""
    config: AppConfig
    llm: BedrockLLM
    embed: BedrockEmbed
    store: OpenSearchClient
    runner: BackgroundTaskRunner
    estimator: TokenEstimator
    window: ContextWindowBuilder
    summaries: SummaryService
    memory: MemoryService
    session_rag: SessionRAGService
    synopsis: SynopsisService
    assembler: ContextAssembler
    generator: GenerationOrchestrator

    def activity_monitor(self, history_provider: Callable[[str], Sequence[ConversationMessage]]) -> SessionActivityMonitor:
        """Create a monitor that fires synopses on session switch and idle timeout."""
        return SessionActivityMonitor(self.synopsis, self.runner, history_provider,
                                      self.config.synopsis.idle_timeout_minutes * 60)

    def close(self) -> None:
        self.runner.shutdown(wait=True)


def build_pipeline(config: AppConfig,
                   llm: Optional[BedrockLLM] = None,
                   embed: Optional[BedrockEmbed] = None,
                   store: Optional[OpenSearchClient] = None,
                   cache: Optional[TokenCountCache] = None,
                   create_indices: bool = True) -> Pipeline:
    """
    Build every component from config; clients may be injected.

    Args:
        config: Application configuration
        llm: Bedrock LLM client (created from config if None)
        embed: Bedrock embedding client (created from config if None)
        store: OpenSearch client (created from config if None)
        cache: Exact token-count cache shared by this worker
        create_indices: Create the summary and memory indices if missing

    Returns:
        Wired Pipeline
    """
    llm = llm or BedrockLLM(config.bedrock_llm)
    embed = embed or BedrockEmbed(config.bedrock_embed)
    store = store or OpenSearchClient(config.opensearch)

    if create_indices:
        for index_type in (SUMMARY_INDEX, MEMORY_INDEX):
            try:
                store.create_index_if_not_exists(index_type=index_type)
            except OpenSearchError as e:
                logger.warning(f'Failed to create OpenSearch {index_type} index: {e}')

    runner = BackgroundTaskRunner(max_workers=config.background_workers)
    estimator = TokenEstimator(config.token_estimation, counter=llm, cache=cache)
    window = ContextWindowBuilder(config.context, estimator)
    summaries = SummaryService(config.summarization, store, llm, embed, estimator)
    memory = MemoryService(config.memory, store, llm, embed)
    session_rag = SessionRAGService(config.memory, store, embed)
    synopsis = SynopsisService(config.synopsis, summaries, llm)
    assembler = ContextAssembler(window,
                                 summaries=summaries,
                                 memory=memory,
                                 session_rag=session_rag,
                                 memory_enabled=config.memory.enabled)
    generator = GenerationOrchestrator(config.bedrock_llm, llm, assembler, runner, memory=memory)

    logger.info(f'Initialized context pipeline (memory {"enabled" if config.memory.enabled else "disabled"})')
    return Pipeline(config=config,
                    llm=llm,
                    embed=embed,
                    store=store,
                    runner=runner,
                    estimator=estimator,
                    window=window,
                    summaries=summaries,
                    memory=memory,
                    session_rag=session_rag,
                    synopsis=synopsis,
                    assembler=assembler,
                    generator=generator)
