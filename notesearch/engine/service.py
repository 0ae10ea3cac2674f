"""Wires the engine and its collaborators together from a ``Config``."""

from typing import List, Optional

from loguru import logger

from .cancellation import CancellationToken
from .config import Config
from .keyword import KeywordEngine
from .models import SmartSearchResult
from .orchestrator import NoticeCallback, ProgressCallback, SearchOrchestrator
from .providers.corpus import FileCorpus
from .providers.llm import ModelProvider, OllamaModelProvider
from .providers.score_cache import SemanticScoreCache
from .providers.tags import ContentTagIndex
from .semantic import SemanticEngine


class SearchService:
    """
    Owns the corpus, tag index, model provider and score cache.

    The score cache survives across searches; everything else about a
    search is created per call by the orchestrator.
    """

    def __init__(self, config: Config, provider: Optional[ModelProvider] = None):
        self.config = config
        self.corpus = FileCorpus.from_config(config)
        self.tag_index = ContentTagIndex(self.corpus)
        self._owns_provider = provider is None
        self.provider = provider or OllamaModelProvider.from_config(config.llm)
        self.score_cache = SemanticScoreCache()

        self.keyword_engine = KeywordEngine(
            self.corpus,
            tag_index=self.tag_index,
            enable_fuzzy=config.search.enable_fuzzy_match,
            fuzzy_threshold=config.search.fuzzy_threshold,
            chunk_size=config.search.chunk_size,
            concurrency=config.search.scan_concurrency,
        )
        self.semantic_engine = SemanticEngine.from_config(
            config,
            self.corpus,
            self.provider,
            tag_index=self.tag_index,
            cache=self.score_cache,
        )
        self.orchestrator = SearchOrchestrator.from_config(
            config,
            self.corpus,
            self.keyword_engine,
            self.semantic_engine,
            tag_index=self.tag_index,
        )

    async def initialize(self) -> None:
        logger.info(f"Indexing notes under {self.config.notes_path}")
        await self.tag_index.build()

    async def search(
        self,
        query: str,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
        notify: Optional[NoticeCallback] = None,
    ) -> List[SmartSearchResult]:
        return await self.orchestrator.search(
            query,
            progress_callback=progress_callback,
            cancellation=cancellation,
            notify=notify,
        )

    async def explain(self, query: str, path: str) -> str:
        content = await self.corpus.read_file(path)
        return await self.semantic_engine.explain_match(query, content)

    async def close(self) -> None:
        if self._owns_provider and hasattr(self.provider, 'aclose'):
            await self.provider.aclose()

    async def __aenter__(self) -> "SearchService":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
