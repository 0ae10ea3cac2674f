"""Semantic relevance scoring through an external language model.

Candidates are scored one at a time so each prompt stays bounded and every
failure is attributable to a single file. A run of consecutive failures
aborts the whole pass; isolated failures do not.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence

from loguru import logger

from .cancellation import CancellationToken, NONE
from .errors import ConsecutiveFailureBreaker
from .models import MatchInfo, MatchType, SmartSearchResult, clamp_score, rank
from .providers.corpus import NoteCorpus
from .providers.tags import note_metadata
from .providers.llm import ModelHandle, ModelProvider
from .providers.score_cache import CachedScore, SemanticScoreCache, fingerprint


MAX_CONSECUTIVE_ERRORS = 3
EXCERPT_LENGTH = 150

SCORE_PROMPT = """Rate how relevant this note is to the search query on a scale of 0.0 to 1.0.

Query: "{query}"

Note content:
{content}

Return ONLY a number between 0.0 and 1.0. Return 0.0 if not relevant at all, 1.0 if highly relevant.
Consider semantic meaning, not just keyword matches.
Examples: 0.95, 0.67, 0.12, 0.0"""

EXCERPT_PROMPT = """Extract the most relevant 1-2 sentence excerpt from this note that matches the query.

Query: "{query}"

Note:
{content}

Return ONLY the excerpt, no explanation. Maximum {limit} characters.
If nothing is relevant, return the first sentence of the note."""

EXPLAIN_PROMPT = """Explain in 1-2 sentences why this note is relevant to the search query.

Query: "{query}"

Note:
{content}

Provide a brief explanation focusing on conceptual relevance."""

_LEADING_NUMBER = re.compile(r'^\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+))')

ProgressCallback = Callable[[int, int], None]


class SemanticStatus(Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"
    DISABLED = "disabled"


@dataclass
class SemanticOutcome:
    """Result of a semantic pass; unavailability is a status, not an exception."""
    status: SemanticStatus
    results: List[SmartSearchResult] = field(default_factory=list)
    scored: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.status is SemanticStatus.OK


def parse_score(reply: str) -> Optional[float]:
    """Leading number of the reply, clamped to [0, 1]; ``None`` if there is none."""
    match = _LEADING_NUMBER.match(reply)
    if not match:
        return None
    return clamp_score(float(match.group(1)))


def fallback_preview(content: str, max_length: int = EXCERPT_LENGTH) -> str:
    for line in content.split('\n'):
        if line.strip():
            return line[:max_length].strip() + '...'
    return ''


class SemanticEngine:
    """Scores candidate notes against a query with a language model."""

    def __init__(
        self,
        corpus: NoteCorpus,
        provider: ModelProvider,
        vendor: str = "ollama",
        family: str = "qwen2.5",
        enabled: bool = True,
        max_candidates: int = 20,
        chunk_size: int = 3000,
        min_confidence: float = 0.5,
        tag_index=None,
        cache: Optional[SemanticScoreCache] = None,
        failure_threshold: int = MAX_CONSECUTIVE_ERRORS,
    ):
        self.corpus = corpus
        self.provider = provider
        self.vendor = vendor
        self.family = family
        self.enabled = enabled
        self.max_candidates = max_candidates
        self.chunk_size = chunk_size
        self.min_confidence = min_confidence
        self.tag_index = tag_index
        self.cache = cache
        self.failure_threshold = failure_threshold

    @classmethod
    def from_config(cls, config, corpus: NoteCorpus, provider: ModelProvider, **kwargs) -> "SemanticEngine":
        return cls(
            corpus,
            provider,
            vendor=config.llm.provider,
            family=config.llm.family,
            enabled=config.search.enable_semantic,
            max_candidates=config.search.max_candidates,
            chunk_size=config.search.chunk_size,
            min_confidence=config.search.min_relevance_score,
            **kwargs,
        )

    async def acquire(self) -> Optional[ModelHandle]:
        if not self.enabled:
            return None
        return await self.provider.try_acquire(self.vendor, self.family)

    async def is_available(self) -> bool:
        return await self.acquire() is not None

    async def search(
        self,
        query: str,
        candidate_files: Sequence[str],
        max_results: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation: CancellationToken = NONE,
        handle: Optional[ModelHandle] = None,
    ) -> SemanticOutcome:
        """
        Score up to ``max_results`` candidates (default ``max_candidates``).

        Args:
            query: Query text sent to the model
            candidate_files: Paths to score, in priority order
            max_results: Number of candidates considered
            progress_callback: Called with ``(current, total)`` after each file
            cancellation: Checked before each file
            handle: Model handle already acquired by the caller

        Returns:
            SemanticOutcome with results sorted by score

        Raises:
            SemanticSearchAborted: after consecutive model failures
        """
        if not self.enabled:
            return SemanticOutcome(status=SemanticStatus.DISABLED)

        handle = handle or await self.acquire()
        if handle is None:
            return SemanticOutcome(status=SemanticStatus.UNAVAILABLE)

        files = list(candidate_files)[:max_results or self.max_candidates]
        breaker = ConsecutiveFailureBreaker("semantic", threshold=self.failure_threshold)
        outcome = SemanticOutcome(status=SemanticStatus.OK)

        for i, path in enumerate(files):
            if cancellation.is_cancelled:
                logger.info(f"Semantic search cancelled after {outcome.scored}/{len(files)} notes")
                outcome.cancelled = True
                break

            result = await self._score_file(handle, query, path, breaker, cancellation)

            if cancellation.is_cancelled:
                # The reply for this file may have been cut short
                outcome.cancelled = True
                break

            if result is not None:
                outcome.results.append(result)
            outcome.scored += 1
            if progress_callback:
                progress_callback(i + 1, len(files))

        outcome.results = rank(outcome.results)
        return outcome

    async def _score_file(
        self,
        handle: ModelHandle,
        query: str,
        path: str,
        breaker: ConsecutiveFailureBreaker,
        cancellation: CancellationToken,
    ) -> Optional[SmartSearchResult]:
        try:
            content = await self.corpus.read_file(path)
            metadata = await note_metadata(self.corpus, path, content, self.tag_index)
        except (OSError, UnicodeError) as e:
            logger.error(f"Error reading {path} for semantic scoring: {e}")
            return None

        truncated = content[:self.chunk_size]
        note_key = fingerprint(content, metadata.modified)
        cached = self.cache.get(path, query, note_key) if self.cache else None

        if cached is not None:
            score, preview = cached.score, cached.preview
        else:
            try:
                score = await self._score_relevance(handle, query, truncated, path, cancellation)
            except Exception as e:
                breaker.record_failure(path, e)
                logger.error(f"Error processing file {path}: {e}")
                breaker.check()
                return None
            breaker.record_success()
            preview = None

        if score < self.min_confidence:
            if self.cache and cached is None and not cancellation.is_cancelled:
                self.cache.put(path, query, CachedScore(note_key, score))
            return None

        if preview is None:
            preview = await self._generate_preview(handle, query, truncated, cancellation)
            if self.cache and not cancellation.is_cancelled:
                self.cache.put(path, query, CachedScore(note_key, score, preview))

        return SmartSearchResult(
            file_path=path,
            score=score,
            match_type=MatchType.SEMANTIC,
            matches=[MatchInfo(type='semantic', text=preview, confidence=score)],
            preview=preview,
            metadata=metadata,
        )

    async def _complete(self, handle: ModelHandle, prompt: str, cancellation: CancellationToken) -> str:
        fragments = []
        async for fragment in self.provider.send_prompt(handle, prompt, cancellation):
            fragments.append(fragment)
        return ''.join(fragments).strip()

    async def _score_relevance(
        self,
        handle: ModelHandle,
        query: str,
        content: str,
        path: str,
        cancellation: CancellationToken,
    ) -> float:
        reply = await self._complete(handle, SCORE_PROMPT.format(query=query, content=content), cancellation)
        score = parse_score(reply)
        if score is None:
            logger.warning(f"Invalid score from model: {reply[:40]!r} for {path}")
            return 0.0
        return score

    async def _generate_preview(
        self,
        handle: ModelHandle,
        query: str,
        content: str,
        cancellation: CancellationToken,
    ) -> str:
        prompt = EXCERPT_PROMPT.format(query=query, content=content, limit=EXCERPT_LENGTH)
        try:
            excerpt = (await self._complete(handle, prompt, cancellation))[:EXCERPT_LENGTH]
        except Exception as e:
            logger.warning(f"Excerpt request failed, using first line: {e}")
            return fallback_preview(content)
        return excerpt or fallback_preview(content)

    async def explain_match(self, query: str, content: str) -> str:
        """Ask the model why ``content`` is relevant to ``query``."""
        handle = await self.acquire()
        if handle is None:
            return "LLM not available"

        prompt = EXPLAIN_PROMPT.format(query=query, content=content[:self.chunk_size])
        try:
            return await self._complete(handle, prompt, NONE)
        except Exception as e:
            logger.error(f"Error explaining match: {e}")
            return "Error generating explanation"
