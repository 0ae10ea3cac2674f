"""Search orchestrator: routes a query through keyword, semantic or hybrid search.

Pipeline per call:
classify -> collect candidates -> apply filters -> strategy -> merge -> rank

The orchestrator holds no per-call state on ``self``; everything a single
search needs lives in a ``SearchRun``.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger

from .cancellation import CancellationToken, NONE
from .errors import SearchError
from .keyword import KeywordEngine
from .models import (
    MatchType, SearchFilters, SearchIntent, SearchOptions, SearchQuery, SmartSearchResult, rank,
)
from .query_analyzer import QueryAnalyzer
from .semantic import SemanticEngine, SemanticOutcome
from .providers.corpus import NoteCorpus


HYBRID_OVERSAMPLE = 50
KEYWORD_WEIGHT = 0.4
SEMANTIC_WEIGHT = 0.6

SEMANTIC_FALLBACK_NOTICE = "Semantic search is unavailable. Falling back to keyword search."
HYBRID_FALLBACK_NOTICE = "Semantic search unavailable. Showing keyword results only."

_NOTE_DATE = re.compile(r'^(\d{4}-\d{2}-\d{2})')
_QUICK_NOTE = re.compile(r'^\d{4}-\d{2}-\d{2}')

ProgressCallback = Callable[[str, Optional[int]], None]
NoticeCallback = Callable[[str], None]


class SearchPhase(Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    COLLECTING_CANDIDATES = "collecting_candidates"
    APPLYING_FILTERS = "applying_filters"
    SEARCHING_KEYWORD = "searching_keyword"
    SEARCHING_SEMANTIC = "searching_semantic"
    HYBRID_PHASE1 = "hybrid_phase1"
    HYBRID_PHASE2 = "hybrid_phase2"
    MERGING = "merging"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ProgressReporter:
    """Forwards progress, never letting the reported percentage go backwards."""

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback
        self.percent = 0

    def report(self, message: str, percent: Optional[int] = None) -> None:
        if percent is not None:
            self.percent = max(self.percent, min(int(percent), 100))
        if self.callback:
            self.callback(message, self.percent if percent is not None else None)


@dataclass
class SearchRun:
    """State of one ``search()`` invocation."""
    query: SearchQuery
    progress: ProgressReporter
    cancellation: CancellationToken
    notify: Optional[NoticeCallback] = None
    phase: SearchPhase = SearchPhase.IDLE
    history: List[SearchPhase] = field(default_factory=list)

    def enter(self, phase: SearchPhase) -> None:
        logger.debug(f"Search phase: {self.phase.value} -> {phase.value}")
        self.phase = phase
        self.history.append(phase)

    def notice(self, message: str) -> None:
        logger.warning(message)
        if self.notify:
            self.notify(message)

    @property
    def cancelled(self) -> bool:
        return self.cancellation.is_cancelled


def detect_template(content: str, template_type: str) -> bool:
    """Heuristic check that a note was written from ``template_type``."""
    lower = content.lower()
    template = template_type.lower()

    if template == 'problem-solution':
        return 'problem:' in lower and 'solution:' in lower
    if template == 'meeting':
        return 'attendees:' in lower or ('meeting' in lower and 'agenda' in lower)
    if template == 'research':
        return 'research' in lower and ('questions:' in lower or 'findings:' in lower)
    if template == 'quick':
        return bool(_QUICK_NOTE.match(content))
    return template in lower


def note_date(path: str) -> Optional[date]:
    match = _NOTE_DATE.match(Path(path).stem)
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1))
    except ValueError:
        return None


def merge_results(
    keyword_results: Sequence[SmartSearchResult],
    semantic_results: Sequence[SmartSearchResult],
) -> List[SmartSearchResult]:
    """
    Combine keyword and semantic hits into one list, one entry per path.

    A file found by both gets ``0.4 * keyword + 0.6 * semantic``, the union
    of both match lists, and ``MatchType.BOTH``.
    """
    merged: Dict[str, SmartSearchResult] = {r.file_path: r for r in keyword_results}

    for result in semantic_results:
        existing = merged.get(result.file_path)
        if existing is None:
            merged[result.file_path] = result
            continue
        merged[result.file_path] = replace(
            result,
            score=KEYWORD_WEIGHT * existing.score + SEMANTIC_WEIGHT * result.score,
            match_type=MatchType.BOTH,
            matches=existing.matches + result.matches,
        )

    return rank(list(merged.values()))


class SearchOrchestrator:
    """Coordinates keyword and semantic search for a single query."""

    def __init__(
        self,
        corpus: NoteCorpus,
        keyword_engine: KeywordEngine,
        semantic_engine: SemanticEngine,
        tag_index=None,
        analyzer: Optional[QueryAnalyzer] = None,
        max_results: int = 20,
        min_relevance_score: float = 0.5,
        max_candidates: int = 20,
        hybrid_candidates: int = 20,
        include_context: bool = True,
        search_strategy: str = "fast",
    ):
        self.corpus = corpus
        self.keyword_engine = keyword_engine
        self.semantic_engine = semantic_engine
        self.tag_index = tag_index
        self.analyzer = analyzer or QueryAnalyzer()
        self.max_results = max_results
        self.min_relevance_score = min_relevance_score
        self.max_candidates = max_candidates
        self.hybrid_candidates = hybrid_candidates
        self.include_context = include_context
        self.search_strategy = search_strategy

    @classmethod
    def from_config(cls, config, corpus, keyword_engine, semantic_engine, tag_index=None) -> "SearchOrchestrator":
        return cls(
            corpus,
            keyword_engine,
            semantic_engine,
            tag_index=tag_index,
            max_results=config.search.max_results,
            min_relevance_score=config.search.min_relevance_score,
            max_candidates=config.search.max_candidates,
            hybrid_candidates=config.search.hybrid_candidates,
            include_context=config.search.include_context,
            search_strategy=config.search.search_strategy,
        )

    async def search(
        self,
        raw_query: str,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
        notify: Optional[NoticeCallback] = None,
    ) -> List[SmartSearchResult]:
        """
        Main search entry point.

        Returns ranked results, or whatever was accumulated if
        ``cancellation`` fires mid-search. Raises ``SemanticSearchAborted``
        when the model keeps failing, and ``InvalidQueryError`` for a bad
        pattern in regex mode.
        """
        if not raw_query or not raw_query.strip():
            return []

        options = SearchOptions(
            max_results=self.max_results,
            min_relevance_score=self.min_relevance_score,
            include_context=self.include_context,
            search_strategy=self.search_strategy,
        )
        run = SearchRun(
            query=self.analyzer.analyze(raw_query, options),
            progress=ProgressReporter(progress_callback),
            cancellation=cancellation or NONE,
            notify=notify,
        )
        run.enter(SearchPhase.ANALYZING)
        run.progress.report("Analyzing query...", 0)
        logger.info(f"Search {raw_query!r} routed to {run.query.intent.value}")

        try:
            candidates = await self._collect_candidates(run)
            if run.cancelled:
                return self._finish(run, [])
            if not candidates:
                logger.info("No candidate notes after filtering")
                return self._finish(run, [])

            if run.query.intent is SearchIntent.SEMANTIC:
                results = await self._semantic_search(run, candidates)
            elif run.query.intent is SearchIntent.HYBRID:
                results = await self._hybrid_search(run, candidates)
            else:
                results = await self._keyword_search(run, candidates)
        except SearchError as e:
            run.enter(SearchPhase.FAILED)
            run.progress.report("Search failed")
            logger.error(f"Search failed: {e}")
            raise

        return self._finish(run, results)

    def _finish(self, run: SearchRun, results: List[SmartSearchResult]) -> List[SmartSearchResult]:
        if run.cancelled:
            run.enter(SearchPhase.CANCELLED)
            run.progress.report("Search cancelled")
        else:
            run.enter(SearchPhase.DONE)
            run.progress.report("Search complete", 100)
        if not run.query.options.include_context:
            results = [replace(r, preview="") for r in results]
        return results

    @staticmethod
    def _thorough(run: SearchRun) -> bool:
        """Thorough runs send every candidate to the model instead of a capped prefix."""
        return run.query.options.search_strategy == "thorough"

    # -- candidates ------------------------------------------------------

    async def _collect_candidates(self, run: SearchRun) -> List[str]:
        run.enter(SearchPhase.COLLECTING_CANDIDATES)
        run.progress.report("Collecting notes...", 10)
        files = await self.corpus.list_files()

        run.enter(SearchPhase.APPLYING_FILTERS)
        filtered = await self.apply_filters(files, run.query.filters, run.cancellation)
        logger.debug(f"{len(filtered)}/{len(files)} notes left after filtering")
        return filtered

    async def apply_filters(
        self,
        files: Sequence[str],
        filters: SearchFilters,
        cancellation: CancellationToken = NONE,
    ) -> List[str]:
        """Apply date, format, tag and template filters to candidate paths."""
        filtered = list(files)

        if filters.date_range:
            start = filters.date_range.start.date() if filters.date_range.start else None
            end = filters.date_range.end.date() if filters.date_range.end else None

            def in_range(path: str) -> bool:
                day = note_date(path)
                if day is None:
                    return True
                if start and day < start:
                    return False
                if end and day > end:
                    return False
                return True

            filtered = [f for f in filtered if in_range(f)]

        if filters.file_format and filters.file_format != 'both':
            ext = f".{filters.file_format}"
            filtered = [f for f in filtered if f.lower().endswith(ext)]

        if filters.tags:
            if self.tag_index is None:
                logger.warning("Tag filter requested but no tag index is configured; ignoring it")
            else:
                tagged = self.tag_index.notes_with_all(filters.tags)
                filtered = [f for f in filtered if f in tagged]

        if filters.templates:
            matching = []
            for path in filtered:
                if cancellation.is_cancelled:
                    break
                try:
                    content = await self.corpus.read_file(path)
                except (OSError, UnicodeError) as e:
                    logger.error(f"Error reading file for template filter: {path}: {e}")
                    continue
                if any(detect_template(content, t) for t in filters.templates):
                    matching.append(path)
            filtered = matching

        return filtered

    # -- strategies ------------------------------------------------------

    async def _keyword_search(self, run: SearchRun, candidates: List[str]) -> List[SmartSearchResult]:
        run.enter(SearchPhase.SEARCHING_KEYWORD)
        run.progress.report("Searching with keywords...", 50)
        query = run.query

        results = await self.keyword_engine.search(
            query.text,
            candidates,
            filters=query.filters,
            options=query.options,
            cancellation=run.cancellation,
        )
        return [r for r in results if r.score >= query.options.min_relevance_score]

    async def _semantic_search(self, run: SearchRun, candidates: List[str]) -> List[SmartSearchResult]:
        handle = await self.semantic_engine.acquire()
        if handle is None:
            run.notice(SEMANTIC_FALLBACK_NOTICE)
            return await self._keyword_search(run, candidates)

        run.enter(SearchPhase.SEARCHING_SEMANTIC)
        run.progress.report(f"Analyzing {len(candidates)} notes with AI...", 20)

        def on_progress(current: int, total: int) -> None:
            run.progress.report(f"Analyzing {current}/{total} notes...", 20 + round(current / total * 80))

        outcome = await self.semantic_engine.search(
            run.query.text,
            candidates,
            max_results=len(candidates) if self._thorough(run) else self.max_candidates,
            progress_callback=on_progress,
            cancellation=run.cancellation,
            handle=handle,
        )
        if not outcome.ok:
            run.notice(SEMANTIC_FALLBACK_NOTICE)
            return await self._keyword_search(run, candidates)

        return outcome.results[:run.query.options.max_results]

    async def _hybrid_search(self, run: SearchRun, candidates: List[str]) -> List[SmartSearchResult]:
        query = run.query
        max_results = query.options.max_results

        run.enter(SearchPhase.HYBRID_PHASE1)
        run.progress.report("Starting hybrid search...", 10)
        keyword_results = await self.keyword_engine.search(
            query.cleaned_query,
            candidates,
            filters=query.filters,
            options=query.options,
            max_results=HYBRID_OVERSAMPLE,
            cancellation=run.cancellation,
        )
        run.progress.report(f"Found {len(keyword_results)} keyword matches", 30)

        if not keyword_results or run.cancelled:
            return keyword_results[:max_results]

        handle = await self.semantic_engine.acquire()
        if handle is None:
            run.notice(HYBRID_FALLBACK_NOTICE)
            return keyword_results[:max_results]

        run.enter(SearchPhase.HYBRID_PHASE2)
        top = keyword_results if self._thorough(run) else keyword_results[:self.hybrid_candidates]
        run.progress.report(f"Re-ranking top {len(top)} with AI...", 40)

        def on_progress(current: int, total: int) -> None:
            run.progress.report(f"AI analyzing {current}/{total} notes...", 40 + round(current / total * 50))

        outcome: SemanticOutcome = await self.semantic_engine.search(
            query.text,
            [r.file_path for r in top],
            max_results=len(top),
            progress_callback=on_progress,
            cancellation=run.cancellation,
            handle=handle,
        )
        if not outcome.ok:
            run.notice(HYBRID_FALLBACK_NOTICE)
            return keyword_results[:max_results]

        run.enter(SearchPhase.MERGING)
        run.progress.report("Merging results...", 95)
        return merge_results(keyword_results, outcome.results)[:max_results]
