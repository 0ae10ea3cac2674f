"""Keyword search with relevance scoring and an optional fuzzy pass.

Scoring contract (all components summed, then clamped to [0, 1]):

- match count:      min(match_count / 10, 0.3)
- title keywords:   0.3 * (fraction of query keywords found in the file stem)
- exact title:      +0.2 when the stem equals the query (case-insensitive)
- preview density:  min(keyword occurrences in the preview / 5, 0.2)
"""

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Pattern, Sequence, Tuple, Dict

from loguru import logger
from rapidfuzz import fuzz

from .cancellation import CancellationToken, NONE
from .errors import InvalidQueryError
from .models import (
    MatchInfo, MatchType, SearchFilters, SearchOptions, SmartSearchResult, clamp_score, rank,
)
from .providers.corpus import NoteCorpus
from .providers.tags import note_metadata
from .query_analyzer import strip_hashtags


MATCH_COUNT_CAP = 0.3
TITLE_WEIGHT = 0.3
EXACT_TITLE_BOOST = 0.2
PREVIEW_DENSITY_CAP = 0.2

PREVIEW_LENGTH = 100
FUZZY_FIELD_WEIGHTS = {'file_name': 0.4, 'content': 0.6}


@dataclass
class ScanHit:
    """Literal match summary for one file."""
    path: str
    match_count: int
    preview: str
    line_number: Optional[int] = None


class TextScanner:
    """Literal/regex matcher over note contents."""

    def __init__(self, corpus: NoteCorpus, concurrency: int = 8):
        self.corpus = corpus
        self.concurrency = concurrency

    @staticmethod
    def keywords(query: str) -> List[str]:
        return [k for k in query.split() if k]

    @staticmethod
    def compile(query: str, case_sensitive: bool = False, use_regex: bool = False) -> Optional[Pattern]:
        """
        Build the match pattern.

        Plain queries match any of their whitespace-separated keywords, so
        ``authentication issues`` becomes ``(authentication|issues)``.
        """
        flags = 0 if case_sensitive else re.IGNORECASE
        if use_regex:
            try:
                return re.compile(query, flags)
            except re.error as e:
                raise InvalidQueryError(f"Invalid regex pattern: {e}") from e

        keywords = TextScanner.keywords(query)
        if not keywords:
            return None
        escaped = [re.escape(k) for k in keywords]
        pattern = escaped[0] if len(escaped) == 1 else f"({'|'.join(escaped)})"
        return re.compile(pattern, flags)

    async def read_all(
        self,
        paths: Sequence[str],
        cancellation: CancellationToken = NONE,
    ) -> List[Tuple[str, str]]:
        """
        Read candidate files concurrently.

        Unreadable files are skipped. Output keeps the order of ``paths``.
        Files not yet started when cancellation arrives are left out.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def load(path: str) -> Optional[Tuple[str, str]]:
            async with semaphore:
                if cancellation.is_cancelled:
                    return None
                try:
                    return path, await self.corpus.read_file(path)
                except (OSError, UnicodeError) as e:
                    logger.error(f"Error processing file {path}: {e}")
                    return None

        loaded = await asyncio.gather(*(load(p) for p in paths))
        return [item for item in loaded if item is not None]

    @staticmethod
    def match(path: str, content: str, pattern: Pattern) -> Optional[ScanHit]:
        matches = pattern.findall(content)
        if not matches:
            return None

        preview, line_number = "", None
        for i, line in enumerate(content.split('\n'), start=1):
            if pattern.search(line):
                preview, line_number = line.strip()[:PREVIEW_LENGTH], i
                break

        return ScanHit(path=path, match_count=len(matches), preview=preview, line_number=line_number)


def calculate_score(
    query: str,
    file_path: str,
    preview: str,
    match_count: int,
    pattern: Optional[Pattern] = None,
    use_regex: bool = False,
) -> float:
    stem = Path(file_path).stem.lower()
    query_lower = query.lower().strip()
    score = min(match_count / 10, MATCH_COUNT_CAP)

    if use_regex and pattern is not None:
        title_fraction = 1.0 if pattern.search(Path(file_path).stem) else 0.0
        preview_hits = len(pattern.findall(preview))
    else:
        keywords = [k.lower() for k in TextScanner.keywords(query)]
        title_fraction = (
            sum(1 for k in keywords if k in stem) / len(keywords) if keywords else 0.0
        )
        preview_lower = preview.lower()
        preview_hits = sum(preview_lower.count(k) for k in keywords)

    score += TITLE_WEIGHT * title_fraction
    if query_lower and stem == query_lower:
        score += EXACT_TITLE_BOOST
    score += min(preview_hits / 5, PREVIEW_DENSITY_CAP)

    return clamp_score(score)


def generate_preview(content: str, query: str, max_length: int = 150) -> str:
    """Snippet around the first occurrence of ``query``, else the opening text."""
    index = content.lower().find(query.lower())
    if index == -1:
        return content[:max_length].strip() + ('...' if len(content) > max_length else '')

    start = max(0, index - 50)
    before = content[start:index]
    sentence_start = before.rfind('. ')
    line_start = before.rfind('\n')
    if sentence_start != -1:
        start += sentence_start + 2
    elif line_start != -1:
        start += line_start + 1

    preview = content[start:start + max_length].strip()
    prefix = '...' if start > 0 else ''
    suffix = '...' if start + max_length < len(content) else ''
    return f"{prefix}{preview}{suffix}"


class KeywordEngine:
    """
    Scores literal matches over an already-filtered candidate set.

    With ``enable_fuzzy`` an approximate pass over file names and contents
    runs alongside the literal one; a file found by both keeps the better
    score.
    """

    def __init__(
        self,
        corpus: NoteCorpus,
        tag_index=None,
        enable_fuzzy: bool = False,
        fuzzy_threshold: float = 0.4,
        chunk_size: int = 3000,
        concurrency: int = 8,
    ):
        self.corpus = corpus
        self.tag_index = tag_index
        self.enable_fuzzy = enable_fuzzy
        self.fuzzy_threshold = fuzzy_threshold
        self.chunk_size = chunk_size
        self.scanner = TextScanner(corpus, concurrency=concurrency)

    async def search(
        self,
        query: str,
        candidate_files: Sequence[str],
        filters: Optional[SearchFilters] = None,
        options: Optional[SearchOptions] = None,
        max_results: Optional[int] = None,
        cancellation: CancellationToken = NONE,
    ) -> List[SmartSearchResult]:
        options = options or SearchOptions()
        filters = filters or SearchFilters()
        limit = max_results if max_results is not None else options.max_results
        if not options.use_regex:
            # Hashtags are tag filters, already enforced on the candidates
            query = strip_hashtags(query)

        pattern = self.scanner.compile(query, options.case_sensitive, options.use_regex)
        notes = await self.scanner.read_all(candidate_files, cancellation)

        scored: Dict[str, Tuple[float, List[MatchInfo], str]] = {}
        contents = dict(notes)

        if pattern is None:
            # Filter-only query: every surviving candidate satisfies the constraints
            for path, _ in notes:
                scored[path] = (1.0, self._filter_matches(filters), "")
        else:
            for path, content in notes:
                hit = self.scanner.match(path, content, pattern)
                if hit is None:
                    continue
                score = calculate_score(query, path, hit.preview, hit.match_count, pattern, options.use_regex)
                matches = [MatchInfo(
                    type='content',
                    text=hit.preview,
                    line_number=hit.line_number,
                    confidence=min(hit.match_count / 10, 1),
                )]
                matches.extend(self._filter_matches(filters))
                scored[path] = (score, matches, hit.preview)

            if self.enable_fuzzy and not options.use_regex:
                self._merge_fuzzy(query, notes, scored)

        results: List[SmartSearchResult] = []
        ordered = sorted(scored.items(), key=lambda item: (-item[1][0], item[0]))
        for path, (score, matches, preview) in ordered[:limit]:
            try:
                metadata = await note_metadata(self.corpus, path, contents.get(path), self.tag_index)
            except OSError as e:
                logger.error(f"Error reading stats for {path}: {e}")
                continue
            results.append(SmartSearchResult(
                file_path=path,
                score=score,
                match_type=MatchType.KEYWORD,
                matches=matches,
                preview=preview or generate_preview(contents.get(path, ""), query),
                metadata=metadata,
            ))

        logger.debug(f"Keyword search for {query!r}: {len(scored)} hits in {len(notes)} files")
        return rank(results)

    def fuzzy_score(self, query: str, path: str, content: str) -> Optional[Tuple[float, List[MatchInfo]]]:
        """Weighted partial-ratio similarity; ``None`` when beyond the threshold."""
        query_lower = query.lower()
        name = Path(path).name
        similarities = {
            'file_name': fuzz.partial_ratio(query_lower, name.lower()) / 100,
            'content': fuzz.partial_ratio(query_lower, content[:self.chunk_size].lower()) / 100,
        }
        similarity = sum(FUZZY_FIELD_WEIGHTS[k] * v for k, v in similarities.items())
        distance = 1 - similarity
        if distance > self.fuzzy_threshold:
            return None

        score = clamp_score(1 - distance)
        matches = []
        if similarities['file_name'] >= 1 - self.fuzzy_threshold:
            matches.append(MatchInfo(type='title', text=name[:100], confidence=similarities['file_name']))
        if similarities['content'] >= 1 - self.fuzzy_threshold or not matches:
            matches.append(MatchInfo(
                type='content',
                text=generate_preview(content, query, max_length=100),
                confidence=similarities['content'],
            ))
        return score, matches

    def _merge_fuzzy(
        self,
        query: str,
        notes: List[Tuple[str, str]],
        scored: Dict[str, Tuple[float, List[MatchInfo], str]],
    ) -> None:
        for path, content in notes:
            fuzzy = self.fuzzy_score(query, path, content)
            if fuzzy is None:
                continue
            score, matches = fuzzy
            existing = scored.get(path)
            if existing is None:
                scored[path] = (score, matches, generate_preview(content, query))
            elif score > existing[0]:
                scored[path] = (score, existing[1] + matches, existing[2])

    @staticmethod
    def _filter_matches(filters: SearchFilters) -> List[MatchInfo]:
        return [MatchInfo(type='tag', text=f"#{tag}", confidence=1.0) for tag in (filters.tags or ())]
