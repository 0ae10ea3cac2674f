"""Query analysis: filter extraction and intent classification.

Both halves are pure and synchronous. ``QueryAnalyzer.analyze`` composes them
into the immutable ``SearchQuery`` the orchestrator works from.
"""

import re
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional, Tuple, List, Callable

import dateparser
from loguru import logger

from .models import (
    DateRange, SearchFilters, SearchIntent, SearchOptions, SearchQuery,
)


QUESTION_WORDS = ('what', 'when', 'where', 'who', 'why', 'how', 'which')
SEMANTIC_INDICATORS = (
    'about',
    'related to',
    'similar to',
    'like',
    'regarding',
    'concerning',
    'issues with',
    'problems with',
    'notes on',
    'discussion about',
)
FILE_FORMATS = ('txt', 'md', 'both')

_FROM_RE = re.compile(r'\bfrom:(\S+)', re.IGNORECASE)
_TO_RE = re.compile(r'\bto:(\S+)', re.IGNORECASE)
_TAG_RE = re.compile(r'\btag:(\S+)', re.IGNORECASE)
_HASHTAG_RE = re.compile(r'(?<![\w#])#(\w[\w-]*)')
_TEMPLATE_RE = re.compile(r'\btemplate:(\S+)', re.IGNORECASE)
_FORMAT_RE = re.compile(r'\bformat:(\S+)', re.IGNORECASE)
_REGEX_FLAG_RE = re.compile(r'\bregex:', re.IGNORECASE)
_CASE_FLAG_RE = re.compile(r'\bcase:', re.IGNORECASE)

_STRIP_PATTERNS = (
    re.compile(r'\bfrom:\S+', re.IGNORECASE),
    re.compile(r'\bto:\S+', re.IGNORECASE),
    re.compile(r'\btag:\S+', re.IGNORECASE),
    re.compile(r'\btemplate:\S+', re.IGNORECASE),
    re.compile(r'\bformat:\S+', re.IGNORECASE),
    _REGEX_FLAG_RE,
    _CASE_FLAG_RE,
)

# Checked in order; the first phrase found wins.
_RELATIVE_PATTERNS = (
    re.compile(r'\b(yesterday|today)\b', re.IGNORECASE),
    re.compile(r'\blast\s+(week|month|year|\d+\s+days?)\b', re.IGNORECASE),
    re.compile(r'\bthis\s+(week|month|year)\b', re.IGNORECASE),
)

_INDICATOR_RE = re.compile(
    r'\b(?:' + '|'.join(re.escape(i) for i in SEMANTIC_INDICATORS) + r')\b'
)

_DATEPARSER_SETTINGS = {
    "PREFER_DAY_OF_MONTH": "first",
    "RETURN_AS_TIMEZONE_AWARE": False,
}


def _collapse(text: str) -> str:
    return re.sub(r'\s+', ' ', text).strip()


def strip_hashtags(text: str) -> str:
    """Remove ``#tag`` tokens, which act as tag filters rather than search text."""
    return _collapse(_HASHTAG_RE.sub(' ', text))


def _start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


class FilterExtractor:
    """
    Parses filter syntax out of a raw query.

    Supported syntax:
    - ``from:<date>`` / ``to:<date>`` (ISO or natural language)
    - relative phrases: yesterday, today, last week/month/year,
      last N days, this week/month/year
    - ``#tag`` and ``tag:name``
    - ``template:name``
    - ``format:txt|md|both``
    - ``regex:`` and ``case:`` modifiers
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._clock = clock

    def extract_filters(self, raw_query: str) -> SearchFilters:
        return SearchFilters(
            date_range=self.extract_date_range(raw_query),
            tags=self.extract_tags(raw_query),
            templates=self.extract_templates(raw_query),
            file_format=self.extract_file_format(raw_query),
        )

    def clean_query(self, raw_query: str) -> str:
        """Strip every recognized filter token and collapse whitespace."""
        cleaned = raw_query
        for pattern in _STRIP_PATTERNS:
            cleaned = pattern.sub(' ', cleaned)
        return _collapse(cleaned)

    @staticmethod
    def clean_for_semantic(cleaned_query: str) -> str:
        """Drop hashtags, which carry no meaning for the model."""
        return strip_hashtags(cleaned_query)

    @staticmethod
    def extract_modifiers(raw_query: str) -> Tuple[bool, bool]:
        """Return ``(case_sensitive, use_regex)``."""
        return bool(_CASE_FLAG_RE.search(raw_query)), bool(_REGEX_FLAG_RE.search(raw_query))

    # -- dates ---------------------------------------------------------

    def extract_date_range(self, raw_query: str) -> Optional[DateRange]:
        from_match = _FROM_RE.search(raw_query)
        to_match = _TO_RE.search(raw_query)

        start = end = None
        if from_match:
            start = self._parse_date(from_match.group(1))
        if to_match:
            end = self._parse_date(to_match.group(1))

        if not from_match and not to_match:
            start, end = self._relative_range(raw_query)

        if start is None and end is None:
            return None
        return DateRange(start=start, end=end)

    def _parse_date(self, token: str) -> Optional[datetime]:
        try:
            return datetime.fromisoformat(token)
        except ValueError:
            pass

        settings = dict(_DATEPARSER_SETTINGS, RELATIVE_BASE=self._clock())
        parsed = dateparser.parse(token.replace('_', ' '), settings=settings)
        if parsed is None:
            logger.debug(f"Ignoring unparsable date token: {token!r}")
        return parsed

    def _relative_range(self, raw_query: str) -> Tuple[Optional[datetime], Optional[datetime]]:
        now = self._clock()
        for pattern in _RELATIVE_PATTERNS:
            match = pattern.search(raw_query)
            if not match:
                continue
            phrase = _collapse(match.group(0).lower())
            start = self._resolve_relative(phrase, now)
            if start is not None:
                return start, now
        return None, None

    def _resolve_relative(self, phrase: str, now: datetime) -> Optional[datetime]:
        today = _start_of_day(now)
        if phrase == 'this week':
            # Weeks start on Sunday
            return today - timedelta(days=(today.weekday() + 1) % 7)
        if phrase == 'this month':
            return today.replace(day=1)
        if phrase == 'this year':
            return today.replace(month=1, day=1)

        if phrase.startswith('last '):
            amount = phrase[len('last '):]
            expression = f"{amount} ago" if amount[0].isdigit() else f"1 {amount} ago"
        else:
            expression = phrase

        settings = dict(_DATEPARSER_SETTINGS, RELATIVE_BASE=now)
        parsed = dateparser.parse(expression, settings=settings)
        return _start_of_day(parsed) if parsed else None

    # -- tags, templates, format ----------------------------------------

    @staticmethod
    def extract_tags(raw_query: str) -> Optional[Tuple[str, ...]]:
        found: List[str] = []
        found.extend(m.group(1) for m in _HASHTAG_RE.finditer(raw_query))
        found.extend(m.group(1) for m in _TAG_RE.finditer(raw_query))

        tags: List[str] = []
        for tag in found:
            normalized = tag.lstrip('#').rstrip('-').lower()
            if normalized and normalized not in tags:
                tags.append(normalized)
        return tuple(tags) if tags else None

    @staticmethod
    def extract_templates(raw_query: str) -> Optional[Tuple[str, ...]]:
        templates = [m.group(1).lower() for m in _TEMPLATE_RE.finditer(raw_query)]
        if not templates:
            return None
        return tuple(dict.fromkeys(templates))

    @staticmethod
    def extract_file_format(raw_query: str) -> Optional[str]:
        """First valid ``format:`` value wins; later contradictions are logged."""
        values = [m.group(1).lower() for m in _FORMAT_RE.finditer(raw_query)]
        valid = [v for v in values if v in FILE_FORMATS]
        if not valid:
            if values:
                logger.warning(f"Ignoring unsupported format filter(s): {values}")
            return None

        chosen = valid[0]
        ignored = sorted({v for v in valid if v != chosen})
        if ignored:
            logger.warning(
                f"Conflicting format filters {ignored} ignored; using format:{chosen}"
            )
        return chosen


class IntentClassifier:
    """Decides between keyword, semantic and hybrid search. Pure."""

    @staticmethod
    def classify(cleaned_query: str) -> SearchIntent:
        query = cleaned_query.lower().strip()

        if len(query) < 3:
            return SearchIntent.KEYWORD

        if any(query.startswith(word + ' ') for word in QUESTION_WORDS):
            return SearchIntent.SEMANTIC

        if query.endswith('?'):
            return SearchIntent.SEMANTIC

        if _INDICATOR_RE.search(query):
            return SearchIntent.SEMANTIC

        if len(query.split()) >= 4:
            return SearchIntent.HYBRID

        return SearchIntent.KEYWORD


class QueryAnalyzer:
    """Builds a ``SearchQuery`` from raw user input."""

    def __init__(self, extractor: Optional[FilterExtractor] = None):
        self.extractor = extractor or FilterExtractor()

    def analyze(self, raw_query: str, options: Optional[SearchOptions] = None) -> SearchQuery:
        options = options or SearchOptions()
        filters = self.extractor.extract_filters(raw_query)
        cleaned = self.extractor.clean_query(raw_query)
        intent = IntentClassifier.classify(cleaned)

        case_sensitive, use_regex = self.extractor.extract_modifiers(raw_query)
        if case_sensitive or use_regex:
            options = replace(
                options,
                case_sensitive=options.case_sensitive or case_sensitive,
                use_regex=options.use_regex or use_regex,
            )

        semantic_query = None
        if intent is not SearchIntent.KEYWORD:
            semantic_query = self.extractor.clean_for_semantic(cleaned) or None

        logger.debug(f"Analyzed query {raw_query!r}: intent={intent.value}, cleaned={cleaned!r}")
        return SearchQuery(
            raw_query=raw_query,
            intent=intent,
            cleaned_query=cleaned,
            filters=filters,
            options=options,
            semantic_query=semantic_query,
        )

    def needs_semantic_search(self, raw_query: str) -> bool:
        intent = self.analyze(raw_query).intent
        return intent in (SearchIntent.SEMANTIC, SearchIntent.HYBRID)
