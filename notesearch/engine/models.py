"""Shared data model for the search engine.

Everything here is created fresh per ``search()`` call and thrown away once
the caller has consumed the result list.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Dict, Any, Tuple


class SearchIntent(Enum):
    """Strategy chosen for a query before any file is touched."""
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class MatchType(Enum):
    """Which engine(s) produced a result."""
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    BOTH = "both"


def clamp_score(value: float) -> float:
    """Clamp a relevance score to [0, 1]."""
    return min(max(float(value), 0.0), 1.0)


@dataclass(frozen=True)
class DateRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'start': self.start.isoformat() if self.start else None,
            'end': self.end.isoformat() if self.end else None,
        }


@dataclass(frozen=True)
class SearchFilters:
    """
    Structured filters pulled out of a raw query.

    ``None`` on any field means "no constraint", never "match nothing".
    """
    date_range: Optional[DateRange] = None
    tags: Optional[Tuple[str, ...]] = None
    templates: Optional[Tuple[str, ...]] = None
    file_format: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return (
            self.date_range is None
            and not self.tags
            and not self.templates
            and self.file_format in (None, 'both')
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date_range': self.date_range.to_dict() if self.date_range else None,
            'tags': list(self.tags) if self.tags is not None else None,
            'templates': list(self.templates) if self.templates is not None else None,
            'file_format': self.file_format,
        }


@dataclass(frozen=True)
class SearchOptions:
    max_results: int = 20
    min_relevance_score: float = 0.5
    include_context: bool = True
    search_strategy: str = "fast"
    case_sensitive: bool = False
    use_regex: bool = False

    def __post_init__(self):
        if not 0 <= self.min_relevance_score <= 1:
            raise ValueError("min_relevance_score must be between 0 and 1")
        if self.search_strategy not in ("fast", "thorough"):
            raise ValueError(f"Unknown search strategy: {self.search_strategy}")


@dataclass(frozen=True)
class SearchQuery:
    """Analyzed query. Built once per invocation, never mutated."""
    raw_query: str
    intent: SearchIntent
    cleaned_query: str
    filters: SearchFilters
    options: SearchOptions
    semantic_query: Optional[str] = None

    @property
    def text(self) -> str:
        """Query text handed to the engines."""
        return self.semantic_query or self.cleaned_query


@dataclass
class MatchInfo:
    """Explains one reason a file matched."""
    type: str  # title | content | tag | semantic
    text: str
    confidence: float
    line_number: Optional[int] = None

    def __post_init__(self):
        self.confidence = clamp_score(self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        data = {'type': self.type, 'text': self.text, 'confidence': self.confidence}
        if self.line_number is not None:
            data['line_number'] = self.line_number
        return data


@dataclass
class NoteMetadata:
    created: datetime
    modified: datetime
    tags: List[str] = field(default_factory=list)
    template: Optional[str] = None


@dataclass
class SmartSearchResult:
    """A single ranked hit."""
    file_path: str
    score: float
    match_type: MatchType
    matches: List[MatchInfo]
    preview: str
    metadata: NoteMetadata
    file_name: str = ""

    def __post_init__(self):
        self.score = clamp_score(self.score)
        if not self.file_name:
            self.file_name = Path(self.file_path).name

    def to_dict(self) -> Dict[str, Any]:
        return {
            'file_path': self.file_path,
            'file_name': self.file_name,
            'score': round(self.score, 4),
            'match_type': self.match_type.value,
            'matches': [m.to_dict() for m in self.matches],
            'preview': self.preview,
            'metadata': {
                'created': self.metadata.created.isoformat(),
                'modified': self.metadata.modified.isoformat(),
                'tags': self.metadata.tags,
                'template': self.metadata.template,
            },
        }


def rank(results: List[SmartSearchResult]) -> List[SmartSearchResult]:
    """Sort descending by score; ties fall back to path so order is stable."""
    return sorted(results, key=lambda r: (-r.score, r.file_path))
