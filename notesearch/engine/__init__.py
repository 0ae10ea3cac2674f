from .cancellation import CancellationToken
from .config import Config
from .errors import InvalidQueryError, SearchError, SemanticSearchAborted
from .models import (
    MatchInfo, MatchType, NoteMetadata, SearchFilters, SearchIntent, SearchOptions, SearchQuery,
    SmartSearchResult,
)
from .orchestrator import SearchOrchestrator
from .query_analyzer import FilterExtractor, IntentClassifier, QueryAnalyzer
from .service import SearchService

__all__ = [
    "CancellationToken",
    "Config",
    "FilterExtractor",
    "IntentClassifier",
    "InvalidQueryError",
    "MatchInfo",
    "MatchType",
    "NoteMetadata",
    "QueryAnalyzer",
    "SearchError",
    "SearchFilters",
    "SearchIntent",
    "SearchOptions",
    "SearchOrchestrator",
    "SearchQuery",
    "SearchService",
    "SemanticSearchAborted",
    "SmartSearchResult",
]
