"""Cross-call cache of per-file semantic scores.

Entries are invalidated by a fingerprint of the note (content hash plus
modification time), so an edited note is always re-scored.
"""

import hashlib
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from loguru import logger


def fingerprint(content: str, modified: datetime) -> str:
    digest = hashlib.sha1(content.encode('utf-8', errors='replace')).hexdigest()
    return f"{digest}:{modified.timestamp():.6f}"


@dataclass(frozen=True)
class CachedScore:
    fingerprint: str
    score: float
    preview: Optional[str] = None


class SemanticScoreCache:
    """LRU cache of semantic scores, safe to share between concurrent searches."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._entries: "OrderedDict[Tuple[str, str], CachedScore]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, path: str, query: str, note_fingerprint: str) -> Optional[CachedScore]:
        key = (path, query)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.fingerprint != note_fingerprint:
                if entry is not None:
                    del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry

    def put(self, path: str, query: str, entry: CachedScore) -> None:
        key = (path, query)
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Score cache evicted {evicted[0]}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
