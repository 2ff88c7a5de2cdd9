"""
Cache management for KNEW.
"""
import json
import time
import sqlite3
import hashlib
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

# Configure logging
logger = logging.getLogger(__name__)

# Cache configuration
CACHE_DIR = Path("cache")
ANALYSIS_DB = CACHE_DIR / "analysis_cache.db"
NEWS_CACHE_TTL = 10 * 60  # 10 minutes
ANALYSIS_CACHE_TTL = 7 * 24 * 60 * 60  # 7 days
MAX_ENTRIES = 100
MODEL_VERSION = "gemini_2.5_flash_v1"


def _normalize(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        parts = [p.strip().lower() for p in value.split(',')] if ',' in value else [value.strip().lower()]
        parts = [p for p in parts if p]
        return ','.join(sorted(parts)) if len(parts) > 1 else (parts[0] if parts else None)
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(filter(None, (_normalize(v) for v in value)))
        return ','.join(items) or None
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def build_cache_key(params: Dict[str, Any], prefix: str = "") -> str:
    """
    Build a deterministic key from request parameters.

    Strings are trimmed and lower-cased, comma lists and sequences are
    sorted, empty values are dropped and keys are sorted, so logically equal
    requests share one key regardless of argument order.

    Args:
        params: Request parameters
        prefix: Logical operation name prepended to the key

    Returns:
        Cache key string
    """
    normalized = []
    for key in sorted(params):
        value = _normalize(params[key])
        if value is not None:
            normalized.append(f"{key}={value}")
    body = '&'.join(normalized)
    return f"{prefix}:{body}" if prefix else body


def stable_hash(text: str) -> str:
    """Stable short hash used as the durable cache key for a URL."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()[:32]


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class ResponseCache:
    """
    In-process TTL cache for upstream responses.

    Entries are replaced, never mutated. Expired entries read as a miss and
    are deleted on the spot; once the cache holds more than ``max_entries``
    a write also evicts everything that has expired.
    """
    def __init__(
        self,
        default_ttl: float = NEWS_CACHE_TTL,
        max_entries: int = MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
        observer=None,
        scope: str = "news",
    ):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.clock = clock
        self.observer = observer
        self.scope = scope
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key, notify=False) is not None

    def get(self, key: str, notify: bool = True) -> Optional[Any]:
        """
        Get a cached value if it exists and has not expired.

        Args:
            key: Cache key
            notify: Report the hit/miss to the observer

        Returns:
            The cached value, or None
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.is_valid(self.clock()):
                del self._entries[key]
                entry = None

        if notify and self.observer is not None:
            if entry is None:
                self.observer.on_cache_miss(self.scope, key)
            else:
                self.observer.on_cache_hit(self.scope, key)
        return entry.value if entry is not None else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """
        Store a value.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Lifetime in seconds, defaults to ``default_ttl``
        """
        lifetime = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self.clock() + lifetime)
            if len(self._entries) > self.max_entries:
                self._evict_expired()

    def get_any_valid(self) -> Optional[Any]:
        """
        Degraded-mode lookup: return any unexpired entry, freshest first.

        Only for use when the live call failed outright; callers must flag
        the result as degraded.

        Returns:
            A cached value regardless of key, or None
        """
        with self._lock:
            now = self.clock()
            valid = [e for e in self._entries.values() if e.is_valid(now)]
        if not valid:
            return None
        return max(valid, key=lambda e: e.expires_at).value

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> Iterable[str]:
        with self._lock:
            return list(self._entries.keys())

    def _evict_expired(self) -> int:
        now = self.clock()
        expired = [k for k, e in self._entries.items() if not e.is_valid(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} expired {self.scope} cache entries")
        return len(expired)


class AnalysisCacheStore:
    """
    Durable cache of AI analysis results, shared across sessions.

    Rows are keyed by a hash of the article URL plus the model version, so a
    model change invalidates every cached analysis at once.
    """
    def __init__(
        self,
        db_path: Optional[Path] = None,
        model_version: str = MODEL_VERSION,
        ttl: float = ANALYSIS_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = Path(db_path) if db_path else ANALYSIS_DB
        self.model_version = model_version
        self.ttl = ttl
        self.clock = clock
        self._init_cache_dir()
        self._init_db()

    def _init_cache_dir(self):
        """Initialize the cache directory."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self):
        """Initialize the SQLite database for caching."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS ai_analysis_cache (
                    article_hash TEXT NOT NULL,
                    model_version TEXT NOT NULL,
                    article_url TEXT,
                    analysis TEXT,
                    created_at REAL,
                    expires_at REAL,
                    PRIMARY KEY (article_hash, model_version)
                )
            """)

    def get(self, url: str) -> Optional[Dict]:
        """
        Get a cached analysis if it exists and is fresh.

        Args:
            url: Canonical article URL

        Returns:
            The analysis dictionary, or None on a miss or a read failure
        """
        try:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute(
                    """
                    SELECT analysis, expires_at
                    FROM ai_analysis_cache
                    WHERE article_hash = ? AND model_version = ?
                    """,
                    (stable_hash(url), self.model_version)
                ).fetchone()

                if not row:
                    return None

                analysis, expires_at = row
                if expires_at <= self.clock():
                    # Clean up expired cache entry
                    conn.execute(
                        "DELETE FROM ai_analysis_cache WHERE article_hash = ? AND model_version = ?",
                        (stable_hash(url), self.model_version)
                    )
                    conn.commit()
                    return None
                return json.loads(analysis)
        except (sqlite3.Error, ValueError) as e:
            logger.error(f"Analysis cache read error for {url}: {e}")
            return None

    def set(self, url: str, analysis: Dict, ttl: Optional[float] = None) -> None:
        """
        Cache an analysis. Write failures are logged, never raised.

        Args:
            url: Canonical article URL
            analysis: Analysis fields to store
            ttl: Lifetime in seconds, defaults to the store's ttl
        """
        now = self.clock()
        lifetime = self.ttl if ttl is None else ttl
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO ai_analysis_cache
                        (article_hash, model_version, article_url, analysis, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (stable_hash(url), self.model_version, url, json.dumps(analysis), now, now + lifetime)
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.error(f"Analysis cache write error for {url}: {e}")
