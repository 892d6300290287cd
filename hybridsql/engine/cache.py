# HybridSQL - Namespaced Cache
# ============================
"""
Namespaced TTL cache for the query pipeline.

Four independent namespaces, each with its own TTL and clear operation:
1. embeddings: Embedding vectors keyed by text
2. query_analysis: Classifier output keyed by query + schema
3. schema_selection: Schema selector output keyed by query + tables
4. sql_generation: Ensemble build results keyed by the build request

Features:
- Interchangeable backends selected by configuration (memory or redis)
- Lazy expiry on read, opportunistic sweep when the memory map grows
- Backend errors are logged and reported as misses, never raised
- Hit/miss/error statistics per namespace

The cache is an optimization only. A cold cache produces the same
logical result, just slower.
"""

import json
import time
import hashlib
import logging
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Dict, Optional, Union

import redis

from .errors import BackendUnavailable

logger = logging.getLogger(__name__)


class CacheNamespace(str, Enum):
    """Cache namespaces used by the pipeline."""
    EMBEDDINGS = "embeddings"
    QUERY_ANALYSIS = "query_analysis"
    SCHEMA_SELECTION = "schema_selection"
    SQL_GENERATION = "sql_generation"


DEFAULT_TTLS: Dict[str, int] = {
    CacheNamespace.EMBEDDINGS.value: 3600,        # 1 hour
    CacheNamespace.QUERY_ANALYSIS.value: 900,     # 15 minutes
    CacheNamespace.SCHEMA_SELECTION.value: 1800,  # 30 minutes
    CacheNamespace.SQL_GENERATION.value: 600,     # 10 minutes
}


@dataclass
class CacheConfig:
    """Configuration for the pipeline cache."""
    enabled: bool = True
    backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "hybridsql"
    ttl: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TTLS))

    # Memory backend sweeps expired entries once it holds more than this
    sweep_threshold: int = 1000

    @classmethod
    def from_env(cls) -> "CacheConfig":
        """Create config from environment variables."""
        ttl = dict(DEFAULT_TTLS)
        for namespace in CacheNamespace:
            env_value = os.getenv(f"CACHE_TTL_{namespace.value.upper()}")
            if env_value:
                ttl[namespace.value] = int(env_value)

        return cls(
            enabled=os.getenv("ENABLE_QUERY_CACHE", "true").lower() == "true",
            backend=os.getenv("CACHE_BACKEND", "memory").lower(),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            key_prefix=os.getenv("CACHE_KEY_PREFIX", "hybridsql"),
            ttl=ttl,
            sweep_threshold=int(os.getenv("CACHE_SWEEP_THRESHOLD", "1000")),
        )


def make_cache_key(data: Any) -> str:
    """
    Create a stable key from structured input.

    Args:
        data: Any JSON-serializable value (dict keys are sorted)

    Returns:
        32-character MD5 hex digest
    """
    canonical = json.dumps(data, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.md5(canonical.encode()).hexdigest()


@dataclass
class CacheEntry:
    """A cached value with an absolute expiry time."""
    value: Any
    expiry: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if this entry has expired."""
        return (now if now is not None else time.time()) >= self.expiry


# =============================================================================
# BACKENDS
# =============================================================================

class CacheBackend(ABC):
    """Storage backend for the cache. Failures are raised as BackendUnavailable."""

    name: str = "abstract"

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store a value for ttl_seconds."""
        pass

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix. Returns count removed."""
        pass

    @abstractmethod
    def size(self, prefix: str = "") -> int:
        """Number of keys starting with prefix."""
        pass


class InMemoryBackend(CacheBackend):
    """
    In-process dictionary backend.

    Expired entries are removed lazily on read, and swept in bulk whenever
    the map grows beyond sweep_threshold.
    """

    name = "memory"

    def __init__(self, sweep_threshold: int = 1000):
        self._store: Dict[str, CacheEntry] = {}
        self._lock = Lock()
        self.sweep_threshold = sweep_threshold

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.is_expired():
                del self._store[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._store[key] = CacheEntry(value=value, expiry=time.time() + ttl_seconds)
            if len(self._store) > self.sweep_threshold:
                self._sweep_locked()

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._store if k.startswith(prefix)]
            for k in keys:
                del self._store[k]
            return len(keys)

    def size(self, prefix: str = "") -> int:
        with self._lock:
            return sum(1 for k in self._store if k.startswith(prefix))

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns number removed."""
        with self._lock:
            return self._sweep_locked()

    def _sweep_locked(self) -> int:
        now = time.time()
        expired = [k for k, e in self._store.items() if e.is_expired(now)]
        for k in expired:
            del self._store[k]
        if expired:
            logger.debug(f"Cache SWEEP removed {len(expired)} expired entries")
        return len(expired)


class RedisBackend(CacheBackend):
    """
    Redis backend. Values are stored as JSON with SETEX.

    Client failures are raised as BackendUnavailable.
    """

    name = "redis"

    def __init__(self, redis_url: str = "redis://localhost:6379/0", client=None):
        if client is None:
            client = redis.Redis.from_url(
                redis_url,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                decode_responses=True
            )
        self._client = client
        self.redis_url = redis_url

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except (redis.RedisError, OSError, ValueError) as e:
            raise BackendUnavailable(self.name, f"{operation} failed: {e}") from e

    def get(self, key: str) -> Optional[Any]:
        with self._guard("GET"):
            raw = self._client.get(key)
            if raw is None:
                return None
            return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._guard("SETEX"):
            self._client.setex(key, ttl_seconds, json.dumps(value, default=str))

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        batch = []
        with self._guard("DELETE"):
            for key in self._client.scan_iter(match=f"{prefix}*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += self._client.delete(*batch)
                    batch = []
            if batch:
                removed += self._client.delete(*batch)
        return removed

    def size(self, prefix: str = "") -> int:
        with self._guard("SCAN"):
            return sum(1 for _ in self._client.scan_iter(match=f"{prefix}*", count=500))


def create_cache_backend(config: CacheConfig) -> CacheBackend:
    """
    Create the backend named by configuration.

    Args:
        config: Cache configuration

    Returns:
        Configured backend (memory or redis)
    """
    if config.backend == "redis":
        logger.info(f"Creating redis cache backend: {config.redis_url.split('@')[-1]}")
        return RedisBackend(config.redis_url)

    if config.backend != "memory":
        logger.warning(f"Unknown CACHE_BACKEND '{config.backend}', defaulting to memory")
    return InMemoryBackend(sweep_threshold=config.sweep_threshold)


# =============================================================================
# CACHE
# =============================================================================

NamespaceLike = Union[CacheNamespace, str]


class QueryCache:
    """
    Namespaced cache used by every pipeline stage.

    Example:
        cache = QueryCache(CacheConfig(backend="memory"))
        key = make_cache_key({"query": "top companies", "schema": schema_id})

        analysis = cache.get(CacheNamespace.QUERY_ANALYSIS, key)
        if analysis is None:
            analysis = analyze(...)
            cache.set(CacheNamespace.QUERY_ANALYSIS, key, analysis)
    """

    def __init__(self, config: Optional[CacheConfig] = None,
                 backend: Optional[CacheBackend] = None):
        """
        Initialize the cache.

        Args:
            config: Cache configuration
            backend: Explicit backend (overrides config.backend)
        """
        self.config = config or CacheConfig()
        self.backend = backend or create_cache_backend(self.config)

        # Writes that failed on a shared backend are kept here for this process
        self._local = InMemoryBackend(sweep_threshold=self.config.sweep_threshold)
        self._lock = Lock()
        self.stats: Dict[str, Dict[str, int]] = {
            ns.value: {'hits': 0, 'misses': 0, 'errors': 0} for ns in CacheNamespace
        }

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def _namespace(self, namespace: NamespaceLike) -> str:
        return CacheNamespace(namespace).value

    def _prefix(self, namespace: str) -> str:
        return f"{self.config.key_prefix}:{namespace}:"

    def _record(self, namespace: str, outcome: str) -> None:
        with self._lock:
            self.stats[namespace][outcome] += 1

    def get(self, namespace: NamespaceLike, key: str) -> Optional[Any]:
        """
        Get a cached value.

        Args:
            namespace: Cache namespace
            key: Key within the namespace (see make_cache_key)

        Returns:
            Stored value, or None on miss, expiry or backend error
        """
        if not self.enabled:
            return None

        ns = self._namespace(namespace)
        full_key = self._prefix(ns) + key

        try:
            value = self.backend.get(full_key)
        except BackendUnavailable as e:
            logger.warning(f"Cache {self.backend.name} GET error for {ns} (key={key[:8]}): {e}")
            self._record(ns, 'errors')
            value = self._local.get(full_key)

        if value is None:
            self._record(ns, 'misses')
            logger.debug(f"Cache MISS for {ns} (key={key[:8]})")
            return None

        self._record(ns, 'hits')
        logger.debug(f"Cache HIT for {ns} (key={key[:8]})")
        return value

    def set(self, namespace: NamespaceLike, key: str, value: Any,
            ttl_seconds: Optional[int] = None) -> None:
        """
        Store a value.

        Args:
            namespace: Cache namespace
            key: Key within the namespace
            value: JSON-serializable value
            ttl_seconds: Optional custom TTL (namespace default when None, not stored when <= 0)
        """
        if not self.enabled or value is None:
            return

        ns = self._namespace(namespace)
        ttl = ttl_seconds if ttl_seconds is not None else self.config.ttl.get(ns, 600)
        if ttl <= 0:
            # A zero lifetime stores nothing
            logger.debug(f"Cache SET skipped for {ns} (key={key[:8]}, ttl={ttl}s)")
            return
        full_key = self._prefix(ns) + key

        try:
            self.backend.set(full_key, value, ttl)
        except BackendUnavailable as e:
            logger.warning(f"Cache {self.backend.name} SET error for {ns} (key={key[:8]}): {e}")
            self._record(ns, 'errors')
            self._local.set(full_key, value, ttl)
            return

        logger.debug(f"Cache SET for {ns} (key={key[:8]}, ttl={ttl}s)")

    def clear_namespace(self, namespace: NamespaceLike) -> int:
        """
        Remove every entry in one namespace.

        Returns:
            Number of entries removed from the primary backend
        """
        ns = self._namespace(namespace)
        prefix = self._prefix(ns)
        removed = 0
        try:
            removed = self.backend.delete_prefix(prefix)
        except BackendUnavailable as e:
            logger.warning(f"Cache {self.backend.name} CLEAR error for {ns}: {e}")
            self._record(ns, 'errors')
        self._local.delete_prefix(prefix)
        logger.info(f"Cache CLEARED namespace {ns} ({removed} entries removed)")
        return removed

    def clear_all(self) -> int:
        """Clear every namespace."""
        return sum(self.clear_namespace(ns) for ns in CacheNamespace)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary with backend info and per-namespace sizes and hit rates
        """
        namespaces = {}
        for ns in CacheNamespace:
            with self._lock:
                counters = dict(self.stats[ns.value])
            total = counters['hits'] + counters['misses']
            hit_rate = (counters['hits'] / total * 100) if total > 0 else 0
            try:
                size = self.backend.size(self._prefix(ns.value))
            except BackendUnavailable as e:
                logger.debug(f"Could not size namespace {ns.value}: {e}")
                size = None
            namespaces[ns.value] = {
                **counters,
                'size': size,
                'ttl_seconds': self.config.ttl.get(ns.value),
                'hit_rate': round(hit_rate, 1)
            }

        return {
            'enabled': self.enabled,
            'backend': self.backend.name,
            'local_fallback_size': self._local.size(),
            'namespaces': namespaces
        }
