# HybridSQL - Vector Search
# =========================
"""
Vector Search
=============
Semantic search over vectorized table fields.

Each table has a collection named ``<prefix>-<table>`` with one named
vector per vectorized field. A VectorQuery searches every requested field
of its table; results are merged keeping the best score per (id, table).

Backends:
- QdrantVectorSearch: qdrant-client (primary)
- InMemoryVectorSearch: brute-force cosine search (local runs and tests)

Embeddings:
- SentenceTransformerEmbedding: sentence-transformers model
- DeterministicHashEmbedding: reproducible hash vectors for testing
"""

import os
import math
import time
import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .cache import CacheNamespace, QueryCache, make_cache_key
from .errors import VectorSearchFailure
from .models import VectorContext, VectorMatch, VectorQuery

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class VectorConfig:
    """Configuration for vector search."""
    backend: str = "qdrant"  # qdrant | memory
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: Optional[str] = None
    collection_prefix: str = "hybridsql"
    embedding_model: str = "all-MiniLM-L6-v2"
    hnsw_ef: int = 128
    id_field: str = "id"
    max_workers: int = 8

    @classmethod
    def from_env(cls) -> "VectorConfig":
        """Create config from environment variables."""
        return cls(
            backend=os.getenv("VECTOR_BACKEND", "qdrant").lower(),
            qdrant_url=os.getenv("QDRANT_URL", "http://localhost:6333"),
            qdrant_api_key=os.getenv("QDRANT_API_KEY"),
            collection_prefix=os.getenv("QDRANT_COLLECTION_PREFIX", "hybridsql"),
            embedding_model=os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            hnsw_ef=int(os.getenv("VECTOR_HNSW_EF", "128")),
            id_field=os.getenv("VECTOR_ID_FIELD", "id"),
            max_workers=int(os.getenv("VECTOR_MAX_WORKERS", "8")),
        )

    def collection_name(self, table: str) -> str:
        return f"{self.collection_prefix}-{table}"


# =============================================================================
# EMBEDDINGS
# =============================================================================

class EmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    name: str = "abstract"

    @abstractmethod
    def embed_text(self, text: str) -> List[float]:
        """Generate embedding vector for given text."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        pass


class DeterministicHashEmbedding(EmbeddingProvider):
    """
    Reproducible hash-based embeddings for tests.

    Equal texts always map to the same vector; no model download needed.
    """

    def __init__(self, dimension: int = 64):
        self.dimension = dimension
        self.name = f"hash-{dimension}"

    def embed_text(self, text: str) -> List[float]:
        vector: List[float] = []
        counter = 0
        while len(vector) < self.dimension:
            digest = hashlib.md5(f"{counter}:{text}".encode()).hexdigest()
            for i in range(0, len(digest), 8):
                value = int(digest[i:i + 8], 16)
                vector.append((value / 2 ** 32) * 2 - 1)
            counter += 1
        return vector[:self.dimension]

    def get_dimension(self) -> int:
        return self.dimension


class SentenceTransformerEmbedding(EmbeddingProvider):
    """sentence-transformers embedding provider (model loaded on first use)."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self.name = model_name
        self._model = None
        self._lock = threading.Lock()

    @property
    def model(self):
        with self._lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer
                logger.info(f"Loading embedding model: {self.model_name}")
                self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_text(self, text: str) -> List[float]:
        embedding = self.model.encode(text, convert_to_tensor=False)
        return embedding.tolist()

    def get_dimension(self) -> int:
        return self.model.get_sentence_embedding_dimension()


# =============================================================================
# SEARCH SERVICES
# =============================================================================

@dataclass
class VectorPoint:
    """A raw search hit from the index."""
    id: Any
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


class VectorSearchService(ABC):
    """Nearest-neighbour search over named vectors."""

    @abstractmethod
    def search(self, collection: str, vector_name: str, vector: Sequence[float],
               limit: int = 10, with_payload: bool = True,
               hnsw_ef: int = 128) -> List[VectorPoint]:
        pass

    @abstractmethod
    def collection_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def vector_names(self, collection: str) -> List[str]:
        """Named vectors defined on a collection."""
        pass


class QdrantVectorSearch(VectorSearchService):
    """Qdrant-backed search service."""

    def __init__(self, url: str = "http://localhost:6333",
                 api_key: Optional[str] = None, client=None):
        if client is None:
            from qdrant_client import QdrantClient
            client = QdrantClient(url=url, api_key=api_key)
            logger.debug(f"Qdrant client connected to {url}")
        self.client = client

    def search(self, collection: str, vector_name: str, vector: Sequence[float],
               limit: int = 10, with_payload: bool = True,
               hnsw_ef: int = 128) -> List[VectorPoint]:
        from qdrant_client.models import SearchParams

        result = self.client.query_points(
            collection_name=collection,
            query=list(vector),
            using=vector_name,
            limit=limit,
            with_payload=with_payload,
            with_vectors=False,
            search_params=SearchParams(hnsw_ef=hnsw_ef),
        )
        return [
            VectorPoint(id=p.id, score=p.score or 0.0, payload=dict(p.payload or {}))
            for p in result.points
        ]

    def collection_exists(self, name: str) -> bool:
        return self.client.collection_exists(name)

    def vector_names(self, collection: str) -> List[str]:
        info = self.client.get_collection(collection)
        vectors = info.config.params.vectors
        if isinstance(vectors, dict):
            return list(vectors.keys())
        # Unnamed single vector
        return []


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryVectorSearch(VectorSearchService):
    """
    Brute-force cosine search held in memory.

    Example:
        service = InMemoryVectorSearch()
        service.upsert("hybridsql-companies", 1, {"description": vec}, {"id": 1, "name": "Acme"})
    """

    def __init__(self):
        self._collections: Dict[str, Dict[Any, Tuple[Dict[str, List[float]], Dict[str, Any]]]] = {}
        self._lock = threading.Lock()

    def upsert(self, collection: str, point_id: Any,
               vectors: Dict[str, List[float]], payload: Dict[str, Any]):
        with self._lock:
            self._collections.setdefault(collection, {})[point_id] = (vectors, payload)

    def search(self, collection: str, vector_name: str, vector: Sequence[float],
               limit: int = 10, with_payload: bool = True,
               hnsw_ef: int = 128) -> List[VectorPoint]:
        with self._lock:
            points = list(self._collections.get(collection, {}).items())

        scored = [
            VectorPoint(
                id=pid,
                score=_cosine(vector, vectors[vector_name]),
                payload=dict(payload) if with_payload else {}
            )
            for pid, (vectors, payload) in points
            if vector_name in vectors
        ]
        scored.sort(key=lambda p: p.score, reverse=True)
        return scored[:limit]

    def collection_exists(self, name: str) -> bool:
        with self._lock:
            return name in self._collections

    def vector_names(self, collection: str) -> List[str]:
        with self._lock:
            names = set()
            for vectors, _ in self._collections.get(collection, {}).values():
                names.update(vectors.keys())
        return sorted(names)


# =============================================================================
# SEARCHER
# =============================================================================

@dataclass
class VectorHit:
    """A merged, ranked vector search result."""
    id: Any
    score: float
    table: str
    matched_field: str
    payload: Dict[str, Any] = field(default_factory=dict)
    rank: int = 0
    id_key: str = "id"

    def to_row(self) -> Dict[str, Any]:
        """Output row: id, payload, score and matched field."""
        return {self.id_key: self.id, **self.payload,
                '_score': self.score, '_matched_field': self.matched_field}


@dataclass
class VectorSearchResult:
    hits: List[VectorHit] = field(default_factory=list)
    search_time_ms: float = 0.0
    searches_run: int = 0
    searches_skipped: int = 0

    @property
    def ids(self) -> List[Any]:
        return list(dict.fromkeys(h.id for h in self.hits))

    def rows(self) -> List[Dict[str, Any]]:
        return [h.to_row() for h in self.hits]

    def to_context(self, top_n: int = 5) -> VectorContext:
        """Summary kept on the query context and passed to SQL building."""
        return VectorContext(
            has_results=bool(self.hits),
            ids=self.ids,
            top_matches=[
                VectorMatch(id=h.id, score=h.score, matched_field=h.matched_field)
                for h in self.hits[:top_n]
            ]
        )


class VectorSearcher:
    """
    Runs VectorQuery lists against a search service.

    Missing collections and fields are skipped with a warning. A search
    that raises is logged and skipped; if every attempted search raised,
    VectorSearchFailure is raised.
    """

    def __init__(self, service: VectorSearchService,
                 embedder: EmbeddingProvider,
                 config: Optional[VectorConfig] = None,
                 cache: Optional[QueryCache] = None):
        self.service = service
        self.embedder = embedder
        self.config = config or VectorConfig()
        self.cache = cache

    def embed(self, text: str, use_cache: bool = True) -> List[float]:
        """Embed text, using the embeddings cache."""
        cache_key = make_cache_key({'model': self.embedder.name, 'text': text})
        if use_cache and self.cache:
            cached = self.cache.get(CacheNamespace.EMBEDDINGS, cache_key)
            if cached is not None:
                return cached

        vector = self.embedder.embed_text(text)
        if use_cache and self.cache:
            self.cache.set(CacheNamespace.EMBEDDINGS, cache_key, vector)
        return vector

    def search(self, queries: List[VectorQuery], use_cache: bool = True) -> VectorSearchResult:
        """
        Execute all queries and merge their hits.

        Args:
            queries: Vector queries from the analyzer
            use_cache: Use the embeddings cache

        Returns:
            VectorSearchResult sorted by score (best first)

        Raises:
            VectorSearchFailure: If searches were attempted and all failed
        """
        start_time = time.time()
        result = VectorSearchResult()
        if not queries:
            return result

        # Embed each distinct text once
        vectors: Dict[str, List[float]] = {}
        for q in queries:
            if q.search_text not in vectors:
                vectors[q.search_text] = self.embed(q.search_text, use_cache)

        jobs = self._plan(queries, result)
        errors: List[str] = []
        merged: Dict[Tuple[str, str], VectorHit] = {}

        if jobs:
            workers = max(1, min(self.config.max_workers, len(jobs)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [
                    (q, f, pool.submit(self._search_one, q, f, vectors[q.search_text]))
                    for q, f in jobs
                ]
                for q, f, future in futures:
                    try:
                        hits = future.result()
                    except Exception as e:
                        logger.error(f"Vector search failed for {q.table}.{f}: {e}")
                        errors.append(f"{q.table}.{f}: {e}")
                        continue
                    result.searches_run += 1
                    for hit in hits:
                        key = (str(hit.id), hit.table)
                        existing = merged.get(key)
                        if existing is None or hit.score > existing.score:
                            merged[key] = hit

        if jobs and len(errors) == len(jobs):
            raise VectorSearchFailure(
                f"all {len(jobs)} searches failed; first error: {errors[0]}",
                {'tables': sorted({q.table for q, _ in jobs})}
            )

        result.hits = sorted(merged.values(), key=lambda h: h.score, reverse=True)
        result.search_time_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Vector search complete: {len(result.hits)} results from "
            f"{result.searches_run} searches ({result.searches_skipped} skipped) "
            f"in {result.search_time_ms:.0f}ms"
        )
        return result

    def _plan(self, queries: List[VectorQuery], result: VectorSearchResult) -> List[Tuple[VectorQuery, str]]:
        """Resolve (query, field) pairs whose collection and vector exist."""
        jobs: List[Tuple[VectorQuery, str]] = []
        known_fields: Dict[str, Optional[List[str]]] = {}

        for q in queries:
            collection = self.config.collection_name(q.table)
            if collection not in known_fields:
                try:
                    if self.service.collection_exists(collection):
                        known_fields[collection] = self.service.vector_names(collection)
                    else:
                        known_fields[collection] = None
                except Exception as e:
                    logger.error(f"Could not inspect collection {collection}: {e}")
                    # Let the searches themselves report the failure
                    known_fields[collection] = list(q.fields)

            fields_available = known_fields[collection]
            if fields_available is None:
                logger.warning(f"Collection {collection} does not exist, skipping")
                result.searches_skipped += len(q.fields)
                continue

            for f in q.fields:
                if f not in fields_available:
                    logger.warning(f"Vector field {f} not in {collection}, skipping")
                    result.searches_skipped += 1
                    continue
                jobs.append((q, f))
        return jobs

    def _search_one(self, query: VectorQuery, field_name: str,
                    vector: List[float]) -> List[VectorHit]:
        points = self.service.search(
            self.config.collection_name(query.table),
            vector_name=field_name,
            vector=vector,
            limit=query.limit,
            with_payload=True,
            hnsw_ef=self.config.hnsw_ef
        )
        return [
            VectorHit(
                id=p.payload.get(self.config.id_field, p.id),
                score=p.score,
                table=query.table,
                matched_field=field_name,
                payload=p.payload,
                rank=idx + 1,
                id_key=self.config.id_field
            )
            for idx, p in enumerate(points)
        ]


def create_vector_searcher(config: VectorConfig,
                           cache: Optional[QueryCache] = None,
                           service: Optional[VectorSearchService] = None,
                           embedder: Optional[EmbeddingProvider] = None) -> VectorSearcher:
    """Build a VectorSearcher from configuration."""
    if service is None:
        if config.backend == "memory":
            service = InMemoryVectorSearch()
        else:
            service = QdrantVectorSearch(config.qdrant_url, config.qdrant_api_key)
    if embedder is None:
        if config.embedding_model.startswith("hash"):
            embedder = DeterministicHashEmbedding()
        else:
            embedder = SentenceTransformerEmbedding(config.embedding_model)
    logger.info(f"Creating vector searcher: backend={config.backend}, embeddings={embedder.name}")
    return VectorSearcher(service, embedder, config, cache)
