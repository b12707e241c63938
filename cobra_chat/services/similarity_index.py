"""
In-memory k-NN over (vector, metadata, id) triples, one index per namespace.
Search is a linear cosine scan, which is fine for per-user cache sizes and a
knowledge base of a few hundred documents.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

from cobra_chat.utils.errors import DimensionMismatchError
from cobra_chat.utils.logger import logger

M = TypeVar("M")


def _as_array(vector: Any) -> Optional[np.ndarray]:
    try:
        arr = np.asarray(vector, dtype=float)
    except (TypeError, ValueError):
        return None
    if arr.ndim != 1 or arr.size == 0 or not np.all(np.isfinite(arr)):
        return None
    return arr


def cosine_similarity(a: Any, b: Any) -> float:
    """Cosine similarity clamped to [0, 1].

    Zero magnitude, mismatched dimensions or malformed input give 0.0.
    """
    va, vb = _as_array(a), _as_array(b)
    if va is None or vb is None or va.shape != vb.shape:
        return 0.0
    magnitude = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if magnitude == 0.0:
        return 0.0
    return min(1.0, max(0.0, float(np.dot(va, vb)) / magnitude))


@dataclass(frozen=True)
class SearchHit(Generic[M]):
    similarity: float
    metadata: M
    id: str


class SimilarityIndex(Generic[M]):
    """Three index-aligned sequences: vectors, metadata and ids.

    ``add`` is the only mutator, so the sequences cannot drift apart.
    """

    def __init__(self, namespace: str, dimension: Optional[int] = None):
        self.namespace = namespace
        self.dimension = dimension
        self._vectors: List[Tuple[float, ...]] = []
        self._metadata: List[M] = []
        self._ids: List[str] = []

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def vectors(self) -> Tuple[Tuple[float, ...], ...]:
        return tuple(self._vectors)

    @property
    def metadata(self) -> Tuple[M, ...]:
        return tuple(self._metadata)

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(self._ids)

    def add(self, vector: Sequence[float], metadata: M, id: str) -> None:
        values = tuple(float(v) for v in vector)
        if not values:
            raise DimensionMismatchError(self.dimension or 0, 0)
        if self.dimension is None:
            self.dimension = len(values)
        elif len(values) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(values))

        self._vectors.append(values)
        self._metadata.append(metadata)
        self._ids.append(id)

    def search(
        self,
        query: Sequence[float],
        k: int,
        threshold: float = 0.0,
        filter_predicate: Optional[Callable[[M], bool]] = None,
    ) -> List[SearchHit[M]]:
        if k <= 0 or not self._ids:
            return []

        query_arr = _as_array(query)
        if query_arr is None:
            logger.warning(f"Index '{self.namespace}': malformed query vector, no results")
            return []

        hits: List[SearchHit[M]] = []
        for vector, metadata, id in zip(self._vectors, self._metadata, self._ids):
            if filter_predicate is not None and not filter_predicate(metadata):
                continue
            if len(vector) != query_arr.size or _as_array(vector) is None:
                logger.warning(f"Index '{self.namespace}': skipping malformed vector {id}")
                continue
            similarity = cosine_similarity(query_arr, vector)
            if similarity >= threshold:
                hits.append(SearchHit(similarity, metadata, id))

        # sorted() is stable, so ties keep insertion order
        hits = sorted(hits, key=lambda h: h.similarity, reverse=True)
        return hits[:k]


Loader = Callable[[str], Awaitable[Iterable[Tuple[Sequence[float], Any, str]]]]


class IndexRegistry:
    """
    Holds one SimilarityIndex per namespace and loads each one at most once.
    Concurrent ``load`` calls for the same namespace await a single in-flight
    task instead of each starting their own fetch.
    """

    def __init__(self, loader: Loader):
        self._loader = loader
        self._indexes: Dict[str, SimilarityIndex] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._generation: Dict[str, int] = {}
        self.load_count = 0

    def get(self, namespace: str) -> Optional[SimilarityIndex]:
        return self._indexes.get(namespace)

    def is_loaded(self, namespace: str) -> bool:
        return namespace in self._indexes

    async def load(self, namespace: str, force_rebuild: bool = False) -> SimilarityIndex:
        if namespace in self._indexes and not force_rebuild:
            return self._indexes[namespace]

        task = self._inflight.get(namespace)
        if task is None:
            task = asyncio.ensure_future(self._build(namespace, self._generation.get(namespace, 0)))
            self._inflight[namespace] = task
            task.add_done_callback(lambda t, ns=namespace: self._clear_inflight(ns, t))
        return await asyncio.shield(task)

    def invalidate(self, namespace: str) -> None:
        """Drops the index; the next ``load`` fetches it again."""
        self._indexes.pop(namespace, None)
        self._generation[namespace] = self._generation.get(namespace, 0) + 1

    def invalidate_prefix(self, prefix: str) -> None:
        for namespace in [ns for ns in set(self._indexes) | set(self._inflight) if ns.startswith(prefix)]:
            self.invalidate(namespace)

    def _clear_inflight(self, namespace: str, task: asyncio.Task) -> None:
        if self._inflight.get(namespace) is task:
            del self._inflight[namespace]
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Index '{namespace}' failed to load: {task.exception()}")

    async def _build(self, namespace: str, generation: int) -> SimilarityIndex:
        self.load_count += 1
        rows = await self._loader(namespace)

        index: SimilarityIndex = SimilarityIndex(namespace)
        for vector, metadata, id in rows:
            try:
                index.add(vector, metadata, id)
            except (DimensionMismatchError, TypeError, ValueError) as e:
                logger.warning(f"Index '{namespace}': skipping stored entry {id}: {e}")

        # An invalidation during the fetch means this data may already be stale
        if self._generation.get(namespace, 0) == generation:
            self._indexes[namespace] = index
        logger.info(f"Index '{namespace}' loaded with {len(index)} vectors")
        return index
