"""
Semantic response cache.
Looks up a user's previous answers by query similarity before calling the
generator, and stores each freshly generated answer afterwards.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from cobra_chat.services.persistence import KeyValueStore
from cobra_chat.services.similarity_index import IndexRegistry, SimilarityIndex
from cobra_chat.services.vector_codec import SOURCE_REMOTE, EmbeddingVector, VectorCodec
from cobra_chat.utils.clock import parse_timestamp, utcnow
from cobra_chat.utils.logger import logger
from cobra_chat.utils.security import mask_user_id

CACHE_ROOT = "embeddings"
NAMESPACE_SEPARATOR = "::"


@dataclass
class FileContext:
    """An uploaded document whose text accompanies a chat message."""
    name: str
    size: int = 0
    content: str = ""
    mime_type: str = ""


@dataclass
class CacheEntry:
    id: str
    query: str
    response: str
    embedding: List[float]
    model: str
    created_at: datetime
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    hit_count: int = 0
    last_hit_at: Optional[datetime] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "response": self.response,
            "embedding": self.embedding,
            "model": self.model,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "createdAt": self.created_at.isoformat(),
            "hitCount": self.hit_count,
            "lastHitAt": self.last_hit_at.isoformat() if self.last_hit_at else None,
        }

    @classmethod
    def from_record(cls, entry_id: str, record: Dict[str, Any]) -> "CacheEntry":
        return cls(
            id=entry_id,
            query=record["query"],
            response=record["response"],
            embedding=record.get("embedding") or [],
            model=record.get("model", ""),
            created_at=parse_timestamp(record.get("createdAt")) or utcnow(),
            file_name=record.get("fileName"),
            file_size=record.get("fileSize"),
            hit_count=max(0, int(record.get("hitCount") or 0)),
            last_hit_at=parse_timestamp(record.get("lastHitAt")),
        )


@dataclass(frozen=True)
class CacheMatch:
    entry: CacheEntry
    similarity: float


class SemanticCache:
    def __init__(
        self,
        db: KeyValueStore,
        codec: VectorCodec,
        remote_threshold: float = 0.75,
        local_threshold: float = 0.85,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.codec = codec
        self.remote_threshold = remote_threshold
        self.local_threshold = local_threshold
        self.clock = clock
        self.registry = IndexRegistry(self._load_namespace)

    # ---- namespaces ----

    @staticmethod
    def namespace(user_id: str, model: str) -> str:
        return f"{user_id}{NAMESPACE_SEPARATOR}{model}"

    def threshold_for(self, vector: EmbeddingVector) -> float:
        return self.remote_threshold if vector.source == SOURCE_REMOTE else self.local_threshold

    async def _load_namespace(self, namespace: str) -> List[Tuple[List[float], CacheEntry, str]]:
        user_id, _, model = namespace.rpartition(NAMESPACE_SEPARATOR)
        records = await self.db.get(f"{CACHE_ROOT}/{user_id}") or {}

        rows = []
        for entry_id, record in records.items():
            try:
                entry = CacheEntry.from_record(entry_id, record)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable cache entry {entry_id}: {e}")
                continue
            if entry.model == model:
                rows.append((entry.embedding, entry, entry_id))
        return rows

    async def _index_for(self, user_id: str, vector: EmbeddingVector) -> SimilarityIndex:
        return await self.registry.load(self.namespace(user_id, vector.model))

    # ---- operations ----

    async def lookup(self, user_id: str, query: str, file_context: Optional[FileContext] = None) -> Optional[CacheMatch]:
        """Best cached answer at or above the threshold, else None.

        Does not touch hit counts; callers that actually serve the match call
        ``record_hit``. Any failure is reported as a miss.
        """
        try:
            vector = await self.codec.embed(query)
            index = await self._index_for(user_id, vector)
            file_name = file_context.name if file_context else None
            hits = index.search(
                vector.values,
                k=1,
                threshold=self.threshold_for(vector),
                filter_predicate=lambda entry: entry.file_name == file_name,
            )
        except Exception as e:
            logger.error(f"Cache lookup failed for {mask_user_id(user_id)}, treating as miss: {str(e)}")
            return None

        if not hits:
            return None
        logger.info(f"Cache hit for {mask_user_id(user_id)} ({hits[0].similarity:.3f})")
        return CacheMatch(hits[0].metadata, hits[0].similarity)

    async def record_hit(self, user_id: str, entry_id: str) -> None:
        now = self.clock()
        path = f"{CACHE_ROOT}/{user_id}/{entry_id}"
        try:
            record = await self.db.get(path)
            if not record:
                return
            hit_count = int(record.get("hitCount") or 0) + 1
            await self.db.update(path, {"hitCount": hit_count, "lastHitAt": now.isoformat()})
        except Exception as e:
            logger.error(f"Error incrementing hit count: {str(e)}")
            return

        for model in self.codec.models:
            index = self.registry.get(self.namespace(user_id, model))
            if index is None:
                continue
            for cached_id, entry in zip(index.ids, index.metadata):
                if cached_id == entry_id:
                    entry.hit_count = hit_count
                    entry.last_hit_at = now

    async def store(self, user_id: str, query: str, response: str, file_context: Optional[FileContext] = None) -> bool:
        """Persists a new entry and appends it to the loaded index. Never dedupes."""
        try:
            vector = await self.codec.embed(query)
            entry_id = await self.db.push(f"{CACHE_ROOT}/{user_id}")
            entry = CacheEntry(
                id=entry_id,
                query=query,
                response=response,
                embedding=vector.as_list(),
                model=vector.model,
                created_at=self.clock(),
                file_name=file_context.name if file_context else None,
                file_size=file_context.size if file_context else None,
            )
            await self.db.set(f"{CACHE_ROOT}/{user_id}/{entry_id}", entry.to_record())

            # Only append when already loaded; an unloaded index picks it up from the store
            index = self.registry.get(self.namespace(user_id, vector.model))
            if index is not None:
                index.add(entry.embedding, entry, entry_id)
            return True
        except Exception as e:
            logger.error(f"Error storing query response: {str(e)}")
            return False

    async def prune(self, user_id: str, max_age_days: int = 30, min_hit_count: int = 2) -> int:
        """Deletes entries that are both older than max_age_days and below min_hit_count."""
        cutoff = self.clock() - timedelta(days=max_age_days)
        records = await self.db.get(f"{CACHE_ROOT}/{user_id}") or {}

        updates = {}
        for entry_id, record in records.items():
            try:
                created_at = parse_timestamp(record.get("createdAt"))
                hit_count = int(record.get("hitCount") or 0)
            except (AttributeError, TypeError, ValueError):
                continue
            if created_at is not None and created_at < cutoff and hit_count < min_hit_count:
                updates[entry_id] = None

        if updates:
            await self.db.update(f"{CACHE_ROOT}/{user_id}", updates)
            self.registry.invalidate_prefix(f"{user_id}{NAMESPACE_SEPARATOR}")
            logger.info(f"Pruned {len(updates)} cache entries for {mask_user_id(user_id)}")
        return len(updates)

    async def prune_in_background(self, user_id: str, max_age_days: int = 30, min_hit_count: int = 2) -> None:
        """Fire-and-forget wrapper: failures are logged, never raised."""
        try:
            await self.prune(user_id, max_age_days, min_hit_count)
        except Exception as e:
            logger.error(f"Background cache pruning failed for {mask_user_id(user_id)}: {str(e)}")

    async def clear(self, user_id: str) -> None:
        await self.db.remove(f"{CACHE_ROOT}/{user_id}")
        self.registry.invalidate_prefix(f"{user_id}{NAMESPACE_SEPARATOR}")
        logger.info(f"Cache cleared for {mask_user_id(user_id)}")

    async def stats(self, user_id: str) -> Dict[str, int]:
        records = await self.db.get(f"{CACHE_ROOT}/{user_id}") or {}
        return {
            "entries": len(records),
            "total_hits": sum(int(r.get("hitCount") or 0) for r in records.values()),
        }
