"""
Knowledge-base retrieval for prompt grounding.

Unlike the semantic cache, this index is built once from the global
``guidelines`` collection and then queried many times. Document embeddings
are persisted in ``guideline_embeddings`` and reused until the document's
``updatedAt`` changes.
"""
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional

from cobra_chat.services.persistence import KeyValueStore
from cobra_chat.services.similarity_index import SimilarityIndex
from cobra_chat.services.vector_codec import VectorCodec
from cobra_chat.utils.clock import utcnow
from cobra_chat.utils.logger import logger

GUIDELINES_ROOT = "guidelines"
EMBEDDINGS_ROOT = "guideline_embeddings"


@dataclass(frozen=True)
class KnowledgeDocument:
    id: str
    title: str
    category: str
    content: str
    keywords: FrozenSet[str]
    updated_at: Any

    @classmethod
    def from_record(cls, doc_id: str, record: Dict[str, Any]) -> "KnowledgeDocument":
        return cls(
            id=doc_id,
            title=record.get("title", ""),
            category=record.get("category", ""),
            content=record.get("content", ""),
            keywords=frozenset(record.get("keywords") or []),
            updated_at=record.get("updatedAt"),
        )

    def embedding_text(self) -> str:
        return f"{self.title}\n{self.content}\nKeywords: {', '.join(sorted(self.keywords))}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "content": self.content,
            "keywords": sorted(self.keywords),
        }


@dataclass(frozen=True)
class GuidelineMatch:
    similarity: float
    document: KnowledgeDocument


class GuidelinesRetriever:
    def __init__(self, db: KeyValueStore, codec: VectorCodec, threshold: float = 0.70):
        self.db = db
        self.codec = codec
        self.threshold = threshold
        self.index: SimilarityIndex[KnowledgeDocument] = SimilarityIndex(GUIDELINES_ROOT)
        self.index_loaded = False
        self.is_building = False
        self.last_api_calls = 0

    async def build_index(self, force_rebuild: bool = False) -> bool:
        """Builds the in-memory index. A call made while another build runs returns False at once."""
        if self.index_loaded and not force_rebuild:
            return True
        if self.is_building:
            logger.info("Guidelines index is already being built")
            return False

        self.is_building = True
        logger.info("Building guidelines index...")
        try:
            documents = await self.db.get(GUIDELINES_ROOT)
            if not documents:
                logger.warning("No guidelines found in database")
                self.index = SimilarityIndex(GUIDELINES_ROOT)
                self.index_loaded = True
                return False

            existing = await self.db.get(EMBEDDINGS_ROOT) or {}
            index: SimilarityIndex[KnowledgeDocument] = SimilarityIndex(GUIDELINES_ROOT)
            updates: Dict[str, Any] = {}
            api_calls = 0
            embed_failures = 0

            for doc_id, record in documents.items():
                try:
                    document = KnowledgeDocument.from_record(doc_id, record)
                except (AttributeError, TypeError) as e:
                    logger.warning(f"Skipping malformed guideline {doc_id}: {e}")
                    continue

                embedding = self._reusable_embedding(existing.get(doc_id), document, force_rebuild)
                if embedding is None:
                    try:
                        vector = await self.codec.embed_remote(document.embedding_text())
                    except Exception as e:
                        logger.error(f"Failed to generate embedding for '{document.title}': {str(e)}")
                        embed_failures += 1
                        continue
                    api_calls += 1
                    embedding = vector.as_list()
                    updates[doc_id] = {
                        "embedding": embedding,
                        "model": vector.model,
                        "guidelineId": doc_id,
                        "guidelineUpdatedAt": document.updated_at,
                        "lastEmbedded": utcnow().isoformat(),
                    }

                try:
                    index.add(embedding, document, doc_id)
                except Exception as e:
                    logger.warning(f"Skipping guideline '{document.title}': {e}")

            if updates:
                logger.info(f"Saving {len(updates)} new guideline embeddings...")
                await self.db.update(EMBEDDINGS_ROOT, updates)

            self.index = index
            # Documents that could not be embedded are retried by the next search
            self.index_loaded = embed_failures == 0
            self.last_api_calls = api_calls
            logger.info(
                f"Guidelines index built: {len(index)} guidelines, "
                f"{api_calls} API calls, {len(index) - api_calls} cached embeddings used, {embed_failures} failed"
            )
            return True
        except Exception as e:
            logger.error(f"Error building guidelines index: {str(e)}")
            self.index_loaded = False
            return False
        finally:
            self.is_building = False

    def _reusable_embedding(self, stored: Optional[Dict[str, Any]], document: KnowledgeDocument, force_rebuild: bool) -> Optional[List[float]]:
        if force_rebuild or not isinstance(stored, dict):
            return None
        if stored.get("guidelineUpdatedAt") != document.updated_at:
            return None
        if stored.get("model") != self.codec.remote_model:
            return None
        return stored.get("embedding") or None

    async def search(self, query: str, top_k: int = 3) -> List[GuidelineMatch]:
        """Guidelines scoring at or above the threshold, best first. Never raises."""
        if not query or not isinstance(query, str):
            return []
        try:
            if not self.index_loaded:
                if not await self.build_index():
                    return []
            if len(self.index) == 0:
                logger.warning("No guidelines available")
                return []

            vector = await self.codec.embed_remote(query)
            hits = self.index.search(vector.values, k=top_k, threshold=self.threshold)
        except Exception as e:
            logger.error(f"Error searching guidelines: {str(e)}")
            return []

        if hits:
            logger.info(f"Found {len(hits)} matching guidelines, best: '{hits[0].metadata.title}' ({hits[0].similarity:.1%})")
        return [GuidelineMatch(hit.similarity, hit.metadata) for hit in hits]

    def status(self) -> Dict[str, Any]:
        return {
            "loaded": self.index_loaded,
            "building": self.is_building,
            "guidelines_count": len(self.index),
            "threshold": self.threshold,
            "model": self.codec.remote_model,
        }

    def clear_index(self) -> None:
        self.index = SimilarityIndex(GUIDELINES_ROOT)
        self.index_loaded = False
        logger.info("Guidelines index cleared")

    async def rebuild_index(self) -> bool:
        self.clear_index()
        return await self.build_index(force_rebuild=True)

    async def delete_cached_embedding(self, document_id: str) -> None:
        try:
            await self.db.remove(f"{EMBEDDINGS_ROOT}/{document_id}")
            logger.info(f"Deleted cached embedding for guideline: {document_id}")
        except Exception as e:
            logger.error(f"Error deleting cached embedding: {str(e)}")

    async def cache_stats(self) -> Dict[str, Any]:
        try:
            embeddings = await self.db.get(EMBEDDINGS_ROOT) or {}
        except Exception as e:
            logger.error(f"Error getting cache stats: {str(e)}")
            return {"total": 0, "embeddings": []}

        return {
            "total": len(embeddings),
            "embeddings": [
                {
                    "id": doc_id,
                    "last_embedded": data.get("lastEmbedded"),
                    "vector_size": len(data.get("embedding") or []),
                }
                for doc_id, data in embeddings.items()
            ],
        }
