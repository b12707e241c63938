import asyncio
import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import google.generativeai as genai

from cobra_chat.utils.errors import ConfigurationError, EmbeddingError
from cobra_chat.utils.fallback import FallbackChain
from cobra_chat.utils.hashing import stable_hash
from cobra_chat.utils.logger import logger

WORD_PATTERN = re.compile(r"[\w']+")

SOURCE_REMOTE = "remote"
SOURCE_LOCAL = "local"


@dataclass(frozen=True)
class EmbeddingVector:
    """A text embedding tagged with the model that produced it."""
    values: Tuple[float, ...]
    model: str
    source: str = SOURCE_REMOTE

    @property
    def dimension(self) -> int:
        return len(self.values)

    def as_list(self) -> List[float]:
        return list(self.values)


class HashEncoder:
    """Deterministic local encoder: hashed bag of words, L2-normalized.

    Words are folded into a fixed number of buckets regardless of vocabulary
    size; collisions are accepted as noise.
    """

    def __init__(self, dimension: int = 300):
        if dimension <= 0:
            raise ConfigurationError("Local embedding dimension must be positive.")
        self.dimension = dimension
        self.model = f"local-hash-{dimension}"

    def encode(self, text: str) -> EmbeddingVector:
        buckets = [0.0] * self.dimension
        for word in WORD_PATTERN.findall(text.lower()):
            buckets[abs(stable_hash(word)) % self.dimension] += 1.0

        norm = math.sqrt(sum(v * v for v in buckets))
        if norm > 0:
            buckets = [v / norm for v in buckets]
        return EmbeddingVector(tuple(buckets), self.model, SOURCE_LOCAL)

    async def embed(self, text: str) -> EmbeddingVector:
        return self.encode(text)


class GeminiEmbedder:
    """Remote embeddings through the Gemini embedding endpoint."""

    def __init__(self, api_key: str, model: str = "models/text-embedding-004"):
        if not api_key:
            raise ConfigurationError("Gemini API key is required for remote embeddings.")
        genai.configure(api_key=api_key)
        self.model = model

    async def embed(self, text: str) -> EmbeddingVector:
        try:
            result = await asyncio.to_thread(genai.embed_content, model=self.model, content=text)
        except Exception as e:
            raise EmbeddingError(f"Gemini embedding failed: {str(e)}") from e

        values = result.get("embedding") if isinstance(result, dict) else None
        if not values:
            raise EmbeddingError("Gemini returned an empty embedding.")
        return EmbeddingVector(tuple(float(v) for v in values), self.model, SOURCE_REMOTE)


class VectorCodec:
    """
    Turns text into embeddings: remote model first, local hash encoder when the
    remote call fails or is not configured. Remote results are memoised for the
    life of the process, keyed by the stable content hash.
    """

    def __init__(self, remote=None, local: Optional[HashEncoder] = None):
        self.remote = remote
        self.local = local or HashEncoder()
        self._remote_cache: Dict[int, Tuple[str, EmbeddingVector]] = {}
        self._chain: Optional[FallbackChain[EmbeddingVector]] = None
        if self.remote is not None:
            self._chain = FallbackChain("embedding", self.embed_remote, self.local.embed)

    @property
    def remote_model(self) -> Optional[str]:
        return self.remote.model if self.remote is not None else None

    @property
    def models(self) -> Sequence[str]:
        return [m for m in (self.remote_model, self.local.model) if m]

    async def embed(self, text: str) -> EmbeddingVector:
        if self._chain is None:
            return self.local.encode(text)
        return await self._chain(text)

    async def embed_remote(self, text: str) -> EmbeddingVector:
        """Remote model only. Raises EmbeddingError instead of degrading."""
        if self.remote is None:
            raise EmbeddingError("No remote embedding model configured.")

        key = stable_hash(text)
        cached = self._remote_cache.get(key)
        if cached and cached[0] == text:
            return cached[1]

        vector = await self.remote.embed(text)
        self._remote_cache[key] = (text, vector)
        return vector

    def clear_cache(self) -> None:
        self._remote_cache.clear()
        logger.info("Embedding memo cleared")
