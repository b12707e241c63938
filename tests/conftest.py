"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from cobra_chat.config import Settings
from cobra_chat.services.container import build_services
from cobra_chat.services.llm_service import LLMService
from cobra_chat.services.persistence import InMemoryStore
from cobra_chat.services.vector_codec import (
    SOURCE_REMOTE,
    WORD_PATTERN,
    EmbeddingVector,
    HashEncoder,
    VectorCodec,
)
from cobra_chat.utils.errors import EmbeddingError, StorageError


# ============================================================================
# Fakes
# ============================================================================

# Words in the same group land on the same axis, so paraphrases score close to 1
CONCEPTS = [
    {"photosynthesis", "plants", "plant", "sunlight", "chlorophyll", "light"},
    {"gravity", "newton", "fall", "falls", "mass", "weight"},
    {"essay", "write", "writing", "citation", "cite", "references", "plagiarism"},
    {"exam", "exams", "deadline", "deadlines", "submit", "submission", "late"},
    {"water", "cycle", "evaporation", "rain", "condensation"},
]


class ConceptEmbedder:
    """Stand-in for the remote embedding model."""

    def __init__(self, model: str = "fake-remote", extra_dims: int = 0):
        self.model = model
        self.extra_dims = extra_dims
        self.calls: List[str] = []
        self.fail = False

    async def embed(self, text: str) -> EmbeddingVector:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingError("remote embedding unavailable")

        values = [0.0] * (len(CONCEPTS) + 1 + self.extra_dims)
        for word in WORD_PATTERN.findall(text.lower()):
            for axis, group in enumerate(CONCEPTS):
                if word in group:
                    values[axis] += 1.0
                    break
            else:
                values[len(CONCEPTS)] += 0.1
        return EmbeddingVector(tuple(values), self.model, SOURCE_REMOTE)


class ScriptedGenerator:
    """Streams fixed fragments; ``fail_at`` raises before yielding that fragment index."""

    def __init__(self, name: str, fragments=("Hello", " world"), fail_at: Optional[int] = None):
        self.name = name
        self.fragments = list(fragments)
        self.fail_at = fail_at
        self.calls = []

    async def stream(self, history, prompt):
        self.calls.append((list(history), prompt))
        for position, fragment in enumerate(self.fragments):
            if self.fail_at == position:
                raise RuntimeError(f"{self.name} unavailable")
            yield fragment
        if self.fail_at is not None and self.fail_at >= len(self.fragments):
            raise RuntimeError(f"{self.name} unavailable")


class FlakyStore(InMemoryStore):
    """InMemoryStore whose reads or writes can be switched off."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.fail_reads = False
        self.fail_writes = False

    async def get(self, path):
        if self.fail_reads:
            raise StorageError("store unreachable")
        return await super().get(path)

    async def set(self, path, value):
        if self.fail_writes:
            raise StorageError("store unreachable")
        await super().set(path, value)

    async def update(self, path, fields):
        if self.fail_writes:
            raise StorageError("store unreachable")
        await super().update(path, fields)


class FrozenClock:
    def __init__(self, now: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def remote_embedder():
    return ConceptEmbedder()


@pytest.fixture
def codec(remote_embedder):
    return VectorCodec(remote=remote_embedder, local=HashEncoder(300))


@pytest.fixture
def primary_generator():
    return ScriptedGenerator("primary")


@pytest.fixture
def settings():
    return Settings(GEMINI_API_KEY="test-key", _env_file=None)


@pytest.fixture
def services(settings, store, codec, primary_generator):
    """Fully wired container with every remote dependency faked."""
    return build_services(settings, db=store, codec=codec, llm=LLMService(primary_generator))


GUIDELINES = {
    "g1": {
        "title": "Photosynthesis basics",
        "category": "biology",
        "content": "Plants use sunlight and chlorophyll to make sugar.",
        "keywords": ["plants", "photosynthesis"],
        "updatedAt": 1000,
    },
    "g2": {
        "title": "Essay citation rules",
        "category": "writing",
        "content": "Cite every source and list references.",
        "keywords": ["citation", "essay"],
        "updatedAt": 1000,
    },
}


@pytest.fixture
def guidelines_data():
    return {doc_id: dict(record) for doc_id, record in GUIDELINES.items()}


@pytest.fixture
def make_generator():
    return ScriptedGenerator
