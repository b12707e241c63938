"""Unit tests for knowledge-base retrieval."""

import asyncio

import pytest
import pytest_asyncio

from cobra_chat.services.guidelines import EMBEDDINGS_ROOT, GUIDELINES_ROOT, GuidelinesRetriever


@pytest_asyncio.fixture
async def seeded_store(store, guidelines_data):
    await store.set(GUIDELINES_ROOT, guidelines_data)
    return store


@pytest.mark.asyncio
async def test_build_embeds_and_persists(seeded_store, codec, remote_embedder):
    retriever = GuidelinesRetriever(seeded_store, codec)

    assert await retriever.build_index()

    assert retriever.index_loaded
    assert retriever.last_api_calls == 2
    assert len(retriever.index) == 2
    saved = seeded_store.snapshot()[EMBEDDINGS_ROOT]
    assert saved["g1"]["guidelineId"] == "g1"
    assert saved["g1"]["guidelineUpdatedAt"] == 1000
    assert saved["g1"]["model"] == "fake-remote"


@pytest.mark.asyncio
async def test_stored_embeddings_are_reused(seeded_store, remote_embedder):
    from cobra_chat.services.vector_codec import VectorCodec

    await GuidelinesRetriever(seeded_store, VectorCodec(remote=remote_embedder)).build_index()
    remote_embedder.calls.clear()

    # Fresh codec so the in-process memo cannot hide API calls
    retriever = GuidelinesRetriever(seeded_store, VectorCodec(remote=remote_embedder))
    assert await retriever.build_index()

    assert retriever.last_api_calls == 0
    assert remote_embedder.calls == []
    assert len(retriever.index) == 2


@pytest.mark.asyncio
async def test_changed_document_is_re_embedded(seeded_store, remote_embedder):
    from cobra_chat.services.vector_codec import VectorCodec

    await GuidelinesRetriever(seeded_store, VectorCodec(remote=remote_embedder)).build_index()
    await seeded_store.set(f"{GUIDELINES_ROOT}/g2/updatedAt", 2000)

    retriever = GuidelinesRetriever(seeded_store, VectorCodec(remote=remote_embedder))
    await retriever.build_index()

    assert retriever.last_api_calls == 1
    assert seeded_store.snapshot()[EMBEDDINGS_ROOT]["g2"]["guidelineUpdatedAt"] == 2000


@pytest.mark.asyncio
async def test_concurrent_build_returns_false(seeded_store, codec):
    retriever = GuidelinesRetriever(seeded_store, codec)

    results = await asyncio.gather(retriever.build_index(), retriever.build_index())

    assert results == [True, False]
    assert not retriever.is_building


@pytest.mark.asyncio
async def test_search_returns_matches_above_threshold(seeded_store, codec):
    retriever = GuidelinesRetriever(seeded_store, codec)

    matches = await retriever.search("How do plants use sunlight?")

    assert [m.document.id for m in matches] == ["g1"]
    assert matches[0].similarity >= 0.70
    assert await retriever.search("What is gravity?") == []


@pytest.mark.asyncio
async def test_search_never_raises(seeded_store, codec, remote_embedder):
    retriever = GuidelinesRetriever(seeded_store, codec)
    await retriever.build_index()
    remote_embedder.fail = True

    assert await retriever.search("Why is the sky blue?") == []
    assert await retriever.search("") == []


@pytest.mark.asyncio
async def test_empty_knowledge_base(store, codec):
    retriever = GuidelinesRetriever(store, codec)

    assert not await retriever.build_index()
    assert await retriever.search("How do plants use sunlight?") == []


@pytest.mark.asyncio
async def test_failed_document_embedding_is_skipped(seeded_store, codec, remote_embedder):
    remote_embedder.fail = True
    retriever = GuidelinesRetriever(seeded_store, codec)

    assert await retriever.build_index()
    assert len(retriever.index) == 0
    assert not retriever.index_loaded
    assert EMBEDDINGS_ROOT not in seeded_store.snapshot()


@pytest.mark.asyncio
async def test_rebuild_and_admin_helpers(seeded_store, codec):
    retriever = GuidelinesRetriever(seeded_store, codec)
    await retriever.build_index()

    assert await retriever.rebuild_index()
    assert retriever.last_api_calls == 2

    status = retriever.status()
    assert status["loaded"] and status["guidelines_count"] == 2

    await retriever.delete_cached_embedding("g1")
    stats = await retriever.cache_stats()
    assert stats["total"] == 1
    assert stats["embeddings"][0]["id"] == "g2"
    assert stats["embeddings"][0]["vector_size"] == 6


@pytest.mark.asyncio
async def test_search_retries_documents_that_failed_to_embed(seeded_store, codec, remote_embedder):
    remote_embedder.fail = True
    retriever = GuidelinesRetriever(seeded_store, codec)
    await retriever.build_index()
    assert not retriever.index_loaded

    remote_embedder.fail = False
    matches = await retriever.search("How do plants use sunlight?")

    assert [m.document.id for m in matches] == ["g1"]
    assert retriever.index_loaded
    assert len(retriever.index) == 2
