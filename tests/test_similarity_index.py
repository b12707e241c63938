"""Unit tests for cosine similarity, SimilarityIndex and IndexRegistry."""

import asyncio
import math

import pytest

from cobra_chat.services.similarity_index import IndexRegistry, SimilarityIndex, cosine_similarity
from cobra_chat.utils.errors import DimensionMismatchError


# ============================================================================
# cosine_similarity
# ============================================================================

def test_identical_vectors_score_one():
    assert math.isclose(cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]), 1.0)


def test_similarity_is_symmetric():
    a, b = [0.2, 0.9, 0.1], [0.5, 0.4, 0.3]
    assert cosine_similarity(a, b) == cosine_similarity(b, a)


def test_orthogonal_and_opposite_vectors_score_zero():
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert cosine_similarity([1.0, 1.0], [-1.0, -1.0]) == 0.0


def test_degenerate_inputs_score_zero():
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0
    assert cosine_similarity([], []) == 0.0
    assert cosine_similarity([float("nan"), 1.0], [1.0, 1.0]) == 0.0
    assert cosine_similarity(None, [1.0]) == 0.0
    assert cosine_similarity(["a", "b"], [1.0, 1.0]) == 0.0


# ============================================================================
# SimilarityIndex
# ============================================================================

@pytest.fixture
def index():
    idx = SimilarityIndex("test")
    idx.add([1.0, 0.0, 0.0], {"name": "x"}, "id-x")
    idx.add([0.0, 1.0, 0.0], {"name": "y"}, "id-y")
    idx.add([0.7, 0.7, 0.0], {"name": "xy"}, "id-xy")
    return idx


def test_first_add_fixes_dimension():
    idx = SimilarityIndex("test")
    assert idx.dimension is None

    idx.add([1.0, 2.0], "meta", "a")
    assert idx.dimension == 2


def test_dimension_mismatch_leaves_index_untouched(index):
    with pytest.raises(DimensionMismatchError) as exc_info:
        index.add([1.0, 0.0], {"name": "bad"}, "id-bad")

    assert exc_info.value.expected == 3
    assert exc_info.value.actual == 2
    assert len(index) == len(index.vectors) == len(index.metadata) == len(index.ids) == 3


def test_empty_vector_is_rejected():
    with pytest.raises(DimensionMismatchError):
        SimilarityIndex("test").add([], "meta", "a")


def test_search_orders_by_similarity(index):
    hits = index.search([1.0, 0.1, 0.0], k=3)

    assert [h.id for h in hits] == ["id-x", "id-xy", "id-y"]
    assert hits[0].metadata == {"name": "x"}
    assert all(hits[i].similarity >= hits[i + 1].similarity for i in range(len(hits) - 1))


def test_search_respects_k_and_threshold(index):
    assert len(index.search([1.0, 0.1, 0.0], k=1)) == 1
    assert [h.id for h in index.search([1.0, 0.1, 0.0], k=3, threshold=0.5)] == ["id-x", "id-xy"]
    assert index.search([1.0, 0.0, 0.0], k=0) == []


def test_search_ties_keep_insertion_order():
    idx = SimilarityIndex("ties")
    idx.add([1.0, 0.0], "first", "1")
    idx.add([2.0, 0.0], "second", "2")

    assert [h.id for h in idx.search([1.0, 0.0], k=2)] == ["1", "2"]


def test_search_applies_filter_before_ranking(index):
    hits = index.search([1.0, 0.0, 0.0], k=1, filter_predicate=lambda m: m["name"] != "x")
    assert [h.id for h in hits] == ["id-xy"]


def test_malformed_query_returns_nothing(index):
    assert index.search([1.0, 0.0], k=3) == []
    assert index.search(None, k=3) == []


def test_search_on_empty_index():
    assert SimilarityIndex("empty").search([1.0], k=5) == []


# ============================================================================
# IndexRegistry
# ============================================================================

class GatedLoader:
    def __init__(self, rows):
        self.rows = rows
        self.calls = 0
        self.release = asyncio.Event()

    async def __call__(self, namespace):
        self.calls += 1
        await self.release.wait()
        return list(self.rows)


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_fetch():
    loader = GatedLoader([([1.0, 0.0], "a", "a")])
    registry = IndexRegistry(loader)

    waiters = [asyncio.ensure_future(registry.load("user::m")) for _ in range(5)]
    await asyncio.sleep(0)
    loader.release.set()
    results = await asyncio.gather(*waiters)

    assert loader.calls == 1
    assert registry.load_count == 1
    assert all(r is results[0] for r in results)
    assert registry.get("user::m") is results[0]


@pytest.mark.asyncio
async def test_loaded_index_is_reused_until_invalidated():
    loader = GatedLoader([([1.0, 0.0], "a", "a")])
    loader.release.set()
    registry = IndexRegistry(loader)

    first = await registry.load("user::m")
    assert await registry.load("user::m") is first
    assert loader.calls == 1

    registry.invalidate("user::m")
    assert not registry.is_loaded("user::m")
    assert await registry.load("user::m") is not first
    assert loader.calls == 2


@pytest.mark.asyncio
async def test_invalidation_during_load_is_respected():
    loader = GatedLoader([([1.0, 0.0], "a", "a")])
    registry = IndexRegistry(loader)

    pending = asyncio.ensure_future(registry.load("user::m"))
    await asyncio.sleep(0)
    registry.invalidate("user::m")
    loader.release.set()
    await pending

    assert not registry.is_loaded("user::m")


@pytest.mark.asyncio
async def test_bad_rows_are_skipped_on_load():
    loader = GatedLoader([([1.0, 0.0], "a", "a"), ([1.0], "short", "b"), ([0.0, 1.0], "c", "c")])
    loader.release.set()
    registry = IndexRegistry(loader)

    index = await registry.load("user::m")

    assert index.ids == ("a", "c")


@pytest.mark.asyncio
async def test_invalidate_prefix_only_touches_matching_namespaces():
    loader = GatedLoader([])
    loader.release.set()
    registry = IndexRegistry(loader)
    await registry.load("alice::m1")
    await registry.load("alice::m2")
    await registry.load("bob::m1")

    registry.invalidate_prefix("alice::")

    assert not registry.is_loaded("alice::m1")
    assert not registry.is_loaded("alice::m2")
    assert registry.is_loaded("bob::m1")
