import asyncio

import numpy as np
import pytest
from sqlmodel.ext.asyncio.session import AsyncSession

from embedcache.core.exceptions import StorageFailure
from embedcache.services import BatchEmbedder, BatchProgress, CachedBatchEmbedder, EmbeddingCache

from .conftest import DIMENSIONS, MODEL_NAME


def _cached_embedder(coordinator, session) -> CachedBatchEmbedder:
    cache = EmbeddingCache(session, model_version=MODEL_NAME, dimensions=DIMENSIONS)
    return CachedBatchEmbedder(BatchEmbedder(coordinator), cache)


@pytest.mark.asyncio
async def test_embed_one_cached_stores_then_serves_from_cache(coordinator, fake_model, session):
    embedder = _cached_embedder(coordinator, session)

    first = await embedder.embed_one_cached("cached text")
    calls_after_first = fake_model.calls
    second = await embedder.embed_one_cached("cached text")

    assert first.shape == (DIMENSIONS,)
    assert fake_model.calls == calls_after_first
    assert np.allclose(first, second)


@pytest.mark.asyncio
async def test_embed_one_cached_bypass_leaves_cache_untouched(coordinator, fake_model, session):
    embedder = _cached_embedder(coordinator, session)
    await embedder.embed_one_cached("existing")

    await embedder.embed_one_cached("no cache", use_cache=False)
    await embedder.embed_one_cached("no cache", use_cache=False)
    await embedder.embed_one_cached("existing", use_cache=False)

    assert fake_model.calls == 4
    stats = await embedder.cache_stats()
    assert stats.total_entries == 1
    assert (stats.hits, stats.misses) == (0, 1)


@pytest.mark.asyncio
async def test_embed_one_cached_updates_stats(coordinator, session):
    embedder = _cached_embedder(coordinator, session)

    await embedder.embed_one_cached("text 1")
    await embedder.embed_one_cached("text 2")
    await embedder.embed_one_cached("text 1")

    stats = await embedder.cache_stats()
    assert stats.total_entries == 2
    assert (stats.hits, stats.misses) == (1, 2)


@pytest.mark.asyncio
async def test_blank_text_is_never_cached(coordinator, fake_model, session):
    embedder = _cached_embedder(coordinator, session)

    single = await embedder.embed_one_cached("   ")
    batch = await embedder.embed_many_cached(["", "word", " \t"])

    assert not single.any()
    assert not batch[0].any() and not batch[2].any()
    stats = await embedder.cache_stats()
    assert stats.total_entries == 1
    assert stats.misses == 1
    assert fake_model.texts == ["word"]


@pytest.mark.asyncio
async def test_embed_many_cached_empty_input(coordinator, session):
    embedder = _cached_embedder(coordinator, session)
    events: list[BatchProgress] = []

    assert await embedder.embed_many_cached([], on_progress=events.append) == []
    assert events == []


@pytest.mark.asyncio
async def test_embed_many_cached_only_computes_misses(coordinator, fake_model, session):
    embedder = _cached_embedder(coordinator, session)
    cache = embedder.cache
    await cache.put("A", (await embedder.embedder.embed_one("A")))
    await cache.put("B", (await embedder.embedder.embed_one("B")))
    fake_model.calls = 0
    fake_model.texts.clear()

    vectors = await embedder.embed_many_cached(["A", "B", "C"])

    assert len(vectors) == 3
    assert fake_model.calls == 1
    assert fake_model.texts == ["C"]
    stats = await embedder.cache_stats()
    assert (stats.hits, stats.misses, stats.total_entries) == (2, 1, 3)


@pytest.mark.asyncio
async def test_embed_many_cached_preserves_positional_order(coordinator, session):
    embedder = _cached_embedder(coordinator, session)
    await embedder.embed_one_cached("cached1")
    await embedder.embed_one_cached("cached2")

    texts = ["new1", "cached1", "new2", "cached2"]
    vectors = await embedder.embed_many_cached(texts)

    for text, vector in zip(texts, vectors):
        expected = await embedder.embedder.embed_one(text)
        assert np.allclose(vector, expected)


@pytest.mark.asyncio
async def test_progress_accounts_for_cache_hits(coordinator, session):
    embedder = _cached_embedder(coordinator, session)
    await embedder.embed_one_cached("pre-cached A")
    await embedder.embed_one_cached("pre-cached B")
    events: list[BatchProgress] = []

    await embedder.embed_many_cached(
        ["pre-cached A", "new 1", "pre-cached B", "new 2"],
        on_progress=events.append,
    )

    currents = [event.current for event in events]
    assert currents == [1, 2, 3, 4]
    assert all(event.total == 4 for event in events)
    assert events[-1].percentage == 100
    assert max(currents) <= 4


@pytest.mark.asyncio
async def test_first_fresh_progress_follows_cache_hits(coordinator, fake_model, session):
    embedder = _cached_embedder(coordinator, session)
    await embedder.embed_one_cached("hit 1")
    await embedder.embed_one_cached("hit 2")
    calls_before = fake_model.calls
    observed: list[tuple[int, int]] = []

    await embedder.embed_many_cached(
        ["miss 1", "hit 1", "miss 2", "hit 2"],
        on_progress=lambda progress: observed.append((progress.current, fake_model.calls)),
    )

    fresh = [current for current, calls in observed if calls > calls_before]
    assert fresh[0] == 3
    assert [current for current, _ in observed] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_batch_size_does_not_change_progress_count(coordinator, session):
    embedder = _cached_embedder(coordinator, session)
    events: list[BatchProgress] = []

    vectors = await embedder.embed_many_cached(
        [f"text-{index}" for index in range(10)],
        batch_size=3,
        on_progress=events.append,
    )

    assert len(vectors) == 10
    assert len(events) == 10


@pytest.mark.asyncio
async def test_duplicate_misses_are_computed_once(coordinator, fake_model, session):
    embedder = _cached_embedder(coordinator, session)
    events: list[BatchProgress] = []

    vectors = await embedder.embed_many_cached(["dup", "other", "dup"], on_progress=events.append)

    assert fake_model.texts == ["dup", "other"]
    assert np.allclose(vectors[0], vectors[2])
    assert [event.current for event in events] == [1, 2, 3]

    vectors[0][0] += 1.0
    assert not np.allclose(vectors[0], vectors[2])
    assert (await embedder.cache_stats()).total_entries == 2


@pytest.mark.asyncio
async def test_embed_many_cached_bypass(coordinator, fake_model, session):
    embedder = _cached_embedder(coordinator, session)
    await embedder.embed_many_cached(["A", "B"])
    fake_model.calls = 0

    await embedder.embed_many_cached(["A", "B"], use_cache=False)

    assert fake_model.calls == 1
    stats = await embedder.cache_stats()
    assert stats.hits == 0
    assert stats.total_entries == 2


@pytest.mark.asyncio
async def test_cache_isolation_between_databases(coordinator, fake_model, session, other_session):
    first = _cached_embedder(coordinator, session)
    second = _cached_embedder(coordinator, other_session)

    await first.embed_one_cached("shared text")
    before = fake_model.calls
    await second.embed_one_cached("shared text")

    assert fake_model.calls == before + 1


@pytest.mark.asyncio
async def test_storage_failure_propagates(coordinator, fake_model, bare_session):
    embedder = _cached_embedder(coordinator, bare_session)

    with pytest.raises(StorageFailure):
        await embedder.embed_many_cached(["a", "b"])
    assert fake_model.calls == 0


@pytest.mark.asyncio
async def test_raw_request_does_not_leak_into_normalized_results(coordinator, session):
    embedder = _cached_embedder(coordinator, session)

    (raw,) = await embedder.embed_many_cached(["shared"], normalize=False)
    (normalized,) = await embedder.embed_many_cached(["shared"])
    single = await embedder.embed_one_cached("shared")

    assert np.linalg.norm(raw) > 1.5
    assert np.linalg.norm(normalized) == pytest.approx(1.0, abs=1e-5)
    assert np.linalg.norm(single) == pytest.approx(1.0, abs=1e-5)
    assert (await embedder.cache_stats()).hits == 2


@pytest.mark.asyncio
async def test_normalized_request_does_not_leak_into_raw_results(coordinator, fake_model, session):
    embedder = _cached_embedder(coordinator, session)
    await embedder.embed_many_cached(["shared"])
    calls = fake_model.calls

    (raw,) = await embedder.embed_many_cached(["shared"], normalize=False)
    single = await embedder.embed_one_cached("shared", normalize=False)

    assert fake_model.calls == calls
    expected = await embedder.embedder.embed_one("shared", normalize=False)
    assert np.allclose(raw, expected)
    assert np.allclose(single, expected)


@pytest.mark.asyncio
async def test_concurrent_misses_for_same_text_store_one_row(coordinator, file_engine):
    async with AsyncSession(file_engine, expire_on_commit=False) as first_session, AsyncSession(
        file_engine, expire_on_commit=False
    ) as second_session:
        first = _cached_embedder(coordinator, first_session)
        second = _cached_embedder(coordinator, second_session)

        left, right = await asyncio.gather(
            first.embed_many_cached(["contested", "first only"]),
            second.embed_many_cached(["contested"]),
        )

        assert np.allclose(left[0], right[0])
        assert (await first.cache_stats()).total_entries == 2


@pytest.mark.asyncio
async def test_lone_surrogate_text_is_cached(coordinator, fake_model, session):
    embedder = _cached_embedder(coordinator, session)
    texts = ["a\ud800b", "a\ud800b", "ab"]

    first = await embedder.embed_many_cached(texts)
    second = await embedder.embed_many_cached(texts)

    assert fake_model.texts == ["a\ud800b", "ab"]
    assert np.allclose(first[0], second[1])
    assert not np.allclose(first[0], first[2])
    stats = await embedder.cache_stats()
    assert (stats.hits, stats.misses, stats.total_entries) == (3, 3, 2)
