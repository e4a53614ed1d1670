"""Tests for hashing, ranking and locking utilities."""

import asyncio
import hashlib
import math
from datetime import datetime, timedelta, timezone

import pytest

from memoryengine.exceptions import DimensionMismatchError
from memoryengine.interfaces import MemoryRecord
from memoryengine.utils import (
    ReadWriteLock,
    content_hash,
    cosine_similarity,
    normalize_embedding,
    normalize_tags,
    rank_by_similarity,
)


def _record(content: str, embedding, created_at=None, tags=()):
    return MemoryRecord(
        content=content,
        content_hash=content_hash(content),
        tags=tuple(tags),
        embedding=tuple(embedding) if embedding is not None else None,
        created_at=created_at or datetime.now(timezone.utc),
    )


class TestContentHash:
    """Content identity."""

    def test_is_sha256_hex_of_content(self):
        expected = hashlib.sha256("The sky is blue".encode("utf-8")).hexdigest()
        assert content_hash("The sky is blue") == expected
        assert len(content_hash("x")) == 64

    def test_ignores_surrounding_whitespace(self):
        assert content_hash("  The sky is blue\n") == content_hash("The sky is blue")

    def test_case_is_significant(self):
        assert content_hash("The sky is blue") != content_hash("the sky is blue")

    def test_deterministic(self):
        assert content_hash("same text") == content_hash("same text")


class TestNormalizeTags:
    def test_strips_and_dedupes_in_order(self):
        assert normalize_tags([" weather", "facts", "weather", "", "   "]) == ("weather", "facts")

    def test_none_and_empty(self):
        assert normalize_tags(None) == ()
        assert normalize_tags([]) == ()


class TestVectorMath:
    """Cosine similarity and normalization."""

    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_dimension_mismatch_raises(self):
        with pytest.raises(DimensionMismatchError) as exc:
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])
        assert "2 vs 3" in str(exc.value)

    def test_normalize_embedding_leaves_zero_vector(self):
        assert normalize_embedding([0.0, 0.0]) == [0.0, 0.0]
        normalized = normalize_embedding([1.0, 1.0])
        assert math.sqrt(sum(x * x for x in normalized)) == pytest.approx(1.0)


class TestRankBySimilarity:
    """Canonical ranking shared by every backend."""

    def test_orders_by_descending_score(self):
        records = [
            _record("far", [0.0, 1.0]),
            _record("near", [1.0, 0.1]),
            _record("middle", [1.0, 1.0]),
        ]
        results = rank_by_similarity([1.0, 0.0], records, top_k=3)
        assert [r.record.content for r in results] == ["near", "middle", "far"]
        assert results[0].score >= results[1].score >= results[2].score

    def test_ties_break_by_most_recent(self):
        now = datetime.now(timezone.utc)
        older = _record("older", [1.0, 0.0], created_at=now - timedelta(hours=1))
        newer = _record("newer", [1.0, 0.0], created_at=now)
        results = rank_by_similarity([1.0, 0.0], [older, newer], top_k=2)
        assert [r.record.content for r in results] == ["newer", "older"]

    def test_top_k_limits_results(self):
        records = [_record(f"r{i}", [1.0, float(i)]) for i in range(5)]
        assert len(rank_by_similarity([1.0, 0.0], records, top_k=2)) == 2

    def test_zero_top_k_returns_nothing(self):
        records = [_record("r", [1.0, 0.0])]
        assert rank_by_similarity([1.0, 0.0], records, top_k=0) == []
        assert rank_by_similarity([1.0, 0.0], records, top_k=-3) == []

    def test_mismatched_dimensions_are_skipped(self):
        records = [_record("ok", [1.0, 0.0]), _record("wrong", [1.0, 0.0, 0.0])]
        results = rank_by_similarity([1.0, 0.0], records, top_k=5)
        assert [r.record.content for r in results] == ["ok"]

    def test_mismatched_dimensions_raise_when_strict(self):
        records = [_record("wrong", [1.0, 0.0, 0.0])]
        with pytest.raises(DimensionMismatchError):
            rank_by_similarity([1.0, 0.0], records, top_k=5, strict_dimensions=True)

    def test_records_without_embedding_are_skipped(self):
        records = [_record("none", None), _record("ok", [1.0, 0.0])]
        results = rank_by_similarity([1.0, 0.0], records, top_k=5)
        assert [r.record.content for r in results] == ["ok"]


class TestReadWriteLock:
    """Readers share, writers are exclusive."""

    @pytest.mark.asyncio
    async def test_readers_share_lock(self):
        lock = ReadWriteLock()
        async with lock.read():
            async with lock.read():
                assert lock.readers == 2
        assert lock.readers == 0

    @pytest.mark.asyncio
    async def test_writer_waits_for_reader(self):
        lock = ReadWriteLock()
        order = []

        async def writer():
            async with lock.write():
                order.append("write")

        async with lock.read():
            task = asyncio.create_task(writer())
            await asyncio.sleep(0.01)
            assert not lock.writer_active
            order.append("read")
        await task

        assert order == ["read", "write"]

    @pytest.mark.asyncio
    async def test_waiting_writer_blocks_new_readers(self):
        lock = ReadWriteLock()
        order = []

        async def writer():
            async with lock.write():
                order.append("write")

        async def reader():
            async with lock.read():
                order.append("late-read")

        async with lock.read():
            w = asyncio.create_task(writer())
            await asyncio.sleep(0.01)
            r = asyncio.create_task(reader())
            await asyncio.sleep(0.01)
            order.append("first-read")
        await asyncio.gather(w, r)

        assert order == ["first-read", "write", "late-read"]

    @pytest.mark.asyncio
    async def test_lock_released_after_exception(self):
        lock = ReadWriteLock()
        with pytest.raises(RuntimeError):
            async with lock.write():
                raise RuntimeError("boom")
        assert not lock.writer_active
        async with lock.read():
            assert lock.readers == 1
