"""
Tests for ragsync/vectorstore/
Filter evaluation, SQL translation and the FAISS backend.
"""
import numpy as np
import pytest

from ragsync.vectorstore.faiss_store import FaissVectorStore
from ragsync.vectorstore.filters import matches, to_sql

from conftest import DIMENSIONS, make_chunk


class TestMatches:
    def test_equality_and_membership(self):
        metadata = {"teamId": "t1", "collectionId": "c2"}

        assert matches(metadata, {"teamId": "t1", "collectionId": {"$in": ["c1", "c2"]}})
        assert not matches(metadata, {"teamId": "t2"})
        assert not matches(metadata, {"collectionId": {"$in": ["c1"]}})
        assert matches(metadata, {"teamId": {"$eq": "t1"}})

    def test_empty_filter_matches_everything(self):
        assert matches({"a": 1}, None)
        assert matches({"a": 1}, {})


class TestToSql:
    def test_equality_folds_into_containment(self):
        sql, params = to_sql({"teamId": "t1", "documentId": "d1"})

        assert sql == "metadata @> $1::jsonb"
        assert params == [{"teamId": "t1", "documentId": "d1"}]

    def test_membership_uses_any(self):
        sql, params = to_sql({"collectionId": {"$in": ["c1", "c2"]}, "teamId": "t1"}, first_param=3)

        assert sql == "metadata->>'collectionId' = ANY($3::text[]) AND metadata @> $4::jsonb"
        assert params == [["c1", "c2"], {"teamId": "t1"}]

    def test_empty_filter(self):
        assert to_sql(None) == ("TRUE", [])

    def test_rejects_unsafe_keys(self):
        with pytest.raises(ValueError):
            to_sql({"teamId' OR '1'='1": "x"})


class TestFaissVectorStore:
    """Test the in-process backend."""

    @pytest.fixture
    async def store(self, embedder):
        store = FaissVectorStore(dimensions=DIMENSIONS)
        chunks = [
            make_chunk("alpha bravo", "d1", chunkOrdinal=0, updatedAt="2024-01-01T00:00:00+00:00"),
            make_chunk("charlie delta", "d1", chunkOrdinal=1, updatedAt="2024-01-01T00:00:00+00:00"),
            make_chunk("echo foxtrot", "d2", updatedAt="2024-02-01T00:00:00+00:00"),
            make_chunk("golf hotel", "d3", team_id="team-2"),
        ]
        await store.add_chunks(chunks, await embedder.embed_texts([c.content for c in chunks]))
        return store

    async def test_mismatched_vectors_rejected(self, embedder):
        store = FaissVectorStore(dimensions=DIMENSIONS)

        with pytest.raises(ValueError):
            await store.add_chunks([make_chunk("a")], await embedder.embed_texts(["a", "b"]))

    async def test_delete_where(self, store):
        removed = await store.delete_where({"documentId": "d1"})

        assert removed == 2
        assert store.faiss_index.ntotal == 2
        assert await store.find_one_where({"documentId": "d1"}) is None

    async def test_query_respects_k_and_filter(self, store, embedder):
        results = await store.query(await embedder.embed_query("alpha bravo"), 5, {"teamId": "team-1"})

        assert len(results) == 3
        assert results[0][0].content == "alpha bravo"

    async def test_aggregate_documents(self, store):
        rows = await store.aggregate_documents("team-1")

        assert [(r.document_id, r.chunks) for r in rows] == [("d2", 1), ("d1", 2)]
        assert rows[0].updated_at == "2024-02-01T00:00:00+00:00"

    async def test_document_chunks_scoped_to_team(self, store):
        assert len(await store.document_chunks("d1", "team-1")) == 2
        assert await store.document_chunks("d3", "team-1") == []

    async def test_persistence_round_trip(self, store, embedder, tmp_path):
        store.save(tmp_path)

        reopened = FaissVectorStore.open(tmp_path, dimensions=DIMENSIONS)
        results = await reopened.query(await embedder.embed_query("echo foxtrot"), 1)

        assert reopened.faiss_index.ntotal == 4
        assert results[0][0].document_id == "d2"

    async def test_open_missing_directory_is_empty(self, tmp_path):
        store = FaissVectorStore.open(tmp_path / "absent", dimensions=DIMENSIONS)

        assert store.faiss_index.ntotal == 0
        assert await store.query(np.zeros(DIMENSIONS, dtype=np.float32), 3) == []
