"""ChromaDB 向量库测试（本地持久化目录 + 本地哈希向量，不访问网络）"""

from dataclasses import replace

import pytest
from langchain_core.documents import Document

from docrag.chroma_store import ChromaVectorStore
from docrag.exceptions import DimensionMismatchError, DuplicateDocumentError, NotFoundError
from docrag.vectorstore import create_vector_store


@pytest.fixture
def chroma_config(config, tmp_path):
    return replace(
        config,
        vector_store_provider="chroma",
        chroma_persist_dir=str(tmp_path / "chroma_db"),
        chroma_collection="docrag-test",
    )


@pytest.fixture
def store(chroma_config):
    return ChromaVectorStore(chroma_config)


def _chunk(chunk_id, text, source="doc.txt", **metadata):
    return Document(id=chunk_id, page_content=text, metadata={"source": source, **metadata})


class TestChromaVectorStore:
    """Chroma 向量库测试"""

    def test_exact_text_scores_highest(self, store):
        store.add_documents([
            _chunk("c0", "Python 是一种解释型编程语言"),
            _chunk("c1", "向量数据库用于存储嵌入向量"),
            _chunk("c2", "今天的午饭是牛肉面"),
        ])

        results = store.similarity_search("向量数据库用于存储嵌入向量", k=2)

        assert len(results) == 2
        assert results[0].record.id == "c1"
        assert results[0].score >= 0.999
        assert results[0].score >= results[1].score
        assert results[0].record.metadata["source"] == "doc.txt"

    def test_k_larger_than_collection(self, store):
        store.add_documents([_chunk("only", "唯一的记录")])

        assert [r.record.id for r in store.similarity_search("记录", k=5)] == ["only"]

    def test_empty_collection_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.similarity_search("question")

    def test_has_document_by_hash_and_source(self, store):
        store.add_documents([_chunk("c0", "内容", hash="h1", chunk_index=0)])

        assert store.has_document("renamed.txt", "h1")
        assert not store.has_document("doc.txt", "h2")
        assert store.has_document("doc.txt")
        assert not store.has_document("missing.txt")

    def test_duplicate_hash_rejected(self, store):
        store.add_documents([_chunk("c0", "内容", hash="h1")])

        with pytest.raises(DuplicateDocumentError):
            store.add_documents([_chunk("c9", "内容", source="copy.txt", hash="h1")])
        assert store.count() == 1

    def test_duplicate_id_rejected(self, store):
        store.add_documents([_chunk("c0", "a")])

        with pytest.raises(DuplicateDocumentError):
            store.add_documents([_chunk("c0", "b")])
        assert store.count() == 1

    def test_dimension_mismatch(self, store):
        store.add_documents([_chunk("c0", "短向量")], embeddings=[[0.1, 0.2]])

        with pytest.raises(DimensionMismatchError):
            store.add_documents([_chunk("c1", "b")], embeddings=[[0.1, 0.2, 0.3]])
        with pytest.raises(DimensionMismatchError):
            store.similarity_search("question")

    def test_non_scalar_metadata_dropped(self, store):
        store.add_documents([_chunk("c0", "内容", tags=["a", "b"], chunk_index=0)])

        metadata = store.similarity_search("内容", k=1)[0].record.metadata
        assert "tags" not in metadata
        assert metadata["chunk_index"] == 0

    def test_persisted_between_instances(self, store, chroma_config):
        store.add_documents([_chunk("c0", "持久化测试", hash="h1")])

        reopened = ChromaVectorStore(chroma_config)

        assert reopened.count() == 1
        assert reopened.has_document("doc.txt", "h1")

    def test_clear(self, store):
        store.add_documents([_chunk("c0", "a")])

        store.clear()

        assert store.count() == 0
        with pytest.raises(NotFoundError):
            store.similarity_search("a")


class TestCreateChromaStore:
    """按配置创建 Chroma 向量库"""

    def test_factory_selects_chroma(self, chroma_config):
        store = create_vector_store(chroma_config)

        assert isinstance(store, ChromaVectorStore)
        assert store.collection_name == "docrag-test"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
