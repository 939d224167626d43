"""入库流程测试"""

from pathlib import Path

import pytest

from docrag.chunker import TextChunker
from docrag.document_loader import compute_bytes_hash
from docrag.exceptions import DuplicateDocumentError, UnsupportedFormatError
from docrag.ingestion import IngestionPipeline
from docrag.vectorstore import LocalVectorStore


@pytest.fixture
def pipeline(config):
    return IngestionPipeline(config, LocalVectorStore(config))


def _write(directory, name, text):
    path = Path(directory) / name
    path.write_text(text, encoding="utf-8")
    return path


class TestIngestionPipeline:
    """文档入库测试"""

    def test_ingest_files(self, pipeline, tmp_path):
        a = _write(tmp_path, "a.txt", "第一篇文档的内容")
        b = _write(tmp_path, "b.md", "# 第二篇\n\n" + "内容" * 800)

        result = pipeline.ingest([a, b])

        assert result.documents_loaded == 2
        assert result.chunks_processed == result.vectors_added
        assert result.vectors_added == pipeline.vectorstore.count()
        assert result.skipped == []

    def test_chunk_indices_contiguous_per_document(self, config, tmp_path):
        store = LocalVectorStore(config)
        pipeline = IngestionPipeline(config, store, chunker=TextChunker(chunk_size=100, chunk_overlap=20))
        path = _write(tmp_path, "long.txt", "x" * 450)

        pipeline.ingest([path])

        indices = [r.metadata["chunk_index"] for r in store._records]
        assert indices == list(range(len(indices)))
        assert len(indices) == 6

    def test_reingest_is_skipped(self, pipeline, tmp_path):
        path = _write(tmp_path, "a.txt", "重复入库测试")
        pipeline.ingest([path])
        count = pipeline.vectorstore.count()

        result = pipeline.ingest([path])

        assert result.skipped == ["a.txt"]
        assert result.vectors_added == 0
        assert pipeline.vectorstore.count() == count

    def test_same_content_under_new_name_is_duplicate(self, pipeline, tmp_path):
        pipeline.ingest([_write(tmp_path, "a.txt", "相同内容")])

        result = pipeline.ingest([_write(tmp_path, "copy.txt", "相同内容")])

        assert result.skipped == ["copy.txt"]

    def test_duplicate_raises_when_not_skipping(self, pipeline, tmp_path):
        path = _write(tmp_path, "a.txt", "内容")
        pipeline.ingest([path])

        with pytest.raises(DuplicateDocumentError):
            pipeline.ingest([path], skip_duplicates=False)

    def test_failure_aborts_whole_batch(self, pipeline, tmp_path):
        good = _write(tmp_path, "good.txt", "正常文档")
        bad = _write(tmp_path, "bad.csv", "a,b")

        with pytest.raises(UnsupportedFormatError):
            pipeline.ingest([good, bad])
        assert pipeline.vectorstore.count() == 0


class TestIngestUpload:
    """上传入库测试"""

    def test_upload_uses_raw_bytes_hash(self, pipeline, config):
        data = "上传的文档内容".encode("utf-8")

        result = pipeline.ingest_upload("notes.txt", data)

        assert result.vectors_added == 1
        assert (Path(config.uploads_dir) / "notes.txt").read_bytes() == data
        assert pipeline.vectorstore.has_document("notes.txt", compute_bytes_hash(data))

    def test_duplicate_upload_rejected(self, pipeline):
        data = b"same bytes"
        pipeline.ingest_upload("first.txt", data)

        with pytest.raises(DuplicateDocumentError):
            pipeline.ingest_upload("second.txt", data)
        assert pipeline.vectorstore.count() == 1

    def test_duplicate_upload_is_not_written(self, pipeline, config):
        pipeline.ingest_upload("first.txt", b"same bytes")

        with pytest.raises(DuplicateDocumentError):
            pipeline.ingest_upload("second.txt", b"same bytes")
        assert not (Path(config.uploads_dir) / "second.txt").exists()

    def test_failed_upload_is_removed(self, pipeline, config):
        with pytest.raises(UnsupportedFormatError):
            pipeline.ingest_upload("table.xlsx", b"binary")

        assert not (Path(config.uploads_dir) / "table.xlsx").exists()

    def test_upload_name_is_sanitized(self, pipeline, config):
        pipeline.ingest_upload("../../escape.txt", b"path test")

        assert (Path(config.uploads_dir) / "escape.txt").exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
