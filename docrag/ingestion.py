"""
文档入库流程

加载 -> 分块 -> 向量化 -> 存储。
每个文档的全部分块和向量作为一个整体写入；任何错误都会中止本次入库。
本地向量库假定只有一个写入方，调用方需要自行串行化并发入库。
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union
from loguru import logger

from .chunker import TextChunker
from .config import Config, get_config
from .document_loader import DocumentLoader, compute_bytes_hash
from .exceptions import DuplicateDocumentError
from .vectorstore import BaseVectorStore, create_vector_store


@dataclass
class IngestionResult:
    """入库结果统计"""
    documents_loaded: int = 0
    chunks_processed: int = 0
    vectors_added: int = 0
    skipped: List[str] = field(default_factory=list)


class IngestionPipeline:
    """
    文档入库流水线

    串联 DocumentLoader、TextChunker 与向量库。
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        vectorstore: Optional[BaseVectorStore] = None,
        loader: Optional[DocumentLoader] = None,
        chunker: Optional[TextChunker] = None
    ):
        self.config = config or get_config()
        self.vectorstore = vectorstore or create_vector_store(self.config)
        self.loader = loader or DocumentLoader()
        self.chunker = chunker or TextChunker(
            chunk_size=self.config.chunk_size,
            chunk_overlap=self.config.chunk_overlap,
        )

    def ingest(
        self,
        file_paths: List[Union[str, Path]],
        file_hashes: Optional[Dict[str, str]] = None,
        skip_duplicates: bool = True
    ) -> IngestionResult:
        """
        入库文件列表

        Args:
            file_paths: 文件路径列表
            file_hashes: 文件路径 -> 规范哈希（如上传时计算的原始字节哈希）
            skip_duplicates: 已入库的文档是否跳过；为 False 时抛出 DuplicateDocumentError

        Returns:
            IngestionResult: 入库统计
        """
        logger.info(f"📄 开始入库 {len(file_paths)} 个文件...")
        documents = self.loader.load_files(file_paths, file_hashes)
        result = IngestionResult(documents_loaded=len(documents))

        for document in documents:
            source = document.metadata["source"]
            content_hash = document.metadata.get("hash")

            if self.vectorstore.has_document(source, content_hash):
                if not skip_duplicates:
                    raise DuplicateDocumentError(f"文档已存在: {source}")
                logger.info(f"⏭️ 跳过已入库的文档: {source}")
                result.skipped.append(source)
                continue

            chunks = self.chunker.split_document(document)
            if not chunks:
                result.skipped.append(source)
                continue

            vectors = self.vectorstore.embedding_model.embed_documents(
                [c.page_content for c in chunks]
            )
            ids = self.vectorstore.add_documents(chunks, vectors)

            result.chunks_processed += len(chunks)
            result.vectors_added += len(ids)
            logger.info(f"🗄️ 已入库: {source} ({len(chunks)} 个块)")

        logger.info(
            f"✅ 入库完成: 文档={result.documents_loaded}, 块={result.chunks_processed}, "
            f"向量={result.vectors_added}, 跳过={len(result.skipped)}"
        )
        return result

    def ingest_upload(self, filename: str, data: bytes) -> IngestionResult:
        """
        入库一个上传的文件

        先对原始字节计算哈希并查重，重复时不落盘；
        入库失败时删除已保存的文件。

        Args:
            filename: 上传的文件名
            data: 文件原始字节

        Returns:
            IngestionResult: 入库统计

        Raises:
            DuplicateDocumentError: 文档已存在
        """
        safe_name = Path(filename).name
        if not safe_name:
            raise ValueError(f"无效的文件名: {filename!r}")

        file_hash = compute_bytes_hash(data)
        if self.vectorstore.has_document(safe_name, file_hash):
            logger.info(f"⚠️ 检测到重复上传: {safe_name} (hash={file_hash[:12]})")
            raise DuplicateDocumentError(f"文档已存在: {safe_name}")

        uploads_dir = Path(self.config.uploads_dir)
        uploads_dir.mkdir(parents=True, exist_ok=True)
        file_path = uploads_dir / safe_name
        file_path.write_bytes(data)
        logger.info(f"💾 上传文件已保存: {file_path} (hash={file_hash[:12]})")

        try:
            return self.ingest(
                [file_path],
                file_hashes={str(file_path): file_hash},
                skip_duplicates=False,
            )
        except Exception:
            if file_path.exists():
                file_path.unlink()
                logger.info(f"🗑️ 入库失败，已删除上传文件: {file_path}")
            raise
