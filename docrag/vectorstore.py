"""
向量存储模块

本地实现把全部记录保存在内存中，首次使用时从 JSON 语料懒加载，
每次 add_documents 都会重写整个语料文件。
写入成本为 O(n)，只适合小规模语料；本地存储假定只有一个写入方，
并发入库需要由调用方串行化。

ChromaDB 实现见 chroma_store.py，两者通过 create_vector_store 按配置选择。
"""

import json
import os
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from loguru import logger

import numpy as np
from langchain_core.documents import Document

from .config import Config, get_config
from .embedder import EmbeddingModel
from .exceptions import (
    ConfigurationError,
    DimensionMismatchError,
    DuplicateDocumentError,
    NotFoundError,
    VectorStoreError,
)


@dataclass
class StoredRecord:
    """持久化的向量记录"""
    id: str
    embedding: List[float]
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "embedding": list(self.embedding),
            "text": self.text,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "StoredRecord":
        """兼容扁平文件与目录形式的记录字段"""
        metadata = raw.get("metadata") or {}
        record_id = raw.get("id") or metadata.get("id") or str(uuid.uuid4())
        embedding = raw.get("embedding")
        if embedding is None:
            embedding = raw.get("vector") or []
        text = raw.get("text")
        if text is None:
            text = raw.get("pageContent") or raw.get("page_content") or ""
        return cls(
            id=str(record_id),
            embedding=[float(x) for x in embedding],
            text=text,
            metadata=dict(metadata),
        )

    def to_document(self) -> Document:
        return Document(id=self.id, page_content=self.text, metadata=dict(self.metadata))


@dataclass
class RetrievalResult:
    """单次检索结果"""
    record: StoredRecord
    score: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    余弦相似度 dot(a, b) / (|a| * |b|)，任一向量范数为 0 时返回 0

    Raises:
        DimensionMismatchError: 两个向量长度不同
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def rank_records(
    query_vector: Sequence[float],
    records: List[StoredRecord],
    k: int
) -> List[RetrievalResult]:
    """
    按余弦相似度降序排列，分数相同时保持插入顺序，返回前 k 条

    Raises:
        DimensionMismatchError: 查询向量维度与语料维度不一致
    """
    if k <= 0 or not records:
        return []

    dimension = len(query_vector)
    for record in records:
        if len(record.embedding) != dimension:
            raise DimensionMismatchError(len(record.embedding), dimension)

    matrix = np.asarray([r.embedding for r in records], dtype=np.float64)
    query = np.asarray(query_vector, dtype=np.float64)

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)

    order = np.argsort(-scores, kind="stable")[:k]
    return [RetrievalResult(record=records[i], score=float(scores[i])) for i in order]


class BaseVectorStore(ABC):
    """
    向量存储接口

    所有存储后端（本地 JSON、ChromaDB）都实现同一组操作，
    调用方只依赖该接口，不关心具体后端。
    """

    def __init__(self, embedding_model: EmbeddingModel):
        self.embedding_model = embedding_model

    def _resolve_embeddings(
        self,
        chunks: List[Document],
        embeddings: Optional[List[List[float]]]
    ) -> List[List[float]]:
        """优先使用传入的向量，其次使用 metadata 中的 embedding，缺失的再现场计算"""
        if embeddings is not None:
            if len(embeddings) != len(chunks):
                raise ValueError(
                    f"chunks ({len(chunks)}) 与 embeddings ({len(embeddings)}) 数量不一致"
                )
            return [list(v) for v in embeddings]

        resolved: List[Optional[List[float]]] = [
            c.metadata.get("embedding") for c in chunks
        ]
        missing = [i for i, v in enumerate(resolved) if v is None]
        if missing:
            computed = self.embedding_model.embed_documents(
                [chunks[i].page_content for i in missing]
            )
            for i, vector in zip(missing, computed):
                resolved[i] = vector
        return [list(v) for v in resolved]

    @staticmethod
    def _check_uniform_dimension(vectors: List[List[float]]) -> int:
        dimension = len(vectors[0])
        for vector in vectors[1:]:
            if len(vector) != dimension:
                raise DimensionMismatchError(dimension, len(vector))
        return dimension

    @abstractmethod
    def add_documents(
        self,
        chunks: List[Document],
        embeddings: Optional[List[List[float]]] = None
    ) -> List[str]:
        """添加分块及其向量，返回记录 ID 列表"""

    @abstractmethod
    def similarity_search(self, query: str, k: int = 3) -> List[RetrievalResult]:
        """按余弦相似度检索前 k 条记录"""

    @abstractmethod
    def has_document(self, source: str, hash: Optional[str] = None) -> bool:
        """判断文档是否已入库：有哈希时以哈希为准，否则按来源名匹配"""

    @abstractmethod
    def count(self) -> int:
        """记录总数"""

    @abstractmethod
    def clear(self) -> None:
        """清空语料"""


class LocalVectorStore(BaseVectorStore):
    """
    本地 JSON 向量库

    先尝试读取扁平文件（记录列表），再尝试目录形式（目录下的 docs.json）。
    """

    DIRECTORY_DOCS_FILE = "docs.json"

    def __init__(
        self,
        config: Optional[Config] = None,
        embedding_model: Optional[EmbeddingModel] = None,
        store_file: Optional[str] = None,
        store_dir: Optional[str] = None
    ):
        """
        初始化本地向量库

        Args:
            config: 配置对象
            embedding_model: 嵌入模型，默认按配置创建
            store_file: 扁平语料文件路径
            store_dir: 目录形式语料路径
        """
        self.config = config or get_config()
        super().__init__(embedding_model or EmbeddingModel(self.config))
        self.store_file = Path(store_file or self.config.vector_store_file)
        self.store_dir = Path(store_dir or self.config.vector_store_dir)

        self._records: List[StoredRecord] = []
        self._loaded = False
        self._corpus_found = False

        logger.info(f"🗄️ 本地向量库初始化: 语料文件={self.store_file}")

    def _read_flat_file(self) -> Optional[List[StoredRecord]]:
        if not self.store_file.is_file():
            return None
        try:
            with open(self.store_file, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise VectorStoreError(f"语料文件已损坏: {self.store_file}: {e}") from e
        if not isinstance(raw, list):
            logger.warning(f"⚠️ 语料文件不是记录列表，忽略: {self.store_file}")
            return None
        return [StoredRecord.from_dict(r) for r in raw]

    def _read_directory(self) -> Optional[List[StoredRecord]]:
        docs_file = self.store_dir / self.DIRECTORY_DOCS_FILE
        if not docs_file.is_file():
            return None
        try:
            with open(docs_file, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise VectorStoreError(f"语料文件已损坏: {docs_file}: {e}") from e
        if not isinstance(raw, list):
            logger.warning(f"⚠️ 目录语料不是记录列表，忽略: {docs_file}")
            return None
        return [StoredRecord.from_dict(r) for r in raw]

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return

        records = self._read_flat_file()
        if records is None:
            records = self._read_directory()

        self._corpus_found = records is not None
        self._records = records or []
        self._loaded = True

        if self._corpus_found:
            logger.info(f"✅ 加载已有语料: {len(self._records)} 条记录")
        else:
            logger.info("📦 尚未找到语料，将在首次入库时创建")

    def _persist(self) -> None:
        self.store_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.store_file.parent), prefix=".vectorstore-", suffix=".json"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump([r.to_dict() for r in self._records], f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.store_file)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @property
    def dimension(self) -> Optional[int]:
        """语料向量维度，空语料时为 None"""
        self._ensure_loaded()
        return len(self._records[0].embedding) if self._records else None

    def add_documents(
        self,
        chunks: List[Document],
        embeddings: Optional[List[List[float]]] = None
    ) -> List[str]:
        """
        向向量库添加分块，并重写整个语料文件

        所有分块的向量都准备好且通过校验后才会写入，失败时不会留下部分记录。

        Args:
            chunks: 分块列表
            embeddings: 预先计算好的向量（可选）

        Returns:
            List[str]: 新增记录的 ID 列表

        Raises:
            DimensionMismatchError: 向量维度不一致
            DuplicateDocumentError: 哈希或 ID 已存在
        """
        if not chunks:
            logger.warning("⚠️ 没有文档需要添加")
            return []

        self._ensure_loaded()

        vectors = self._resolve_embeddings(chunks, embeddings)
        # 已有语料中的历史记录也参与校验
        self._check_uniform_dimension([r.embedding for r in self._records] + vectors)

        existing_hashes = {r.metadata.get("hash") for r in self._records if r.metadata.get("hash")}
        existing_ids = {r.id for r in self._records}

        new_records = []
        for chunk, vector in zip(chunks, vectors):
            content_hash = chunk.metadata.get("hash")
            if content_hash and content_hash in existing_hashes:
                raise DuplicateDocumentError(
                    f"文档已存在 (hash={content_hash[:12]}): {chunk.metadata.get('source')}"
                )
            record_id = chunk.id or str(uuid.uuid4())
            if record_id in existing_ids:
                raise DuplicateDocumentError(f"记录 ID 已存在: {record_id}")
            existing_ids.add(record_id)

            metadata = {k: v for k, v in chunk.metadata.items() if k != "embedding"}
            new_records.append(StoredRecord(
                id=record_id,
                embedding=vector,
                text=chunk.page_content,
                metadata=metadata,
            ))

        previous = self._records
        self._records = previous + new_records
        try:
            self._persist()
        except Exception as e:
            self._records = previous
            raise VectorStoreError(f"写入语料失败: {e}") from e

        self._corpus_found = True
        logger.info(f"✅ 已添加 {len(new_records)} 条记录，语料共 {len(self._records)} 条")
        return [r.id for r in new_records]

    def similarity_search(self, query: str, k: int = 3) -> List[RetrievalResult]:
        """
        相似度检索

        Args:
            query: 查询文本
            k: 返回结果数量

        Returns:
            List[RetrievalResult]: 按分数降序排列的结果

        Raises:
            NotFoundError: 尚未入库任何语料
            DimensionMismatchError: 查询向量维度与语料不一致
        """
        self._ensure_loaded()
        if not self._corpus_found:
            raise NotFoundError(
                f"没有找到本地语料 ({self.store_file} 或 {self.store_dir})，请先入库文档"
            )
        if not self._records or k <= 0:
            return []

        query_vector = self.embedding_model.embed_query(query)
        results = rank_records(query_vector, self._records, k)

        logger.info(f"🔍 检索完成: 查询='{query[:50]}'，返回 {len(results)} 个结果")
        return results

    def has_document(self, source: str, hash: Optional[str] = None) -> bool:
        self._ensure_loaded()
        if hash:
            return any(r.metadata.get("hash") == hash for r in self._records)
        return any(r.metadata.get("source") == source for r in self._records)

    def count(self) -> int:
        self._ensure_loaded()
        return len(self._records)

    def clear(self) -> None:
        """清空语料，删除扁平语料文件和目录形式的 docs.json"""
        self._records = []
        self._loaded = True
        self._corpus_found = False
        for path in (self.store_file, self.store_dir / self.DIRECTORY_DOCS_FILE):
            if path.exists():
                path.unlink()
        logger.info("🗑️ 本地语料已清空")


def create_vector_store(
    config: Optional[Config] = None,
    embedding_model: Optional[EmbeddingModel] = None
) -> BaseVectorStore:
    """
    按 VECTOR_STORE_PROVIDER 创建向量库

    Args:
        config: 配置对象
        embedding_model: 嵌入模型

    Returns:
        BaseVectorStore: 向量库实例
    """
    config = config or get_config()
    provider = config.vector_store_provider

    if provider == "local":
        return LocalVectorStore(config, embedding_model)
    if provider == "chroma":
        from .chroma_store import ChromaVectorStore
        return ChromaVectorStore(config, embedding_model)

    raise ConfigurationError(f"不支持的向量库类型: {provider}（可选: local, chroma）")
