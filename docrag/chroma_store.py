"""
ChromaDB 向量存储

与 LocalVectorStore 实现同一组操作，集合使用余弦距离，
检索分数为 1 - distance。
"""

from pathlib import Path
from typing import List, Optional
from loguru import logger

from langchain_core.documents import Document
from langchain_community.vectorstores import Chroma

from .config import Config, get_config
from .embedder import EmbeddingModel
from .exceptions import DimensionMismatchError, DuplicateDocumentError, NotFoundError
from .vectorstore import BaseVectorStore, RetrievalResult, StoredRecord


def _clean_metadata(metadata: dict) -> dict:
    """Chroma 只接受标量类型的 metadata"""
    return {
        k: v for k, v in metadata.items()
        if k != "embedding" and isinstance(v, (str, int, float, bool))
    }


class ChromaVectorStore(BaseVectorStore):
    """
    ChromaDB 向量库

    使用 langchain_community 的 Chroma 封装管理持久化集合，
    写入和查询直接走底层 collection，以便使用预先计算好的向量。
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        embedding_model: Optional[EmbeddingModel] = None,
        collection_name: Optional[str] = None
    ):
        """
        初始化 ChromaDB 向量库

        Args:
            config: 配置对象
            embedding_model: 嵌入模型
            collection_name: 集合名称，默认读取 CHROMA_COLLECTION
        """
        self.config = config or get_config()
        super().__init__(embedding_model or EmbeddingModel(self.config))
        self.collection_name = collection_name or self.config.chroma_collection
        self.persist_dir = Path(self.config.chroma_persist_dir)
        self.persist_dir.mkdir(parents=True, exist_ok=True)
        self._vectorstore: Optional[Chroma] = None

        logger.info(
            f"🗄️ Chroma 向量库初始化: 集合={self.collection_name}, 持久化目录={self.persist_dir}"
        )

    @property
    def vectorstore(self) -> Chroma:
        """获取 Chroma 实例（懒加载）"""
        if self._vectorstore is None:
            self._vectorstore = Chroma(
                collection_name=self.collection_name,
                embedding_function=self.embedding_model.embeddings,
                persist_directory=str(self.persist_dir),
                collection_metadata={"hnsw:space": "cosine"},
            )
        return self._vectorstore

    def _stored_dimension(self) -> Optional[int]:
        sample = self.vectorstore._collection.get(limit=1, include=["embeddings"])
        embeddings = sample.get("embeddings")
        if embeddings is None or len(embeddings) == 0:
            return None
        return len(embeddings[0])

    def add_documents(
        self,
        chunks: List[Document],
        embeddings: Optional[List[List[float]]] = None
    ) -> List[str]:
        if not chunks:
            logger.warning("⚠️ 没有文档需要添加")
            return []

        vectors = self._resolve_embeddings(chunks, embeddings)
        dimension = self._check_uniform_dimension(vectors)
        stored = self._stored_dimension()
        if stored is not None and stored != dimension:
            raise DimensionMismatchError(stored, dimension)

        for content_hash in {c.metadata.get("hash") for c in chunks if c.metadata.get("hash")}:
            if self.has_document("", content_hash):
                raise DuplicateDocumentError(f"文档已存在 (hash={content_hash[:12]})")

        ids = [c.id or f"{c.metadata.get('source', 'doc')}-{i}" for i, c in enumerate(chunks)]
        existing = self.vectorstore._collection.get(ids=ids, include=[])
        if existing.get("ids"):
            raise DuplicateDocumentError(f"记录 ID 已存在: {existing['ids'][0]}")

        self.vectorstore._collection.add(
            ids=ids,
            embeddings=vectors,
            documents=[c.page_content for c in chunks],
            metadatas=[_clean_metadata(c.metadata) for c in chunks],
        )
        logger.info(f"✅ 已添加 {len(chunks)} 条记录到 Chroma 集合 {self.collection_name}")
        return ids

    def similarity_search(self, query: str, k: int = 3) -> List[RetrievalResult]:
        total = self.count()
        if total == 0:
            raise NotFoundError(f"Chroma 集合为空: {self.collection_name}，请先入库文档")
        if k <= 0:
            return []

        query_vector = self.embedding_model.embed_query(query)
        stored = self._stored_dimension()
        if stored is not None and stored != len(query_vector):
            raise DimensionMismatchError(stored, len(query_vector))

        raw = self.vectorstore._collection.query(
            query_embeddings=[query_vector],
            n_results=min(k, total),
            include=["documents", "metadatas", "distances"],
        )

        results = []
        for record_id, text, metadata, distance in zip(
            raw["ids"][0], raw["documents"][0], raw["metadatas"][0], raw["distances"][0]
        ):
            record = StoredRecord(id=record_id, embedding=[], text=text or "", metadata=dict(metadata or {}))
            results.append(RetrievalResult(record=record, score=1.0 - float(distance)))

        logger.info(f"🔍 检索完成: 查询='{query[:50]}'，返回 {len(results)} 个结果")
        return results

    def has_document(self, source: str, hash: Optional[str] = None) -> bool:
        where = {"hash": hash} if hash else {"source": source}
        found = self.vectorstore.get(where=where, limit=1)
        return bool(found.get("ids"))

    def count(self) -> int:
        return self.vectorstore._collection.count()

    def clear(self) -> None:
        """删除并重新创建集合"""
        try:
            self.vectorstore.delete_collection()
            self._vectorstore = None
            logger.info("🗑️ Chroma 集合已清空")
        except Exception as e:
            logger.error(f"❌ 清空向量库失败: {e}")
            raise
