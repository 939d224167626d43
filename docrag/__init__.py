"""
DocRAG Studio 核心

文档入库到检索问答的完整流程：
- 文档加载与文本提取
- 固定大小重叠分块
- 向量化（OpenAI 或本地哈希向量）
- 本地 JSON / ChromaDB 向量存储，按内容哈希去重
- 带引用的问答链（一次性与流式）
"""

from .config import Config, get_config
from .document_loader import DocumentLoader
from .chunker import TextChunker
from .embedder import EmbeddingModel, HashEmbeddings
from .vectorstore import LocalVectorStore, RetrievalResult, StoredRecord, create_vector_store
from .ingestion import IngestionPipeline, IngestionResult
from .rag_chain import RAGAnswer, RAGChain

__all__ = [
    "Config",
    "get_config",
    "DocumentLoader",
    "TextChunker",
    "EmbeddingModel",
    "HashEmbeddings",
    "LocalVectorStore",
    "RetrievalResult",
    "StoredRecord",
    "create_vector_store",
    "IngestionPipeline",
    "IngestionResult",
    "RAGAnswer",
    "RAGChain",
]
