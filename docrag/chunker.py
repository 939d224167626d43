"""
文本分块模块

实现 FixedSizeChunking（固定大小分块）策略：
按字符滑动窗口切分，相邻窗口重叠 chunk_overlap 个字符。
"""

from typing import List, Tuple
from loguru import logger

from langchain_core.documents import Document


class TextChunker:
    """
    文本分块器

    将长文档切分为固定大小的小块，便于向量化和检索。
    每个窗口为 text[start:start + chunk_size]，去除首尾空白后为空的块会被丢弃，
    窗口每次前进 chunk_size - chunk_overlap 个字符，窗口到达文本末尾后停止。
    """

    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 200):
        """
        初始化文本分块器

        Args:
            chunk_size: 每个块的最大字符数
            chunk_overlap: 相邻块之间的重叠字符数
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size 必须为正整数: {chunk_size}")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError(
                f"chunk_overlap ({chunk_overlap}) 必须满足 0 <= overlap < chunk_size ({chunk_size})"
            )

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.step = chunk_size - chunk_overlap

        logger.info(f"✂️ 文本分块器初始化: chunk_size={chunk_size}, overlap={chunk_overlap}")

    def _windows(self, text: str) -> List[Tuple[int, str]]:
        windows = []
        start = 0
        while start < len(text):
            end = min(start + self.chunk_size, len(text))
            windows.append((start, text[start:end]))
            if end == len(text):
                break
            start += self.step
        return windows

    def split_text(self, text: str) -> List[str]:
        """
        对纯文本进行分块

        Args:
            text: 原始文本

        Returns:
            List[str]: 分块后的文本列表（已去除首尾空白）
        """
        if not text:
            return []

        chunks = [w.strip() for _, w in self._windows(text)]
        return [c for c in chunks if c]

    def split_document(self, document: Document) -> List[Document]:
        """
        对单个文档进行分块

        Args:
            document: 原始文档

        Returns:
            List[Document]: 分块列表，chunk_index 从 0 开始连续编号
        """
        text = document.page_content or ""
        doc_id = document.id or document.metadata.get("source", "document")

        chunks = []
        for start, window in self._windows(text):
            content = window.strip()
            if not content:
                continue
            index = len(chunks)
            metadata = dict(document.metadata)
            metadata["chunk_index"] = index
            metadata["chunk_start"] = start
            chunks.append(Document(
                id=f"{doc_id}-chunk-{index}",
                page_content=content,
                metadata=metadata,
            ))

        if not chunks:
            logger.warning(f"⚠️ 文档没有可分块的内容: {doc_id}")
        return chunks

    def split_documents(self, documents: List[Document]) -> List[Document]:
        """
        对文档列表进行分块

        Args:
            documents: 原始文档列表

        Returns:
            List[Document]: 分块后的文档列表
        """
        if not documents:
            logger.warning("⚠️ 输入文档列表为空")
            return []

        chunks = []
        for document in documents:
            chunks.extend(self.split_document(document))

        logger.info(f"✅ 分块完成: {len(documents)} 个文档 -> {len(chunks)} 个块")

        sizes = [len(c.page_content) for c in chunks]
        if sizes:
            logger.info(
                f"📊 分块统计: 平均大小={sum(sizes) / len(sizes):.0f}, "
                f"最小={min(sizes)}, 最大={max(sizes)}"
            )

        return chunks
