"""
嵌入模型模块

封装 Embedding 模型，支持 OpenAI 和本地哈希向量两种策略。
用于将文本转换为向量表示。

本地哈希向量只是离线 / 测试场景的替身，不具备语义能力。
它与 OpenAI Embedding 实现同一个 LangChain Embeddings 接口，调用方无需感知当前策略。
"""

import hashlib
import re
from typing import List, Optional
from loguru import logger

import numpy as np
from langchain_core.embeddings import Embeddings

from .config import Config, get_config
from .exceptions import ConfigurationError, EmbeddingProviderError, MissingCredentialError


# 阿里云 Embedding API 的批量大小限制
ALIYUN_EMBEDDING_BATCH_SIZE = 10

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


class BatchedEmbeddings(Embeddings):
    """
    批量嵌入包装器

    用于解决阿里云等 API 提供商的批量大小限制问题。
    将大批量文本拆分成多个小批次分别调用，然后合并结果。
    """

    def __init__(self, inner: Embeddings, batch_size: int = ALIYUN_EMBEDDING_BATCH_SIZE):
        """
        初始化批量嵌入包装器

        Args:
            inner: 内部的嵌入模型实例（如 OpenAIEmbeddings）
            batch_size: 每批次最大文本数量，默认 10（阿里云限制）
        """
        self.inner = inner
        self.batch_size = batch_size

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        all_embeddings: List[List[float]] = []
        total_batches = (len(texts) + self.batch_size - 1) // self.batch_size

        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            logger.debug(
                f"📦 嵌入批次 {i // self.batch_size + 1}/{total_batches}: "
                f"处理 {len(batch)} 条文本"
            )
            all_embeddings.extend(self.inner.embed_documents(batch))

        return all_embeddings

    def embed_query(self, text: str) -> List[float]:
        # 查询只有一条，不需要分批，直接透传
        return self.inner.embed_query(text)


class HashEmbeddings(Embeddings):
    """
    确定性的本地哈希向量

    对文本中的词、字符三元组和整段文本做 SHA-256，映射到固定维度的桶中并带上正负号，
    最后做 L2 归一化。相同文本总是得到相同向量；空文本得到零向量。
    """

    def __init__(self, dimension: int = 256):
        if dimension <= 0:
            raise ValueError(f"向量维度必须为正整数: {dimension}")
        self.dimension = dimension

    @staticmethod
    def _features(text: str) -> List[tuple]:
        if not text:
            return []
        # 词特征忽略大小写，三元组与整段文本保留原样
        features = [(f"w:{token}", 1.0) for token in _TOKEN_PATTERN.findall(text.lower())]
        features.extend(
            (f"c:{text[i:i + 3]}", 0.5) for i in range(max(len(text) - 2, 0))
        )
        features.append((f"t:{text}", 1.0))
        return features

    def _embed(self, text: str) -> List[float]:
        vector = np.zeros(self.dimension, dtype=np.float64)
        for feature, weight in self._features(text or ""):
            digest = hashlib.sha256(feature.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[index] += sign * weight

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.tolist()

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        return self._embed(text)


class FallbackEmbeddings(Embeddings):
    """
    带降级的嵌入包装器

    远程调用失败时记录警告，并改用本地哈希向量完成本次调用。
    """

    def __init__(self, primary: Embeddings, fallback: Embeddings):
        self.primary = primary
        self.fallback = fallback

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        try:
            return self.primary.embed_documents(texts)
        except Exception as e:
            logger.warning(f"⚠️ 远程 Embedding 失败，降级为本地哈希向量: {e}")
            return self.fallback.embed_documents(texts)

    def embed_query(self, text: str) -> List[float]:
        try:
            return self.primary.embed_query(text)
        except Exception as e:
            logger.warning(f"⚠️ 远程 Embedding 失败，降级为本地哈希向量: {e}")
            return self.fallback.embed_query(text)


class _StrictEmbeddings(Embeddings):
    """不允许降级时，把远程异常统一转换为 EmbeddingProviderError"""

    def __init__(self, inner: Embeddings):
        self.inner = inner

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        try:
            return self.inner.embed_documents(texts)
        except Exception as e:
            raise EmbeddingProviderError(f"Embedding 服务调用失败: {e}") from e

    def embed_query(self, text: str) -> List[float]:
        try:
            return self.inner.embed_query(text)
        except Exception as e:
            raise EmbeddingProviderError(f"Embedding 服务调用失败: {e}") from e


class EmbeddingModel:
    """
    嵌入模型封装类

    根据配置选择策略：
    - openai: OpenAI Embeddings（需要 OPENAI_API_KEY）
    - local: 本地哈希向量
    - auto: 有密钥时使用 OpenAI，否则使用本地哈希向量
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        embeddings: Optional[Embeddings] = None
    ):
        """
        初始化嵌入模型

        Args:
            config: 配置对象，如果为 None 则从环境变量加载
            embeddings: 直接指定的 Embeddings 实例（主要用于测试）
        """
        self.config = config or get_config()
        self._embeddings: Optional[Embeddings] = embeddings
        self._provider_name = "custom" if embeddings is not None else self._resolve_provider()

    def _resolve_provider(self) -> str:
        provider = self.config.embedding_provider
        if provider == "auto":
            return "openai" if self.config.has_openai_credential else "local"
        if provider == "openai" and not self.config.has_openai_credential:
            raise MissingCredentialError("EMBEDDING_PROVIDER=openai 但未设置 OPENAI_API_KEY")
        if provider not in {"openai", "local"}:
            raise ConfigurationError(f"未知的 EMBEDDING_PROVIDER: {provider}")
        return provider

    @property
    def provider_name(self) -> str:
        """当前生效的 Embedding 策略名称"""
        return self._provider_name

    @property
    def is_local(self) -> bool:
        """是否为本地哈希向量（非语义向量）"""
        return self._provider_name == "local"

    @property
    def embeddings(self) -> Embeddings:
        """
        获取嵌入模型实例（懒加载）

        Returns:
            Embeddings: LangChain 嵌入模型实例
        """
        if self._embeddings is None:
            self._embeddings = self._create_embeddings()
        return self._embeddings

    def _create_embeddings(self) -> Embeddings:
        local = HashEmbeddings(self.config.local_embedding_dim)
        if self._provider_name == "local":
            logger.info(f"🔢 使用本地哈希向量: 维度={self.config.local_embedding_dim}")
            return local

        from langchain_openai import OpenAIEmbeddings

        kwargs = {
            "model": self.config.embedding_model,
            "api_key": self.config.openai_api_key,
            "check_embedding_ctx_length": False,  # 阿里云兼容模式需要关闭
        }
        if self.config.openai_base_url:
            kwargs["base_url"] = self.config.openai_base_url

        remote = BatchedEmbeddings(
            inner=OpenAIEmbeddings(**kwargs),
            batch_size=ALIYUN_EMBEDDING_BATCH_SIZE,
        )
        logger.info(
            f"🔢 嵌入模型初始化完成: {self.config.embedding_model} "
            f"(降级={'开启' if self.config.embedding_fallback else '关闭'})"
        )

        if self.config.embedding_fallback:
            return FallbackEmbeddings(primary=remote, fallback=local)
        return _StrictEmbeddings(remote)

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        """
        批量嵌入文档

        Args:
            texts: 文本列表

        Returns:
            List[List[float]]: 向量列表
        """
        if not texts:
            return []

        vectors = self.embeddings.embed_documents(texts)
        logger.debug(f"✅ 已嵌入 {len(texts)} 个文档，向量维度: {len(vectors[0])}")
        return vectors

    def embed_query(self, text: str) -> List[float]:
        """
        嵌入查询文本

        Args:
            text: 查询文本

        Returns:
            List[float]: 查询向量
        """
        vector = self.embeddings.embed_query(text)
        logger.debug(f"✅ 已嵌入查询，向量维度: {len(vector)}")
        return vector
