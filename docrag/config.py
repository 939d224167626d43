"""
配置管理模块

负责加载环境变量和管理配置参数。
支持 OpenAI 兼容接口，未配置密钥时自动切换为本地离线模式。
"""

import os
from typing import Optional
from dataclasses import dataclass
from dotenv import load_dotenv
from loguru import logger


def _get_bool(value: Optional[str], default: bool = False) -> bool:
    """将环境变量字符串转换为布尔值"""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


@dataclass
class Config:
    """
    RAG 系统配置类

    Attributes:
        openai_api_key: OpenAI API 密钥，为空时使用本地 Embedding
        openai_base_url: OpenAI API 基础 URL（用于兼容 DeepSeek 等）
        model_name: LLM 模型名称
        embedding_model: Embedding 模型名称
        embedding_provider: Embedding 策略 (auto / openai / local)
        embedding_fallback: 远程 Embedding 失败时是否降级到本地哈希向量
        local_embedding_dim: 本地哈希向量维度
        chunk_size: 文档分块大小（字符数）
        chunk_overlap: 分块重叠大小（字符数）
        top_k: 向量检索返回的文档数量
        temperature: 生成温度
        max_tokens: 单次回答的最大 token 数
        stream_transport: 流式输出方式 (langchain / sse)
        snippet_length: 引用片段的最大字符数
        vector_store_provider: 向量库类型 (local / chroma)
        vector_store_file: 本地语料 JSON 文件
        vector_store_dir: 目录形式的本地语料
        uploads_dir: 上传文件保存目录
        chroma_persist_dir: ChromaDB 持久化目录
        chroma_collection: ChromaDB 集合名称
        log_level: 日志级别
    """

    # API 配置
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None

    # 模型配置
    model_name: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    embedding_provider: str = "auto"
    embedding_fallback: bool = True
    local_embedding_dim: int = 256

    # 分块配置
    chunk_size: int = 1000
    chunk_overlap: int = 200

    # 检索与生成配置
    top_k: int = 3
    temperature: float = 0.0
    max_tokens: int = 800
    stream_transport: str = "langchain"
    snippet_length: int = 200

    # 存储配置
    vector_store_provider: str = "local"
    vector_store_file: str = "./data/vectorstore.json"
    vector_store_dir: str = "./data/vectorstore"
    uploads_dir: str = "./data/uploads"
    chroma_persist_dir: str = "./data/chroma_db"
    chroma_collection: str = "docrag-studio-collection"

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        """
        从环境变量加载配置

        Returns:
            Config: 配置实例
        """
        # 加载 .env 文件
        load_dotenv()

        config = cls(
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_base_url=os.getenv("OPENAI_BASE_URL"),
            model_name=os.getenv("MODEL_NAME", "gpt-4o-mini"),
            embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "auto").lower(),
            embedding_fallback=_get_bool(os.getenv("EMBEDDING_FALLBACK"), True),
            local_embedding_dim=int(os.getenv("LOCAL_EMBEDDING_DIM", "256")),
            chunk_size=int(os.getenv("CHUNK_SIZE", "1000")),
            chunk_overlap=int(os.getenv("CHUNK_OVERLAP", "200")),
            top_k=int(os.getenv("TOP_K", "3")),
            temperature=float(os.getenv("TEMPERATURE", "0.0")),
            max_tokens=int(os.getenv("MAX_TOKENS", "800")),
            stream_transport=os.getenv("LLM_STREAM_TRANSPORT", "langchain").lower(),
            snippet_length=int(os.getenv("SNIPPET_LENGTH", "200")),
            vector_store_provider=os.getenv("VECTOR_STORE_PROVIDER", "local").lower(),
            vector_store_file=os.getenv("VECTOR_STORE_FILE", "./data/vectorstore.json"),
            vector_store_dir=os.getenv("VECTOR_STORE_DIR", "./data/vectorstore"),
            uploads_dir=os.getenv("UPLOADS_DIR", "./data/uploads"),
            chroma_persist_dir=os.getenv("CHROMA_PERSIST_DIR", "./data/chroma_db"),
            chroma_collection=(
                os.getenv("CHROMA_COLLECTION")
                or os.getenv("CHROMA_COLLECTION_NAME")
                or "docrag-studio-collection"
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

        if not config.has_openai_credential:
            logger.warning("未设置 OPENAI_API_KEY，Embedding 将使用本地哈希向量，问答不可用")

        logger.info(
            f"✅ 配置加载完成: 模型={config.model_name}, "
            f"分块大小={config.chunk_size}, 向量库={config.vector_store_provider}"
        )
        return config

    @property
    def has_openai_credential(self) -> bool:
        """是否配置了 OpenAI 凭证"""
        return bool(self.openai_api_key)

    def validate(self) -> bool:
        """
        验证配置是否有效

        Returns:
            bool: 配置是否有效
        """
        valid = True
        if self.chunk_overlap >= self.chunk_size:
            logger.error(
                f"❌ CHUNK_OVERLAP ({self.chunk_overlap}) 必须小于 CHUNK_SIZE ({self.chunk_size})"
            )
            valid = False
        if self.embedding_provider not in {"auto", "openai", "local"}:
            logger.error(f"❌ 未知的 EMBEDDING_PROVIDER: {self.embedding_provider}")
            valid = False
        if self.stream_transport not in {"langchain", "sse"}:
            logger.error(f"❌ 未知的 LLM_STREAM_TRANSPORT: {self.stream_transport}")
            valid = False
        if self.top_k <= 0:
            logger.error("❌ TOP_K 必须为正整数")
            valid = False
        return valid


# 全局配置实例
_config: Optional[Config] = None


def get_config() -> Config:
    """
    获取全局配置实例（单例模式）

    Returns:
        Config: 配置实例
    """
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config
