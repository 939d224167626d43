"""
异常定义模块

为入库与问答流程提供统一的异常类型。
每个异常都带有 code，问答链据此生成失败结果。
"""


class RAGException(Exception):
    """RAG 系统异常基类"""
    code = "RAGError"


class ConfigurationError(RAGException):
    """配置无效或缺失"""
    code = "ConfigurationError"


class UnsupportedFormatError(RAGException):
    """不支持的文件格式"""
    code = "UnsupportedFormat"


class ParseError(RAGException):
    """文本提取失败"""
    code = "ParseError"


class MissingCredentialError(RAGException):
    """缺少访问外部服务所需的凭证"""
    code = "MissingCredential"


class ProviderError(RAGException):
    """远程 Embedding / LLM 调用失败，且没有可用的降级方案"""
    code = "ProviderError"


class EmbeddingProviderError(ProviderError):
    """Embedding 服务调用失败"""


class ModelProviderError(ProviderError):
    """LLM 服务调用失败"""


class DimensionMismatchError(RAGException):
    """向量维度与已存储语料的维度不一致"""
    code = "DimensionMismatch"

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"向量维度不一致: 语料维度={expected}, 当前向量维度={actual}")


class NotFoundError(RAGException):
    """尚未入库任何语料"""
    code = "NotFound"


class DuplicateDocumentError(RAGException):
    """文档已存在（哈希或来源重复）"""
    code = "DuplicateDocument"


class VectorStoreError(RAGException):
    """向量库读写失败"""
    code = "VectorStoreError"
