"""
LLM 调用模块

统一的模型边界：invoke(prompt) -> str，stream(prompt) -> 文本片段迭代器。
远程调用失败统一抛出 ModelProviderError，由问答链转换为失败结果。
"""

from abc import ABC, abstractmethod
from typing import Any, Iterator, Optional
from loguru import logger

from .config import Config, get_config
from .exceptions import ConfigurationError, MissingCredentialError, ModelProviderError
from .streaming import iter_sse_tokens


def _content_to_text(content: Any) -> str:
    """LangChain 消息的 content 可能是字符串或内容块列表"""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return "" if content is None else str(content)


class ChatModel(ABC):
    """模型边界接口"""

    @abstractmethod
    def invoke(self, prompt: str) -> str:
        """一次性生成完整回答"""

    @abstractmethod
    def stream(self, prompt: str) -> Iterator[str]:
        """增量生成回答，逐个返回文本片段"""


class LangChainChatModel(ChatModel):
    """基于 LangChain ChatOpenAI 的模型"""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self._llm = self._create_llm()

    def _create_llm(self):
        from langchain_openai import ChatOpenAI

        kwargs = {
            "model": self.config.model_name,
            "api_key": self.config.openai_api_key,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

        # 如果设置了自定义 base_url
        if self.config.openai_base_url:
            kwargs["base_url"] = self.config.openai_base_url

        llm = ChatOpenAI(**kwargs)
        logger.info(f"🤖 LLM 初始化完成: {self.config.model_name}")
        return llm

    def invoke(self, prompt: str) -> str:
        try:
            return _content_to_text(self._llm.invoke(prompt).content)
        except Exception as e:
            raise ModelProviderError(f"LLM 调用失败: {e}") from e

    def stream(self, prompt: str) -> Iterator[str]:
        iterator = self._llm.stream(prompt)
        try:
            for chunk in iterator:
                text = _content_to_text(chunk.content)
                if text:
                    yield text
        except Exception as e:
            raise ModelProviderError(f"LLM 流式调用失败: {e}") from e
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()


class OpenAISSEChatModel(ChatModel):
    """
    直接读取 OpenAI 兼容接口 SSE 原始字节流的模型

    流式输出通过 SSELineDecoder 自行解码，适用于只提供原始 SSE 的兼容服务。
    """

    def __init__(self, config: Optional[Config] = None):
        from openai import OpenAI

        self.config = config or get_config()
        self.client = OpenAI(
            api_key=self.config.openai_api_key,
            base_url=self.config.openai_base_url or None,
        )
        logger.info(f"🤖 SSE LLM 初始化完成: {self.config.model_name}")

    def _request_kwargs(self, prompt: str) -> dict:
        return {
            "model": self.config.model_name,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

    def invoke(self, prompt: str) -> str:
        from openai import OpenAIError

        try:
            response = self.client.chat.completions.create(**self._request_kwargs(prompt))
        except OpenAIError as e:
            raise ModelProviderError(f"LLM 调用失败: {e}") from e
        return response.choices[0].message.content or ""

    def stream(self, prompt: str) -> Iterator[str]:
        from openai import OpenAIError

        try:
            with self.client.chat.completions.with_streaming_response.create(
                stream=True, **self._request_kwargs(prompt)
            ) as response:
                yield from iter_sse_tokens(response.iter_bytes())
        except OpenAIError as e:
            raise ModelProviderError(f"LLM 流式调用失败: {e}") from e


def create_chat_model(config: Optional[Config] = None) -> ChatModel:
    """
    按配置创建模型

    Raises:
        MissingCredentialError: 未设置 OPENAI_API_KEY
        ConfigurationError: 未知的流式传输方式
    """
    config = config or get_config()
    if not config.has_openai_credential:
        raise MissingCredentialError("未设置 OPENAI_API_KEY，无法调用 LLM")

    if config.stream_transport == "sse":
        return OpenAISSEChatModel(config)
    if config.stream_transport == "langchain":
        return LangChainChatModel(config)
    raise ConfigurationError(f"未知的 LLM_STREAM_TRANSPORT: {config.stream_transport}")
