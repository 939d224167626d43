"""
流式输出模块

- 流式事件：token / sources / error / done，与具体传输协议（SSE 等）无关
- SSE 解码：把 OpenAI 兼容接口返回的原始字节流解码为文本 token
"""

import codecs
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union
from loguru import logger


@dataclass
class TokenEvent:
    """增量文本片段"""
    token: str
    type: str = field(default="token", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "token": self.token}


@dataclass
class SourcesEvent:
    """回答结束后的引用来源"""
    sources: List[Any]
    type: str = field(default="sources", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "sources": [s.to_dict() if hasattr(s, "to_dict") else s for s in self.sources],
        }


@dataclass
class ErrorEvent:
    """检索或生成失败"""
    message: str
    code: str = "RAGError"
    type: str = field(default="error", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "message": self.message, "code": self.code}


@dataclass
class DoneEvent:
    """流结束标记，消费方读到它即可停止"""
    type: str = field(default="done", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type}


StreamEvent = Union[TokenEvent, SourcesEvent, ErrorEvent, DoneEvent]


class SSELineDecoder:
    """
    按行切分的增量解码器

    每次读入一个字节片段，按 UTF-8 增量解码（跨片段的多字节字符会被正确拼接），
    返回其中完整的行，末尾不完整的行留在缓冲区等待下一次读入。
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """尚未凑成完整一行的缓冲内容"""
        return self._buffer

    def feed(self, data: Union[bytes, str]) -> List[str]:
        text = self._decoder.decode(data) if isinstance(data, bytes) else data
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def discard(self) -> str:
        """丢弃未结束的缓冲内容，返回被丢弃的文本"""
        dropped = self._buffer
        self._buffer = ""
        self._decoder.reset()
        return dropped


def _delta_content(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else None


def iter_sse_tokens(fragments: Iterable[Union[bytes, str]]) -> Iterator[str]:
    """
    从 OpenAI 兼容的 SSE 字节流中提取文本 token

    只处理 "data:" 行；"data: [DONE]" 表示结束；无法解析的行会被跳过。
    流结束或被取消时，未完成的缓冲行直接丢弃。

    Args:
        fragments: 原始字节片段

    Yields:
        str: choices[0].delta.content
    """
    decoder = SSELineDecoder()
    try:
        for fragment in fragments:
            for line in decoder.feed(fragment):
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    return
                try:
                    payload = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug(f"跳过无法解析的 SSE 行: {data[:80]}")
                    continue
                token = _delta_content(payload)
                if token:
                    yield token
    finally:
        dropped = decoder.discard()
        if dropped:
            logger.debug(f"丢弃未结束的 SSE 缓冲: {len(dropped)} 字符")
