"""
引用提取模块

回答中的引用标记形如 [1] 或 [1, 3]，标记 n 对应第 n-1 个检索结果。
优先解析模型返回的结构化 JSON（answer + citations），
不可用或格式不正确时退回到在回答文本中扫描引用标记。
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from .vectorstore import RetrievalResult


MARKER_PATTERN = re.compile(r"\[(\d+(?:\s*,\s*\d+)*)\]")
_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

# 回答中没有有效引用时，默认引用的检索结果数量上限
DEFAULT_FALLBACK_CITATIONS = 3


class StructuredAnswer(BaseModel):
    """模型返回的结构化回答"""
    answer: str = Field(description="带引用编号的回答")
    citations: List[int] = Field(default_factory=list, description="回答中引用的参考文档编号")


@dataclass
class SourceCitation:
    """回答引用的来源"""
    ref: int
    id: str
    title: Optional[str]
    snippet: str

    def to_dict(self) -> Dict[str, Any]:
        return {"ref": self.ref, "id": self.id, "title": self.title, "snippet": self.snippet}


def _dedupe(values: List[int]) -> List[int]:
    seen: List[int] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def extract_citation_markers(text: str) -> List[int]:
    """
    按首次出现顺序提取去重后的引用编号

    Args:
        text: 回答文本

    Returns:
        List[int]: 引用编号（从 1 开始）
    """
    numbers = []
    for match in MARKER_PATTERN.finditer(text or ""):
        numbers.extend(int(part) for part in match.group(1).split(","))
    return _dedupe(numbers)


def parse_structured_answer(text: str) -> Optional[Tuple[str, List[int]]]:
    """
    解析 {"answer": "...", "citations": [1, 2]} 形式的结构化回答

    允许外层包裹 ```json 代码块。格式不正确时返回 None。
    """
    cleaned = (text or "").strip()
    fenced = _FENCE_PATTERN.match(cleaned)
    if fenced:
        cleaned = fenced.group(1)

    try:
        payload = StructuredAnswer.model_validate_json(cleaned)
    except ValidationError:
        return None

    return payload.answer, _dedupe(payload.citations)


def make_snippet(text: str, limit: int = 200) -> str:
    """截取不超过 limit 个字符的片段"""
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


def resolve_citations(
    markers: List[int],
    contexts: List[RetrievalResult],
    top_k: int,
    snippet_length: int = 200
) -> List[SourceCitation]:
    """
    把引用编号映射回检索结果

    超出检索结果范围的编号直接丢弃；没有任何有效编号时，
    默认引用前 min(3, top_k) 个检索结果。

    Args:
        markers: 引用编号（从 1 开始）
        contexts: 本次查询的检索结果
        top_k: 本次查询的 top_k
        snippet_length: 片段长度上限

    Returns:
        List[SourceCitation]: 引用来源列表
    """
    valid = [m for m in markers if 1 <= m <= len(contexts)]
    if not valid:
        fallback_count = min(DEFAULT_FALLBACK_CITATIONS, top_k, len(contexts))
        valid = list(range(1, fallback_count + 1))

    sources = []
    for ref in valid:
        record = contexts[ref - 1].record
        metadata = record.metadata or {}
        sources.append(SourceCitation(
            ref=ref,
            id=record.id,
            title=metadata.get("title") or metadata.get("source"),
            snippet=make_snippet(record.text, snippet_length),
        ))
    return sources
