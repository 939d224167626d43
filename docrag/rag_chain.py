"""
RAG 问答链模块

实现完整的 RAG 问答流程：
用户提问 -> 向量检索 -> 构建 Prompt -> LLM 生成回答 -> 提取引用

提供一次性回答 (answer) 与流式回答 (stream_answer) 两种形式。
检索或生成失败时返回带错误信息的结果，不会把异常抛给调用方。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional
from loguru import logger

from langchain_core.prompts import PromptTemplate

from .citations import (
    SourceCitation,
    extract_citation_markers,
    parse_structured_answer,
    resolve_citations,
)
from .config import Config, get_config
from .llm import ChatModel, create_chat_model
from .streaming import DoneEvent, ErrorEvent, SourcesEvent, StreamEvent, TokenEvent
from .vectorstore import BaseVectorStore, RetrievalResult, create_vector_store


# 没有检索到任何上下文时的固定回答
NO_CONTEXT_ANSWER = "根据提供的文档，我无法回答这个问题。"

# 检索或生成失败时的回答
FAILED_ANSWER = "抱歉，生成回答时出现错误，请稍后重试。"

# 默认的 RAG Prompt 模板
DEFAULT_RAG_PROMPT = """你是一个专业的问答助手。请只根据下面编号的参考文档回答用户的问题。

如果参考文档中没有相关信息，请诚实地说"根据提供的文档，我无法回答这个问题"。
不要编造信息。回答中的每个论断都要用参考文档的编号标注来源，例如 [1] 或 [1, 2]。

参考文档：
{context}

用户问题：{question}

{format_instructions}"""

STRUCTURED_FORMAT_INSTRUCTIONS = (
    "请只输出一个 JSON 对象，不要输出其他内容，格式为："
    '{"answer": "带引用编号的回答", "citations": [回答中引用的编号]}'
)

STREAM_FORMAT_INSTRUCTIONS = "请直接输出回答正文。"


@dataclass
class RAGAnswer:
    """
    问答结果

    Attributes:
        answer: 回答文本
        sources: 引用来源
        question: 用户问题
        error: 失败原因（成功时为 None）
        error_code: 失败类型，对应异常的 code
    """
    answer: str
    sources: List[SourceCitation] = field(default_factory=list)
    question: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "answer": self.answer,
            "sources": [s.to_dict() for s in self.sources],
            "question": self.question,
        }
        if self.is_error:
            result["error"] = self.error
            result["error_code"] = self.error_code
        return result


def _error_code(error: Exception) -> str:
    return getattr(error, "code", "RAGError")


class RAGChain:
    """
    RAG 问答链

    组装向量库、Prompt 和 LLM，实现端到端的问答功能。
    """

    def __init__(
        self,
        vectorstore: Optional[BaseVectorStore] = None,
        config: Optional[Config] = None,
        llm: Optional[ChatModel] = None,
        prompt_template: Optional[str] = None
    ):
        """
        初始化 RAG 问答链

        Args:
            vectorstore: 向量库，默认按配置创建
            config: 配置对象
            llm: 模型，默认在第一次需要时按配置创建
            prompt_template: 自定义 Prompt 模板（需包含 context、question、format_instructions）
        """
        self.config = config or get_config()
        self.vectorstore = vectorstore or create_vector_store(self.config)
        self._llm = llm
        self._prompt = PromptTemplate.from_template(prompt_template or DEFAULT_RAG_PROMPT)

        logger.info("🔗 RAG 问答链初始化完成")

    @property
    def llm(self) -> ChatModel:
        """获取模型实例（懒加载，缺少凭证时抛出 MissingCredentialError）"""
        if self._llm is None:
            self._llm = create_chat_model(self.config)
        return self._llm

    @staticmethod
    def format_context(contexts: List[RetrievalResult]) -> str:
        """
        按编号格式化检索结果

        Args:
            contexts: 检索结果

        Returns:
            str: 格式化后的上下文
        """
        formatted = []
        for i, result in enumerate(contexts, 1):
            metadata = result.record.metadata or {}
            source = metadata.get("title") or metadata.get("source") or "未知来源"
            formatted.append(f"[{i}] (来源: {source})\n{result.record.text.strip()}")

        return "\n\n---\n\n".join(formatted)

    def build_prompt(
        self,
        question: str,
        contexts: List[RetrievalResult],
        structured: bool = True
    ) -> str:
        """
        构建 Prompt

        Args:
            question: 用户问题
            contexts: 检索结果
            structured: 是否要求模型输出结构化 JSON

        Returns:
            str: Prompt 文本
        """
        return self._prompt.format(
            context=self.format_context(contexts),
            question=question,
            format_instructions=(
                STRUCTURED_FORMAT_INSTRUCTIONS if structured else STREAM_FORMAT_INSTRUCTIONS
            ),
        )

    def retrieve(self, question: str, top_k: int) -> List[RetrievalResult]:
        """检索 top_k 个上下文"""
        return self.vectorstore.similarity_search(question, top_k)

    def _failed(self, question: str, error: Exception) -> RAGAnswer:
        logger.error(f"❌ 生成回答失败 ({_error_code(error)}): {error}")
        return RAGAnswer(
            answer=FAILED_ANSWER,
            sources=[],
            question=question,
            error=str(error),
            error_code=_error_code(error),
        )

    def _sources_for(
        self,
        answer_text: str,
        contexts: List[RetrievalResult],
        top_k: int,
        markers: Optional[List[int]] = None
    ) -> List[SourceCitation]:
        if not markers:
            markers = extract_citation_markers(answer_text)
        return resolve_citations(markers, contexts, top_k, self.config.snippet_length)

    def answer(self, question: str, top_k: Optional[int] = None) -> RAGAnswer:
        """
        一次性生成回答

        Args:
            question: 用户问题
            top_k: 检索数量，默认读取配置

        Returns:
            RAGAnswer: 回答及引用来源；失败时 error 字段非空
        """
        if top_k is None:
            top_k = self.config.top_k
        logger.info(f"❓ 收到问题: {question}")

        try:
            contexts = self.retrieve(question, top_k)
        except Exception as e:
            return self._failed(question, e)

        if not contexts:
            logger.info("📭 没有检索到相关上下文，直接返回固定回答")
            return RAGAnswer(answer=NO_CONTEXT_ANSWER, sources=[], question=question)

        prompt = self.build_prompt(question, contexts, structured=True)
        try:
            raw = self.llm.invoke(prompt)
        except Exception as e:
            return self._failed(question, e)

        structured = parse_structured_answer(raw)
        if structured is not None and structured[0].strip():
            answer_text, markers = structured
        else:
            logger.debug("结构化输出不可用，改为扫描引用标记")
            answer_text, markers = raw.strip(), None

        sources = self._sources_for(answer_text, contexts, top_k, markers)
        logger.info(f"✅ 回答生成完成，引用 {len(sources)} 个来源")
        return RAGAnswer(answer=answer_text, sources=sources, question=question)

    def stream_answer(self, question: str, top_k: Optional[int] = None) -> Iterator[StreamEvent]:
        """
        流式生成回答

        每个文本片段到达后立即作为 TokenEvent 输出；生成结束后对完整回答提取一次引用，
        输出一个 SourcesEvent，最后输出 DoneEvent。
        关闭该生成器即取消，底层模型流会随之关闭。

        Prompt 与一次性回答相同（编号上下文 + 引用要求），只是不要求 JSON 包装：
        文本片段原样转发给调用方，引用从正文中的 [n] 标记提取。

        Args:
            question: 用户问题
            top_k: 检索数量，默认读取配置

        Yields:
            StreamEvent: 流式事件
        """
        if top_k is None:
            top_k = self.config.top_k
        logger.info(f"❓ 收到问题 (流式): {question}")

        try:
            contexts = self.retrieve(question, top_k)
        except Exception as e:
            logger.error(f"❌ 检索失败 ({_error_code(e)}): {e}")
            yield ErrorEvent(message=str(e), code=_error_code(e))
            yield DoneEvent()
            return

        if not contexts:
            logger.info("📭 没有检索到相关上下文，直接返回固定回答")
            yield TokenEvent(NO_CONTEXT_ANSWER)
            yield SourcesEvent([])
            yield DoneEvent()
            return

        # 无 JSON 包装，片段可直接作为 token 输出
        prompt = self.build_prompt(question, contexts, structured=False)
        parts: List[str] = []
        fragments = None
        try:
            fragments = iter(self.llm.stream(prompt))
            for fragment in fragments:
                if not fragment:
                    continue
                parts.append(fragment)
                yield TokenEvent(fragment)
        except Exception as e:
            logger.error(f"❌ 流式生成失败 ({_error_code(e)}): {e}")
            yield ErrorEvent(message=str(e), code=_error_code(e))
            yield DoneEvent()
            return
        finally:
            close = getattr(fragments, "close", None)
            if close is not None:
                close()

        sources = self._sources_for("".join(parts), contexts, top_k)
        logger.info(f"✅ 流式回答完成，引用 {len(sources)} 个来源")
        yield SourcesEvent(sources)
        yield DoneEvent()

    def ask(self, question: str) -> str:
        """
        提问并获取回答文本

        Args:
            question: 用户问题

        Returns:
            str: 回答文本
        """
        return self.answer(question).answer

    def ask_with_sources(self, question: str) -> Dict[str, Any]:
        """
        提问并返回回答及来源

        Args:
            question: 用户问题

        Returns:
            Dict: 包含 answer、sources、question 的字典
        """
        return self.answer(question).to_dict()
