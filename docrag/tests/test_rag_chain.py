"""问答链与引用提取测试（使用替身模型，不访问网络）"""

import json

import pytest
from langchain_core.documents import Document

from docrag.citations import (
    extract_citation_markers,
    make_snippet,
    parse_structured_answer,
    resolve_citations,
)
from docrag.exceptions import ModelProviderError
from docrag.llm import ChatModel
from docrag.main import build_parser, run_ask
from docrag.rag_chain import (
    FAILED_ANSWER,
    NO_CONTEXT_ANSWER,
    STRUCTURED_FORMAT_INSTRUCTIONS,
    RAGChain,
)
from docrag.streaming import DoneEvent, ErrorEvent, SourcesEvent, TokenEvent
from docrag.vectorstore import BaseVectorStore, LocalVectorStore, RetrievalResult, StoredRecord


class StubChatModel(ChatModel):
    """记录调用次数的替身模型"""

    def __init__(self, response="", fragments=None, error=None):
        self.response = response
        self.fragments = fragments or []
        self.error = error
        self.invoke_calls = 0
        self.stream_calls = 0
        self.prompts = []
        self.stream_closed = False

    def invoke(self, prompt):
        self.invoke_calls += 1
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.response

    def stream(self, prompt):
        self.stream_calls += 1
        self.prompts.append(prompt)
        try:
            for fragment in self.fragments:
                yield fragment
            if self.error:
                raise self.error
        finally:
            self.stream_closed = True


class StaticVectorStore(BaseVectorStore):
    """返回固定检索结果的向量库"""

    def __init__(self, results):
        super().__init__(embedding_model=None)
        self.results = results
        self.queries = []

    def add_documents(self, chunks, embeddings=None):
        raise NotImplementedError

    def similarity_search(self, query, k=3):
        self.queries.append((query, k))
        return self.results[:k]

    def has_document(self, source, hash=None):
        return False

    def count(self):
        return len(self.results)

    def clear(self):
        self.results = []


def _result(record_id, text, score=0.9, title=None):
    record = StoredRecord(
        id=record_id,
        embedding=[1.0, 0.0],
        text=text,
        metadata={"source": f"{record_id}.txt", "title": title or f"{record_id}.txt"},
    )
    return RetrievalResult(record=record, score=score)


@pytest.fixture
def contexts():
    return [
        _result("sky", "The sky is blue.", 0.95),
        _result("grass", "Grass is green.", 0.80),
    ]


def _chain(config, results, llm):
    return RAGChain(StaticVectorStore(results), config, llm=llm)


class TestCitations:
    """引用提取测试"""

    def test_extract_markers(self):
        assert extract_citation_markers("A [1]. B [2, 3]. C [1].") == [1, 2, 3]
        assert extract_citation_markers("没有引用") == []

    def test_structured_answer(self):
        assert parse_structured_answer('{"answer": "蓝色 [1]", "citations": [1]}') == ("蓝色 [1]", [1])

    def test_structured_answer_in_code_fence(self):
        text = '```json\n{"answer": "绿色", "citations": ["2"]}\n```'
        assert parse_structured_answer(text) == ("绿色", [2])

    def test_structured_answer_rejects_invalid(self):
        assert parse_structured_answer("plain text [1]") is None
        assert parse_structured_answer('{"answer": 1, "citations": []}') is None
        assert parse_structured_answer('{"answer": "x", "citations": ["first"]}') is None
        assert parse_structured_answer('["not", "an", "object"]') is None

    def test_out_of_range_marker_dropped(self, contexts):
        sources = resolve_citations([1, 3], contexts, top_k=2)
        assert [s.ref for s in sources] == [1]
        assert sources[0].id == "sky"

    def test_fallback_citations(self, contexts):
        """没有有效引用时默认引用前 min(3, top_k) 个结果"""
        assert [s.ref for s in resolve_citations([], contexts, top_k=3)] == [1, 2]
        assert [s.ref for s in resolve_citations([7], contexts, top_k=1)] == [1]

    def test_snippet_truncation(self):
        assert make_snippet("abcdef", limit=3) == "abc..."
        assert make_snippet("  abc  ", limit=10) == "abc"


class TestRAGChainAnswer:
    """一次性问答测试"""

    def test_no_context_skips_model(self, config):
        """没有检索结果时不调用模型"""
        llm = StubChatModel(response="不应被调用")
        result = _chain(config, [], llm).answer("天空是什么颜色？")

        assert result.answer == NO_CONTEXT_ANSWER
        assert result.sources == []
        assert not result.is_error
        assert llm.invoke_calls == 0

    def test_structured_response(self, config, contexts):
        llm = StubChatModel(response='{"answer": "草是绿色的 [2]", "citations": [2]}')
        result = _chain(config, contexts, llm).answer("草是什么颜色？")

        assert result.answer == "草是绿色的 [2]"
        assert [s.id for s in result.sources] == ["grass"]
        assert llm.invoke_calls == 1

    def test_marker_scan_drops_out_of_range(self, config, contexts):
        """非结构化回答按引用标记提取，越界编号被丢弃"""
        llm = StubChatModel(response="The sky is blue [1] and also [3].")
        result = _chain(config, contexts, llm).answer("What color is the sky?")

        assert result.answer == "The sky is blue [1] and also [3]."
        assert [s.ref for s in result.sources] == [1]
        assert result.sources[0].snippet == "The sky is blue."

    def test_answer_without_markers_cites_top_contexts(self, config, contexts):
        llm = StubChatModel(response="Colors vary.")
        result = _chain(config, contexts, llm).answer("colors?", top_k=2)

        assert [s.ref for s in result.sources] == [1, 2]

    def test_prompt_numbers_contexts(self, config, contexts):
        llm = StubChatModel(response="ok [1]")
        _chain(config, contexts, llm).answer("What color is the sky?")

        prompt = llm.prompts[0]
        assert "[1] (来源: sky.txt)" in prompt
        assert "[2] (来源: grass.txt)" in prompt
        assert "What color is the sky?" in prompt

    def test_model_failure_returns_failed_answer(self, config, contexts):
        llm = StubChatModel(error=ModelProviderError("upstream 500"))
        result = _chain(config, contexts, llm).answer("question")

        assert result.is_error
        assert result.answer == FAILED_ANSWER
        assert result.error_code == "ProviderError"
        assert result.sources == []

    def test_missing_credential(self, config, contexts):
        """未配置密钥时返回 MissingCredential 失败结果"""
        result = RAGChain(StaticVectorStore(contexts), config).answer("question")

        assert result.is_error
        assert result.error_code == "MissingCredential"

    def test_no_corpus_is_not_found(self, config):
        result = RAGChain(LocalVectorStore(config), config, llm=StubChatModel()).answer("question")

        assert result.is_error
        assert result.error_code == "NotFound"

    def test_top_k_passed_to_store(self, config, contexts):
        store = StaticVectorStore(contexts)
        RAGChain(store, config, llm=StubChatModel(response="ok")).answer("q", top_k=1)

        assert store.queries == [("q", 1)]

    def test_explicit_zero_top_k(self, config, contexts):
        """显式传入 top_k=0 时不回退到默认值"""
        store = StaticVectorStore(contexts)
        llm = StubChatModel(response="ok")

        result = RAGChain(store, config, llm=llm).answer("q", top_k=0)

        assert store.queries == [("q", 0)]
        assert result.answer == NO_CONTEXT_ANSWER
        assert llm.invoke_calls == 0

    def test_mixed_dimension_corpus_is_typed_failure(self, config):
        with open(config.vector_store_file, "w", encoding="utf-8") as f:
            json.dump([
                {"id": "a", "embedding": [0.1] * 256, "text": "a", "metadata": {}},
                {"id": "b", "embedding": [0.1] * 8, "text": "b", "metadata": {}},
            ], f)

        result = RAGChain(LocalVectorStore(config), config, llm=StubChatModel()).answer("a")

        assert result.is_error
        assert result.error_code == "DimensionMismatch"

    def test_to_dict(self, config, contexts):
        llm = StubChatModel(response="ok [1]")
        payload = _chain(config, contexts, llm).ask_with_sources("q")

        assert payload["answer"] == "ok [1]"
        assert payload["sources"][0]["ref"] == 1
        assert "error" not in payload


class TestRAGChainStream:
    """流式问答测试"""

    def test_event_order(self, config, contexts):
        llm = StubChatModel(fragments=["草是", "绿色的", " [2]"])
        events = list(_chain(config, contexts, llm).stream_answer("草是什么颜色？"))

        assert [e.type for e in events] == ["token", "token", "token", "sources", "done"]
        assert "".join(e.token for e in events if isinstance(e, TokenEvent)) == "草是绿色的 [2]"
        assert [s.ref for s in events[3].sources] == [2]
        assert llm.stream_closed

    def test_stream_prompt_numbers_contexts_without_json(self, config, contexts):
        """流式 Prompt 同样带编号上下文，但不要求 JSON 包装"""
        llm = StubChatModel(fragments=["ok"])
        list(_chain(config, contexts, llm).stream_answer("What color is the sky?"))

        prompt = llm.prompts[0]
        assert "[1] (来源: sky.txt)" in prompt
        assert "[2] (来源: grass.txt)" in prompt
        assert STRUCTURED_FORMAT_INSTRUCTIONS not in prompt

    def test_no_context_stream(self, config):
        llm = StubChatModel(fragments=["x"])
        events = list(_chain(config, [], llm).stream_answer("q"))

        assert isinstance(events[0], TokenEvent)
        assert events[0].token == NO_CONTEXT_ANSWER
        assert isinstance(events[1], SourcesEvent) and events[1].sources == []
        assert isinstance(events[2], DoneEvent)
        assert llm.stream_calls == 0

    def test_cancel_closes_model_stream(self, config, contexts):
        """消费方关闭生成器后，模型流随之关闭"""
        llm = StubChatModel(fragments=["一", "二", "三"])
        stream = _chain(config, contexts, llm).stream_answer("q")

        first = next(stream)
        stream.close()

        assert first.token == "一"
        assert llm.stream_closed
        with pytest.raises(StopIteration):
            next(stream)

    def test_stream_failure(self, config, contexts):
        llm = StubChatModel(fragments=["部分"], error=ModelProviderError("reset"))
        events = list(_chain(config, contexts, llm).stream_answer("q"))

        assert [e.type for e in events] == ["token", "error", "done"]
        assert events[1].code == "ProviderError"

    def test_retrieval_failure(self, config):
        events = list(RAGChain(LocalVectorStore(config), config, llm=StubChatModel()).stream_answer("q"))

        assert isinstance(events[0], ErrorEvent)
        assert events[0].code == "NotFound"
        assert isinstance(events[-1], DoneEvent)

    def test_event_to_dict(self, config, contexts):
        llm = StubChatModel(fragments=["ok [1]"])
        events = [e.to_dict() for e in _chain(config, contexts, llm).stream_answer("q")]

        assert events[0] == {"type": "token", "token": "ok [1]"}
        assert events[1]["sources"][0]["id"] == "sky"
        assert events[2] == {"type": "done"}


class TestCommandLine:
    """命令行输出测试"""

    def test_parser(self):
        args = build_parser().parse_args(["ask", "天空是什么颜色？", "--top-k", "2", "--stream"])

        assert args.command == "ask"
        assert args.top_k == 2
        assert args.stream

    def test_run_ask_stream(self, config, contexts, capsys):
        chain = _chain(config, contexts, StubChatModel(fragments=["ok", " [1]"]))

        assert run_ask(chain, "q", None, stream=True) == 0
        out = capsys.readouterr().out
        assert "ok [1]" in out
        assert "[1] sky.txt" in out

    def test_run_ask_failure_exit_code(self, config, contexts, capsys):
        chain = _chain(config, contexts, StubChatModel(error=ModelProviderError("down")))

        assert run_ask(chain, "q", None, stream=False) == 1
        assert FAILED_ANSWER in capsys.readouterr().out


class TestEndToEnd:
    """入库后的检索问答"""

    def test_answer_over_local_corpus(self, config):
        store = LocalVectorStore(config)
        store.add_documents([
            Document(id="sky", page_content="The sky is blue", metadata={"source": "sky.txt"}),
        ])
        llm = StubChatModel(response="It is blue [1].")

        result = RAGChain(store, config, llm=llm).answer("sky color")

        assert result.sources[0].id == "sky"
        assert result.sources[0].title == "sky.txt"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
