"""
DocRAG Studio - 命令行入口

    python -m docrag.main ingest ./data/documents
    python -m docrag.main ask "什么是 DocRAG？" --stream
    python -m docrag.main chat
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional
from loguru import logger

from .config import Config, get_config
from .document_loader import SUPPORTED_SUFFIXES
from .exceptions import RAGException
from .ingestion import IngestionPipeline
from .rag_chain import RAGChain
from .streaming import ErrorEvent, SourcesEvent, TokenEvent
from .vectorstore import create_vector_store


def setup_logger(level: str = "INFO"):
    """配置 loguru 日志"""
    logger.remove()  # 移除默认处理器
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{message}</cyan>",
        level=level,
        colorize=True
    )


def _expand_paths(paths: List[str]) -> List[Path]:
    files = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(sorted(
                p for p in path.rglob("*")
                if p.is_file() and p.suffix.lower() in SUPPORTED_SUFFIXES
            ))
        else:
            files.append(path)
    return files


def run_ingest(config: Config, paths: List[str]) -> int:
    files = _expand_paths(paths)
    if not files:
        logger.warning("⚠️ 没有找到任何文档")
        return 1

    pipeline = IngestionPipeline(config)
    result = pipeline.ingest(files)
    print(
        f"📦 文档 {result.documents_loaded} 个，分块 {result.chunks_processed} 个，"
        f"新增向量 {result.vectors_added} 条，跳过 {len(result.skipped)} 个"
    )
    return 0


def print_sources(sources) -> None:
    if not sources:
        return
    print("📚 参考来源:")
    for source in sources:
        print(f"  [{source.ref}] {source.title or source.id}")
        print(f"      {source.snippet[:100]}\n")


def run_ask(rag_chain: RAGChain, question: str, top_k: Optional[int], stream: bool) -> int:
    if not stream:
        result = rag_chain.answer(question, top_k)
        print(f"🤖 回答:\n{result.answer}\n")
        print_sources(result.sources)
        return 1 if result.is_error else 0

    print("🤖 回答:")
    failed = False
    for event in rag_chain.stream_answer(question, top_k):
        if isinstance(event, TokenEvent):
            print(event.token, end="", flush=True)
        elif isinstance(event, SourcesEvent):
            print("\n")
            print_sources(event.sources)
        elif isinstance(event, ErrorEvent):
            print(f"\n❌ 发生错误 ({event.code}): {event.message}")
            failed = True
    return 1 if failed else 0


def interactive_qa(rag_chain: RAGChain):
    """
    交互式问答

    Args:
        rag_chain: RAG 问答链实例
    """
    print("\n" + "=" * 60)
    print("🤖 RAG 问答系统已启动")
    print("=" * 60)
    print("输入问题开始对话，输入 'quit' 或 'exit' 退出")
    print("-" * 60 + "\n")

    while True:
        try:
            question = input("👤 您的问题: ").strip()

            if not question:
                continue

            if question.lower() in ["quit", "exit", "q"]:
                print("\n👋 再见！")
                break

            run_ask(rag_chain, question, None, stream=True)
            print("-" * 60 + "\n")

        except (KeyboardInterrupt, EOFError):
            print("\n\n👋 再见！")
            break


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DocRAG Studio 文档问答")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest_parser = subparsers.add_parser("ingest", help="入库文档（文件或目录）")
    ingest_parser.add_argument("paths", nargs="+", help="文档路径")

    ask_parser = subparsers.add_parser("ask", help="提问")
    ask_parser.add_argument("question", help="问题")
    ask_parser.add_argument("--top-k", type=int, default=None, help="检索数量")
    ask_parser.add_argument("--stream", action="store_true", help="流式输出")

    subparsers.add_parser("chat", help="交互式问答")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """主入口函数"""
    args = build_parser().parse_args(argv)

    config = get_config()
    setup_logger(config.log_level)

    if not config.validate():
        logger.error("❌ 配置验证失败，请检查 .env 文件")
        return 2

    try:
        if args.command == "ingest":
            return run_ingest(config, args.paths)

        rag_chain = RAGChain(create_vector_store(config), config)
        if args.command == "ask":
            return run_ask(rag_chain, args.question, args.top_k, args.stream)

        interactive_qa(rag_chain)
        return 0
    except (RAGException, FileNotFoundError) as e:
        logger.error(f"❌ {getattr(e, 'code', type(e).__name__)}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
