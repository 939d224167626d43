"""
文档加载模块

支持加载多种格式的文档：
- 纯文本 / Markdown 文件（直接读取）
- PDF 文件
- DOCX 文件

PDF 与 DOCX 的文本提取交给 TextExtractor 完成，默认使用 LangChain 的社区加载器。
每个文件生成一个 Document，metadata 中带有用于去重的内容哈希。
"""

import hashlib
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union
from loguru import logger

from langchain_core.documents import Document

from .exceptions import ParseError, UnsupportedFormatError


PASSTHROUGH_SUFFIXES = {".txt", ".md", ".markdown"}
EXTRACTED_SUFFIXES = {".pdf", ".docx"}
SUPPORTED_SUFFIXES = PASSTHROUGH_SUFFIXES | EXTRACTED_SUFFIXES


def compute_bytes_hash(data: bytes) -> str:
    """计算原始字节的 SHA-256"""
    return hashlib.sha256(data).hexdigest()


def compute_text_hash(text: str) -> str:
    """计算文本内容的 SHA-256"""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_file_hash(file_path: Union[str, Path], block_size: int = 1 << 16) -> str:
    """
    按块读取文件，计算原始字节的 SHA-256

    Args:
        file_path: 文件路径
        block_size: 每次读取的字节数

    Returns:
        str: 十六进制哈希
    """
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(block_size), b""):
            digest.update(block)
    return digest.hexdigest()


class TextExtractor(Protocol):
    """二进制格式的文本提取接口"""

    def extract(self, file_path: Path, file_type: str) -> str:
        ...


class LangChainTextExtractor:
    """
    基于 LangChain 社区加载器的文本提取器

    PDF 使用 PyPDFLoader（按页加载），DOCX 使用 Docx2txtLoader。
    """

    def extract(self, file_path: Path, file_type: str) -> str:
        from langchain_community.document_loaders import Docx2txtLoader, PyPDFLoader

        loader_mapping = {
            ".pdf": PyPDFLoader,
            ".docx": Docx2txtLoader,
        }
        loader_class = loader_mapping.get(file_type)
        if loader_class is None:
            raise UnsupportedFormatError(f"没有可用的文本提取器: {file_type}")

        try:
            pages = loader_class(str(file_path)).load()
        except Exception as e:
            raise ParseError(f"文本提取失败: {file_path.name}，错误: {e}") from e

        return "\n\n".join(page.page_content for page in pages)


class DocumentLoader:
    """
    文档加载器

    支持加载单个文件、文件列表或整个目录中的文档。
    自动根据文件扩展名选择读取方式。
    """

    def __init__(self, extractor: Optional[TextExtractor] = None):
        """
        初始化文档加载器

        Args:
            extractor: PDF / DOCX 文本提取器，默认使用 LangChainTextExtractor
        """
        self.extractor = extractor or LangChainTextExtractor()
        logger.info("📄 文档加载器初始化完成")

    def _read_text(self, file_path: Path, suffix: str) -> str:
        if suffix in PASSTHROUGH_SUFFIXES:
            try:
                return file_path.read_text(encoding="utf-8")
            except UnicodeDecodeError as e:
                raise ParseError(f"文件不是有效的 UTF-8 文本: {file_path.name}") from e

        try:
            text = self.extractor.extract(file_path, suffix)
        except (ParseError, UnsupportedFormatError):
            raise
        except Exception as e:
            raise ParseError(f"文本提取失败: {file_path.name}，错误: {e}") from e

        if text is None:
            raise ParseError(f"文本提取器未返回内容: {file_path.name}")
        return text

    def load_file(
        self,
        file_path: Union[str, Path],
        file_hash: Optional[str] = None
    ) -> Document:
        """
        加载单个文件

        Args:
            file_path: 文件路径
            file_hash: 调用方提供的规范哈希（如上传时对原始字节计算的哈希），
                优先于对提取文本重新计算的哈希

        Returns:
            Document: 文档对象

        Raises:
            FileNotFoundError: 文件不存在
            UnsupportedFormatError: 不支持的文件格式
            ParseError: 文本提取失败
        """
        file_path = Path(file_path)

        suffix = file_path.suffix.lower()
        if suffix not in SUPPORTED_SUFFIXES:
            raise UnsupportedFormatError(
                f"不支持的文件格式: {suffix or file_path.name}。"
                f"支持的格式: {sorted(SUPPORTED_SUFFIXES)}"
            )

        if not file_path.exists():
            raise FileNotFoundError(f"文件不存在: {file_path}")

        text = self._read_text(file_path, suffix)
        content_hash = file_hash or compute_text_hash(text)

        document = Document(
            id=f"{file_path.name}#{content_hash[:12]}",
            page_content=text,
            metadata={
                "source": file_path.name,
                "title": file_path.name,
                "file_path": str(file_path),
                "file_type": suffix,
                "hash": content_hash,
            },
        )
        logger.info(f"✅ 已加载文件: {file_path.name}，{len(text)} 字符")
        return document

    def load_files(
        self,
        file_paths: List[Union[str, Path]],
        file_hashes: Optional[Dict[str, str]] = None
    ) -> List[Document]:
        """
        加载文件列表，任意文件失败都会中止整个加载

        Args:
            file_paths: 文件路径列表
            file_hashes: 文件路径 -> 规范哈希 的映射

        Returns:
            List[Document]: 文档列表
        """
        file_hashes = file_hashes or {}
        documents = []
        for file_path in file_paths:
            try:
                documents.append(
                    self.load_file(file_path, file_hashes.get(str(file_path)))
                )
            except Exception as e:
                logger.error(f"❌ 加载文件失败: {Path(file_path).name}，错误: {e}")
                raise

        logger.info(f"📚 共加载 {len(documents)} 个文档")
        return documents

    def load_directory(
        self,
        directory_path: Union[str, Path],
        recursive: bool = True
    ) -> List[Document]:
        """
        加载目录中的所有支持的文件，跳过无法解析的文件

        Args:
            directory_path: 目录路径
            recursive: 是否递归加载子目录

        Returns:
            List[Document]: 所有文档列表
        """
        directory_path = Path(directory_path)

        if not directory_path.exists():
            raise FileNotFoundError(f"目录不存在: {directory_path}")

        if not directory_path.is_dir():
            raise ValueError(f"路径不是目录: {directory_path}")

        pattern = "**/*" if recursive else "*"
        files = sorted(
            p for p in directory_path.glob(pattern)
            if p.is_file() and p.suffix.lower() in SUPPORTED_SUFFIXES
        )

        all_documents = []
        for file_path in files:
            try:
                all_documents.append(self.load_file(file_path))
            except ParseError as e:
                logger.warning(f"⚠️ 跳过文件 {file_path.name}: {e}")

        logger.info(f"📁 目录加载完成: 共 {len(all_documents)} 个文档")
        return all_documents

    def load(self, path: Union[str, Path]) -> List[Document]:
        """
        智能加载：自动判断是文件还是目录

        Args:
            path: 文件或目录路径

        Returns:
            List[Document]: 文档列表
        """
        path = Path(path)

        if path.is_file():
            return [self.load_file(path)]
        elif path.is_dir():
            return self.load_directory(path)
        else:
            raise FileNotFoundError(f"路径不存在: {path}")
