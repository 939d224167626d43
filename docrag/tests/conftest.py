"""测试公共夹具：本地哈希向量 + 临时语料目录，不访问网络"""

import pytest

from docrag.config import Config


@pytest.fixture
def config(tmp_path):
    return Config(
        openai_api_key="",
        embedding_provider="local",
        local_embedding_dim=256,
        vector_store_file=str(tmp_path / "vectorstore.json"),
        vector_store_dir=str(tmp_path / "vectorstore"),
        uploads_dir=str(tmp_path / "uploads"),
    )
