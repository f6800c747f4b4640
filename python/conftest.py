"""pytest共通フィクスチャ"""
import pytest

from multipart_uploader.core.store import FileSystemObjectStore
from multipart_uploader.models.config import LoggingConfig, UploadOptions
from multipart_uploader.utils.logger import LoggerManager


@pytest.fixture(autouse=True)
def logger():
    """テストごとにロガーを初期化"""
    LoggerManager.reset()
    yield LoggerManager.setup(LoggingConfig(level="DEBUG"))
    LoggerManager.reset()


@pytest.fixture
def small_options():
    """1KBチャンクで動かすための設定"""
    return UploadOptions(
        chunk_size=1024,
        min_part_size=1024,
        max_retries=0,
        enable_progress=False,
    )


@pytest.fixture
def fs_store(tmp_path):
    return FileSystemObjectStore(str(tmp_path / "store"))


@pytest.fixture
def make_file(tmp_path):
    """指定サイズのテストファイルを作成"""
    def _make(size: int, name: str = "sample.bin") -> str:
        path = tmp_path / name
        path.write_bytes(bytes(i % 251 for i in range(size)))
        return str(path)
    return _make
