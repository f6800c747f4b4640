"""Multipart Uploader パッケージ"""
from typing import List, Optional, Union
from .models.config import Config
from .models.upload import ObjectSummary
from .utils.logger import LoggerManager
from .core.store import create_store
from .client.transport import DirectTransport, RelayTransport
from .client.uploader import UploadClient, UploadResult


class MultipartUploader:
    """アップローダーのメインクラス（設定からクライアントを組み立てる）"""

    def __init__(self, config: Union[str, Config] = "config.json", direct: bool = False):
        # 設定を読み込み
        self.config = Config.from_file(config) if isinstance(config, str) else config

        # ロガーをセットアップ
        self.logger = LoggerManager.setup(self.config.logging)

        # direct=True ならリレーを使わずストアに直接送る
        if direct:
            transport = DirectTransport(create_store(self.config), self.config.options)
        else:
            transport = RelayTransport(self.config.client.relay_url, self.config.options)
        self.client = UploadClient(transport, self.config.options)
        self.logger.info(f"Multipart Uploader initialized ({'direct' if direct else 'relay'})")

    def upload(self, file_path: str, key: Optional[str] = None) -> UploadResult:
        return self.client.upload(file_path, key)

    def download(self, key: str, dest_dir: str = ".") -> str:
        return self.client.download(key, dest_dir)

    def list_objects(self) -> List[ObjectSummary]:
        return self.client.list_objects()


__all__ = ['MultipartUploader', 'Config', 'UploadClient', 'UploadResult']
