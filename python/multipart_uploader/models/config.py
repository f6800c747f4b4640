"""設定管理用のデータクラス"""
from dataclasses import dataclass, field
from typing import List, Optional
import json
import os
import re

MIB = 1024 * 1024

# バックエンド（S3 / R2）の制約
MIN_PART_SIZE = 5 * MIB
MAX_PARTS = 10000
# クライアントとリレーで共有するチャンクサイズ
DEFAULT_CHUNK_SIZE = 10 * MIB


@dataclass
class LoggingConfig:
    """ロギング設定"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(levelname)s - %(message)s"
    file: Optional[str] = None


@dataclass
class StorageConfig:
    """オブジェクトストアの設定（認証情報を含む）"""
    backend: str = "s3"
    bucket: str = ""
    region: str = "auto"
    endpoint_url: Optional[str] = None
    account_id: Optional[str] = None  # R2の場合
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    profile: Optional[str] = None
    root_dir: str = "./data"  # filesystemバックエンド用
    connect_timeout: int = 10
    read_timeout: int = 60
    max_attempts: int = 3

    def __post_init__(self):
        if self.backend not in ("s3", "filesystem"):
            raise ValueError(
                f"Invalid storage backend: {self.backend}. Expected 's3' or 'filesystem'"
            )

        if self.backend == "s3" and not self.bucket:
            raise ValueError("bucket is required for the s3 backend")

        # バケット名は3-63文字の小文字英数字、ハイフン、ピリオドのみ
        if self.bucket and not re.match(r'^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$', self.bucket):
            raise ValueError(f"Invalid bucket name: {self.bucket}")

        if bool(self.access_key_id) != bool(self.secret_access_key):
            raise ValueError("access_key_id and secret_access_key must be set together")

    @property
    def resolved_endpoint_url(self) -> Optional[str]:
        """エンドポイントURLを解決（account_idからR2のURLを組み立てる）"""
        if self.endpoint_url:
            return self.endpoint_url
        if self.account_id:
            return f"https://{self.account_id}.r2.cloudflarestorage.com"
        return None


@dataclass
class UploadOptions:
    """アップロードオプション"""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    min_part_size: int = MIN_PART_SIZE
    max_parts: int = MAX_PARTS
    max_retries: int = 3
    timeout_seconds: int = 300
    io_chunksize: int = 262144  # 256KB
    max_concurrency: int = 4
    enable_progress: bool = True

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.max_parts <= 0:
            raise ValueError(f"max_parts must be positive, got {self.max_parts}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


@dataclass
class RelayConfig:
    """リレーサーバーの設定"""
    host: str = "127.0.0.1"
    port: int = 8787
    public_url: Optional[str] = None  # 未設定ならリクエストのオリジンからパートURLを組み立てる
    allow_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class ClientConfig:
    """クライアントの設定"""
    relay_url: str = "http://127.0.0.1:8787"


@dataclass
class Config:
    """メイン設定クラス"""
    logging: LoggingConfig
    storage: StorageConfig
    options: UploadOptions
    relay: RelayConfig
    client: ClientConfig

    @classmethod
    def default(cls) -> 'Config':
        """デフォルト設定（ローカルディスクのバックエンド）"""
        return cls(
            logging=LoggingConfig(),
            storage=StorageConfig(backend="filesystem"),
            options=UploadOptions(),
            relay=RelayConfig(),
            client=ClientConfig(),
        )

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """設定ファイルから読み込み"""
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file {config_path} not found.")

        try:
            with open(config_path, "r", encoding="utf-8") as file:
                data = json.load(file)

            return cls(
                logging=LoggingConfig(**data.get("logging", {})),
                storage=StorageConfig(**data.get("storage", {})),
                options=UploadOptions(**data.get("options", {})),
                relay=RelayConfig(**data.get("relay", {})),
                client=ClientConfig(**data.get("client", {})),
            )

        except json.JSONDecodeError as e:
            raise ValueError(f"Error decoding JSON from {config_path}: {e}")
        except Exception as e:
            raise RuntimeError(f"Error loading configuration: {e}")
