"""S3クライアント管理"""
import boto3
from typing import Any, Dict, Optional
from botocore.config import Config as BotoConfig
from botocore.exceptions import NoCredentialsError
from ..models.config import StorageConfig
from ..utils.logger import LoggerManager


class S3ClientManager:
    """S3互換クライアントの作成と管理

    認証情報は StorageConfig から注入する（環境変数などのグローバル状態には依存しない）。
    R2 などの S3 互換サービスは endpoint_url / account_id で指定する。
    """

    def __init__(self, storage_config: StorageConfig):
        self.storage_config = storage_config
        self.logger = LoggerManager.get_logger()
        self._client: Optional[Any] = None

    def get_client(self) -> Any:
        """S3クライアントを取得（必要に応じて作成）"""
        if self._client is None:
            self._client = self._create_client()
        return self._client

    def _client_kwargs(self) -> Dict[str, Any]:
        config = self.storage_config
        kwargs: Dict[str, Any] = {
            'region_name': config.region,
            'config': BotoConfig(
                connect_timeout=config.connect_timeout,
                read_timeout=config.read_timeout,
                retries={'max_attempts': config.max_attempts, 'mode': 'standard'},
            ),
        }

        endpoint_url = config.resolved_endpoint_url
        if endpoint_url:
            kwargs['endpoint_url'] = endpoint_url

        if config.access_key_id:
            kwargs['aws_access_key_id'] = config.access_key_id
            kwargs['aws_secret_access_key'] = config.secret_access_key

        return kwargs

    def _create_client(self) -> Any:
        """S3クライアントを作成"""
        kwargs = self._client_kwargs()
        try:
            if self.storage_config.profile and not self.storage_config.access_key_id:
                session = boto3.Session(profile_name=self.storage_config.profile)
                s3_client = session.client('s3', **kwargs)
            else:
                s3_client = boto3.client('s3', **kwargs)

            self.logger.info(
                f"S3 client created (endpoint={kwargs.get('endpoint_url', 'default')}, "
                f"bucket={self.storage_config.bucket})"
            )
            return s3_client

        except NoCredentialsError:
            self.logger.error("Object store credentials not available.")
            raise
        except Exception as e:
            self.logger.error(f"Error creating S3 client: {e}")
            raise
